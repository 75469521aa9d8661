from __future__ import annotations

import logging

from .gateway import StorageGateway
from .memory import MemoryStorageGateway
from .settings import StorageSettings


def create_storage(
    settings: StorageSettings,
    logger: logging.Logger,
) -> StorageGateway | MemoryStorageGateway:
    if settings.backend == "memory":
        return MemoryStorageGateway(settings, logger)
    return StorageGateway(settings, logger)


__all__ = [
    "MemoryStorageGateway",
    "StorageGateway",
    "StorageSettings",
    "create_storage",
]
