from .clients import ChainClients, build_chain_clients, resolve_signer_address
from .logging import setup_logger
from .loop import (
    BootstrapCancelled,
    bootstrap_dependencies,
    run_keeper_loop,
    run_taker_loop,
    wait_with_stop,
)
from .settings import ROLE_KEEPER, ROLE_TAKER, AppSettings

__all__ = [
    "AppSettings",
    "BootstrapCancelled",
    "ChainClients",
    "ROLE_KEEPER",
    "ROLE_TAKER",
    "bootstrap_dependencies",
    "build_chain_clients",
    "resolve_signer_address",
    "run_keeper_loop",
    "run_taker_loop",
    "setup_logger",
    "wait_with_stop",
]
