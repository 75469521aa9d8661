from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

from triggerfi.orders.types import (
    ORDER_STATUS_ACTIVE,
    ORDER_STATUSES,
    TERMINAL_ORDER_STATUSES,
    InvalidStatusTransition,
    OrderRecord,
    ValidationError,
)


def serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


class QueueSubscription:
    """Async iterator over active-order snapshots, fed from any thread."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        on_unsubscribe: Callable[[], None] | None = None,
    ) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[list[OrderRecord] | None] = asyncio.Queue()
        self._on_unsubscribe = on_unsubscribe
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, records: list[OrderRecord]) -> None:
        if self._closed or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, records)

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_unsubscribe is not None:
            self._on_unsubscribe()
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)

    def __aiter__(self) -> "QueueSubscription":
        return self

    async def __anext__(self) -> list[OrderRecord]:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


STATUS_DETAIL_FIELDS = frozenset(
    {
        "filledAt",
        "fillTxHash",
        "feeTxHash",
        "filledBy",
        "cancelledAt",
        "cancelTxHash",
        "lastError",
        "lastErrorAt",
    }
)


def status_transition_payload(
    *,
    order_id: str,
    current: str,
    requested: str,
    details: dict[str, Any] | None,
    now_ms: int,
) -> dict[str, Any] | None:
    if requested not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {requested!r}")
    if current == requested:
        return None
    if current in TERMINAL_ORDER_STATUSES or requested == ORDER_STATUS_ACTIVE:
        raise InvalidStatusTransition(order_id=order_id, current=current, requested=requested)

    payload: dict[str, Any] = {"status": requested, "updatedAt": now_ms}
    for key, value in (details or {}).items():
        if key not in STATUS_DETAIL_FIELDS:
            raise ValidationError(f"Field {key!r} cannot be set on a status change.")
        payload[key] = value
    return payload


def fee_update_payload(
    *,
    current_count: int,
    update_count: int,
    accumulated_fees: int,
    now_ms: int,
) -> dict[str, Any] | None:
    # outstanding fees drop after a settlement, so only a newer update count may overwrite them
    if update_count <= current_count:
        return None
    return {
        "updateCount": update_count,
        "accumulatedFees": str(max(0, accumulated_fees)),
        "updatedAt": now_ms,
    }
