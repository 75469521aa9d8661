from __future__ import annotations

import asyncio
import copy
import logging
import time
from typing import Any

from triggerfi.common import log_event
from triggerfi.orders.types import (
    ORDER_STATUS_ACTIVE,
    OrderRecord,
    PredicateConfig,
    ValidationError,
    normalize_address,
    now_epoch_ms,
    now_iso,
    to_int,
)

from .helpers import QueueSubscription, fee_update_payload, status_transition_payload
from .settings import StorageSettings


class MemoryStorageGateway:
    """Process-local registry with the same contract as the Firestore gateway."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._lock = asyncio.Lock()
        self._orders: dict[str, dict[str, Any]] = {}
        self._predicates: dict[str, dict[str, Any]] = {}
        self._guards: dict[str, tuple[str, float]] = {}
        self._subscriptions: list[QueueSubscription] = []
        self.events: list[dict[str, Any]] = []
        self.heartbeat: str | None = None
        self.keeper_cycle: dict[str, Any] = {}

    @property
    def service_id(self) -> str:
        return self.settings.service_id

    @property
    def run_id(self) -> str:
        return self.settings.run_id

    async def connect(self) -> None:
        log_event(
            self._logger,
            level="info",
            event="memory_registry_ready",
            message="Using in-memory order registry",
        )

    async def healthcheck(self) -> None:
        return None

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
        self._subscriptions.clear()

    def _active_records(self) -> list[OrderRecord]:
        return [
            OrderRecord.from_document(document)
            for document in self._orders.values()
            if document.get("status") == ORDER_STATUS_ACTIVE
        ]

    def _notify(self) -> None:
        if not self._subscriptions:
            return
        records = self._active_records()
        for subscription in self._subscriptions:
            subscription.push(records)

    async def create_order(self, record: OrderRecord) -> None:
        async with self._lock:
            if record.order_id in self._orders:
                raise ValidationError(f"Order {record.order_id} already exists.")
            self._orders[record.order_id] = record.to_document()
        log_event(
            self._logger,
            level="info",
            event="order_created",
            message="Order stored in registry",
            order_id=record.order_id,
            order_hash=record.order_hash,
            predicate_id=record.predicate_id,
        )
        self._notify()

    async def get_order(self, order_id: str) -> OrderRecord | None:
        document = self._orders.get(order_id)
        if document is None:
            return None
        return OrderRecord.from_document(copy.deepcopy(document))

    async def list_active_orders(self) -> list[OrderRecord]:
        return self._active_records()

    async def list_orders_by_maker(self, maker: str, *, limit: int = 50) -> list[OrderRecord]:
        normalized = normalize_address(maker, name="maker")
        records = [
            OrderRecord.from_document(document)
            for document in self._orders.values()
            if document.get("maker") == normalized
        ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[: max(0, limit)]

    async def list_orders_by_predicate(self, predicate_id: str) -> list[OrderRecord]:
        return [
            OrderRecord.from_document(document)
            for document in self._orders.values()
            if document.get("predicateId") == predicate_id
        ]

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> OrderRecord:
        async with self._lock:
            document = self._orders.get(order_id)
            if document is None:
                raise ValidationError(f"Order {order_id} does not exist.")
            payload = status_transition_payload(
                order_id=order_id,
                current=str(document.get("status") or ORDER_STATUS_ACTIVE),
                requested=status,
                details=details,
                now_ms=now_epoch_ms(),
            )
            if payload is not None:
                document.update(payload)
            record = OrderRecord.from_document(copy.deepcopy(document))
        if payload is not None:
            self._notify()
        return record

    async def update_order_fees(
        self,
        order_id: str,
        *,
        update_count: int,
        accumulated_fees: int,
    ) -> None:
        async with self._lock:
            document = self._orders.get(order_id)
            if document is None or document.get("status") != ORDER_STATUS_ACTIVE:
                return
            payload = fee_update_payload(
                current_count=to_int(document.get("updateCount"), 0),
                update_count=update_count,
                accumulated_fees=accumulated_fees,
                now_ms=now_epoch_ms(),
            )
            if payload is None:
                return
            document.update(payload)
        self._notify()

    async def record_order_error(self, order_id: str, *, error: str) -> None:
        async with self._lock:
            document = self._orders.get(order_id)
            if document is None:
                raise ValidationError(f"Order {order_id} does not exist.")
            now_ms = now_epoch_ms()
            document.update({"lastError": error[:500], "lastErrorAt": now_ms, "updatedAt": now_ms})

    async def save_predicate_config(self, config: PredicateConfig) -> None:
        async with self._lock:
            if config.predicate_id in self._predicates:
                return
            self._predicates[config.predicate_id] = config.to_document()
        log_event(
            self._logger,
            level="info",
            event="predicate_saved",
            message="Predicate configuration stored",
            predicate_id=config.predicate_id,
            condition_count=len(config.conditions),
            logic_operator=config.logic_operator,
        )

    async def get_predicate_config(self, predicate_id: str) -> PredicateConfig | None:
        document = self._predicates.get(predicate_id)
        if document is None:
            return None
        return PredicateConfig.from_document(copy.deepcopy(document))

    async def update_predicate_result(
        self,
        predicate_id: str,
        *,
        result: bool,
        check_count: int,
    ) -> None:
        async with self._lock:
            document = self._predicates.setdefault(predicate_id, {"predicateId": predicate_id})
            document["lastResult"] = bool(result)
            document["lastChecked"] = now_iso()
            document["checkCount"] = max(to_int(document.get("checkCount"), 0), check_count)

    def subscribe_active_orders(self) -> QueueSubscription:
        loop = asyncio.get_running_loop()
        subscription: QueueSubscription

        def detach() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        subscription = QueueSubscription(loop, on_unsubscribe=detach)
        self._subscriptions.append(subscription)
        subscription.push(self._active_records())
        return subscription

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        self.events.append(
            {
                "level": level,
                "event": event,
                "message": message,
                "details": details or {},
                "event_id": event_id,
                "timestamp": now_iso(),
            }
        )

    async def mark_run_stopped(self, *, reason: str) -> None:
        log_event(
            self._logger,
            level="info",
            event="run_stopped",
            message="Service run stopped",
            reason=reason,
        )

    async def acquire_fill_guard(self, *, order_id: str, owner: str, ttl_seconds: int) -> bool:
        now = time.monotonic()
        async with self._lock:
            current = self._guards.get(order_id)
            if current is not None and current[1] > now:
                return False
            self._guards[order_id] = (owner, now + max(1, ttl_seconds))
            return True

    async def release_fill_guard(self, *, order_id: str, owner: str) -> bool:
        async with self._lock:
            current = self._guards.get(order_id)
            if current is None or current[0] != owner:
                return False
            del self._guards[order_id]
            return True

    async def record_keeper_cycle(self, summary: dict[str, Any]) -> None:
        self.keeper_cycle = dict(summary, updated_at=now_iso())

    async def update_heartbeat(self) -> None:
        self.heartbeat = now_iso()
