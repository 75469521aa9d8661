from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from datetime import datetime, timezone
from typing import Any

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.cloud.firestore import FieldFilter

from triggerfi.common import guarded_call, log_event
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


class FirestoreRegistryOps:
    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    def _order_ref(self, order_id: str) -> Any:
        return self._orders_collection_ref.document(self._doc_id_from_text(order_id))

    def _predicate_ref(self, predicate_id: str) -> Any:
        return self._predicates_collection_ref.document(self._doc_id_from_text(predicate_id))

    async def create_order(self, record: OrderRecord) -> None:
        self._require_firestore()
        document = record.to_document()
        document["serverCreatedAt"] = firestore.SERVER_TIMESTAMP
        try:
            await asyncio.to_thread(self._order_ref(record.order_id).create, document)
        except AlreadyExists as error:
            raise ValidationError(f"Order {record.order_id} already exists.") from error

        log_event(
            self._logger,
            level="info",
            event="order_created",
            message="Order stored in registry",
            order_id=record.order_id,
            order_hash=record.order_hash,
            predicate_id=record.predicate_id,
        )

    async def get_order(self, order_id: str) -> OrderRecord | None:
        self._require_firestore()
        snapshot = await asyncio.to_thread(self._order_ref(order_id).get)
        if not snapshot.exists:
            return None
        return OrderRecord.from_document(snapshot.to_dict() or {})

    async def _query_orders(self, *filters: FieldFilter) -> list[OrderRecord]:
        self._require_firestore()
        query = self._orders_collection_ref
        for field_filter in filters:
            query = query.where(filter=field_filter)

        def run_query() -> list[dict[str, Any]]:
            return [snapshot.to_dict() or {} for snapshot in query.stream()]

        documents = await asyncio.to_thread(run_query)
        return [OrderRecord.from_document(document) for document in documents]

    async def list_active_orders(self) -> list[OrderRecord]:
        return await self._query_orders(FieldFilter("status", "==", ORDER_STATUS_ACTIVE))

    async def list_orders_by_maker(self, maker: str, *, limit: int = 50) -> list[OrderRecord]:
        records = await self._query_orders(
            FieldFilter("maker", "==", normalize_address(maker, name="maker")),
        )
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[: max(0, limit)]

    async def list_orders_by_predicate(self, predicate_id: str) -> list[OrderRecord]:
        return await self._query_orders(FieldFilter("predicateId", "==", predicate_id))

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> OrderRecord:
        firestore_client = self._require_firestore()
        order_ref = self._order_ref(order_id)

        @firestore.transactional
        def apply(transaction: Any) -> dict[str, Any]:
            snapshot = order_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ValidationError(f"Order {order_id} does not exist.")
            document = snapshot.to_dict() or {}
            payload = status_transition_payload(
                order_id=order_id,
                current=str(document.get("status") or ORDER_STATUS_ACTIVE),
                requested=status,
                details=details,
                now_ms=now_epoch_ms(),
            )
            if payload is None:
                return document
            transaction.update(order_ref, payload)
            document.update(payload)
            return document

        document = await asyncio.to_thread(apply, firestore_client.transaction())
        return OrderRecord.from_document(document)

    async def update_order_fees(
        self,
        order_id: str,
        *,
        update_count: int,
        accumulated_fees: int,
    ) -> None:
        firestore_client = self._require_firestore()
        order_ref = self._order_ref(order_id)

        @firestore.transactional
        def apply(transaction: Any) -> None:
            snapshot = order_ref.get(transaction=transaction)
            if not snapshot.exists:
                return
            document = snapshot.to_dict() or {}
            if document.get("status") != ORDER_STATUS_ACTIVE:
                return
            payload = fee_update_payload(
                current_count=to_int(document.get("updateCount"), 0),
                update_count=update_count,
                accumulated_fees=accumulated_fees,
                now_ms=now_epoch_ms(),
            )
            if payload is not None:
                transaction.update(order_ref, payload)

        await asyncio.to_thread(apply, firestore_client.transaction())

    async def record_order_error(self, order_id: str, *, error: str) -> None:
        self._require_firestore()
        now_ms = now_epoch_ms()
        payload = {"lastError": error[:500], "lastErrorAt": now_ms, "updatedAt": now_ms}
        await asyncio.to_thread(self._order_ref(order_id).update, payload)

    async def save_predicate_config(self, config: PredicateConfig) -> None:
        firestore_client = self._require_firestore()
        predicate_ref = self._predicate_ref(config.predicate_id)
        document = config.to_document()

        @firestore.transactional
        def apply(transaction: Any) -> bool:
            snapshot = predicate_ref.get(transaction=transaction)
            if snapshot.exists:
                return False
            transaction.set(predicate_ref, document)
            return True

        created = await asyncio.to_thread(apply, firestore_client.transaction())
        log_event(
            self._logger,
            level="info" if created else "debug",
            event="predicate_saved" if created else "predicate_exists",
            message="Predicate configuration stored" if created else "Predicate already registered",
            predicate_id=config.predicate_id,
            condition_count=len(config.conditions),
            logic_operator=config.logic_operator,
        )

    async def get_predicate_config(self, predicate_id: str) -> PredicateConfig | None:
        self._require_firestore()
        snapshot = await asyncio.to_thread(self._predicate_ref(predicate_id).get)
        if not snapshot.exists:
            return None
        return PredicateConfig.from_document(snapshot.to_dict() or {})

    async def update_predicate_result(
        self,
        predicate_id: str,
        *,
        result: bool,
        check_count: int,
    ) -> None:
        firestore_client = self._require_firestore()
        predicate_ref = self._predicate_ref(predicate_id)

        @firestore.transactional
        def apply(transaction: Any) -> None:
            snapshot = predicate_ref.get(transaction=transaction)
            current = to_int((snapshot.to_dict() or {}).get("checkCount"), 0) if snapshot.exists else 0
            payload = {
                "predicateId": predicate_id,
                "lastResult": bool(result),
                "lastChecked": now_iso(),
                "checkCount": max(current, check_count),
            }
            transaction.set(predicate_ref, payload, merge=True)

        await asyncio.to_thread(apply, firestore_client.transaction())

    def subscribe_active_orders(self) -> QueueSubscription:
        self._require_firestore()
        loop = asyncio.get_running_loop()
        query = self._orders_collection_ref.where(
            filter=FieldFilter("status", "==", ORDER_STATUS_ACTIVE)
        )
        watch: Any | None = None

        def stop_watch() -> None:
            if watch is not None:
                with contextlib.suppress(Exception):  # watch runs on its own thread; ignore close race
                    watch.unsubscribe()

        subscription = QueueSubscription(loop, on_unsubscribe=stop_watch)

        def on_snapshot(snapshots: list[Any], _changes: list[Any], _read_time: Any) -> None:
            records: list[OrderRecord] = []
            for snapshot in snapshots:
                try:
                    records.append(OrderRecord.from_document(snapshot.to_dict() or {}))
                except ValidationError as error:
                    log_event(
                        self._logger,
                        level="warning",
                        event="order_snapshot_invalid",
                        message="Skipping malformed order document",
                        document_id=getattr(snapshot, "id", ""),
                        error=str(error),
                    )
            subscription.push(records)

        watch = query.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="active_orders_watch_started",
            message="Active order watch started",
        )
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
        if self._firestore is None or self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Skipping Firestore event because client is not ready",
            )
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "service_id": self.settings.service_id,
            "run_id": self.settings.run_id,
            "env": self.settings.service_env,
        }
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                event_ref = self._events_collection_ref.document(self._doc_id_from_text(event_id))
                await asyncio.to_thread(event_ref.set, payload, merge=True)
                return

            await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._run_doc_ref is None:
            return

        payload = {
            "status": "stopped",
            "stop_reason": reason,
            "stopped_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await guarded_call(
            lambda: asyncio.to_thread(self._run_doc_ref.set, payload, merge=True),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to update run status",
        )

    async def _ensure_service_namespace(self) -> None:
        if self._service_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        service_payload: dict[str, Any] = {
            "service_id": self.settings.service_id,
            "env": self.settings.service_env,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        run_payload: dict[str, Any] = {
            "run_id": self.settings.run_id,
            "service_id": self.settings.service_id,
            "env": self.settings.service_env,
            "status": "running",
            "pid": os.getpid(),
            "started_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        await asyncio.gather(
            asyncio.to_thread(self._service_doc_ref.set, service_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        self._orders_collection_ref = firestore_client.collection(self.settings.orders_collection)
        self._predicates_collection_ref = firestore_client.collection(
            self.settings.predicates_collection
        )
        service_doc_path = f"{self.settings.service_collection}/{self.settings.service_id}"
        self._service_doc_ref = firestore_client.document(service_doc_path)
        self._run_doc_ref = self._service_doc_ref.collection(self.settings.runs_collection).document(
            self.settings.run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.events_collection)

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
