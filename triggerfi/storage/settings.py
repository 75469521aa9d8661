from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone


def _sanitize_service_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    backend: str
    redis_url: str
    firestore_project_id: str | None
    orders_collection: str
    predicates_collection: str
    service_collection: str
    service_id: str
    service_env: str
    run_id: str
    runs_collection: str
    events_collection: str
    heartbeat_key: str
    fill_guard_prefix: str
    keeper_cycle_key: str

    @classmethod
    def from_env(cls, *, role: str = "keeper") -> "StorageSettings":
        backend = (os.getenv("ORDER_REGISTRY_BACKEND", "firestore") or "firestore").strip().lower()
        if backend not in {"firestore", "memory"}:
            backend = "firestore"
        service_id = _sanitize_service_id(
            os.getenv("SERVICE_ID", f"triggerfi-{role}"),
            f"triggerfi-{role}",
        )

        return cls(
            backend=backend,
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            orders_collection=os.getenv("ORDERS_COLLECTION", "orders").strip("/") or "orders",
            predicates_collection=(
                os.getenv("PREDICATES_COLLECTION", "predicates").strip("/") or "predicates"
            ),
            service_collection=os.getenv("SERVICE_COLLECTION", "services").strip("/") or "services",
            service_id=service_id,
            service_env=os.getenv("SERVICE_ENV", "dev"),
            run_id=os.getenv("SERVICE_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            runs_collection=os.getenv("SERVICE_RUNS_COLLECTION", "runs"),
            events_collection=os.getenv("SERVICE_EVENTS_COLLECTION", "events"),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", f"triggerfi:heartbeat:{service_id}"),
            fill_guard_prefix=os.getenv("REDIS_FILL_GUARD_PREFIX", "triggerfi:fill_guard"),
            keeper_cycle_key=os.getenv("REDIS_KEEPER_CYCLE_KEY", "triggerfi:keeper:last_cycle"),
        )
