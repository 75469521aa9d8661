from __future__ import annotations

import os
from dataclasses import dataclass

from triggerfi.orders.types import to_bool, to_float, to_int

ROLE_KEEPER = "keeper"
ROLE_TAKER = "taker"


def normalize_role(value: str) -> str:
    role = (value or "").strip().lower()
    if role in {ROLE_KEEPER, ROLE_TAKER}:
        return role
    return ROLE_KEEPER


@dataclass(slots=True)
class AppSettings:
    role: str
    rpc_url: str
    private_key: str
    dry_run: bool
    log_level: str
    error_backoff_seconds: float
    keeper_interval_seconds: float
    taker_poll_seconds: float
    fee_per_update: int
    fee_price_url: str
    fee_price_json_path: str
    fee_price_fallback: float
    condition_timeout_seconds: float
    condition_concurrency: int
    fill_guard_ttl_seconds: int
    fill_concurrency: int
    tx_confirm_timeout_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            role=normalize_role(os.getenv("TRIGGERFI_ROLE", ROLE_KEEPER)),
            rpc_url=os.getenv("RPC_URL", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", "").strip(),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO",
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 5.0)),
            keeper_interval_seconds=max(
                1.0,
                to_float(os.getenv("KEEPER_INTERVAL_SECONDS"), 300.0),
            ),
            taker_poll_seconds=max(1.0, to_float(os.getenv("TAKER_POLL_SECONDS"), 30.0)),
            fee_per_update=max(0, to_int(os.getenv("FEE_PER_UPDATE"), 2_000_000)),
            fee_price_url=os.getenv(
                "FEE_PRICE_URL",
                "https://api.coinbase.com/v2/prices/ETH-USD/spot",
            ).strip(),
            fee_price_json_path=os.getenv("FEE_PRICE_JSON_PATH", "data.amount").strip(),
            fee_price_fallback=max(0.0, to_float(os.getenv("FEE_PRICE_FALLBACK"), 3500.0)),
            condition_timeout_seconds=max(
                0.5,
                to_float(os.getenv("CONDITION_TIMEOUT_SECONDS"), 10.0),
            ),
            condition_concurrency=max(1, to_int(os.getenv("CONDITION_CONCURRENCY"), 8)),
            fill_guard_ttl_seconds=max(30, to_int(os.getenv("FILL_GUARD_TTL_SECONDS"), 180)),
            fill_concurrency=max(1, to_int(os.getenv("FILL_CONCURRENCY"), 4)),
            tx_confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("TX_CONFIRM_TIMEOUT_SECONDS"), 120.0),
            ),
        )
