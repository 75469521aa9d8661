from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account

from triggerfi.chain import (
    ChainConfig,
    DryRunLimitOrderProtocol,
    DryRunPredicateStore,
    LiveLimitOrderProtocol,
    LivePredicateStore,
)
from triggerfi.engine import FeeQuoter, NativePriceSource
from triggerfi.orders.conditions import ConditionEvaluator
from triggerfi.orders.types import LimitOrderProtocol, PredicateStore

from .settings import AppSettings

# Used as keeper and taker identity when DRY_RUN is on without a PRIVATE_KEY.
DRY_RUN_ADDRESS = "0x00000000000000000000000000000000000d7e11"


@dataclass(slots=True)
class ChainClients:
    signer_address: str
    predicate_store: PredicateStore
    protocol: LimitOrderProtocol
    fee_quoter: FeeQuoter

    @property
    def connectables(self) -> list[Any]:
        return [self.predicate_store, self.protocol]


def resolve_signer_address(app_settings: AppSettings) -> str:
    if app_settings.private_key:
        return Account.from_key(app_settings.private_key).address
    if app_settings.dry_run:
        return DRY_RUN_ADDRESS
    raise ValueError("PRIVATE_KEY is required when DRY_RUN is false.")


def build_chain_clients(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    chain: ChainConfig,
    evaluator: ConditionEvaluator,
) -> ChainClients:
    signer_address = resolve_signer_address(app_settings)

    if app_settings.dry_run:
        predicate_store: Any = DryRunPredicateStore(
            logger=logger,
            keeper=signer_address,
            fee_per_update=app_settings.fee_per_update,
            native_price=app_settings.fee_price_fallback,
            fee_decimals=chain.fee_token_decimals,
        )
        protocol: Any = DryRunLimitOrderProtocol(logger=logger, predicate_store=predicate_store)
        price_source = NativePriceSource(
            logger=logger,
            fetch_json=None,
            url="",
            json_path=app_settings.fee_price_json_path,
            fallback_price=app_settings.fee_price_fallback,
        )
    else:
        predicate_store = LivePredicateStore(
            logger=logger,
            chain=chain,
            rpc_url=app_settings.rpc_url,
            private_key=app_settings.private_key,
            confirm_timeout_seconds=app_settings.tx_confirm_timeout_seconds,
        )
        protocol = LiveLimitOrderProtocol(
            logger=logger,
            chain=chain,
            rpc_url=app_settings.rpc_url,
            private_key=app_settings.private_key,
            confirm_timeout_seconds=app_settings.tx_confirm_timeout_seconds,
        )
        price_source = NativePriceSource(
            logger=logger,
            fetch_json=evaluator.fetch_json,
            url=app_settings.fee_price_url,
            json_path=app_settings.fee_price_json_path,
            fallback_price=app_settings.fee_price_fallback,
        )

    fee_quoter = FeeQuoter(
        predicate_store=predicate_store,
        price_source=price_source,
        fee_decimals=chain.fee_token_decimals,
    )
    return ChainClients(
        signer_address=signer_address,
        predicate_store=predicate_store,
        protocol=protocol,
        fee_quoter=fee_quoter,
    )
