from __future__ import annotations

import logging
from typing import Any, Sequence

from triggerfi.chain.settings import ChainConfig
from triggerfi.common import log_event
from triggerfi.orders.builder import OrderBuilder, derive_predicate_id, make_order_id
from triggerfi.orders.encoding import encode_condition_check
from triggerfi.orders.types import (
    ORDER_STATUS_CANCELLED,
    ZERO_ADDRESS,
    Condition,
    InvalidStatusTransition,
    LimitOrderProtocol,
    OrderRecord,
    OrderRegistry,
    PredicateConfig,
    SigningError,
    ValidationError,
    normalize_address,
    now_epoch_ms,
    now_iso,
    validate_conditions,
)


class OrderService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        registry: OrderRegistry,
        builder: OrderBuilder,
        chain: ChainConfig,
        protocol: LimitOrderProtocol | None = None,
    ) -> None:
        self._logger = logger
        self._registry = registry
        self._builder = builder
        self._chain = chain
        self._protocol = protocol
        self._last_created_at = 0

    async def create_conditional_order(
        self,
        *,
        signer: Any,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        taking_amount: int,
        conditions: Sequence[Condition],
        logic_operator: str,
        receiver: str = ZERO_ADDRESS,
    ) -> OrderRecord:
        conditions = tuple(conditions)
        validate_conditions(conditions, logic_operator, require_secret=False)
        for index, condition in enumerate(conditions):
            if condition.auth_type != "none" and not condition.auth_ref:
                raise ValidationError(
                    f"Condition {index + 1}: authRef is required so the secret is not persisted"
                )
        if not self._chain.has_predicate_store:
            raise ValidationError(f"No predicate store is configured for {self._chain.name}.")

        signer_address = getattr(signer, "address", None)
        if not signer_address:
            raise SigningError("Signer has no address.")
        maker = normalize_address(signer_address, name="maker")

        predicate_id = derive_predicate_id(conditions, logic_operator, maker)
        predicate = encode_condition_check(self._chain.predicate_store, predicate_id)
        order = self._builder.build(
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            making_amount=making_amount,
            taking_amount=taking_amount,
            predicate=predicate,
            maker=maker,
            receiver=receiver,
        )
        signature = self._builder.sign(order, signer)
        order_hash = self._builder.hash(order)

        # order ids embed the creation time, so keep it strictly increasing per service
        created_at = max(now_epoch_ms(), self._last_created_at + 1)
        self._last_created_at = created_at
        stored_conditions = tuple(condition.with_secret("") for condition in conditions)
        config = PredicateConfig(
            predicate_id=predicate_id,
            conditions=stored_conditions,
            logic_operator=logic_operator,
            creator=maker,
            created_at=now_iso(),
        )
        record = OrderRecord(
            order_id=make_order_id(maker, created_at),
            order_hash=order_hash,
            predicate_id=predicate_id,
            order=order,
            signature=signature,
            conditions=stored_conditions,
            logic_operator=logic_operator,
            chain_id=self._chain.chain_id,
            created_at=created_at,
            updated_at=created_at,
        )

        await self._registry.save_predicate_config(config)
        await self._registry.create_order(record)
        log_event(
            self._logger,
            level="info",
            event="conditional_order_created",
            message="Conditional order signed and stored",
            order_id=record.order_id,
            order_hash=order_hash,
            predicate_id=predicate_id,
            maker=maker,
            chain_id=self._chain.chain_id,
        )
        return record

    async def cancel_order(self, order_id: str, *, maker: str) -> OrderRecord:
        record = await self._registry.get_order(order_id)
        if record is None:
            raise ValidationError(f"Order {order_id} does not exist.")
        if record.maker != normalize_address(maker, name="maker"):
            raise ValidationError("Only the order maker can cancel an order.")
        if record.status == ORDER_STATUS_CANCELLED:
            return record
        if record.is_terminal:
            raise InvalidStatusTransition(
                order_id=order_id,
                current=record.status,
                requested=ORDER_STATUS_CANCELLED,
            )

        details: dict[str, Any] = {"cancelledAt": now_epoch_ms()}
        if self._protocol is not None:
            receipt = await self._protocol.cancel_order(record.order_hash)
            details["cancelTxHash"] = receipt.tx_hash

        cancelled = await self._registry.update_order_status(
            order_id,
            ORDER_STATUS_CANCELLED,
            details=details,
        )
        log_event(
            self._logger,
            level="info",
            event="order_cancelled",
            message="Order cancelled by maker",
            order_id=order_id,
            cancel_tx_hash=details.get("cancelTxHash"),
        )
        return cancelled
