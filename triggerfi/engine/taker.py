from __future__ import annotations

import logging
import uuid
from typing import Any

from triggerfi.chain.contracts import classify_fill_revert
from triggerfi.common import gather_limited, guarded_call, log_event
from triggerfi.orders.builder import split_signature
from triggerfi.orders.types import (
    FILL_OUTCOME_ALREADY_FILLED,
    FILL_OUTCOME_BUSY,
    FILL_OUTCOME_CANCELLED,
    FILL_OUTCOME_FAILED,
    FILL_OUTCOME_FILLED,
    FILL_OUTCOME_INVALIDATED,
    FILL_OUTCOME_NOT_FILLABLE,
    FILL_OUTCOME_REJECTED,
    ORDER_STATUS_ACTIVE,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_FILLED,
    ChainWriteError,
    FeeQuote,
    FillGuardStore,
    FillResult,
    FillRevertedError,
    InsufficientFeeError,
    LimitOrderProtocol,
    OrderRecord,
    OrderRegistry,
    PredicateStore,
    ValidationError,
    normalize_address,
    now_epoch_ms,
)

from .fees import FeeQuoter


class FillOrchestrator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        registry: OrderRegistry,
        predicate_store: PredicateStore,
        protocol: LimitOrderProtocol,
        fee_quoter: FeeQuoter,
        guard_store: FillGuardStore,
        taker_address: str,
        guard_ttl_seconds: int = 180,
        simulate: bool = True,
        concurrency: int = 4,
    ) -> None:
        self._logger = logger
        self._registry = registry
        self._predicate_store = predicate_store
        self._protocol = protocol
        self._fee_quoter = fee_quoter
        self._guard_store = guard_store
        self._taker_address = normalize_address(taker_address, name="taker")
        self._guard_ttl_seconds = guard_ttl_seconds
        self._simulate = simulate
        self._concurrency = max(1, concurrency)

    async def attempt_fill(self, order_id: str) -> FillResult:
        owner = f"{self._taker_address}:{uuid.uuid4().hex}"
        acquired = await self._guard_store.acquire_fill_guard(
            order_id=order_id,
            owner=owner,
            ttl_seconds=self._guard_ttl_seconds,
        )
        if not acquired:
            return FillResult(outcome=FILL_OUTCOME_BUSY, order_id=order_id, reason="fill_in_progress")

        try:
            result = await self._attempt_fill(order_id)
        finally:
            await guarded_call(
                lambda: self._guard_store.release_fill_guard(order_id=order_id, owner=owner),
                logger=self._logger,
                event="fill_guard_release_failed",
                message="Failed to release fill guard",
                order_id=order_id,
            )

        log_event(
            self._logger,
            level="info" if result.outcome == FILL_OUTCOME_FILLED else "debug",
            event="fill_attempted",
            message="Fill attempt finished",
            order_id=order_id,
            outcome=result.outcome,
            reason=result.reason,
            fee_tx_hash=result.fee_tx_hash,
            fill_tx_hash=result.fill_tx_hash,
        )
        return result

    async def _attempt_fill(self, order_id: str) -> FillResult:
        record = await self._registry.get_order(order_id)
        if record is None:
            return FillResult(outcome=FILL_OUTCOME_REJECTED, order_id=order_id, reason="order_not_found")
        if record.status != ORDER_STATUS_ACTIVE:
            return FillResult(
                outcome=FILL_OUTCOME_REJECTED,
                order_id=order_id,
                reason=f"status_{record.status}",
            )

        if not await self._predicate_store.check_condition(record.predicate_id):
            return FillResult(outcome=FILL_OUTCOME_NOT_FILLABLE, order_id=order_id, reason="predicate_false")

        try:
            r, vs = split_signature(record.signature)
        except ValidationError as error:
            await self._record_error(record, f"invalid_signature: {error}")
            return FillResult(outcome=FILL_OUTCOME_REJECTED, order_id=order_id, reason="invalid_signature")

        if self._simulate:
            try:
                await self._protocol.simulate_fill(record.order, r, vs)
            except FillRevertedError as error:
                return await self._revert_result(record, error, stage="simulation")

        try:
            quote = await self._fee_quoter.quote(record.predicate_id)
            fee_tx_hash = await self.settle_fees(record.predicate_id, quote)
            catch_up_tx_hash = await self._settle_mid_flight_fees(record.predicate_id)
        except (ChainWriteError, InsufficientFeeError, ValidationError) as error:
            await self._record_error(record, f"fee_settlement_failed: {error}")
            return FillResult(
                outcome=FILL_OUTCOME_FAILED,
                order_id=order_id,
                reason="fee_settlement_failed",
                metadata={"error": str(error)},
            )
        fee_tx_hash = catch_up_tx_hash or fee_tx_hash

        try:
            receipt = await self._protocol.fill_order(record.order, r, vs)
        except FillRevertedError as error:
            return await self._revert_result(record, error, stage="execution", fee_tx_hash=fee_tx_hash)
        except ChainWriteError as error:
            await self._record_error(record, f"fill_failed: {error}")
            return FillResult(
                outcome=FILL_OUTCOME_FAILED,
                order_id=order_id,
                reason="fill_submission_failed",
                fee_tx_hash=fee_tx_hash,
                fee_quote=quote,
                metadata={"error": str(error), "tx_hash": error.tx_hash},
            )

        await self._registry.update_order_status(
            order_id,
            ORDER_STATUS_FILLED,
            details={
                "filledAt": now_epoch_ms(),
                "fillTxHash": receipt.tx_hash,
                "feeTxHash": fee_tx_hash,
                "filledBy": self._taker_address,
            },
        )
        return FillResult(
            outcome=FILL_OUTCOME_FILLED,
            order_id=order_id,
            reason="filled",
            fee_tx_hash=fee_tx_hash,
            fill_tx_hash=receipt.tx_hash,
            fee_quote=quote,
        )

    async def settle_fees(self, predicate_id: str, quote: FeeQuote) -> str | None:
        owed = await self._predicate_store.get_update_fees(predicate_id)
        if owed <= 0:
            return None
        if quote.fee_units < owed:
            raise InsufficientFeeError(predicate_id=predicate_id, owed=owed, remitted=quote.fee_units)

        receipt = await self._predicate_store.collect_fees(predicate_id, value_wei=quote.payment_wei)
        log_event(
            self._logger,
            level="info",
            event="fees_settled",
            message="Predicate update fees paid",
            predicate_id=predicate_id,
            fee_units=quote.fee_units,
            payment_wei=quote.payment_wei,
            native_price=quote.native_price,
            price_source=quote.source,
            tx_hash=receipt.tx_hash,
        )
        return receipt.tx_hash

    async def _settle_mid_flight_fees(self, predicate_id: str) -> str | None:
        outstanding = await self._predicate_store.get_update_fees(predicate_id)
        if outstanding <= 0:
            return None
        log_event(
            self._logger,
            level="info",
            event="fees_advanced_mid_flight",
            message="Keeper accrued fees during settlement; paying the difference",
            predicate_id=predicate_id,
            outstanding=outstanding,
        )
        return await self.settle_fees(predicate_id, await self._fee_quoter.quote(predicate_id))

    async def _revert_result(
        self,
        record: OrderRecord,
        error: FillRevertedError,
        *,
        stage: str,
        fee_tx_hash: str | None = None,
    ) -> FillResult:
        outcome = classify_fill_revert(str(error))
        if outcome == FILL_OUTCOME_FAILED:
            outcome = await self._classify_by_state(record)

        metadata: dict[str, Any] = {"stage": stage, "error": str(error), "tx_hash": error.tx_hash}
        if outcome == FILL_OUTCOME_INVALIDATED:
            outcome = await self._resolve_invalidation(record)
            metadata["invalidated_by"] = outcome
        if outcome in (FILL_OUTCOME_FAILED, FILL_OUTCOME_INVALIDATED) or (
            stage == "execution" and outcome == FILL_OUTCOME_NOT_FILLABLE
        ):
            await self._record_error(record, f"fill_reverted: {error}")

        return FillResult(
            outcome=outcome,
            order_id=record.order_id,
            reason=f"{stage}_reverted",
            fee_tx_hash=fee_tx_hash,
            metadata=metadata,
        )

    async def _resolve_invalidation(self, record: OrderRecord) -> str:
        reason = await guarded_call(
            lambda: self._protocol.invalidation_reason(record.order_hash),
            logger=self._logger,
            event="invalidation_lookup_failed",
            message="Failed to look up why the order was invalidated",
            order_id=record.order_id,
        )
        if reason == ORDER_STATUS_CANCELLED:
            details = {"cancelledAt": now_epoch_ms()}
            outcome = FILL_OUTCOME_CANCELLED
        elif reason == ORDER_STATUS_FILLED:
            details = {"filledAt": now_epoch_ms()}
            outcome = FILL_OUTCOME_ALREADY_FILLED
        else:
            log_event(
                self._logger,
                level="warning",
                event="order_invalidated_unknown",
                message="Order is invalidated on-chain but neither a fill nor a cancel was found",
                order_id=record.order_id,
                order_hash=record.order_hash,
            )
            return FILL_OUTCOME_INVALIDATED

        await guarded_call(
            lambda: self._registry.update_order_status(record.order_id, reason, details=details),
            logger=self._logger,
            event="fill_reconcile_failed",
            message="Failed to reconcile an order invalidated on-chain",
            order_id=record.order_id,
            status=reason,
        )
        return outcome

    async def _classify_by_state(self, record: OrderRecord) -> str:
        remaining = await guarded_call(
            lambda: self._protocol.remaining(record.order_hash),
            logger=self._logger,
            event="remaining_lookup_failed",
            message="Failed to read remaining amount after revert",
            order_id=record.order_id,
        )
        if remaining == 0:
            return FILL_OUTCOME_INVALIDATED

        predicate_value = await guarded_call(
            lambda: self._predicate_store.check_condition(record.predicate_id),
            logger=self._logger,
            event="predicate_lookup_failed",
            message="Failed to re-read predicate after revert",
            order_id=record.order_id,
        )
        if predicate_value == 0:
            return FILL_OUTCOME_NOT_FILLABLE
        return FILL_OUTCOME_FAILED

    async def _record_error(self, record: OrderRecord, error: str) -> None:
        await guarded_call(
            lambda: self._registry.record_order_error(record.order_id, error=error),
            logger=self._logger,
            event="order_error_record_failed",
            message="Failed to record order error",
            order_id=record.order_id,
        )

    async def _guarded_attempt(self, order_id: str) -> FillResult:
        try:
            return await self.attempt_fill(order_id)
        except Exception as error:
            log_event(
                self._logger,
                level="exception",
                event="fill_attempt_error",
                message="Fill attempt raised; order stays active",
                order_id=order_id,
                error=str(error),
            )
            return FillResult(
                outcome=FILL_OUTCOME_FAILED,
                order_id=order_id,
                reason="unexpected_error",
                metadata={"error": str(error)},
            )

    async def run_pass(self) -> list[FillResult]:
        records = await self._registry.list_active_orders()
        if not records:
            return []
        return await gather_limited(
            [
                (lambda order_id=record.order_id: self._guarded_attempt(order_id))
                for record in records
            ],
            limit=self._concurrency,
        )
