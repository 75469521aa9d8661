from __future__ import annotations

import logging
from collections import defaultdict

from triggerfi.common import gather_limited, log_event
from triggerfi.orders.conditions import ConditionEvaluator
from triggerfi.orders.types import (
    ChainWriteError,
    Condition,
    KeeperAuthorizationError,
    OrderRecord,
    OrderRegistry,
    PredicateStore,
    PredicateUpdate,
    normalize_address,
)


class KeeperService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        registry: OrderRegistry,
        evaluator: ConditionEvaluator,
        predicate_store: PredicateStore,
        keeper_address: str,
        concurrency: int = 4,
    ) -> None:
        self._logger = logger
        self._registry = registry
        self._evaluator = evaluator
        self._predicate_store = predicate_store
        self._keeper_address = normalize_address(keeper_address, name="keeper")
        self._concurrency = max(1, concurrency)

    @property
    def keeper_address(self) -> str:
        return self._keeper_address

    async def authorize(self) -> None:
        on_chain = await self._predicate_store.keeper_address()
        if on_chain != self._keeper_address:
            raise KeeperAuthorizationError(
                f"Predicate store keeper is {on_chain}, but this service signs as {self._keeper_address}."
            )
        log_event(
            self._logger,
            level="info",
            event="keeper_authorized",
            message="Keeper address matches the predicate store",
            keeper=self._keeper_address,
        )

    async def active_predicates(self) -> dict[str, list[OrderRecord]]:
        grouped: dict[str, list[OrderRecord]] = defaultdict(list)
        for record in await self._registry.list_active_orders():
            if record.predicate_id:
                grouped[record.predicate_id].append(record)
        return dict(grouped)

    async def _conditions_for(
        self,
        predicate_id: str,
        records: list[OrderRecord],
    ) -> tuple[tuple[Condition, ...], str]:
        config = await self._registry.get_predicate_config(predicate_id)
        if config is not None and config.conditions:
            return config.conditions, config.logic_operator
        first = records[0]
        return first.conditions, first.logic_operator

    async def update_predicate(
        self,
        predicate_id: str,
        records: list[OrderRecord],
    ) -> PredicateUpdate | None:
        conditions, logic_operator = await self._conditions_for(predicate_id, records)
        if not conditions:
            log_event(
                self._logger,
                level="warning",
                event="predicate_without_conditions",
                message="Predicate has no conditions and is skipped",
                predicate_id=predicate_id,
            )
            return None

        evaluation = await self._evaluator.evaluate(conditions, logic_operator)

        try:
            receipt = await self._predicate_store.commit_result(predicate_id, evaluation.result)
        except ChainWriteError as error:
            log_event(
                self._logger,
                level="error",
                event="predicate_commit_failed",
                message="Predicate result commit failed; retrying next interval",
                predicate_id=predicate_id,
                result=evaluation.result,
                method=error.method,
                tx_hash=error.tx_hash,
                error=str(error),
            )
            return None

        update_count = await self._predicate_store.update_count(predicate_id)
        # fees still owed since the last collectFees, the amount a taker pays next
        fees = await self._predicate_store.get_update_fees(predicate_id)

        await self._registry.update_predicate_result(
            predicate_id,
            result=evaluation.result,
            check_count=update_count,
        )
        for record in records:
            await self._registry.update_order_fees(
                record.order_id,
                update_count=update_count,
                accumulated_fees=fees,
            )

        update = PredicateUpdate(
            predicate_id=predicate_id,
            result=evaluation.result,
            update_count=update_count,
            accumulated_fees=fees,
            orders_updated=len(records),
            tx_hash=receipt.tx_hash,
        )
        log_event(
            self._logger,
            level="info",
            event="predicate_updated",
            message="Predicate result committed",
            condition_results=[item.passed for item in evaluation.conditions],
            **update.to_dict(),
        )
        return update

    async def _guarded_update(
        self,
        predicate_id: str,
        records: list[OrderRecord],
    ) -> PredicateUpdate | None:
        try:
            return await self.update_predicate(predicate_id, records)
        except KeeperAuthorizationError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="exception",
                event="predicate_update_error",
                message="Predicate update failed; retrying next interval",
                predicate_id=predicate_id,
                error=str(error),
            )
            return None

    async def run_cycle(self) -> list[PredicateUpdate]:
        predicates = await self.active_predicates()
        if not predicates:
            log_event(
                self._logger,
                level="debug",
                event="keeper_cycle_idle",
                message="No active orders reference a predicate",
            )
            return []

        results = await gather_limited(
            [
                (lambda predicate_id=predicate_id, records=records: self._guarded_update(predicate_id, records))
                for predicate_id, records in predicates.items()
            ],
            limit=self._concurrency,
        )
        updates = [update for update in results if update is not None]
        log_event(
            self._logger,
            level="info",
            event="keeper_cycle_completed",
            message="Keeper cycle completed",
            predicates=len(predicates),
            updated=len(updates),
            failed=len(predicates) - len(updates),
        )
        return updates
