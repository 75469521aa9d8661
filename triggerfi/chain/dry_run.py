from __future__ import annotations

import logging

from eth_utils import keccak

from triggerfi.common import log_event
from triggerfi.orders.builder import hash_order
from triggerfi.orders.encoding import selector
from triggerfi.orders.fees import accumulated_fees, fee_units_to_wei
from triggerfi.orders.types import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_FILLED,
    ChainWriteError,
    FillRevertedError,
    KeeperAuthorizationError,
    Order,
    TxReceipt,
    bytes_to_hex,
    hex_to_bytes,
    normalize_address,
)

CHECK_CONDITION_SELECTOR = selector("checkCondition(bytes32)")


def _fake_tx_hash(*parts: object) -> str:
    return bytes_to_hex(keccak(text=":".join(str(part) for part in parts)))


def predicate_id_from_predicate(predicate: bytes) -> str | None:
    index = predicate.find(CHECK_CONDITION_SELECTOR)
    if index < 0 or len(predicate) < index + 4 + 32:
        return None
    return bytes_to_hex(predicate[index + 4 : index + 36])


class DryRunPredicateStore:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        keeper: str,
        fee_per_update: int,
        native_price: float,
        fee_decimals: int = 6,
    ) -> None:
        self._logger = logger
        self._keeper = normalize_address(keeper, name="keeper")
        self._fee_per_update = fee_per_update
        self._native_price = native_price
        self._fee_decimals = fee_decimals
        self._results: dict[str, bool] = {}
        self._counts: dict[str, int] = {}
        self._settled: dict[str, int] = {}
        self.collected_wei: dict[str, int] = {}
        self.sender = self._keeper

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    @staticmethod
    def _key(predicate_id: str) -> str:
        return predicate_id.lower()

    async def check_condition(self, predicate_id: str) -> int:
        return 1 if self._results.get(self._key(predicate_id), False) else 0

    async def update_count(self, predicate_id: str) -> int:
        return self._counts.get(self._key(predicate_id), 0)

    async def get_update_fees(self, predicate_id: str) -> int:
        key = self._key(predicate_id)
        outstanding = self._counts.get(key, 0) - self._settled.get(key, 0)
        return accumulated_fees(outstanding, self._fee_per_update)

    async def keeper_address(self) -> str:
        return self._keeper

    async def commit_result(self, predicate_id: str, result: bool) -> TxReceipt:
        if normalize_address(self.sender, name="sender") != self._keeper:
            raise KeeperAuthorizationError("Only the keeper can commit predicate results.")
        key = self._key(predicate_id)
        self._results[key] = bool(result)
        self._counts[key] = self._counts.get(key, 0) + 1
        log_event(
            self._logger,
            level="debug",
            event="dry_run_result_committed",
            message="Simulated predicate result commit",
            predicate_id=predicate_id,
            result=bool(result),
            update_count=self._counts[key],
        )
        return TxReceipt(tx_hash=_fake_tx_hash("setTestResult", key, self._counts[key]), status=1)

    async def collect_fees(self, predicate_id: str, *, value_wei: int) -> TxReceipt:
        key = self._key(predicate_id)
        owed_units = await self.get_update_fees(predicate_id)
        owed_wei = fee_units_to_wei(
            owed_units,
            self._native_price,
            fee_decimals=self._fee_decimals,
        )
        if value_wei < owed_wei:
            raise ChainWriteError(
                f"Insufficient fee payment: owed={owed_wei} sent={value_wei}",
                method="collectFees",
            )
        self._settled[key] = self._counts.get(key, 0)
        self.collected_wei[key] = self.collected_wei.get(key, 0) + value_wei
        return TxReceipt(tx_hash=_fake_tx_hash("collectFees", key, self._settled[key]), status=1)


class DryRunLimitOrderProtocol:
    def __init__(self, *, logger: logging.Logger, predicate_store: DryRunPredicateStore) -> None:
        self._logger = logger
        self._predicate_store = predicate_store
        self._filled: set[str] = set()
        self._cancelled: set[str] = set()

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def simulate_fill(self, order: Order, r: bytes, vs: bytes) -> None:
        order_hash = hash_order(order)
        if order_hash in self._filled or order_hash in self._cancelled:
            raise FillRevertedError("RemainingInvalidated()", method="fillOrder")
        if len(r) != 32 or len(vs) != 32:
            raise FillRevertedError("BadSignature()", method="fillOrder")

        predicate_id = predicate_id_from_predicate(order.predicate)
        if order.predicate and predicate_id is None:
            raise FillRevertedError("PredicateIsNotTrue()", method="fillOrder")
        if predicate_id is not None and not await self._predicate_store.check_condition(predicate_id):
            raise FillRevertedError("PredicateIsNotTrue()", method="fillOrder")

    async def fill_order(self, order: Order, r: bytes, vs: bytes) -> TxReceipt:
        await self.simulate_fill(order, r, vs)
        order_hash = hash_order(order)
        self._filled.add(order_hash)
        return TxReceipt(tx_hash=_fake_tx_hash("fillOrder", order_hash), status=1)

    async def cancel_order(self, order_hash: str) -> TxReceipt:
        normalized = bytes_to_hex(hex_to_bytes(order_hash))
        self._cancelled.add(normalized)
        return TxReceipt(tx_hash=_fake_tx_hash("cancelOrder", normalized), status=1)

    async def remaining(self, order_hash: str) -> int:
        normalized = bytes_to_hex(hex_to_bytes(order_hash))
        if normalized in self._filled or normalized in self._cancelled:
            return 0
        return 1

    async def invalidation_reason(self, order_hash: str) -> str | None:
        normalized = bytes_to_hex(hex_to_bytes(order_hash))
        if normalized in self._cancelled:
            return ORDER_STATUS_CANCELLED
        if normalized in self._filled:
            return ORDER_STATUS_FILLED
        return None
