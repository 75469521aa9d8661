from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock, Mock

from triggerfi.chain import ChainConfig, LiveLimitOrderProtocol, LivePredicateStore, classify_fill_revert
from triggerfi.chain.contracts import ORDER_CANCELLED_TOPIC, ORDER_FILLED_TOPIC
from triggerfi.orders.types import (
    FILL_OUTCOME_FAILED,
    FILL_OUTCOME_INVALIDATED,
    FILL_OUTCOME_NOT_FILLABLE,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_FILLED,
    ChainWriteError,
    FillRevertedError,
    KeeperAuthorizationError,
    TxReceipt,
    hex_to_bytes,
)

LOGGER = logging.getLogger("test.contracts")
PRIVATE_KEY = "0x" + "11" * 32
ORDER_HASH = "0x" + "ab" * 32
OTHER_HASH = "0x" + "cd" * 32


class ClassifyFillRevertTests(unittest.TestCase):
    def test_predicate_reverts_are_not_fillable(self) -> None:
        message = "execution reverted: PredicateIsNotTrue()"
        self.assertEqual(classify_fill_revert(message), FILL_OUTCOME_NOT_FILLABLE)
        self.assertEqual(classify_fill_revert("custom error 0x7f902a93"), FILL_OUTCOME_NOT_FILLABLE)

    def test_consumed_order_reverts_are_invalidated(self) -> None:
        for message in ("RemainingInvalidated()", "InvalidatedOrder()", "RemainingAmountIsZero"):
            self.assertEqual(classify_fill_revert(message), FILL_OUTCOME_INVALIDATED, message)

    def test_other_reverts_fail(self) -> None:
        self.assertEqual(classify_fill_revert("execution reverted"), FILL_OUTCOME_FAILED)
        self.assertEqual(classify_fill_revert(""), FILL_OUTCOME_FAILED)


class LivePredicateStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = LivePredicateStore(
            logger=LOGGER,
            chain=ChainConfig.for_chain(84532),
            rpc_url="http://localhost:8545",
            private_key=PRIVATE_KEY,
        )
        self.store._contract = Mock()

    async def test_keeper_revert_raises_authorization_error(self) -> None:
        self.store._transact = AsyncMock(  # type: ignore[method-assign]
            side_effect=FillRevertedError("execution reverted: Only keeper", method="setTestResult"),
        )
        with self.assertRaises(KeeperAuthorizationError):
            await self.store.commit_result("0x" + "01" * 32, True)

    async def test_unauthorized_custom_error_raises_authorization_error(self) -> None:
        self.store._transact = AsyncMock(  # type: ignore[method-assign]
            side_effect=FillRevertedError("execution reverted: Unauthorized()", method="setTestResult"),
        )
        with self.assertRaises(KeeperAuthorizationError):
            await self.store.commit_result("0x" + "01" * 32, False)

    async def test_other_commit_revert_is_a_write_error(self) -> None:
        self.store._transact = AsyncMock(  # type: ignore[method-assign]
            side_effect=FillRevertedError(
                "setTestResult reverted on chain",
                method="setTestResult",
                tx_hash="0xaa",
            ),
        )
        with self.assertRaises(ChainWriteError) as context:
            await self.store.commit_result("0x" + "01" * 32, True)
        self.assertNotIsInstance(context.exception, KeeperAuthorizationError)
        self.assertEqual(context.exception.tx_hash, "0xaa")

    async def test_commit_returns_receipt(self) -> None:
        receipt = TxReceipt(tx_hash="0xbb", status=1)
        self.store._transact = AsyncMock(return_value=receipt)  # type: ignore[method-assign]
        self.assertIs(await self.store.commit_result("0x" + "01" * 32, True), receipt)
        self.store._contract.functions.setTestResult.assert_called_once_with(b"\x01" * 32, True)


def _log(topic: str, order_hash: str) -> dict[str, object]:
    return {"topics": [hex_to_bytes(topic)], "data": hex_to_bytes(order_hash) + b"\x00" * 32}


class LiveInvalidationLookupTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.protocol = LiveLimitOrderProtocol(
            logger=LOGGER,
            chain=ChainConfig.for_chain(84532),
            rpc_url="http://localhost:8545",
            private_key=PRIVATE_KEY,
            lookback_blocks=1_000,
        )
        self.web3 = Mock()
        self.web3.eth.get_logs = AsyncMock(return_value=[])
        self.protocol._web3 = self.web3

    def _at_block(self, number: int) -> None:
        async def block_number() -> int:
            return number

        self.web3.eth.block_number = block_number()

    async def test_cancel_event_wins_over_earlier_partial_fill(self) -> None:
        self._at_block(5_000)
        self.web3.eth.get_logs.return_value = [
            _log(ORDER_FILLED_TOPIC, ORDER_HASH),
            _log(ORDER_CANCELLED_TOPIC, ORDER_HASH),
            _log(ORDER_FILLED_TOPIC, OTHER_HASH),
        ]

        self.assertEqual(await self.protocol.invalidation_reason(ORDER_HASH), ORDER_STATUS_CANCELLED)

        query = self.web3.eth.get_logs.await_args.args[0]
        self.assertEqual(query["fromBlock"], 4_000)
        self.assertEqual(query["toBlock"], 5_000)
        self.assertEqual(query["topics"], [[ORDER_FILLED_TOPIC, ORDER_CANCELLED_TOPIC]])

    async def test_fill_event_reports_filled(self) -> None:
        self._at_block(10)
        self.web3.eth.get_logs.return_value = [_log(ORDER_FILLED_TOPIC, ORDER_HASH)]

        self.assertEqual(await self.protocol.invalidation_reason(ORDER_HASH), ORDER_STATUS_FILLED)
        self.assertEqual(self.web3.eth.get_logs.await_args.args[0]["fromBlock"], 0)

    async def test_unknown_when_no_event_matches(self) -> None:
        self._at_block(10)
        self.web3.eth.get_logs.return_value = [_log(ORDER_CANCELLED_TOPIC, OTHER_HASH)]

        self.assertIsNone(await self.protocol.invalidation_reason(ORDER_HASH))


if __name__ == "__main__":
    unittest.main()
