from __future__ import annotations

import dataclasses
import logging
import unittest
from unittest.mock import AsyncMock

from eth_account import Account

from triggerfi.chain import ChainConfig, DryRunPredicateStore
from triggerfi.engine import FeeQuoter, KeeperService, NativePriceSource, OrderService
from triggerfi.engine.taker import FillOrchestrator
from triggerfi.orders.builder import OrderBuilder
from triggerfi.orders.conditions import ConditionEvaluator
from triggerfi.orders.fees import accumulated_fees, fee_units_to_wei
from triggerfi.orders.types import (
    ChainWriteError,
    Condition,
    FeeQuote,
    InsufficientFeeError,
    KeeperAuthorizationError,
    OrderRecord,
    TxReceipt,
    ValidationError,
)
from triggerfi.storage import MemoryStorageGateway, StorageSettings

MAKER = Account.from_key("0x" + "31" * 32)
KEEPER = Account.from_key("0x" + "32" * 32)
TAKER = Account.from_key("0x" + "33" * 32)
WETH = "0x4200000000000000000000000000000000000006"
USDC = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"
FEE_PER_UPDATE = 2_000_000
NATIVE_PRICE = 2500.0
LOGGER = logging.getLogger("test.fees")


class FeeMathTests(unittest.TestCase):
    def test_accumulated_fees_is_linear_in_updates(self) -> None:
        self.assertEqual(accumulated_fees(0, FEE_PER_UPDATE), 0)
        self.assertEqual(accumulated_fees(5, FEE_PER_UPDATE), 10_000_000)
        self.assertEqual(accumulated_fees(-3, FEE_PER_UPDATE), 0)

    def test_fee_units_to_wei_rounds_up(self) -> None:
        # $2 at $2500/ETH is 0.0008 ETH
        self.assertEqual(fee_units_to_wei(2_000_000, 2500.0), 800_000_000_000_000)
        self.assertEqual(fee_units_to_wei(1, 3.0), 333_333_333_334)
        self.assertEqual(fee_units_to_wei(0, 2500.0), 0)

    def test_fee_units_to_wei_needs_positive_price(self) -> None:
        with self.assertRaises(ValidationError):
            fee_units_to_wei(1, 0.0)


class NativePriceSourceTests(unittest.IsolatedAsyncioTestCase):
    async def test_live_price_then_cache(self) -> None:
        fetch = AsyncMock(return_value={"data": {"amount": "3100.5"}})
        source = NativePriceSource(
            logger=LOGGER,
            fetch_json=fetch,
            url="https://api.prices.example/eth",
            json_path="data.amount",
            fallback_price=3500.0,
        )
        self.assertEqual(await source.price(), (3100.5, "live"))
        self.assertEqual(await source.price(), (3100.5, "cache"))
        fetch.assert_awaited_once()

    async def test_fallback_when_lookup_fails(self) -> None:
        fetch = AsyncMock(return_value={"unexpected": True})
        source = NativePriceSource(
            logger=LOGGER,
            fetch_json=fetch,
            url="https://api.prices.example/eth",
            json_path="data.amount",
            fallback_price=3500.0,
        )
        self.assertEqual(await source.price(), (3500.0, "fallback"))

    async def test_no_price_available(self) -> None:
        source = NativePriceSource(
            logger=LOGGER,
            fetch_json=None,
            url="",
            json_path="data.amount",
            fallback_price=0.0,
        )
        with self.assertRaises(ValidationError):
            await source.price()


class KeeperFeeAccrualTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.chain = ChainConfig.for_chain(84532)
        settings = dataclasses.replace(StorageSettings.from_env(role="test"), backend="memory")
        self.registry = MemoryStorageGateway(settings, LOGGER)
        self.store = DryRunPredicateStore(
            logger=LOGGER,
            keeper=KEEPER.address,
            fee_per_update=FEE_PER_UPDATE,
            native_price=NATIVE_PRICE,
        )
        self.evaluator = ConditionEvaluator(logger=LOGGER)
        self.evaluator.fetch_json = AsyncMock(  # type: ignore[method-assign]
            return_value={"current": {"temp_c": 35.0}},
        )
        self.keeper = KeeperService(
            logger=LOGGER,
            registry=self.registry,
            evaluator=self.evaluator,
            predicate_store=self.store,
            keeper_address=KEEPER.address,
        )
        self.quoter = FeeQuoter(
            predicate_store=self.store,
            price_source=NativePriceSource(
                logger=LOGGER,
                fetch_json=None,
                url="",
                json_path="data.amount",
                fallback_price=NATIVE_PRICE,
            ),
        )
        self.service = OrderService(
            logger=LOGGER,
            registry=self.registry,
            builder=OrderBuilder(domain=self.chain.eip712_domain()),
            chain=self.chain,
        )
        self.record = await self._create_order()

    async def _create_order(self) -> OrderRecord:
        return await self.service.create_conditional_order(
            signer=MAKER,
            maker_asset=WETH,
            taker_asset=USDC,
            making_amount=10**17,
            taking_amount=250 * 10**6,
            conditions=[
                Condition(
                    endpoint="https://api.weather.example/current",
                    json_path="current.temp_c",
                    operator=">",
                    threshold=30.0,
                )
            ],
            logic_operator="AND",
        )

    def _orchestrator(self) -> FillOrchestrator:
        return FillOrchestrator(
            logger=LOGGER,
            registry=self.registry,
            predicate_store=self.store,
            protocol=AsyncMock(),
            fee_quoter=self.quoter,
            guard_store=self.registry,
            taker_address=TAKER.address,
        )

    async def test_authorize_checks_on_chain_keeper(self) -> None:
        await self.keeper.authorize()
        impostor = KeeperService(
            logger=LOGGER,
            registry=self.registry,
            evaluator=self.evaluator,
            predicate_store=self.store,
            keeper_address=TAKER.address,
        )
        with self.assertRaises(KeeperAuthorizationError):
            await impostor.authorize()

    async def test_fees_grow_monotonically_over_cycles(self) -> None:
        seen: list[int] = []
        for _ in range(5):
            updates = await self.keeper.run_cycle()
            self.assertEqual(len(updates), 1)
            record = await self.registry.get_order(self.record.order_id)
            seen.append(record.accumulated_fees)

        self.assertEqual(seen, [FEE_PER_UPDATE * n for n in range(1, 6)])
        record = await self.registry.get_order(self.record.order_id)
        self.assertEqual(record.update_count, 5)
        self.assertEqual(await self.store.check_condition(self.record.predicate_id), 1)

        config = await self.registry.get_predicate_config(self.record.predicate_id)
        self.assertTrue(config.last_result)
        self.assertEqual(config.check_count, 5)

    async def test_registry_fees_never_decrease(self) -> None:
        await self.keeper.run_cycle()
        await self.keeper.run_cycle()
        await self.registry.update_order_fees(self.record.order_id, update_count=1, accumulated_fees=1)
        record = await self.registry.get_order(self.record.order_id)
        self.assertEqual(record.update_count, 2)
        self.assertEqual(record.accumulated_fees, 2 * FEE_PER_UPDATE)

    async def test_registry_fees_follow_what_is_still_owed_after_settlement(self) -> None:
        sibling = await self._create_order()
        for _ in range(3):
            await self.keeper.run_cycle()
        predicate_id = self.record.predicate_id
        await self._orchestrator().settle_fees(predicate_id, await self.quoter.quote(predicate_id))

        await self.keeper.run_cycle()

        record = await self.registry.get_order(sibling.order_id)
        self.assertEqual(record.update_count, 4)
        self.assertEqual(record.accumulated_fees, FEE_PER_UPDATE)
        self.assertEqual(await self.store.get_update_fees(predicate_id), record.accumulated_fees)

    async def test_commit_failure_leaves_registry_untouched(self) -> None:
        self.store.commit_result = AsyncMock(  # type: ignore[method-assign]
            side_effect=ChainWriteError("nonce too low", method="setTestResult"),
        )
        self.assertEqual(await self.keeper.run_cycle(), [])
        record = await self.registry.get_order(self.record.order_id)
        self.assertEqual(record.update_count, 0)
        self.assertEqual(record.accumulated_fees, 0)

    async def test_commit_rejected_for_keeper_stops_the_cycle(self) -> None:
        self.store.commit_result = AsyncMock(  # type: ignore[method-assign]
            side_effect=KeeperAuthorizationError("execution reverted: Only keeper"),
        )
        with self.assertRaises(KeeperAuthorizationError):
            await self.keeper.run_cycle()
        record = await self.registry.get_order(self.record.order_id)
        self.assertEqual(record.update_count, 0)

    async def test_five_updates_owe_ten_dollars_and_underpayment_is_refused(self) -> None:
        for _ in range(5):
            await self.keeper.run_cycle()
        predicate_id = self.record.predicate_id
        self.assertEqual(await self.store.get_update_fees(predicate_id), 10 * 10**6)

        quote = await self.quoter.quote(predicate_id)
        self.assertEqual(quote.fee_units, 10 * 10**6)
        self.assertEqual(quote.payment_wei, fee_units_to_wei(10 * 10**6, NATIVE_PRICE))

        short_quote = dataclasses.replace(quote, fee_units=9 * 10**6)
        orchestrator = self._orchestrator()
        with self.assertRaises(InsufficientFeeError) as context:
            await orchestrator.settle_fees(predicate_id, short_quote)
        self.assertEqual(context.exception.owed, 10 * 10**6)
        self.assertEqual(self.store.collected_wei, {})

        with self.assertRaises(ChainWriteError):
            await self.store.collect_fees(predicate_id, value_wei=quote.payment_wei - 1)

        tx_hash = await orchestrator.settle_fees(predicate_id, quote)
        self.assertIsNotNone(tx_hash)
        self.assertEqual(await self.store.get_update_fees(predicate_id), 0)
        self.assertEqual(self.store.collected_wei[predicate_id.lower()], quote.payment_wei)

    async def test_settle_skips_when_nothing_is_owed(self) -> None:
        quote = FeeQuote(
            predicate_id=self.record.predicate_id,
            update_count=0,
            fee_units=0,
            payment_wei=0,
            native_price=NATIVE_PRICE,
            source="fallback",
        )
        self.store.collect_fees = AsyncMock(  # type: ignore[method-assign]
            return_value=TxReceipt(tx_hash="0x01", status=1),
        )
        self.assertIsNone(await self._orchestrator().settle_fees(self.record.predicate_id, quote))
        self.store.collect_fees.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
