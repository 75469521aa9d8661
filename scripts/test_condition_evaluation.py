from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from triggerfi.orders.conditions import (
    ConditionEvaluator,
    ConditionFetchError,
    auth_headers,
    coerce_number,
    combine,
    compare,
    parse_json_path,
    resolve_json_path,
)
from triggerfi.orders.types import Condition, ValidationError, validate_conditions

WEATHER_URL = "https://api.weather.example/v1/current"
PRICE_URL = "https://api.prices.example/v1/eth"
TARIFF_URL = "https://api.trade.example/v1/tariffs"
INFLATION_URL = "https://api.stats.example/v1/inflation"


def _condition(
    endpoint: str = WEATHER_URL,
    json_path: str = "current.temp_c",
    operator: str = ">",
    threshold: float = 30.0,
    **extra: str,
) -> Condition:
    return Condition(
        endpoint=endpoint,
        json_path=json_path,
        operator=operator,
        threshold=threshold,
        **extra,
    )


class JsonPathTests(unittest.TestCase):
    def test_parse_dotted_and_indexed_paths(self) -> None:
        self.assertEqual(parse_json_path("data.price"), ["data", "price"])
        self.assertEqual(parse_json_path("$.data.items[2].value"), ["data", "items", 2, "value"])
        self.assertEqual(parse_json_path("rates['ETH-USD']"), ["rates", "ETH-USD"])

    def test_parse_rejects_empty_and_malformed(self) -> None:
        with self.assertRaises(ValidationError):
            parse_json_path("")
        with self.assertRaises(ValidationError):
            parse_json_path("data[abc")

    def test_resolve_nested_values(self) -> None:
        payload = {"data": {"items": [{"value": 1}, {"value": "2.5"}]}}
        self.assertEqual(resolve_json_path(payload, "data.items[1].value"), "2.5")
        self.assertEqual(resolve_json_path(payload, "data.items.0.value"), 1)
        with self.assertRaises(KeyError):
            resolve_json_path(payload, "data.missing")
        with self.assertRaises(IndexError):
            resolve_json_path(payload, "data.items[5]")

    def test_coerce_number(self) -> None:
        self.assertEqual(coerce_number("3500.25"), 3500.25)
        self.assertEqual(coerce_number(7), 7.0)
        self.assertIsNone(coerce_number(True))
        self.assertIsNone(coerce_number("n/a"))
        self.assertIsNone(coerce_number(float("nan")))
        self.assertIsNone(coerce_number({"value": 1}))


class ComparisonTests(unittest.TestCase):
    def test_operators(self) -> None:
        self.assertTrue(compare(31.0, ">", 30.0))
        self.assertFalse(compare(30.0, ">", 30.0))
        self.assertTrue(compare(29.9, "<", 30.0))
        self.assertTrue(compare(30.0, "=", 30.0))
        self.assertFalse(compare(None, ">", 0.0))

    def test_and_truth_table(self) -> None:
        self.assertTrue(combine([True, True], "AND"))
        self.assertFalse(combine([True, False], "AND"))
        self.assertFalse(combine([False, True], "AND"))
        self.assertFalse(combine([False, False], "AND"))

    def test_or_truth_table(self) -> None:
        self.assertTrue(combine([True, True], "OR"))
        self.assertTrue(combine([True, False], "OR"))
        self.assertTrue(combine([False, True], "OR"))
        self.assertFalse(combine([False, False], "OR"))

    def test_empty_results_are_false(self) -> None:
        self.assertFalse(combine([], "AND"))
        self.assertFalse(combine([], "OR"))


class ConditionValidationTests(unittest.TestCase):
    def test_requires_at_least_one_condition(self) -> None:
        with self.assertRaises(ValidationError):
            validate_conditions([], "AND")

    def test_rejects_bad_fields(self) -> None:
        with self.assertRaises(ValidationError):
            validate_conditions([_condition(endpoint="ftp://example.com")], "AND")
        with self.assertRaises(ValidationError):
            validate_conditions([_condition(json_path=" ")], "AND")
        with self.assertRaises(ValidationError):
            validate_conditions([_condition(operator=">=")], "AND")
        with self.assertRaises(ValidationError):
            validate_conditions([_condition()], "XOR")

    def test_authenticated_condition_needs_secret(self) -> None:
        with self.assertRaises(ValidationError):
            validate_conditions([_condition(auth_type="apiKey")], "AND")
        validate_conditions([_condition(auth_type="apiKey", auth_value="key")], "AND")
        validate_conditions(
            [_condition(auth_type="bearer", auth_ref="PRICE_TOKEN")],
            "AND",
            require_secret=False,
        )

    def test_error_names_failing_condition(self) -> None:
        with self.assertRaises(ValidationError) as context:
            validate_conditions([_condition(), _condition(endpoint="not a url")], "OR")
        self.assertIn("Condition 2", str(context.exception))

    def test_from_dict_accepts_camel_case(self) -> None:
        condition = Condition.from_dict(
            {
                "endpoint": PRICE_URL,
                "jsonPath": "data.amount",
                "operator": "<",
                "threshold": "3000",
                "authType": "apiKey",
                "authRef": "PRICE_KEY",
            }
        )
        self.assertEqual(condition.threshold, 3000.0)
        self.assertEqual(condition.auth_ref, "PRICE_KEY")
        self.assertNotIn("authValue", condition.to_document())


class AuthHeaderTests(unittest.TestCase):
    def test_headers_by_auth_type(self) -> None:
        self.assertNotIn("X-API-Key", auth_headers(_condition(), ""))
        self.assertEqual(auth_headers(_condition(auth_type="apiKey"), "k1")["X-API-Key"], "k1")
        self.assertEqual(
            auth_headers(_condition(auth_type="bearer"), "t1")["Authorization"],
            "Bearer t1",
        )


class ConditionEvaluatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.secrets = {"PRICE_KEY": "price-secret"}
        self.evaluator = ConditionEvaluator(
            logger=logging.getLogger("test.conditions"),
            secret_resolver=self.secrets.get,
        )
        self.responses: dict[str, object] = {
            WEATHER_URL: {"current": {"temp_c": 28.0}},
            PRICE_URL: {"data": {"amount": "3600.10"}},
        }

        async def fake_fetch(url: str, *, headers: dict[str, str] | None = None) -> object:
            response = self.responses[url]
            if isinstance(response, Exception):
                raise response
            return response

        self.fetch = AsyncMock(side_effect=fake_fetch)
        self.evaluator.fetch_json = self.fetch  # type: ignore[method-assign]

    async def asyncTearDown(self) -> None:
        await self.evaluator.close()

    async def test_and_scenario_one_condition_false(self) -> None:
        conditions = [
            _condition(),
            _condition(endpoint=PRICE_URL, json_path="data.amount", threshold=3500.0),
        ]
        evaluation = await self.evaluator.evaluate(conditions, "AND")

        self.assertFalse(evaluation.result)
        self.assertEqual([item.passed for item in evaluation.conditions], [False, True])
        self.assertEqual(evaluation.conditions[1].value, 3600.10)

    async def test_or_scenario_one_condition_true(self) -> None:
        conditions = [
            _condition(),
            _condition(endpoint=PRICE_URL, json_path="data.amount", threshold=3500.0),
        ]
        evaluation = await self.evaluator.evaluate(conditions, "OR")
        self.assertTrue(evaluation.result)

    def _macro_conditions(self, *, tariffs: float, inflation: float) -> list[Condition]:
        self.responses[TARIFF_URL] = {"us": {"japan": {"autos": tariffs}}}
        self.responses[INFLATION_URL] = {"japan": {"cpi_yoy": inflation}}
        return [
            _condition(endpoint=TARIFF_URL, json_path="us.japan.autos", threshold=15.0),
            _condition(endpoint=INFLATION_URL, json_path="japan.cpi_yoy", threshold=5.0),
        ]

    async def test_tariffs_and_inflation_both_above_threshold(self) -> None:
        conditions = self._macro_conditions(tariffs=15.5, inflation=5.2)

        evaluation = await self.evaluator.evaluate(conditions, "AND")

        self.assertTrue(evaluation.result)
        self.assertEqual([item.value for item in evaluation.conditions], [15.5, 5.2])
        self.assertEqual(self.fetch.await_count, 2)

    async def test_inflation_below_threshold_fails_and_after_fetching_both(self) -> None:
        conditions = self._macro_conditions(tariffs=15.5, inflation=3.3)

        evaluation = await self.evaluator.evaluate(conditions, "AND")

        self.assertFalse(evaluation.result)
        self.assertEqual([item.passed for item in evaluation.conditions], [True, False])
        self.assertEqual(evaluation.conditions[1].value, 3.3)
        self.assertEqual(self.fetch.await_count, 2)

    async def test_fetch_failure_counts_as_false(self) -> None:
        self.responses[PRICE_URL] = ConditionFetchError("unexpected status 503")
        evaluation = await self.evaluator.evaluate(
            [_condition(endpoint=PRICE_URL, json_path="data.amount", operator="<", threshold=10**9)],
            "OR",
        )
        self.assertFalse(evaluation.result)
        self.assertTrue(evaluation.conditions[0].reason.startswith("fetch_error"))

    async def test_unexpected_errors_fail_closed(self) -> None:
        self.responses[WEATHER_URL] = RuntimeError("boom")
        evaluation = await self.evaluator.evaluate([_condition(operator="<", threshold=100.0)], "AND")
        self.assertFalse(evaluation.result)
        self.assertIn("unexpected_error", evaluation.conditions[0].reason)

    async def test_unresolvable_and_non_numeric_values_fail_closed(self) -> None:
        self.responses[WEATHER_URL] = {"current": {"temp_c": "hot"}}
        non_numeric = await self.evaluator.evaluate([_condition(operator="<", threshold=100.0)], "AND")
        self.assertEqual(non_numeric.conditions[0].reason, "value_not_numeric")

        missing = await self.evaluator.evaluate(
            [_condition(json_path="forecast.temp_c", operator="<", threshold=100.0)],
            "AND",
        )
        self.assertFalse(missing.result)
        self.assertTrue(missing.conditions[0].reason.startswith("path_unresolved"))

    async def test_secret_resolved_from_reference(self) -> None:
        condition = _condition(
            endpoint=PRICE_URL,
            json_path="data.amount",
            threshold=3500.0,
            auth_type="apiKey",
            auth_ref="PRICE_KEY",
        )
        evaluation = await self.evaluator.evaluate([condition], "AND")

        self.assertTrue(evaluation.result)
        headers = self.fetch.await_args.kwargs["headers"]
        self.assertEqual(headers["X-API-Key"], "price-secret")

    async def test_missing_secret_fails_closed_without_request(self) -> None:
        condition = _condition(
            endpoint=PRICE_URL,
            json_path="data.amount",
            threshold=0.0,
            auth_type="bearer",
            auth_ref="UNKNOWN_TOKEN",
        )
        evaluation = await self.evaluator.evaluate([condition], "AND")

        self.assertFalse(evaluation.result)
        self.assertEqual(evaluation.conditions[0].reason, "missing_secret")
        self.fetch.assert_not_awaited()

    async def test_rejects_invalid_logic(self) -> None:
        with self.assertRaises(ValidationError):
            await self.evaluator.evaluate([_condition()], "XOR")
        with self.assertRaises(ValidationError):
            await self.evaluator.evaluate([], "AND")


if __name__ == "__main__":
    unittest.main()
