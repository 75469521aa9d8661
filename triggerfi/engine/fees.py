from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from triggerfi.common import log_event
from triggerfi.orders.conditions import ConditionFetchError, coerce_number, resolve_json_path
from triggerfi.orders.fees import fee_units_to_wei
from triggerfi.orders.types import FeeQuote, PredicateStore, ValidationError

FetchJson = Callable[..., Awaitable[Any]]


class NativePriceSource:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        fetch_json: FetchJson | None,
        url: str,
        json_path: str,
        fallback_price: float,
        cache_ttl_seconds: float = 60.0,
    ) -> None:
        self._logger = logger
        self._fetch_json = fetch_json
        self._url = url
        self._json_path = json_path
        self._fallback_price = fallback_price
        self._cache_ttl_seconds = cache_ttl_seconds
        self._cached: tuple[float, float] | None = None

    async def price(self) -> tuple[float, str]:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._cached is not None and now - self._cached[1] < self._cache_ttl_seconds:
            return self._cached[0], "cache"

        if self._fetch_json is not None and self._url:
            try:
                payload = await self._fetch_json(self._url, headers={"Accept": "application/json"})
                value = coerce_number(resolve_json_path(payload, self._json_path))
            except (ConditionFetchError, KeyError, IndexError, TypeError, ValidationError) as error:
                value = None
                log_event(
                    self._logger,
                    level="warning",
                    event="native_price_fetch_failed",
                    message="Native price lookup failed; using fallback price",
                    price_url=self._url,
                    error=str(error),
                )
            if value is not None and value > 0:
                self._cached = (value, now)
                return value, "live"

        if self._fallback_price <= 0:
            raise ValidationError("No native price available and FEE_PRICE_FALLBACK is not set.")
        return self._fallback_price, "fallback"


class FeeQuoter:
    def __init__(
        self,
        *,
        predicate_store: PredicateStore,
        price_source: NativePriceSource,
        fee_decimals: int = 6,
    ) -> None:
        self._predicate_store = predicate_store
        self._price_source = price_source
        self._fee_decimals = fee_decimals

    async def quote(self, predicate_id: str) -> FeeQuote:
        fee_units, update_count = await asyncio.gather(
            self._predicate_store.get_update_fees(predicate_id),
            self._predicate_store.update_count(predicate_id),
        )
        native_price, source = await self._price_source.price()
        return FeeQuote(
            predicate_id=predicate_id,
            update_count=update_count,
            fee_units=fee_units,
            payment_wei=fee_units_to_wei(fee_units, native_price, fee_decimals=self._fee_decimals),
            native_price=native_price,
            source=source,
        )
