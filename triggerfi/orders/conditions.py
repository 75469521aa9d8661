from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import re
from typing import Any, Callable, Sequence

import aiohttp

from triggerfi.common import gather_limited, log_event

from .types import (
    LOGIC_OPERATORS,
    Condition,
    ConditionResult,
    EvaluationResult,
    ValidationError,
)

JSON_PATH_TOKEN_RE = re.compile(
    r"""\.?(?P<key>[^.\[\]]+)|\[(?P<index>-?\d+)\]|\[(?P<quote>['"])(?P<quoted>.*?)(?P=quote)\]"""
)

SecretResolver = Callable[[str], str | None]


class ConditionFetchError(RuntimeError):
    pass


def parse_json_path(path: str) -> list[str | int]:
    text = (path or "").strip()
    if text.startswith("$"):
        text = text[1:]
    if not text:
        raise ValidationError("JSON path is empty.")

    tokens: list[str | int] = []
    position = 0
    while position < len(text):
        match = JSON_PATH_TOKEN_RE.match(text, position)
        if match is None or match.end() == position:
            raise ValidationError(f"Malformed JSON path at position {position}: {path!r}")
        if match.group("key") is not None:
            tokens.append(match.group("key"))
        elif match.group("index") is not None:
            tokens.append(int(match.group("index")))
        else:
            tokens.append(match.group("quoted"))
        position = match.end()
    return tokens


def resolve_json_path(payload: Any, path: str) -> Any:
    current = payload
    for token in parse_json_path(path):
        if isinstance(token, int):
            if not isinstance(current, list):
                raise KeyError(f"Expected a list before index [{token}]")
            current = current[token]
            continue
        if isinstance(current, dict):
            current = current[token]
        elif isinstance(current, list) and token.lstrip("-").isdigit():
            current = current[int(token)]
        else:
            raise KeyError(f"Cannot read {token!r} from {type(current).__name__}")
    return current


def coerce_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def compare(value: float | None, operator: str, threshold: float) -> bool:
    if value is None or math.isnan(threshold):
        return False
    if operator == ">":
        return value > threshold
    if operator == "<":
        return value < threshold
    if operator == "=":
        return value == threshold
    return False


def combine(results: Sequence[bool], logic_operator: str) -> bool:
    if not results:
        return False
    if logic_operator == "AND":
        return all(results)
    if logic_operator == "OR":
        return any(results)
    return False


def auth_headers(condition: Condition, secret: str) -> dict[str, str]:
    headers = {
        "Accept": "application/json",
        "User-Agent": "triggerfi-keeper/1.0",
    }
    if condition.auth_type == "apiKey":
        headers["X-API-Key"] = secret
    elif condition.auth_type == "bearer":
        headers["Authorization"] = f"Bearer {secret}"
    return headers


def env_secret_resolver(name: str) -> str | None:
    value = os.getenv(name)
    return value if value else None


class ConditionEvaluator:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        timeout_seconds: float = 10.0,
        concurrency: int = 8,
        secret_resolver: SecretResolver = env_secret_resolver,
    ) -> None:
        self._logger = logger
        self._timeout_seconds = timeout_seconds
        self._concurrency = max(1, concurrency)
        self._secret_resolver = secret_resolver
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch_json(self, url: str, *, headers: dict[str, str] | None = None) -> Any:
        await self.connect()
        if self._session is None:
            raise RuntimeError("Condition HTTP session is not initialized.")

        try:
            async with self._session.get(url, headers=headers) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise ConditionFetchError(f"request failed: {type(error).__name__}") from error

        if status < 200 or status >= 300:
            raise ConditionFetchError(f"unexpected status {status}")
        try:
            return json.loads(body)
        except json.JSONDecodeError as error:
            raise ConditionFetchError("response is not valid JSON") from error

    def _secret_for(self, condition: Condition) -> str | None:
        if condition.auth_type == "none":
            return ""
        if condition.auth_value:
            return condition.auth_value
        if condition.auth_ref:
            return self._secret_resolver(condition.auth_ref)
        return None

    async def evaluate_condition(self, index: int, condition: Condition) -> ConditionResult:
        try:
            return await self._evaluate_condition(index, condition)
        except Exception as error:
            return self._failed(index, condition, reason=f"unexpected_error: {type(error).__name__}")

    async def _evaluate_condition(self, index: int, condition: Condition) -> ConditionResult:
        secret = self._secret_for(condition)
        if secret is None:
            return self._failed(index, condition, reason="missing_secret")

        try:
            payload = await self.fetch_json(
                condition.endpoint,
                headers=auth_headers(condition, secret),
            )
        except ConditionFetchError as error:
            return self._failed(index, condition, reason=f"fetch_error: {error}")

        try:
            raw_value = resolve_json_path(payload, condition.json_path)
        except (KeyError, IndexError, TypeError, ValidationError) as error:
            return self._failed(index, condition, reason=f"path_unresolved: {error}")

        value = coerce_number(raw_value)
        if value is None:
            return self._failed(index, condition, reason="value_not_numeric")

        passed = compare(value, condition.operator, float(condition.threshold))
        log_event(
            self._logger,
            level="debug",
            event="condition_evaluated",
            message="Condition evaluated",
            condition_index=index,
            endpoint=condition.endpoint,
            json_path=condition.json_path,
            operator=condition.operator,
            threshold=condition.threshold,
            value=value,
            passed=passed,
        )
        return ConditionResult(index=index, passed=passed, value=value, reason="ok")

    def _failed(self, index: int, condition: Condition, *, reason: str) -> ConditionResult:
        log_event(
            self._logger,
            level="warning",
            event="condition_failed_closed",
            message="Condition could not be evaluated and counts as false",
            condition_index=index,
            endpoint=condition.endpoint,
            json_path=condition.json_path,
            reason=reason,
        )
        return ConditionResult(index=index, passed=False, value=None, reason=reason)

    async def evaluate(
        self,
        conditions: Sequence[Condition],
        logic_operator: str,
    ) -> EvaluationResult:
        if not conditions:
            raise ValidationError("At least one condition is required.")
        if logic_operator not in LOGIC_OPERATORS:
            raise ValidationError(f"Unsupported logic operator: {logic_operator!r}")

        results = await gather_limited(
            [
                (lambda index=index, condition=condition: self.evaluate_condition(index, condition))
                for index, condition in enumerate(conditions)
            ],
            limit=self._concurrency,
        )
        return EvaluationResult(
            result=combine([item.passed for item in results], logic_operator),
            logic_operator=logic_operator,
            conditions=tuple(results),
        )
