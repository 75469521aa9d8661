from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Protocol, Sequence

from triggerfi.common import guarded_call, log_event
from triggerfi.engine import FillOrchestrator, KeeperService
from triggerfi.orders.types import (
    FILL_OUTCOME_FILLED,
    KeeperAuthorizationError,
    now_iso,
)

from .settings import AppSettings


class BootstrapCancelled(RuntimeError):
    """Shutdown was requested before every dependency connected."""


class Connectable(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


async def wait_for_wake(
    stop_event: asyncio.Event,
    wake_event: asyncio.Event,
    timeout_seconds: float,
) -> None:
    if stop_event.is_set() or timeout_seconds <= 0:
        return

    waiters = [
        asyncio.create_task(stop_event.wait()),
        asyncio.create_task(wake_event.wait()),
    ]
    try:
        await asyncio.wait(waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
    wake_event.clear()


def advance_tick(next_tick: float, interval_seconds: float, now: float) -> float:
    next_tick += interval_seconds
    if next_tick <= now:
        missed_cycles = int((now - next_tick) / interval_seconds) + 1
        next_tick += missed_cycles * interval_seconds
    return next_tick


async def close_all(logger: logging.Logger, dependencies: Sequence[Connectable], *, event: str) -> None:
    for dependency in dependencies:
        await guarded_call(
            dependency.close,
            logger=logger,
            event=event,
            message="Failed to close dependency",
            dependency=type(dependency).__name__,
        )


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: Any,
    clients: Sequence[Connectable],
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            for client in clients:
                await client.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await close_all(logger, [*clients, storage], event="bootstrap_close_failed")

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise BootstrapCancelled("Shutdown requested before dependencies were initialized.")


async def run_keeper_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: Any,
    keeper: KeeperService,
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    interval = app_settings.keeper_interval_seconds

    while not stop_event.is_set():
        cycle_started = loop.time()
        cycle_failed = False

        try:
            updates = await keeper.run_cycle()
            summary = {
                "completed_at": now_iso(),
                "duration_seconds": round(loop.time() - cycle_started, 3),
                "predicates_updated": len(updates),
                "results": {update.predicate_id: update.result for update in updates},
            }
            await storage.record_keeper_cycle(summary)
            await storage.update_heartbeat()
            if updates:
                await storage.publish_event(
                    level="INFO",
                    event="keeper_cycle",
                    message="Keeper committed predicate results",
                    details={"updates": [update.to_dict() for update in updates]},
                )
        except KeeperAuthorizationError as error:
            log_event(
                logger,
                level="critical",
                event="keeper_unauthorized",
                message="Keeper lost authorization on the predicate store",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="CRITICAL",
                    event="keeper_unauthorized",
                    message="Keeper stopped after an authorization failure",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="keeper_unauthorized_publish_failed",
                message="Failed to publish keeper authorization failure",
            )
            raise
        except Exception as error:
            cycle_failed = True
            log_event(
                logger,
                level="exception",
                event="keeper_cycle_error",
                message="Keeper cycle failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="keeper_cycle_error",
                    message="Keeper cycle failed",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="keeper_cycle_publish_failed",
                message="Failed to publish keeper cycle error",
            )

        now = loop.time()
        next_tick = advance_tick(next_tick, interval, now)
        delay_seconds = max(0.0, next_tick - now)
        if cycle_failed:
            delay_seconds = max(delay_seconds, app_settings.error_backoff_seconds)
        await wait_with_stop(stop_event, delay_seconds)


async def _forward_snapshots(subscription: Any, wake_event: asyncio.Event) -> None:
    async for _records in subscription:
        wake_event.set()


async def run_taker_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: Any,
    orchestrator: FillOrchestrator,
    watch_active_orders: bool = True,
) -> None:
    wake_event = asyncio.Event()
    subscription = None
    watcher: asyncio.Task[None] | None = None

    if watch_active_orders:
        subscription = await guarded_call(
            storage.subscribe_active_orders,
            logger=logger,
            event="active_orders_watch_failed",
            message="Active order watch unavailable; polling only",
        )
        if subscription is not None:
            watcher = asyncio.create_task(_forward_snapshots(subscription, wake_event))

    try:
        while not stop_event.is_set():
            pass_failed = False
            try:
                results = await orchestrator.run_pass()
                await storage.update_heartbeat()
                outcomes = Counter(result.outcome for result in results)
                for result in results:
                    if result.outcome != FILL_OUTCOME_FILLED:
                        continue
                    await storage.publish_event(
                        level="INFO",
                        event="order_filled",
                        message="Conditional order filled",
                        details=result.to_dict(),
                        event_id=f"fill-{result.order_id}",
                    )
                if results:
                    log_event(
                        logger,
                        level="info",
                        event="taker_pass_completed",
                        message="Taker pass completed",
                        orders=len(results),
                        outcomes=dict(outcomes),
                    )
            except Exception as error:
                pass_failed = True
                log_event(
                    logger,
                    level="exception",
                    event="taker_pass_error",
                    message="Taker pass failed",
                    error=str(error),
                )
                await guarded_call(
                    lambda: storage.publish_event(
                        level="ERROR",
                        event="taker_pass_error",
                        message="Taker pass failed",
                        details={"error": str(error)},
                    ),
                    logger=logger,
                    event="taker_pass_publish_failed",
                    message="Failed to publish taker pass error",
                )

            if pass_failed:
                await wait_with_stop(stop_event, app_settings.error_backoff_seconds)
            else:
                await wait_for_wake(stop_event, wake_event, app_settings.taker_poll_seconds)
    finally:
        if subscription is not None:
            subscription.unsubscribe()
        if watcher is not None:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
