from __future__ import annotations

import asyncio
import contextlib
import signal

from dotenv import load_dotenv

from triggerfi.chain import ChainConfig
from triggerfi.common import log_event
from triggerfi.engine import FillOrchestrator, KeeperService
from triggerfi.orders.conditions import ConditionEvaluator
from triggerfi.orders.types import KeeperAuthorizationError
from triggerfi.runtime import (
    ROLE_KEEPER,
    AppSettings,
    BootstrapCancelled,
    bootstrap_dependencies,
    build_chain_clients,
    run_keeper_loop,
    run_taker_loop,
    setup_logger,
)
from triggerfi.storage import StorageSettings, create_storage


async def main() -> int:
    load_dotenv()
    app_settings = AppSettings.from_env()
    logger = setup_logger(role=app_settings.role, level=app_settings.log_level)

    chain = ChainConfig.from_env()
    storage_settings = StorageSettings.from_env(role=app_settings.role)
    storage = create_storage(storage_settings, logger)
    evaluator = ConditionEvaluator(
        logger=logger,
        timeout_seconds=app_settings.condition_timeout_seconds,
        concurrency=app_settings.condition_concurrency,
    )
    clients = build_chain_clients(
        logger=logger,
        app_settings=app_settings,
        chain=chain,
        evaluator=evaluator,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    exit_code = 0
    stop_reason = "shutdown"
    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            clients=[evaluator, *clients.connectables],
        )

        await storage.publish_event(
            level="INFO",
            event="service_started",
            message="TriggerFi service started",
            details={
                "role": app_settings.role,
                "dry_run": app_settings.dry_run,
                "chain_id": chain.chain_id,
                "signer": clients.signer_address,
            },
        )

        if app_settings.role == ROLE_KEEPER:
            keeper = KeeperService(
                logger=logger,
                registry=storage,
                evaluator=evaluator,
                predicate_store=clients.predicate_store,
                keeper_address=clients.signer_address,
                concurrency=app_settings.condition_concurrency,
            )
            await keeper.authorize()
            await run_keeper_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                storage=storage,
                keeper=keeper,
            )
        else:
            orchestrator = FillOrchestrator(
                logger=logger,
                registry=storage,
                predicate_store=clients.predicate_store,
                protocol=clients.protocol,
                fee_quoter=clients.fee_quoter,
                guard_store=storage,
                taker_address=clients.signer_address,
                guard_ttl_seconds=app_settings.fill_guard_ttl_seconds,
                concurrency=app_settings.fill_concurrency,
            )
            await run_taker_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                storage=storage,
                orchestrator=orchestrator,
            )
    except BootstrapCancelled:
        stop_reason = "stopped_before_start"
        log_event(
            logger,
            level="info",
            event="bootstrap_cancelled",
            message="Shutdown requested before dependencies were initialized",
        )
    except KeeperAuthorizationError as error:
        exit_code = 2
        stop_reason = "keeper_unauthorized"
        log_event(
            logger,
            level="critical",
            event="keeper_unauthorized",
            message="Keeper is not authorized on the predicate store; exiting",
            error=str(error),
        )
    finally:
        with contextlib.suppress(Exception):
            await storage.publish_event(
                level="INFO",
                event="service_stopped",
                message="TriggerFi service stopped",
                details={"reason": stop_reason},
            )
        with contextlib.suppress(Exception):
            await storage.mark_run_stopped(reason=stop_reason)

        for client in clients.connectables:
            with contextlib.suppress(Exception):
                await client.close()
        with contextlib.suppress(Exception):
            await evaluator.close()
        with contextlib.suppress(Exception):
            await storage.close()

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")

    return exit_code


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
