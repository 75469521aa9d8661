#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from eth_account import Account

from triggerfi.chain import ChainConfig
from triggerfi.engine import OrderService
from triggerfi.orders import Condition, OrderBuilder
from triggerfi.orders.conditions import ConditionEvaluator
from triggerfi.orders.types import ZERO_ADDRESS
from triggerfi.runtime import AppSettings, build_chain_clients, setup_logger
from triggerfi.storage import StorageSettings, create_storage


def load_conditions(args: argparse.Namespace) -> list[Condition]:
    payloads: list[dict[str, Any]] = []
    if args.conditions_file:
        loaded = json.loads(Path(args.conditions_file).read_text(encoding="utf-8"))
        payloads.extend(loaded if isinstance(loaded, list) else [loaded])
    for raw in args.condition or []:
        payloads.append(json.loads(raw))
    return [Condition.from_dict(payload) for payload in payloads]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create, cancel, or list TriggerFi conditional limit orders.",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    create = subcommands.add_parser("create", help="Sign and store a new conditional order.")
    create.add_argument("--maker-asset", required=True, help="Token the maker sells.")
    create.add_argument("--taker-asset", required=True, help="Token the maker wants.")
    create.add_argument("--making-amount", required=True, type=int, help="Base units sold.")
    create.add_argument("--taking-amount", required=True, type=int, help="Base units wanted.")
    create.add_argument(
        "--condition",
        action="append",
        help=(
            'Condition JSON, e.g. \'{"endpoint": "https://...", "jsonPath": "data.price", '
            '"operator": ">", "threshold": 3000}\'. Repeatable.'
        ),
    )
    create.add_argument("--conditions-file", default="", help="JSON file with a condition list.")
    create.add_argument("--logic", default="AND", choices=["AND", "OR"], help="How to combine conditions.")
    create.add_argument("--receiver", default="", help="Optional recipient of the taker asset.")

    cancel = subcommands.add_parser("cancel", help="Cancel an active order on chain and in the registry.")
    cancel.add_argument("order_id")

    listing = subcommands.add_parser("list", help="List orders created by the configured maker.")
    listing.add_argument("--limit", type=int, default=50)

    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    app_settings = AppSettings.from_env()
    if not app_settings.private_key:
        raise ValueError("PRIVATE_KEY is required to act as the order maker.")

    logger = setup_logger(role="maker", level=app_settings.log_level)
    chain = ChainConfig.from_env()
    storage = create_storage(StorageSettings.from_env(role="maker"), logger)
    evaluator = ConditionEvaluator(logger=logger)
    clients = build_chain_clients(
        logger=logger,
        app_settings=app_settings,
        chain=chain,
        evaluator=evaluator,
    )
    signer = Account.from_key(app_settings.private_key)
    service = OrderService(
        logger=logger,
        registry=storage,
        builder=OrderBuilder(domain=chain.eip712_domain()),
        chain=chain,
        protocol=clients.protocol,
    )

    await storage.connect()
    await clients.protocol.connect()
    try:
        if args.command == "create":
            record = await service.create_conditional_order(
                signer=signer,
                maker_asset=args.maker_asset,
                taker_asset=args.taker_asset,
                making_amount=args.making_amount,
                taking_amount=args.taking_amount,
                conditions=load_conditions(args),
                logic_operator=args.logic,
                receiver=args.receiver or ZERO_ADDRESS,
            )
            print(f"[ok] order_id={record.order_id}")
            print(f"[ok] order_hash={record.order_hash}")
            print(f"[ok] predicate_id={record.predicate_id}")
        elif args.command == "cancel":
            record = await service.cancel_order(args.order_id, maker=signer.address)
            print(f"[ok] order_id={record.order_id} status={record.status}")
        else:
            records = await storage.list_orders_by_maker(signer.address, limit=args.limit)
            for record in records:
                print(
                    json.dumps(
                        {
                            "orderId": record.order_id,
                            "status": record.status,
                            "predicateId": record.predicate_id,
                            "updateCount": record.update_count,
                            "accumulatedFees": str(record.accumulated_fees),
                        },
                        ensure_ascii=False,
                    )
                )
            print(f"[info] {len(records)} order(s)")
    finally:
        await clients.protocol.close()
        await storage.close()


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")
    asyncio.run(run(parse_args()))


if __name__ == "__main__":
    main()
