#!/usr/bin/env python3
"""Inspect or resume a failed order from the order cache.

Resuming only continues an order that already has a fulfillment on the
destination ledger; it fetches the attestation and settles, it never pays.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

from bridge_solver.bot_runtime import AppSettings, build_components, setup_logger
from bridge_solver.common import guarded_call
from bridge_solver.common.errors import ConfigurationError, SolverError
from bridge_solver.storage import StorageSettings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect or resume a failed solver order.")
    parser.add_argument("order_id", help="Order id as stored in the order cache (0x-prefixed hex).")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume settlement for a failed order that has a fulfillment. Without it only prints the record.",
    )
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    logger = setup_logger()
    stop_event = asyncio.Event()
    try:
        components = build_components(
            logger=logger,
            app_settings=AppSettings.from_env(),
            storage_settings=StorageSettings.from_env(),
            stop_event=stop_event,
        )
    except ConfigurationError as error:
        print(f"[error] {error}", file=sys.stderr)
        return 2

    storage = components.storage
    await storage.connect()
    try:
        record = await storage.get_order_record(args.order_id)
        if record is None:
            print(f"[error] order {args.order_id} is not in the order cache", file=sys.stderr)
            return 1

        print(json.dumps(record.to_mapping(), ensure_ascii=False, indent=2))
        if not args.resume:
            return 0

        for client in components.clients:
            await client.connect()
        try:
            resumed = await components.engine.resume_failed(args.order_id)
        except SolverError as error:
            print(f"[error] {error}", file=sys.stderr)
            return 1

        print(json.dumps(resumed.summary(), ensure_ascii=False, indent=2))
        return 0 if resumed.state.value == "settled" else 1
    finally:
        for client in components.clients:
            await guarded_call(
                client.close,
                logger=logger,
                event="client_close_failed",
                message="Failed to close client",
                client=type(client).__name__,
            )
        await storage.close()


def main() -> None:
    load_dotenv(Path(__file__).resolve().parents[1] / ".env")
    sys.exit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
