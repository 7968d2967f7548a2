#!/usr/bin/env python3
"""
tracker_cli.py - Command line access to the token tracker.

    python tracker_cli.py add <ADDRESS>
    python tracker_cli.py list [--address ADDRESS]
    python tracker_cli.py refresh

`refresh` is the cron entry point, e.g. every minute:
    * * * * * cd /srv/tracker && flock -n /tmp/tracker.lock python tracker_cli.py refresh
Do not let two refresh runs overlap.
"""
import argparse
import asyncio
import json
import logging
import sys

import aiohttp

import config
from token_tracker import SnapshotRefresher, TrackerError, TrackingRegistry

logger = logging.getLogger("tracker_cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track Solana token metrics at 15m / 30m / 1h after registration")
    parser.add_argument("--source", type=str, default=None, help="Market data source: dexscreener or random")
    sub = parser.add_subparsers(dest="command", required=True)

    add_p = sub.add_parser("add", help="Start tracking a token address")
    add_p.add_argument("address", help="Token mint address")

    list_p = sub.add_parser("list", help="Show tracked tokens, newest first")
    list_p.add_argument("--address", type=str, default=None, help="Only show this token")

    sub.add_parser("refresh", help="Apply every overdue update")
    return parser


async def run_command(args, store, market_data) -> dict:
    if args.command == "add":
        token = await TrackingRegistry(store, market_data).add(args.address)
        return token.to_json()
    if args.command == "list":
        tokens = await TrackingRegistry(store, market_data).list(args.address)
        return {"tokens": [t.to_json() for t in tokens]}
    if args.command == "refresh":
        refresher = SnapshotRefresher(store, market_data, max_concurrency=config.REFRESH_CONCURRENCY)
        report = await refresher.refresh()
        return report.to_json()
    raise ValueError(f"Unknown command: {args.command}")


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    from supabase_utils import build_token_store
    from shared.market_data import build_market_data

    store = build_token_store()
    async with aiohttp.ClientSession() as http_session:
        market_data = build_market_data(http_session, args.source)
        try:
            result = await run_command(args, store, market_data)
        except TrackerError as e:
            logger.error(f"{type(e).__name__}: {e}")
            return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("🚀 Interrupted, exiting")
