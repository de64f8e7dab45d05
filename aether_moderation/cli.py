"""Command-line front end over a SQLite ledger."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from .cache import FileCacheStorage, LocalCache, MemoryCacheStorage
from .config import load_config
from .coordinator import BlockCoordinator
from .errors import OperationResult
from .stores import SQLiteLedger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aether-moderation", description="Block list moderation tools")
    parser.add_argument("--db", type=str, default=str(Path("data") / "moderation.db"))
    parser.add_argument("--cache-dir", type=str, default=None)
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--log-level", default="WARNING")
    commands = parser.add_subparsers(dest="command", required=True)

    block = commands.add_parser("block")
    block.add_argument("viewer")
    block.add_argument("target")
    block.add_argument("--message", default=None)

    unblock = commands.add_parser("unblock")
    unblock.add_argument("viewer")
    unblock.add_argument("target")

    follow = commands.add_parser("follow")
    follow.add_argument("viewer")
    follow.add_argument("source")

    unfollow = commands.add_parser("unfollow")
    unfollow.add_argument("viewer")
    unfollow.add_argument("source")

    check = commands.add_parser("check")
    check.add_argument("viewer")
    check.add_argument("targets", nargs="+")

    listing = commands.add_parser("list")
    listing.add_argument("viewer")

    stats = commands.add_parser("stats")
    stats.add_argument("viewer")
    return parser


async def _run(
    args: argparse.Namespace,
    coordinator: BlockCoordinator,
    ledger: SQLiteLedger,
) -> tuple[dict[str, object], bool]:
    if args.command == "block":
        return _result(await coordinator.block(args.viewer, args.target, args.message))
    if args.command == "unblock":
        return _result(await coordinator.unblock(args.viewer, args.target))
    if args.command == "follow":
        return _result(await coordinator.follow_block_list(args.viewer, args.source))
    if args.command == "unfollow":
        return _result(await coordinator.unfollow_block_list(args.viewer, args.source))
    if args.command == "check":
        if len(args.targets) == 1:
            verdict = await coordinator.resolve(args.targets[0], args.viewer)
            return {
                "target": args.targets[0],
                "blocked": coordinator.hides(verdict),
                "state": verdict.state,
                "blocked_by": verdict.blocked_by,
            }, True
        return {"blocked": await coordinator.check_blocked_batch(args.viewer, args.targets)}, True
    if args.command == "list":
        records = await coordinator.get_user_blocks(args.viewer)
        return {
            "blocks": [
                {"blocked_id": record.blocked_id, "message": record.message, "created_at": record.created_at}
                for record in records
            ],
            "follows": await coordinator.get_block_follows(args.viewer),
        }, True
    stored = await ledger.filters.get(args.viewer)
    if stored is None:
        return {"filter": None}, True
    try:
        flt = stored.to_filter()
    except ValueError as exc:
        return {"filter": None, "error": str(exc)}, False
    return {
        "filter": {
            "item_count": flt.item_count,
            "revision": stored.revision,
            "version": stored.version,
            "estimated_false_positive_rate": flt.estimate_false_positive_rate(),
        }
    }, True


def _result(result: OperationResult) -> tuple[dict[str, object], bool]:
    return result.to_dict(), result.success


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    config = load_config(args.config)
    storage = FileCacheStorage(args.cache_dir) if args.cache_dir else MemoryCacheStorage()
    cache = LocalCache(storage, ttl_ms=config.cache_ttl_ms, namespace=config.cache_namespace)
    ledger = SQLiteLedger(args.db)
    try:
        coordinator = BlockCoordinator(ledger.records, ledger.filters, ledger.follows, cache=cache, config=config)
        payload, ok = asyncio.run(_run(args, coordinator, ledger))
    finally:
        ledger.close()
    print(json.dumps(payload, sort_keys=True))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
