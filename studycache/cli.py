"""Admin command line for the cache subsystem.

Commands:
    studycache health            overall health report (exit 1 when unhealthy)
    studycache metrics           hit/miss counters and key counts
    studycache cleanup           sweep in-memory entries, count live Redis entries
    studycache clear --yes       delete every cached entry and session

Every command prints one JSON document to stdout.
"""

import argparse
import asyncio
import json
from typing import Any, Dict, Optional, Sequence

from studycache.core.config import Settings, settings
from studycache.core.container import CacheContainer
from studycache.core.logging import get_logger, setup_logging

logger = get_logger(__name__)

COMMANDS = ("health", "metrics", "cleanup", "clear")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser("studycache", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("command", choices=COMMANDS, help="Operation to run")
    p.add_argument("--redis-url", default=None, help="Redis URL (overrides host/port/db settings)")
    p.add_argument("--log-level", default=settings.log_level, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-format", choices=["json", "text"], default="text", help="Log output format")
    p.add_argument("--yes", action="store_true", help="Confirm destructive commands")
    return p.parse_args(argv)


async def run_command(
    command: str,
    config: Settings,
    container: Optional[CacheContainer] = None,
) -> Dict[str, Any]:
    """Run one admin command against a freshly initialized container."""
    container = container or CacheContainer()
    await container.initialize(config)
    try:
        manager = container.cache_manager
        if command == "health":
            return (await manager.health_check()).to_dict()
        if command == "metrics":
            return (await manager.get_metrics()).to_dict()
        if command == "cleanup":
            return await manager.cleanup()
        if command == "clear":
            return await manager.clear_all()
        raise ValueError(f"Unknown command: {command}")
    finally:
        await container.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    if args.command == "clear" and not args.yes:
        logger.error("Refusing to clear caches without --yes")
        return 2

    config = settings
    if args.redis_url:
        config = settings.model_copy(update={"redis_url": args.redis_url})

    try:
        result = asyncio.run(run_command(args.command, config))
    except KeyboardInterrupt:
        return 130

    print(json.dumps(result, indent=2, default=str))
    if args.command == "health" and result.get("status") == "unhealthy":
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
