#!/usr/bin/env python3
"""
Warm Redis with aggregated catchment data.

Rebuilds the cached forecast collection of every catchment (or of the
catchments given on the command line), bypassing existing entries. Useful
after a Redis flush or when deploying to a fresh environment.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from shared.config import get_config  # noqa: E402
from shared.logging import configure_logging  # noqa: E402
from service_catchments.app.adapters.mike_client import MikeDataProvider  # noqa: E402
from service_catchments.app.aggregation.aggregator import CatchmentAggregator  # noqa: E402
from service_catchments.app.cache.keys import CacheKeyBuilder  # noqa: E402
from service_catchments.app.cache.resolver import CacheAsideResolver  # noqa: E402
from service_catchments.app.cache.store import RedisKeyValueStore  # noqa: E402
from service_catchments.app.refresh.warmer import CatchmentCacheWarmer  # noqa: E402


async def warm(
    *,
    redis_url: str,
    redis_db: int,
    mike_api_url: str,
    catchment_ids: Optional[List[str]],
    concurrency: int,
    dry_run: bool,
) -> dict:
    """Execute cache warming and return the summary."""
    config = get_config("catchments-warm", 0)
    store = RedisKeyValueStore.from_url(redis_url, db=redis_db, configure_notifications=False)
    provider = MikeDataProvider(mike_api_url, timeout=config.mike_request_timeout)
    keys = CacheKeyBuilder(config.cache_key_prefix)
    resolver = CacheAsideResolver(store, config.cache_ttl_seconds, keys=keys)
    warmer = CatchmentCacheWarmer(CatchmentAggregator(provider, resolver, keys), concurrency=concurrency)

    await store.start()
    try:
        if dry_run:
            plan = await warmer.plan(catchment_ids)
            return {"planned": len(plan), "catchments": plan}
        return await warmer.warm(catchment_ids)
    finally:
        await provider.close()
        await store.stop()


def _parse_args() -> argparse.Namespace:
    config = get_config("catchments-warm", 0)
    parser = argparse.ArgumentParser(description="Warm Redis with aggregated catchment data.")
    parser.add_argument("--redis-url", default=config.redis_url, help="Redis connection URL")
    parser.add_argument("--redis-db", type=int, default=config.redis_db, help="Redis logical database")
    parser.add_argument("--mike-url", default=config.mike_api_url, help="MIKE API base URL")
    parser.add_argument("--catchment", action="append", dest="catchments", help="Catchment id to warm (repeatable); defaults to all")
    parser.add_argument("--concurrency", type=int, default=5, help="Concurrent catchment rebuilds")
    parser.add_argument("--dry-run", action="store_true", help="List the catchments that would be warmed")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    parser.add_argument("--log-level", default=config.log_level, help="Log level")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("catchments-warm", args.log_level)
    try:
        summary = asyncio.run(
            warm(
                redis_url=args.redis_url,
                redis_db=args.redis_db,
                mike_api_url=args.mike_url,
                catchment_ids=args.catchments,
                concurrency=args.concurrency,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[cache-warm] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[cache-warm] DRY RUN - no Redis writes executed")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0 if not summary.get("errors") else 2


if __name__ == "__main__":
    raise SystemExit(main())
