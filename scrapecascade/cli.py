"""Command-line access to the cascade engine.

Usage:
    scrapecascade fetch https://example.com
    scrapecascade fetch https://example.com --force-provider scrapingbee
    scrapecascade fetch https://api.example.com/search -X POST -d '{"q": "x"}' -H "Content-Type: application/json"
    scrapecascade fetch https://example.com --max-cost 0.03 --priority high -o text
    scrapecascade stats
    scrapecascade serve --port 8000
"""

import argparse
import asyncio
import json
import sys

import uvicorn

from scrapecascade.config import settings
from scrapecascade.core.exceptions import CascadeError, CascadeExhaustedError
from scrapecascade.core.logging_config import configure_logging
from scrapecascade.core.redis import ResilientRedis
from scrapecascade.schemas.request import FetchOptions, RequestDescriptor
from scrapecascade.services.engine import CascadeEngine
from scrapecascade.services.snapshot import SnapshotStore


def _setup_logging(verbose: bool = False):
    configure_logging(
        log_format="text",
        log_level="DEBUG" if verbose else "WARNING",
        stream=sys.stderr,
    )


def _parse_headers(values: list[str] | None) -> dict[str, str]:
    headers = {}
    for value in values or []:
        if ":" not in value:
            raise SystemExit(f"Invalid header {value!r}, expected 'Name: value'")
        name, _, val = value.partition(":")
        headers[name.strip()] = val.strip()
    return headers


async def _open_engine() -> tuple[CascadeEngine, SnapshotStore | None, ResilientRedis | None]:
    engine = CascadeEngine(settings.to_engine_config(), metrics_enabled=False)
    if not settings.SNAPSHOT_ENABLED:
        return engine, None, None
    redis = ResilientRedis()
    snapshots = SnapshotStore(
        redis, engine.registry, engine.budget, ttl_seconds=settings.SNAPSHOT_TTL_SECONDS
    )
    await snapshots.load()
    return engine, snapshots, redis


async def _close_engine(engine, snapshots, redis):
    if snapshots is not None:
        await snapshots.save()
        await redis.close()
    await engine.close()


async def _cmd_fetch(args) -> int:
    """Fetch a single URL through the cascade."""
    descriptor = RequestDescriptor(
        url=args.url,
        method=args.method,
        headers=_parse_headers(args.header),
        body=args.data,
    )
    options = FetchOptions(
        force_provider=args.force_provider,
        bypass_cache=args.no_cache,
        max_cost=args.max_cost,
        priority_hint=args.priority,
    )

    engine, snapshots, redis = await _open_engine()
    try:
        result = await engine.fetch(descriptor, options)
    except CascadeExhaustedError as e:
        print(f"[{e.code}] {e}", file=sys.stderr)
        for attempt in e.attempts:
            print(f"  {attempt.provider}: {attempt.error}", file=sys.stderr)
        return 2
    except CascadeError as e:
        print(f"[{e.code}] {e}", file=sys.stderr)
        return 2
    finally:
        await _close_engine(engine, snapshots, redis)

    if args.output == "json":
        print(json.dumps(result.model_dump(), indent=2, ensure_ascii=False))
    else:
        print(result.content)
        print(
            f"\n{result.provider} HTTP {result.status_code} "
            f"${result.cost:.4f} {result.response_time_ms:.0f}ms "
            f"({len(result.attempts)} attempts)",
            file=sys.stderr,
        )
    return 0


async def _cmd_stats(args) -> int:
    """Print provider profiles and budget state (restored from Redis when enabled)."""
    engine, snapshots, redis = await _open_engine()
    try:
        summary = engine.stats()
    finally:
        await _close_engine(engine, snapshots, redis)

    if args.output == "json":
        print(json.dumps(summary, indent=2, default=str))
        return 0

    print("Budget:")
    for label, window in summary["budget"].items():
        print(
            f"  {label:<8} ${window['spent']:.4f} / ${window['limit']:.2f} "
            f"({window['percent_used']:.1f}%), resets {window['reset_at']}"
        )
    print("Providers:")
    for name, profile in summary["profiles"].items():
        print(
            f"  {name:<14} p{profile['priority']} ${profile['cost_per_request']:.4f} "
            f"{profile['state']:<11} success={profile['success_rate_ema']:.2f} "
            f"latency={profile['avg_latency_ema']:.0f}ms"
        )
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="scrapecascade",
        description="scrapecascade CLI: fetch URLs through a cost-aware provider cascade",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "-o", "--output", default="json",
        choices=["json", "text"],
        help="Output format (default: json)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- fetch ---
    fetch_parser = subparsers.add_parser("fetch", help="Fetch a single URL")
    fetch_parser.add_argument("url", help="URL to fetch")
    fetch_parser.add_argument("-X", "--method", default="GET", help="HTTP method (default: GET)")
    fetch_parser.add_argument(
        "-H", "--header", action="append", default=None,
        help="Request header as 'Name: value' (repeatable)",
    )
    fetch_parser.add_argument("-d", "--data", default=None, help="Request body")
    fetch_parser.add_argument("--force-provider", default=None, help="Only use this provider")
    fetch_parser.add_argument("--max-cost", type=float, default=None, help="Max USD per attempt")
    fetch_parser.add_argument(
        "--priority", default="normal", choices=["low", "normal", "high"],
        help="low: free providers only; high: no delay between providers",
    )
    fetch_parser.add_argument("--no-cache", action="store_true", help="Bypass the response cache")

    # --- stats ---
    subparsers.add_parser("stats", help="Show budget and provider state")

    # --- serve ---
    serve_parser = subparsers.add_parser("serve", help="Run the operator HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        # The app configures its own logging from settings
        uvicorn.run("scrapecascade.main:app", host=args.host, port=args.port)
        return

    _setup_logging(args.verbose)

    if args.command == "fetch":
        sys.exit(asyncio.run(_cmd_fetch(args)))
    elif args.command == "stats":
        sys.exit(asyncio.run(_cmd_stats(args)))


if __name__ == "__main__":
    main()
