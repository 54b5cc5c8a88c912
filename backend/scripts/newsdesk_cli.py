#!/usr/bin/env python3
"""
CLI tool for Newsdesk.

Usage:
    # Run one collection cycle
    python -m scripts.newsdesk_cli collect

    # List recent articles
    python -m scripts.newsdesk_cli articles --limit 20 --category research-paper

    # Send the current daily digest (no-op if already delivered)
    python -m scripts.newsdesk_cli digest --kind daily

    # Drop expired articles
    python -m scripts.newsdesk_cli purge

    # Check source health / show scheduler and store status
    python -m scripts.newsdesk_cli health
    python -m scripts.newsdesk_cli status

    # Run the scheduler loop without the HTTP server
    python -m scripts.newsdesk_cli serve
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/", 2)[0])

from newsdesk.config import get_settings
from newsdesk.core.errors import NewsdeskError
from newsdesk.core.log import configure_logging
from newsdesk.models.domain import Category, DigestKind, SourceKind
from newsdesk.runtime import NewsdeskRuntime


async def open_runtime() -> NewsdeskRuntime:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    runtime = NewsdeskRuntime(settings)
    await runtime.initialize()
    return runtime


async def cmd_collect(args):
    """Run a collection cycle now."""
    runtime = await open_runtime()
    try:
        report = await runtime.trigger_collection()
    finally:
        await runtime.shutdown()

    print("\n" + "=" * 60)
    print("COLLECTION REPORT")
    print("=" * 60)
    for key, value in report.items():
        if key != "notes":
            print(f"  {key}: {value}")
    for note in report.get("notes", []):
        print(f"  ! {note}")

    return 0


async def cmd_articles(args):
    """List live articles."""
    runtime = await open_runtime()
    try:
        articles = await runtime.query_articles(
            since=datetime.fromisoformat(args.since) if args.since else None,
            category=Category(args.category) if args.category else None,
            min_score=args.min_score,
            source_kind=SourceKind(args.source_kind) if args.source_kind else None,
            enriched_only=args.enriched_only,
            limit=args.limit,
        )
    finally:
        await runtime.shutdown()

    if args.json:
        print(json.dumps([a.model_dump(mode="json") for a in articles], indent=2))
        return 0

    for article in articles:
        score = f"{article.relevance_score:.2f}" if article.relevance_score is not None else "  - "
        category = article.category.value if article.category else "unclassified"
        print(f"[{score}] ({category}) {article.title}")
        print(f"    {article.primary_url}")
        print(f"    sources: {', '.join(sorted(article.source_names))}  published: {article.published_at:%Y-%m-%d}")
    print(f"\n{len(articles)} article(s)")
    return 0


async def cmd_digest(args):
    """Compose and deliver the current digest."""
    runtime = await open_runtime()
    try:
        result = await runtime.run_digest(DigestKind(args.kind))
    except NewsdeskError as e:
        print(f"Digest failed: {e}")
        return 1
    finally:
        await runtime.shutdown()

    print(json.dumps(result, indent=2))
    return 0


async def cmd_purge(args):
    runtime = await open_runtime()
    try:
        removed = await runtime.purge_expired()
    finally:
        await runtime.shutdown()
    print(f"Removed {removed} expired article(s)")
    return 0


async def cmd_health(args):
    """Check health of all sources."""
    runtime = await open_runtime()
    try:
        print("Checking source health...")
        health = await runtime.health_check()
    finally:
        await runtime.shutdown()

    print("\n" + "=" * 40)
    print("SOURCE HEALTH")
    print("=" * 40)

    all_healthy = True
    for source, is_healthy in health.items():
        status = "OK" if is_healthy else "FAILED"
        print(f"  {source}: {status}")
        if not is_healthy:
            all_healthy = False

    return 0 if all_healthy else 1


async def cmd_status(args):
    runtime = await open_runtime()
    try:
        await runtime.scheduler.refresh()
        status = await runtime.status()
    finally:
        await runtime.shutdown()
    print(json.dumps(status, indent=2))
    return 0


async def cmd_serve(args):
    """Run the scheduler loop until interrupted."""
    runtime = await open_runtime()
    tick_seconds = runtime.settings.scheduler_tick_seconds

    print(f"Starting scheduler (tick every {tick_seconds}s)")
    print("Press Ctrl+C to stop")

    try:
        await runtime.start()
        while True:
            await asyncio.sleep(tick_seconds)
            await runtime.tick()
    finally:
        print("\nShutting down...")
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Newsdesk - collection and digest CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("collect", help="Run one collection cycle")

    articles_parser = subparsers.add_parser("articles", help="List live articles")
    articles_parser.add_argument("--since", help="ISO timestamp; list articles fetched since then")
    articles_parser.add_argument(
        "--category", "-c",
        choices=[c.value for c in Category],
        help="Only this category",
    )
    articles_parser.add_argument("--min-score", type=float, help="Minimum relevance score (0-1)")
    articles_parser.add_argument(
        "--source-kind",
        choices=[k.value for k in SourceKind],
        help="Only articles seen via this kind of source",
    )
    articles_parser.add_argument("--enriched-only", action="store_true")
    articles_parser.add_argument(
        "--limit", "-l",
        type=int,
        default=20,
        help="Max articles (default: 20)",
    )
    articles_parser.add_argument("--json", action="store_true", help="Print JSON")

    digest_parser = subparsers.add_parser("digest", help="Send the current digest")
    digest_parser.add_argument(
        "--kind", "-k",
        choices=[k.value for k in DigestKind],
        default=DigestKind.DAILY.value,
    )

    subparsers.add_parser("purge", help="Delete expired articles")
    subparsers.add_parser("health", help="Check source health")
    subparsers.add_parser("status", help="Show scheduler and store status")
    subparsers.add_parser("serve", help="Run the scheduler loop")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "collect": cmd_collect,
        "articles": cmd_articles,
        "digest": cmd_digest,
        "purge": cmd_purge,
        "health": cmd_health,
        "status": cmd_status,
        "serve": cmd_serve,
    }
    try:
        return asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
