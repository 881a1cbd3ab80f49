"""Command-line access to the failure-mode catalogue.

Usage:
    python -m src.cli search --search loose --category Assembly --limit 5
    python -m src.cli suggest "tool w"
    python -m src.cli categories
    python -m src.cli stats
    python -m src.cli preload
    python -m src.cli offline-info
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

from src.config import Settings, get_settings
from src.failure_modes.models import FailureMode, FailureModeSearchParams
from src.failure_modes.service import FailureModeService, build_service
from src.resilience.errors import FailureModeError


def _format_modes(modes: list[FailureMode]) -> str:
    if not modes:
        return "No failure modes found."
    lines = [f"Found {len(modes)} failure mode(s):"]
    for fm in modes:
        tags = ", ".join(fm["tags"]) if fm["tags"] else "-"
        lines.append(f"  [{fm['category']}] {fm['mode']} (severity {fm['severity_default']}; tags: {tags})")
    return "\n".join(lines)


async def _run(service: FailureModeService, args: argparse.Namespace) -> str:
    if args.command == "search":
        params = FailureModeSearchParams(
            search=args.search,
            category=args.category,
            limit=args.limit,
            offset=args.offset,
        )
        return _format_modes(await service.search_failure_modes(params))
    if args.command == "suggest":
        return _format_modes(await service.get_failure_mode_suggestions(args.query, args.limit))
    if args.command == "categories":
        categories = await service.get_failure_mode_categories()
        return "\n".join(categories) if categories else "No categories found."
    if args.command == "stats":
        stats = await service.get_failure_mode_stats()
        return json.dumps(stats.model_dump(), indent=2)
    if args.command == "preload":
        await service.preload_failure_modes()
        info = await service.get_offline_info()
        return f"Preloaded. Offline store holds {info.cached_count or 0} failure mode(s)."
    info = await service.get_offline_info()
    return info.model_dump_json(indent=2)


async def _main_async(args: argparse.Namespace, settings: Settings) -> int:
    service = build_service(settings)
    try:
        print(await _run(service, args))
        return 0
    except FailureModeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await service.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AMFE failure-mode library")
    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Search failure modes")
    search.add_argument("--search", type=str, default=None, help="Text matched against mode or tags")
    search.add_argument("--category", type=str, default=None, help="Exact category")
    search.add_argument("--limit", type=int, default=None)
    search.add_argument("--offset", type=int, default=None)

    suggest = sub.add_parser("suggest", help="Autocomplete suggestions")
    suggest.add_argument("query", type=str)
    suggest.add_argument("--limit", type=int, default=10)

    sub.add_parser("categories", help="List categories")
    sub.add_parser("stats", help="Catalogue statistics")
    sub.add_parser("preload", help="Warm caches and refresh the offline store")
    sub.add_parser("offline-info", help="Show offline storage status")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Parse args and run one command."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except Exception as e:
        print(f"Failed to load settings: {e}", file=sys.stderr)
        print("Check your .env file has valid SUPABASE_URL and SUPABASE_ANON_KEY.", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(levelname)s: %(message)s",
    )
    sys.exit(asyncio.run(_main_async(args, settings)))


if __name__ == "__main__":
    main()
