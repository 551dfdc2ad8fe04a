from __future__ import annotations

import argparse
import asyncio
import json
import logging

from feedmaker.config import YamlConfigLoader
from feedmaker.config.models import AppConfig, ConfigLoadRequest
from feedmaker.core.errors import FeedMakerError
from feedmaker.core.models import encode_item
from feedmaker.extract.heuristics import ExtractionOptions
from feedmaker.http.cache import HttpCache
from feedmaker.jobs.service import FeedService
from feedmaker.logging import init_logging

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedmaker", description="Generate and refresh feeds from web pages")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Command: generate
    generate_parser = subparsers.add_parser("generate", help="Create a feed job and publish its first file")
    generate_parser.add_argument("url", help="Page (or feed) URL")
    generate_parser.add_argument("--format", choices=["rss", "jsonfeed"], default="rss")
    generate_parser.add_argument("--limit", type=int, default=None)
    generate_parser.add_argument("--native", action="store_true", help="Prefer the site's own feed when one exists")
    generate_parser.add_argument("--include", action="append", default=[], help="Keep items containing this keyword")
    generate_parser.add_argument("--exclude", action="append", default=[], help="Drop items containing this keyword")
    generate_parser.add_argument("--allow-empty", action="store_true", help="Treat empty results as a skip")
    generate_parser.add_argument("--interval", type=int, default=None, help="Refresh interval in seconds")
    _add_selector_arguments(generate_parser)

    # Command: list
    subparsers.add_parser("list", help="List feed jobs")

    # Command: refresh
    refresh_parser = subparsers.add_parser("refresh", help="Refresh all due jobs")
    refresh_parser.add_argument("--max", type=int, default=None, help="Refresh at most N jobs in this run")

    # Command: refresh-job
    refresh_job_parser = subparsers.add_parser("refresh-job", help="Refresh one job now")
    refresh_job_parser.add_argument("job_id")

    # Command: delete
    delete_parser = subparsers.add_parser("delete", help="Delete a job and its feed file")
    delete_parser.add_argument("job_id")

    # Command: filters
    filters_parser = subparsers.add_parser("filters", help="Replace a job's keyword filters")
    filters_parser.add_argument("job_id")
    filters_parser.add_argument("--include", action="append", default=[])
    filters_parser.add_argument("--exclude", action="append", default=[])

    # Command: extract
    extract_parser = subparsers.add_parser("extract", help="Show the items extracted from a page")
    extract_parser.add_argument("url")
    extract_parser.add_argument("--limit", type=int, default=None)
    _add_selector_arguments(extract_parser)

    # Command: discover
    discover_parser = subparsers.add_parser("discover", help="List feeds advertised by a page")
    discover_parser.add_argument("url")

    # Command: runs
    runs_parser = subparsers.add_parser("runs", help="Show recent batch refresh runs")
    runs_parser.add_argument("--limit", type=int, default=5)

    # Command: clear-cache
    subparsers.add_parser("clear-cache", help="Delete all cached HTTP responses")

    return parser


def _add_selector_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--item-selector", default=None, help="CSS selector for item containers")
    parser.add_argument("--title-selector", default=None, help="CSS selector for the title within an item")
    parser.add_argument("--summary-selector", default=None, help="CSS selector for the summary within an item")


def _extraction_options(args: argparse.Namespace) -> ExtractionOptions:
    return ExtractionOptions(
        item_selector=args.item_selector,
        title_selector=args.title_selector,
        summary_selector=args.summary_selector,
    )


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


async def _run_command(args: argparse.Namespace, config: AppConfig) -> int:
    if args.command == "clear-cache":
        removed = HttpCache(config.storage.cache_dir).clear()
        print(f"Removed {removed} cache files.")
        return 0

    async with FeedService.from_config(config) as service:
        if args.command == "generate":
            job = await service.create_job(
                args.url,
                format=args.format,
                limit=args.limit,
                mode="native" if args.native else "custom",
                include_keywords=args.include,
                exclude_keywords=args.exclude,
                allow_empty=args.allow_empty,
                refresh_interval=args.interval,
                extraction=_extraction_options(args),
            )
            _print_json(
                {
                    "job_id": job.job_id,
                    "mode": job.mode,
                    "feed_url": job.feed_url,
                    "items": job.items_count,
                    "warnings": job.last_validation.warnings if job.last_validation else [],
                }
            )
            return 0

        if args.command == "list":
            for job in service.list_jobs():
                print(
                    f"{job.job_id}  {job.mode:<6} {job.format:<8} {job.last_refresh_status or '-':<4} "
                    f"streak={job.failure_streak} items={job.items_count} {job.source_url}"
                )
            stats = service.statistics()
            print(f"total={stats.total} native={stats.native} failing={stats.failing} critical={stats.critical}")
            return 0

        if args.command == "refresh":
            summary = await service.run_batch(max_jobs=args.max)
            if summary is None:
                print("Another refresh run is in progress.")
                return 0
            _print_json(summary.to_dict())
            return 1 if summary.failures else 0

        if args.command == "refresh-job":
            ok = await service.refresh_job(args.job_id)
            return 0 if ok else 1

        if args.command == "delete":
            service.delete_job(args.job_id)
            return 0

        if args.command == "filters":
            if not service.update_filters(args.job_id, args.include, args.exclude):
                logger.error("Job not found. job_id=%s", args.job_id)
                return 1
            return 0

        if args.command == "extract":
            items, report = await service.preview(args.url, limit=args.limit, options=_extraction_options(args))
            _print_json(
                {
                    "base_url": report.base_url,
                    "jsonld_count": report.jsonld_count,
                    "custom_selector_matches": report.custom_selector_matches,
                    "dom_count": report.dom_count,
                    "items": [encode_item(item) for item in items],
                }
            )
            return 0

        if args.command == "discover":
            feeds = await service.discover(args.url)
            _print_json([{"href": f.href, "type": f.type, "title": f.title} for f in feeds])
            return 0

        if args.command == "runs":
            _print_json(service.orchestrator.recent_runs(args.limit))
            return 0

    return 2


async def _main_async() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    config = await _load_config(args)
    init_logging(config.logging)
    try:
        return await _run_command(args, config)
    except FeedMakerError as e:
        logger.error("%s", e)
        return 1
    except ValueError as e:
        logger.error("Invalid input. error=%s", e)
        return 2


def main() -> None:
    try:
        raise SystemExit(asyncio.run(_main_async()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
