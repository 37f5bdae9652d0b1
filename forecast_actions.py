"""Main entry point for the GitHub Actions usage forecaster.

This script orchestrates the forecast using the application service.
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional
from dotenv import load_dotenv
from gh_forecast.application.forecast_service import ForecastOutcome, ForecastService
from gh_forecast.application.options import ForecastOptions, build_options, resolve_cache_dir
from gh_forecast.domain.errors import ForecastError
from gh_forecast.infrastructure.auth import get_auth
from gh_forecast.infrastructure.file_cache import FileCacheStore
from gh_forecast.infrastructure.github_client import GitHubRestClient
from gh_forecast.presentation.report import format_bytes, render_csv, render_json, render_table

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


logger = logging.getLogger("gh_forecast")

_EMPTY_MESSAGES = {
    ForecastOutcome.NO_REPOSITORIES: "No repositories found in this organization.",
    ForecastOutcome.NO_RUNS: "No workflow runs found in the specified time period.",
    ForecastOutcome.NO_JOBS: "No completed jobs found.",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gh-forecast",
        description="Forecast GitHub Actions minutes usage for GHES organizations"
    )
    parser.add_argument("-o", "--org", help="GitHub organization name")
    parser.add_argument("-d", "--days", default="30",
                        help="Number of days to analyze (ignored if --start is used)")
    parser.add_argument("--start", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", help="End date (YYYY-MM-DD, defaults to today)")
    parser.add_argument("-H", "--host",
                        help="GitHub Enterprise Server hostname (e.g., github.mycompany.com)")
    parser.add_argument("-c", "--concurrency", help="API request concurrency limit (default: 5)")
    parser.add_argument("-m", "--map", dest="mappings",
                        help='Custom label-to-OS mappings (e.g., "runner-*:linux,mac-*:macos")')
    parser.add_argument("--output", default="table", choices=["table", "json", "csv"],
                        help="Output format")
    parser.add_argument("--group-by", default="day", choices=["day", "week", "month"],
                        help="Group results by period")
    parser.add_argument("--top-repos", default="10", help="Show top N repositories by usage")
    parser.add_argument("--show-workflows", action="store_true", help="Show workflow-level breakdown")
    parser.add_argument("--show-jobs", action="store_true", help="Show individual job details")
    parser.add_argument("--no-cache", dest="cache", action="store_false", help="Disable caching")
    parser.add_argument("--clear-cache", action="store_true", help="Clear all cached data and exit")
    parser.add_argument("--cache-ttl", help="Cache TTL in minutes (default: 30)")
    parser.add_argument("--verbose", action="store_true", help="Show detailed progress")
    return parser


def clear_cache(cache: FileCacheStore) -> None:
    """Handle --clear-cache."""
    if cache.stats().count == 0:
        print("Cache is already empty.")
        return
    result = cache.clear()
    print(f"Cleared {result.count} cached files ({format_bytes(result.bytes)} freed)")
    print(f"  Cache directory: {cache.cache_dir}")


def log_progress(tier: str, completed: int, total: int) -> None:
    """Log each unit at DEBUG and only the finished tier at INFO."""
    if completed >= total:
        logger.info(f"Fetched {tier}: {completed}/{total}")
    else:
        logger.debug(f"Fetching {tier}: {completed}/{total}")


def notify_rate_limit(retry_after: float, method: str, url: str) -> None:
    print(f"Rate limited. Retrying in {retry_after:.0f}s...", file=sys.stderr)


async def forecast(options: ForecastOptions) -> int:
    """Execute the forecast and print the report.

    Returns:
        Process exit code
    """
    cache = FileCacheStore(options.cache_dir)

    logger.info(f"Organization: {options.org}")
    logger.info(
        f"Date range: {options.since:%Y-%m-%d} to {options.until:%Y-%m-%d} "
        f"({options.day_count} days)"
    )
    if options.cache.enabled:
        stats = cache.stats()
        if stats.count > 0:
            logger.info(f"Cache: {stats.count} files ({format_bytes(stats.bytes)})")

    # Initialize infrastructure components
    auth = get_auth(options.host)
    github_client = GitHubRestClient(auth.token, base_url=auth.base_url, on_rate_limit=notify_rate_limit)

    # Initialize application service
    service = ForecastService(
        github_client=github_client,
        cache=cache,
        cache_config=options.cache,
        concurrency=options.concurrency
    )

    try:
        report = await service.run_forecast(
            options.org,
            options.since,
            options.until,
            label_mappings=options.label_mappings,
            on_progress=log_progress
        )
    finally:
        await service.close()

    if github_client.rate_limit_waits:
        logger.info(f"Waited out {github_client.rate_limit_waits} rate limits")

    if report.billing is None:
        print(_EMPTY_MESSAGES[report.outcome])
        return 0

    if options.output == "json":
        print(render_json(
            options.org, options.day_count, options.since, options.until, report.billing,
            show_jobs=options.show_jobs, group_by=options.group_by
        ))
    elif options.output == "csv":
        print(render_csv(report.billing, group_by=options.group_by), end="")
    else:
        print(render_table(
            options.org, options.day_count, options.since, options.until, report.billing,
            top_repos=options.top_repos,
            show_workflows=options.show_workflows,
            show_jobs=options.show_jobs,
            group_by=options.group_by
        ))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the forecast and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.clear_cache:
            clear_cache(FileCacheStore(resolve_cache_dir()))
            return 0

        if not args.org:
            parser.error("the following arguments are required: -o/--org")

        options = build_options(
            org=args.org,
            days=args.days,
            start=args.start,
            end=args.end,
            host=args.host,
            concurrency=args.concurrency,
            mappings=args.mappings,
            output=args.output,
            group_by=args.group_by,
            top_repos=args.top_repos,
            show_workflows=args.show_workflows,
            show_jobs=args.show_jobs,
            use_cache=args.cache,
            cache_ttl_minutes=args.cache_ttl
        )
        return asyncio.run(forecast(options))
    except ForecastError as e:
        logger.error(f"Error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Forecast failed: {e}", exc_info=True)
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
