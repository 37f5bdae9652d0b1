"""Operator options and their validation.

All checks run before any network access so that bad input fails fast.
"""
import os
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import List, Mapping, Optional, Tuple
from gh_forecast.domain.billing import PERIODS, parse_label_mappings
from gh_forecast.domain.errors import ConfigurationError
from gh_forecast.domain.models import CacheConfig, LabelMapping
from gh_forecast.infrastructure.file_cache import DEFAULT_CACHE_DIR

OUTPUT_FORMATS = ("table", "json", "csv")


@dataclass(frozen=True)
class ForecastOptions:
    """Validated settings for one forecast invocation."""
    org: str
    since: datetime
    until: datetime
    day_count: int
    concurrency: int = 5
    label_mappings: List[LabelMapping] = field(default_factory=list)
    output: str = "table"
    group_by: str = "day"
    top_repos: int = 10
    show_workflows: bool = False
    show_jobs: bool = False
    cache: CacheConfig = CacheConfig()
    cache_dir: Path = DEFAULT_CACHE_DIR
    host: Optional[str] = None


def parse_day(value: str, option: str) -> datetime:
    """Parse ``YYYY-MM-DD`` into midnight UTC of that day."""
    try:
        day = date.fromisoformat(value)
    except ValueError as e:
        raise ConfigurationError(f"{option} must be a date in YYYY-MM-DD format, got {value!r}") from e
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def parse_positive_int(value: str, option: str, allow_zero: bool = False) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{option} must be a whole number, got {value!r}") from e
    if number < 0 or (number == 0 and not allow_zero):
        raise ConfigurationError(f"{option} must be a positive number, got {value!r}")
    return number


def resolve_date_range(
    days: str = "30",
    start: Optional[str] = None,
    end: Optional[str] = None,
    now: Optional[datetime] = None
) -> Tuple[datetime, datetime, int]:
    """Resolve the analysis window.

    With ``start`` the window runs from that day (00:00 UTC) to ``end``
    (00:00 UTC) or now; otherwise it covers the last ``days`` days.

    Returns:
        (since, until, day_count), where day_count is at least 1
    """
    now = now or datetime.now(timezone.utc)

    if start:
        since = parse_day(start, "--start")
        until = parse_day(end, "--end") if end else now
    else:
        day_span = parse_positive_int(days, "--days")
        until = now
        since = until - timedelta(days=day_span)

    if until < since:
        raise ConfigurationError("--end must not be before --start")

    day_count = max(1, (until - since).days)
    return since, until, day_count


def resolve_cache_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    """Cache directory from GH_FORECAST_CACHE_DIR, else the default."""
    env = os.environ if env is None else env
    if env.get("GH_FORECAST_CACHE_DIR"):
        return Path(env["GH_FORECAST_CACHE_DIR"]).expanduser()
    return DEFAULT_CACHE_DIR


def build_options(
    org: str,
    days: str = "30",
    start: Optional[str] = None,
    end: Optional[str] = None,
    host: Optional[str] = None,
    concurrency: Optional[str] = None,
    mappings: Optional[str] = None,
    output: str = "table",
    group_by: str = "day",
    top_repos: str = "10",
    show_workflows: bool = False,
    show_jobs: bool = False,
    use_cache: bool = True,
    cache_ttl_minutes: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    now: Optional[datetime] = None
) -> ForecastOptions:
    """Validate raw operator input into ForecastOptions.

    Unset concurrency, cache TTL and cache directory fall back to
    ``GH_FORECAST_CONCURRENCY``, ``GH_FORECAST_CACHE_TTL_MINUTES`` and
    ``GH_FORECAST_CACHE_DIR``.

    Raises:
        ConfigurationError: On any invalid value
    """
    env = os.environ if env is None else env

    if not org:
        raise ConfigurationError("An organization is required")
    if output not in OUTPUT_FORMATS:
        raise ConfigurationError(f"--output must be one of {', '.join(OUTPUT_FORMATS)}")
    if group_by not in PERIODS:
        raise ConfigurationError(f"--group-by must be one of {', '.join(PERIODS)}")

    since, until, day_count = resolve_date_range(days, start, end, now)

    concurrency = concurrency or env.get("GH_FORECAST_CONCURRENCY", "5")
    ttl_minutes = cache_ttl_minutes or env.get("GH_FORECAST_CACHE_TTL_MINUTES", "30")

    return ForecastOptions(
        org=org,
        since=since,
        until=until,
        day_count=day_count,
        concurrency=parse_positive_int(concurrency, "--concurrency"),
        label_mappings=parse_label_mappings(mappings or ""),
        output=output,
        group_by=group_by,
        top_repos=parse_positive_int(top_repos, "--top-repos"),
        show_workflows=show_workflows,
        show_jobs=show_jobs,
        cache=CacheConfig(
            enabled=use_cache,
            ttl_ms=parse_positive_int(ttl_minutes, "--cache-ttl", allow_zero=True) * 60 * 1000
        ),
        cache_dir=resolve_cache_dir(env),
        host=host
    )
