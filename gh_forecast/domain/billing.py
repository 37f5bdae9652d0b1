"""Billing calculations for GitHub Actions jobs.

Classifies jobs by operating system from their runner labels, converts
wall-clock durations into billable minutes and folds them into usage
rollups with a cost estimate based on GitHub.com public pricing.
Everything here is pure: no network or disk access.
"""
import math
import re
from datetime import date, timedelta
from functools import lru_cache
from typing import Dict, Iterable, List, Pattern, Sequence, Set

from gh_forecast.domain.errors import ConfigurationError
from gh_forecast.domain.models import (
    AggregatedBilling,
    BillingResult,
    CostProjection,
    JobWithRepo,
    LabelMapping,
    OSType,
    RepoUsage,
    UsageBucket,
    WorkflowUsage,
    parse_timestamp,
)


# GitHub.com billing multipliers; unknown runners are billed like Linux
MULTIPLIERS: Dict[OSType, int] = {
    OSType.LINUX: 1,
    OSType.WINDOWS: 2,
    OSType.MACOS: 10,
    OSType.UNKNOWN: 1,
}

# USD per raw minute, GitHub.com public pricing
COST_PER_MINUTE: Dict[OSType, float] = {
    OSType.LINUX: 0.008,
    OSType.WINDOWS: 0.016,
    OSType.MACOS: 0.08,
    OSType.UNKNOWN: 0.008,
}

# Substring patterns for GitHub-hosted runner labels, first hit wins
DEFAULT_PATTERNS: Sequence[LabelMapping] = (
    LabelMapping("ubuntu", OSType.LINUX),
    LabelMapping("linux", OSType.LINUX),
    LabelMapping("windows", OSType.WINDOWS),
    LabelMapping("win", OSType.WINDOWS),
    LabelMapping("macos", OSType.MACOS),
    LabelMapping("mac", OSType.MACOS),
    LabelMapping("darwin", OSType.MACOS),
)

PERIODS = ("day", "week", "month")

_MAPPABLE_OS = {OSType.LINUX.value, OSType.WINDOWS.value, OSType.MACOS.value}


def parse_label_mappings(value: str) -> List[LabelMapping]:
    """Parse operator label mappings.

    Args:
        value: Comma-separated ``pattern:os`` pairs, e.g. ``"runner-*:linux,mac-*:macos"``

    Returns:
        Mappings in the order given

    Raises:
        ConfigurationError: If a pair is malformed or names an unsupported OS
    """
    if not value:
        return []

    mappings = []
    for raw in value.split(","):
        parts = raw.strip().split(":")
        pattern = parts[0]
        os_name = parts[1] if len(parts) > 1 else ""
        if not pattern or not os_name:
            raise ConfigurationError(
                f'Invalid label mapping: {raw}. Expected format: "pattern:os"'
            )

        os_name = os_name.lower()
        if os_name not in _MAPPABLE_OS:
            raise ConfigurationError(
                f"Invalid OS type: {parts[1]}. Must be linux, windows, or macos"
            )
        mappings.append(LabelMapping(pattern=pattern.lower(), os=OSType(os_name)))

    return mappings


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> Pattern[str]:
    """Translate a ``*`` glob into an anchored, case-insensitive regex."""
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(regex, re.IGNORECASE)


def matches_pattern(label: str, pattern: str) -> bool:
    """Check whether the whole label matches a ``*`` wildcard pattern."""
    return _compile_pattern(pattern).fullmatch(label) is not None


def detect_os(labels: Iterable[str], custom_mappings: Sequence[LabelMapping] = ()) -> OSType:
    """Detect the OS a job ran on from its runner labels.

    Custom mappings are tried first, each against every label, using glob
    matching. Otherwise the built-in patterns are tried in declared order
    as case-insensitive substrings.

    Args:
        labels: Runner labels of the job
        custom_mappings: Operator overrides, in priority order

    Returns:
        The detected OS, or ``OSType.UNKNOWN``
    """
    lower_labels = [label.lower() for label in labels]

    for mapping in custom_mappings:
        for label in lower_labels:
            if matches_pattern(label, mapping.pattern):
                return mapping.os

    for mapping in DEFAULT_PATTERNS:
        for label in lower_labels:
            if mapping.pattern in label:
                return mapping.os

    return OSType.UNKNOWN


def get_multiplier(os_type: OSType) -> int:
    """Get the billing multiplier for an OS type."""
    return MULTIPLIERS[os_type]


def calculate_duration_minutes(started_at: str, completed_at: str) -> int:
    """Calculate job duration in whole minutes, always rounding up.

    GitHub bills each job per started minute, so a one-second job is one minute.
    """
    duration = parse_timestamp(completed_at) - parse_timestamp(started_at)
    duration_ms = duration // timedelta(milliseconds=1)
    return math.ceil(duration_ms / 60000)


def calculate_billable_minutes(started_at: str, completed_at: str, multiplier: int) -> int:
    return calculate_duration_minutes(started_at, completed_at) * multiplier


def process_job(job: JobWithRepo, custom_mappings: Sequence[LabelMapping] = ()) -> BillingResult:
    """Compute billing details for a single completed job.

    Raises:
        ValueError: If the job has not completed
    """
    if job.completed_at is None:
        raise ValueError(f"Job {job.id} has not completed")

    os_type = detect_os(job.labels, custom_mappings)
    multiplier = get_multiplier(os_type)
    duration_minutes = calculate_duration_minutes(job.started_at, job.completed_at)

    return BillingResult(
        job=job,
        os=os_type,
        duration_minutes=duration_minutes,
        multiplier=multiplier,
        billable_minutes=duration_minutes * multiplier
    )


def _workflow_key(job: JobWithRepo) -> str:
    return f"{job.repo_full_name}/{job.workflow_name or 'unknown'}"


def aggregate_billing(
    jobs: Iterable[JobWithRepo],
    custom_mappings: Sequence[LabelMapping] = ()
) -> AggregatedBilling:
    """Fold completed jobs into OS, workflow, repository and date rollups.

    Jobs without a completion timestamp are skipped. The result does not
    depend on the order of ``jobs``.

    Args:
        jobs: Jobs denormalized with repository and workflow names
        custom_mappings: Operator label overrides for OS detection

    Returns:
        The aggregated billing data
    """
    by_os: Dict[OSType, UsageBucket] = {os_type: UsageBucket() for os_type in OSType}
    by_workflow: Dict[str, WorkflowUsage] = {}
    by_repo: Dict[str, RepoUsage] = {}
    by_date: Dict[str, UsageBucket] = {}
    results: List[BillingResult] = []
    seen_run_ids: Set[int] = set()
    total_minutes = 0
    total_billable_minutes = 0

    completed = [job for job in jobs if job.completed_at is not None]

    for job in completed:
        billing = process_job(job, custom_mappings)
        results.append(billing)
        seen_run_ids.add(job.run_id)

        total_minutes += billing.duration_minutes
        total_billable_minutes += billing.billable_minutes

        by_os[billing.os].add(billing)
        by_workflow.setdefault(_workflow_key(job), WorkflowUsage()).add(billing)

        repo_usage = by_repo.setdefault(job.repo_full_name, RepoUsage())
        repo_usage.add(billing)
        repo_usage.workflows.add(job.workflow_name or "unknown")

        # Calendar day of the raw timestamp, YYYY-MM-DD
        by_date.setdefault(job.started_at.split("T")[0], UsageBucket()).add(billing)

    # One run spawns many jobs, so run counts come from distinct run ids
    runs_by_workflow: Dict[str, Set[int]] = {}
    for job in completed:
        runs_by_workflow.setdefault(_workflow_key(job), set()).add(job.run_id)
    for key, run_ids in runs_by_workflow.items():
        by_workflow[key].run_count = len(run_ids)

    return AggregatedBilling(
        total_minutes=total_minutes,
        total_billable_minutes=total_billable_minutes,
        by_os=by_os,
        by_workflow=by_workflow,
        by_repo=by_repo,
        by_date=by_date,
        job_count=len(results),
        run_count=len(seen_run_ids),
        jobs=results
    )


def estimate_cost(billing: AggregatedBilling) -> float:
    """Estimate cost in USD from raw minutes per OS at GitHub.com rates.

    Note: GHES costs depend on the enterprise agreement; this is an estimate.
    """
    total_cost = 0.0
    for os_type, bucket in billing.by_os.items():
        total_cost += bucket.minutes * COST_PER_MINUTE[os_type]
    return total_cost


def project_costs(billing: AggregatedBilling, days: int) -> CostProjection:
    """Project cost forward from the analyzed period.

    Args:
        billing: Aggregated billing data
        days: Days the data spans; callers pass ``max(1, ...)``

    Returns:
        Daily, weekly (7 days) and monthly (30 days) projections
    """
    daily_cost = estimate_cost(billing) / days
    daily_minutes = billing.total_billable_minutes / days

    return CostProjection(
        daily=daily_cost,
        weekly=daily_cost * 7,
        monthly=daily_cost * 30,
        daily_billable_minutes=daily_minutes,
        weekly_billable_minutes=daily_minutes * 7,
        monthly_billable_minutes=daily_minutes * 30
    )


def _period_key(day: str, period: str) -> str:
    if period == "week":
        parsed = date.fromisoformat(day)
        return (parsed - timedelta(days=parsed.weekday())).isoformat()
    return day[:7]


def group_by_period(by_date: Dict[str, UsageBucket], period: str) -> Dict[str, UsageBucket]:
    """Re-bucket daily usage into Monday-start weeks or ``YYYY-MM`` months.

    The input is never modified; ``day`` returns copies of the daily buckets.

    Raises:
        ValueError: If period is not day, week or month
    """
    if period not in PERIODS:
        raise ValueError(f"Unsupported period: {period}")

    grouped: Dict[str, UsageBucket] = {}
    for day, bucket in by_date.items():
        key = day if period == "day" else _period_key(day, period)
        grouped.setdefault(key, UsageBucket()).merge(bucket)
    return grouped
