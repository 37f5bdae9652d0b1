"""Render aggregated billing as a table report, JSON or CSV.

Renderers only read the AggregatedBilling value and return text; printing
is left to the caller.
"""
import csv
import io
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from tabulate import tabulate
from gh_forecast.domain.billing import (
    COST_PER_MINUTE,
    MULTIPLIERS,
    estimate_cost,
    group_by_period,
    project_costs,
)
from gh_forecast.domain.models import AggregatedBilling, OSType

MAX_JOB_ROWS = 20

_PERIOD_TITLES = {"day": "Daily", "week": "Weekly", "month": "Monthly"}


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _section(title: str) -> str:
    return "\n".join(["", "=" * 60, title, "=" * 60])


def render_table(
    org: str,
    days: int,
    since: datetime,
    until: datetime,
    billing: AggregatedBilling,
    top_repos: int = 10,
    show_workflows: bool = False,
    show_jobs: bool = False,
    group_by: str = "day"
) -> str:
    """Render the human-readable report.

    Args:
        org: Organization login
        days: Days the data spans
        since: Start of the window
        until: End of the window
        billing: Aggregated billing data
        top_repos: Number of repositories to list
        show_workflows: Include the per-workflow breakdown
        show_jobs: Include the most expensive individual jobs
        group_by: Period for the time-series breakdown
    """
    estimated_cost = estimate_cost(billing)
    projections = project_costs(billing, days)
    lines: List[str] = [
        f"GitHub Actions Forecast for {org}",
        f"Period: {since:%b %d, %Y} - {until:%b %d, %Y} ({days} days)",
        _section("Summary"),
        tabulate(
            [
                ["Total Workflow Runs", f"{billing.run_count:,}"],
                ["Total Jobs", f"{billing.job_count:,}"],
                ["Total Minutes", f"{billing.total_minutes:,}"],
                ["Billable Minutes (weighted)", f"{billing.total_billable_minutes:,}"],
                ["Estimated Cost (period)", f"${estimated_cost:,.2f}"],
            ],
            headers=["Metric", "Value"]
        ),
    ]

    os_rows = [
        [
            os_type.value.capitalize(),
            f"{bucket.job_count:,}",
            f"{bucket.minutes:,}",
            f"{MULTIPLIERS[os_type]}x",
            f"{bucket.billable_minutes:,}",
        ]
        for os_type, bucket in billing.by_os.items()
        if bucket.job_count > 0
    ]
    lines += [
        _section("Usage by Operating System"),
        tabulate(os_rows, headers=["OS", "Jobs", "Minutes", "Multiplier", "Billable Min"]),
    ]

    grouped = group_by_period(billing.by_date, group_by)
    if len(grouped) > 1:
        period_rows = [
            [period, f"{bucket.job_count:,}", f"{bucket.minutes:,}", f"{bucket.billable_minutes:,}"]
            for period, bucket in sorted(grouped.items())
        ]
        lines += [
            _section(f"{_PERIOD_TITLES[group_by]} Breakdown"),
            tabulate(
                period_rows,
                headers=["Month" if group_by == "month" else "Period", "Jobs", "Minutes", "Billable Min"]
            ),
        ]

    repos = sorted(billing.by_repo.items(), key=lambda item: item[1].billable_minutes, reverse=True)[:top_repos]
    if repos:
        repo_rows = [
            [
                repo,
                f"{len(usage.workflows):,}",
                f"{usage.job_count:,}",
                f"{usage.minutes:,}",
                f"{usage.billable_minutes:,}",
            ]
            for repo, usage in repos
        ]
        lines += [
            _section(f"Top {len(repos)} Repositories by Usage"),
            tabulate(repo_rows, headers=["Repository", "Workflows", "Jobs", "Minutes", "Billable Min"]),
        ]

    if show_workflows and billing.by_workflow:
        workflows = sorted(
            billing.by_workflow.items(), key=lambda item: item[1].billable_minutes, reverse=True
        )
        workflow_rows = [
            [
                workflow,
                f"{usage.run_count:,}",
                f"{usage.job_count:,}",
                f"{usage.minutes:,}",
                f"{usage.billable_minutes:,}",
            ]
            for workflow, usage in workflows
        ]
        lines += [
            _section("Workflow Breakdown"),
            tabulate(workflow_rows, headers=["Workflow", "Runs", "Jobs", "Minutes", "Billable Min"]),
        ]

    if show_jobs:
        top_jobs = sorted(billing.jobs, key=lambda result: result.billable_minutes, reverse=True)[:MAX_JOB_ROWS]
        job_rows = [
            [
                result.job.name[:24],
                result.job.repo_full_name,
                result.os.value,
                result.duration_minutes,
                result.billable_minutes,
                ", ".join(result.job.labels)[:29],
            ]
            for result in top_jobs
        ]
        lines += [
            _section("Individual Job Details"),
            tabulate(job_rows, headers=["Job", "Repo", "OS", "Minutes", "Billable", "Labels"]),
        ]
        if len(billing.jobs) > MAX_JOB_ROWS:
            lines.append(f"   ... and {len(billing.jobs) - MAX_JOB_ROWS} more jobs")

    lines += [
        _section("Cost Projections (based on GitHub.com pricing)"),
        tabulate(
            [
                ["Daily", f"{round(projections.daily_billable_minutes):,}", f"${projections.daily:,.2f}"],
                ["Weekly", f"{round(projections.weekly_billable_minutes):,}", f"${projections.weekly:,.2f}"],
                ["Monthly", f"{round(projections.monthly_billable_minutes):,}", f"${projections.monthly:,.2f}"],
            ],
            headers=["Period", "Billable Min", "Est. Cost"]
        ),
        "",
        "Note: Cost estimates based on GitHub.com public pricing.",
        "   Actual GHES costs may vary based on your enterprise agreement.",
        f"   Pricing: Linux ${COST_PER_MINUTE[OSType.LINUX]}/min, "
        f"Windows ${COST_PER_MINUTE[OSType.WINDOWS]}/min, "
        f"macOS ${COST_PER_MINUTE[OSType.MACOS]}/min",
    ]
    return "\n".join(lines)


def build_json_report(
    org: str,
    days: int,
    since: datetime,
    until: datetime,
    billing: AggregatedBilling,
    show_jobs: bool = False,
    group_by: str = "day",
    generated_at: Optional[datetime] = None
) -> Dict[str, Any]:
    """Build the machine-readable report as a JSON-serializable dict."""
    rollups = billing.to_dict()
    generated_at = generated_at or datetime.now(timezone.utc)

    report: Dict[str, Any] = {
        "organization": org,
        "dateRange": {
            "start": since.date().isoformat(),
            "end": until.date().isoformat(),
            "days": days,
        },
        "generatedAt": generated_at.isoformat(),
        "summary": {
            "totalRuns": billing.run_count,
            "totalJobs": billing.job_count,
            "totalMinutes": billing.total_minutes,
            "totalBillableMinutes": billing.total_billable_minutes,
            "estimatedCost": estimate_cost(billing),
        },
        "byOS": rollups["byOS"],
        "byWorkflow": rollups["byWorkflow"],
        "byRepo": rollups["byRepo"],
        "byPeriod": {
            period: bucket.to_dict()
            for period, bucket in sorted(group_by_period(billing.by_date, group_by).items())
        },
        "projections": project_costs(billing, days).to_dict(),
    }

    if show_jobs:
        report["jobs"] = [
            {
                "name": result.job.name,
                "repo": result.job.repo_full_name,
                "workflow": result.job.workflow_name,
                "os": result.os.value,
                "durationMinutes": result.duration_minutes,
                "billableMinutes": result.billable_minutes,
                "labels": list(result.job.labels),
                "startedAt": result.job.started_at,
                "completedAt": result.job.completed_at,
            }
            for result in billing.jobs
        ]

    return report


def render_json(*args: Any, **kwargs: Any) -> str:
    """Render ``build_json_report`` output as indented JSON."""
    return json.dumps(build_json_report(*args, **kwargs), indent=2)


def render_csv(billing: AggregatedBilling, group_by: str = "day") -> str:
    """Render period usage as CSV rows sorted by period."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["period", "minutes", "billable_minutes", "jobs"])
    for period, bucket in sorted(group_by_period(billing.by_date, group_by).items()):
        writer.writerow([period, bucket.minutes, bucket.billable_minutes, bucket.job_count])
    return buffer.getvalue()
