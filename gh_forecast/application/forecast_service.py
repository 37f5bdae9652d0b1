"""Forecast service orchestrating the repos -> runs -> jobs fetch and billing."""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar
from gh_forecast.domain.billing import aggregate_billing
from gh_forecast.domain.cache_interface import ICacheStore
from gh_forecast.domain.github_interface import IGitHubClient
from gh_forecast.domain.models import (
    AggregatedBilling,
    CacheConfig,
    ForecastMetrics,
    JobWithRepo,
    LabelMapping,
    Repository,
    WorkflowRun,
)


logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5

T = TypeVar("T")
R = TypeVar("R")

TierProgress = Callable[[int, int], None]
ForecastProgress = Callable[[str, int, int], None]


class ForecastOutcome(Enum):
    """How far a forecast got before finishing."""
    COMPLETED = "completed"
    NO_REPOSITORIES = "no_repositories"
    NO_RUNS = "no_runs"
    NO_JOBS = "no_jobs"


@dataclass(frozen=True)
class ForecastReport:
    """Result of a forecast run.

    ``billing`` is only set when the outcome is COMPLETED.
    """
    outcome: ForecastOutcome
    metrics: ForecastMetrics
    billing: Optional[AggregatedBilling] = None


class _ProgressCounter:
    """Completed-unit counter shared by the workers of one tier.

    Increments and callbacks run without an await in between, so on the
    event loop they are serialized and counts never go backwards.
    """

    def __init__(self, total: int, on_progress: Optional[TierProgress]):
        self._total = total
        self._on_progress = on_progress
        self.completed = 0

    def increment(self) -> None:
        self.completed += 1
        if self._on_progress is not None:
            self._on_progress(self.completed, self._total)


class ForecastService:
    """Application service for fetching Actions history and aggregating billing.

    Walks the three-tier hierarchy strictly in order: repositories, then the
    workflow runs of every repository, then the jobs of every run. Each tier
    is served from the cache when a fresh entry exists; otherwise its parents
    are spread over a fixed pool of workers and the flattened result is
    cached once the whole tier has finished.
    """

    def __init__(
        self,
        github_client: IGitHubClient,
        cache: ICacheStore,
        cache_config: CacheConfig = CacheConfig(),
        concurrency: int = DEFAULT_CONCURRENCY
    ):
        """Initialize forecast service.

        Args:
            github_client: GitHub API client implementation
            cache: Cache store implementation
            cache_config: Whether to use the cache and how old entries may be
            concurrency: Maximum in-flight requests per tier
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._github_client = github_client
        self._cache = cache
        self._cache_config = cache_config
        self._concurrency = concurrency

    def _cache_get(self, key_parts: Sequence[str]) -> Optional[Any]:
        if not self._cache_config.enabled:
            return None
        return self._cache.get(key_parts, self._cache_config.ttl_ms)

    def _cache_set(self, key_parts: Sequence[str], data: Any) -> None:
        if self._cache_config.enabled:
            self._cache.set(key_parts, data, self._cache_config.ttl_ms)

    async def _run_pool(
        self,
        parents: Sequence[T],
        fetch: Callable[[T], Awaitable[List[R]]],
        on_progress: Optional[TierProgress]
    ) -> List[R]:
        """Fetch children for every parent with at most ``concurrency`` in flight.

        Results are flattened in completion order.
        """
        queue: "asyncio.Queue[T]" = asyncio.Queue()
        for parent in parents:
            queue.put_nowait(parent)

        counter = _ProgressCounter(len(parents), on_progress)
        chunks: List[List[R]] = []

        async def worker() -> None:
            while True:
                try:
                    parent = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                chunks.append(await fetch(parent))
                counter.increment()

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self._concurrency, len(parents)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            raise

        return [item for chunk in chunks for item in chunk]

    async def fetch_repositories(
        self,
        org: str,
        on_progress: Optional[TierProgress] = None
    ) -> List[Repository]:
        """Fetch all repositories of the organization.

        Args:
            org: Organization login
            on_progress: Called with (count, count) as pages arrive

        Returns:
            Repository entities
        """
        cache_key = ["repos", org]
        cached = self._cache_get(cache_key)
        if cached is not None:
            repos = [Repository.from_dict(item) for item in cached]
            logger.info(f"Loaded {len(repos)} repositories from cache")
            if on_progress is not None:
                on_progress(len(repos), len(repos))
            return repos

        def on_page(count: int) -> None:
            if on_progress is not None:
                on_progress(count, count)

        repos = await self._github_client.list_org_repos(org, on_page=on_page)
        self._cache_set(cache_key, [repo.to_dict() for repo in repos])
        return repos

    async def fetch_workflow_runs(
        self,
        repos: Sequence[Repository],
        since: datetime,
        until: datetime,
        on_progress: Optional[TierProgress] = None
    ) -> List[WorkflowRun]:
        """Fetch completed workflow runs created within [since, until] for every repository.

        Args:
            repos: Repositories to scan
            since: Start of the window (inclusive)
            until: End of the window (inclusive)
            on_progress: Called with (repositories done, repositories total)

        Returns:
            Runs in the order their repositories finished
        """
        cache_key = [
            "runs",
            ",".join(sorted(repo.full_name for repo in repos)),
            since.isoformat(),
            until.isoformat(),
        ]
        cached = self._cache_get(cache_key)
        if cached is not None:
            runs = [WorkflowRun.from_dict(item) for item in cached]
            logger.info(f"Loaded {len(runs)} workflow runs from cache")
            if on_progress is not None:
                on_progress(len(repos), len(repos))
            return runs

        async def fetch(repo: Repository) -> List[WorkflowRun]:
            return await self._github_client.list_workflow_runs(repo.owner, repo.name, since, until)

        runs = await self._run_pool(repos, fetch, on_progress)
        self._cache_set(cache_key, [run.to_dict() for run in runs])
        return runs

    async def fetch_jobs(
        self,
        runs: Sequence[WorkflowRun],
        on_progress: Optional[TierProgress] = None
    ) -> List[JobWithRepo]:
        """Fetch completed jobs for every run, tagged with repository and workflow.

        Args:
            runs: Workflow runs to expand
            on_progress: Called with (runs done, runs total)

        Returns:
            Completed jobs in the order their runs finished
        """
        cache_key = ["jobs", ",".join(sorted(str(run.id) for run in runs))]
        cached = self._cache_get(cache_key)
        if cached is not None:
            jobs = [JobWithRepo.from_dict(item) for item in cached]
            logger.info(f"Loaded {len(jobs)} jobs from cache")
            if on_progress is not None:
                on_progress(len(runs), len(runs))
            return jobs

        async def fetch(run: WorkflowRun) -> List[JobWithRepo]:
            repository = run.repository
            jobs = await self._github_client.list_run_jobs(repository.owner, repository.name, run.id)
            return [job.with_run(run) for job in jobs if job.is_completed]

        jobs = await self._run_pool(runs, fetch, on_progress)
        self._cache_set(cache_key, [job.to_dict() for job in jobs])
        return jobs

    async def run_forecast(
        self,
        org: str,
        since: datetime,
        until: datetime,
        label_mappings: Sequence[LabelMapping] = (),
        on_progress: Optional[ForecastProgress] = None
    ) -> ForecastReport:
        """Fetch an organization's Actions history and aggregate its billing.

        Stops early, with a distinct outcome, when a tier comes back empty.

        Args:
            org: Organization login
            since: Start of the window
            until: End of the window
            label_mappings: Operator label overrides for OS detection
            on_progress: Called with (tier, completed, total); tier is repos, runs or jobs

        Returns:
            ForecastReport with metrics and, when completed, the billing rollups
        """
        start_time = time.time()

        def tier_progress(tier: str) -> Optional[TierProgress]:
            if on_progress is None:
                return None
            return lambda completed, total: on_progress(tier, completed, total)

        def report(outcome: ForecastOutcome, repos: int, runs: int, jobs: int,
                   billing: Optional[AggregatedBilling] = None) -> ForecastReport:
            metrics = ForecastMetrics(
                repositories_scanned=repos,
                runs_fetched=runs,
                jobs_fetched=jobs,
                duration_seconds=time.time() - start_time
            )
            return ForecastReport(outcome=outcome, metrics=metrics, billing=billing)

        logger.info(f"Starting forecast for {org} from {since.isoformat()} to {until.isoformat()}")

        repos = await self.fetch_repositories(org, tier_progress("repos"))
        if not repos:
            return report(ForecastOutcome.NO_REPOSITORIES, 0, 0, 0)

        runs = await self.fetch_workflow_runs(repos, since, until, tier_progress("runs"))
        if not runs:
            return report(ForecastOutcome.NO_RUNS, len(repos), 0, 0)

        jobs = await self.fetch_jobs(runs, tier_progress("jobs"))
        if not jobs:
            return report(ForecastOutcome.NO_JOBS, len(repos), len(runs), 0)

        billing = aggregate_billing(jobs, label_mappings)
        result = report(ForecastOutcome.COMPLETED, len(repos), len(runs), len(jobs), billing)

        logger.info(
            f"Forecast fetch completed in {result.metrics.duration_seconds:.1f}s: "
            f"{len(repos)} repos, {len(runs)} runs, {len(jobs)} jobs"
        )
        return result

    async def close(self) -> None:
        """Close connections."""
        await self._github_client.close()
