"""Tests for the forecast service fetch pipeline."""
import asyncio
from datetime import datetime, timezone

import pytest

from gh_forecast.application.forecast_service import ForecastOutcome, ForecastService
from gh_forecast.domain.github_interface import IGitHubClient
from gh_forecast.domain.models import CacheConfig, OSType, WorkflowJob
from gh_forecast.infrastructure.file_cache import FileCacheStore

SINCE = datetime(2024, 1, 1, tzinfo=timezone.utc)
UNTIL = datetime(2024, 1, 31, tzinfo=timezone.utc)


class FakeGitHubClient(IGitHubClient):
    """In-memory client that records call counts and in-flight concurrency."""

    def __init__(self, repos, runs_by_repo, jobs_by_run, latency=0.01):
        self.repos = repos
        self.runs_by_repo = runs_by_repo
        self.jobs_by_run = jobs_by_run
        self.latency = latency
        self.calls = {"repos": 0, "runs": 0, "jobs": 0}
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def _simulate(self):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.latency)
        finally:
            self.in_flight -= 1

    async def list_org_repos(self, org, on_page=None):
        self.calls["repos"] += 1
        await self._simulate()
        if on_page:
            on_page(len(self.repos))
        return list(self.repos)

    async def list_workflow_runs(self, owner, repo, since, until):
        self.calls["runs"] += 1
        await self._simulate()
        return list(self.runs_by_repo.get(f"{owner}/{repo}", []))

    async def list_run_jobs(self, owner, repo, run_id):
        self.calls["jobs"] += 1
        await self._simulate()
        return list(self.jobs_by_run.get(run_id, []))

    async def close(self):
        self.closed = True


def raw_job(job_id, run_id, labels=("ubuntu-latest",), completed_at="2024-01-15T10:05:00Z"):
    return WorkflowJob(
        id=job_id,
        run_id=run_id,
        name=f"job-{job_id}",
        status="completed" if completed_at else "in_progress",
        conclusion="success" if completed_at else None,
        started_at="2024-01-15T10:00:00Z",
        completed_at=completed_at,
        labels=tuple(labels),
        runner_name=None,
        runner_group_name=None
    )


@pytest.fixture
def client(make_repo, make_run):
    repos = [make_repo("acme/api"), make_repo("acme/web"), make_repo("acme/empty")]
    runs_by_repo = {
        "acme/api": [make_run(1, "acme/api", "CI"), make_run(2, "acme/api", "CI")],
        "acme/web": [make_run(3, "acme/web", None)],
    }
    jobs_by_run = {
        1: [raw_job(10, 1), raw_job(11, 1, labels=("windows-latest",))],
        2: [raw_job(12, 2, labels=("macos-14",))],
        3: [raw_job(13, 3), raw_job(14, 3, completed_at=None)],
    }
    return FakeGitHubClient(repos, runs_by_repo, jobs_by_run)


@pytest.fixture
def cache(tmp_path):
    return FileCacheStore(tmp_path / "cache")


def test_run_forecast_aggregates_all_tiers(client, cache):
    """Test the full pipeline produces rollups from every completed job."""
    service = ForecastService(client, cache)

    report = asyncio.run(service.run_forecast("acme", SINCE, UNTIL))

    assert report.outcome == ForecastOutcome.COMPLETED
    assert report.metrics.repositories_scanned == 3
    assert report.metrics.runs_fetched == 3
    assert report.metrics.jobs_fetched == 4
    billing = report.billing
    assert billing.job_count == 4
    assert billing.run_count == 3
    assert billing.by_os[OSType.MACOS].job_count == 1
    assert billing.by_workflow["acme/web/unknown"].job_count == 1
    assert client.calls == {"repos": 1, "runs": 3, "jobs": 3}


def test_jobs_are_denormalized_and_running_jobs_dropped(client, cache, make_run):
    service = ForecastService(client, cache, CacheConfig(enabled=False))

    jobs = asyncio.run(service.fetch_jobs([make_run(3, "acme/web", None)]))

    assert [job.id for job in jobs] == [13]
    assert jobs[0].repo_full_name == "acme/web"
    assert jobs[0].workflow_name == "unknown"


def test_concurrency_bound_is_never_exceeded(make_repo):
    """Test no more than N fetches are in flight at once."""
    repos = [make_repo(f"acme/repo-{i}") for i in range(20)]
    client = FakeGitHubClient(repos, {}, {}, latency=0.02)
    service = ForecastService(client, cache=None, cache_config=CacheConfig(enabled=False), concurrency=3)

    runs = asyncio.run(service.fetch_workflow_runs(repos, SINCE, UNTIL))

    assert runs == []
    assert client.calls["runs"] == 20
    assert client.max_in_flight == 3


def test_progress_is_monotonic_and_complete(client, cache):
    events = []
    service = ForecastService(client, cache, CacheConfig(enabled=False), concurrency=2)

    asyncio.run(service.run_forecast(
        "acme", SINCE, UNTIL, on_progress=lambda tier, done, total: events.append((tier, done, total))
    ))

    runs_progress = [(done, total) for tier, done, total in events if tier == "runs"]
    assert runs_progress == [(1, 3), (2, 3), (3, 3)]
    jobs_progress = [done for tier, done, total in events if tier == "jobs"]
    assert jobs_progress == [1, 2, 3]
    assert ("repos", 3, 3) in events


def test_second_run_is_served_from_cache(client, cache):
    """Test every tier is cached after a complete fetch."""
    service = ForecastService(client, cache)
    first = asyncio.run(service.run_forecast("acme", SINCE, UNTIL))

    events = []
    second = asyncio.run(service.run_forecast(
        "acme", SINCE, UNTIL, on_progress=lambda tier, done, total: events.append((tier, done, total))
    ))

    assert client.calls == {"repos": 1, "runs": 3, "jobs": 3}
    assert second.billing.to_dict() == first.billing.to_dict()
    assert events == [("repos", 3, 3), ("runs", 3, 3), ("jobs", 3, 3)]


def test_disabled_cache_never_reads_or_writes(client, cache):
    service = ForecastService(client, cache, CacheConfig(enabled=False))

    asyncio.run(service.run_forecast("acme", SINCE, UNTIL))
    asyncio.run(service.run_forecast("acme", SINCE, UNTIL))

    assert client.calls["repos"] == 2
    assert cache.stats().count == 0


def test_runs_cache_key_depends_on_date_range(client, cache):
    service = ForecastService(client, cache)
    repos = asyncio.run(service.fetch_repositories("acme"))

    asyncio.run(service.fetch_workflow_runs(repos, SINCE, UNTIL))
    asyncio.run(service.fetch_workflow_runs(repos, SINCE, datetime(2024, 2, 1, tzinfo=timezone.utc)))

    assert client.calls["runs"] == 6


def test_no_repositories_outcome(cache):
    client = FakeGitHubClient([], {}, {})
    report = asyncio.run(ForecastService(client, cache).run_forecast("acme", SINCE, UNTIL))

    assert report.outcome == ForecastOutcome.NO_REPOSITORIES
    assert report.billing is None
    assert client.calls["runs"] == 0


def test_no_runs_outcome(make_repo, cache):
    client = FakeGitHubClient([make_repo()], {}, {})
    report = asyncio.run(ForecastService(client, cache).run_forecast("acme", SINCE, UNTIL))

    assert report.outcome == ForecastOutcome.NO_RUNS
    assert client.calls["jobs"] == 0


def test_no_completed_jobs_outcome(make_repo, make_run, cache):
    client = FakeGitHubClient(
        [make_repo()],
        {"acme/api": [make_run(1)]},
        {1: [raw_job(10, 1, completed_at=None)]}
    )
    report = asyncio.run(ForecastService(client, cache).run_forecast("acme", SINCE, UNTIL))

    assert report.outcome == ForecastOutcome.NO_JOBS
    assert report.metrics.runs_fetched == 1


class FailingClient(FakeGitHubClient):

    async def list_workflow_runs(self, owner, repo, since, until):
        await self._simulate()
        if repo == "repo-0":
            raise RuntimeError("boom")
        return []


def test_fatal_worker_error_propagates(make_repo, cache):
    repos = [make_repo(f"acme/repo-{i}") for i in range(5)]
    service = ForecastService(FailingClient(repos, {}, {}), cache, concurrency=2)

    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(service.fetch_workflow_runs(repos, SINCE, UNTIL))

    # Nothing is committed for an incomplete tier
    assert cache.stats().count == 0


def test_close_closes_client(client, cache):
    asyncio.run(ForecastService(client, cache).close())
    assert client.closed


def test_concurrency_must_be_positive(client, cache):
    with pytest.raises(ValueError):
        ForecastService(client, cache, concurrency=0)
