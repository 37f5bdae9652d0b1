"""Shared fixtures for building Actions entities."""
import pytest
from gh_forecast.domain.models import JobWithRepo, Repository, RunRepository, WorkflowRun


def build_job(
    job_id=1,
    run_id=100,
    labels=("ubuntu-latest",),
    started_at="2024-01-15T10:00:00Z",
    completed_at="2024-01-15T10:05:00Z",
    repo="acme/api",
    workflow="CI",
    name="build",
):
    return JobWithRepo(
        id=job_id,
        run_id=run_id,
        name=name,
        status="completed",
        conclusion="success",
        started_at=started_at,
        completed_at=completed_at,
        labels=tuple(labels),
        runner_name=None,
        runner_group_name=None,
        repo_full_name=repo,
        workflow_name=workflow,
    )


def build_run(run_id=100, repo="acme/api", name="CI", created_at="2024-01-15T09:59:00Z"):
    return WorkflowRun(
        id=run_id,
        name=name,
        status="completed",
        conclusion="success",
        created_at=created_at,
        repository=RunRepository(name=repo.split("/")[1], full_name=repo),
    )


def build_repo(full_name="acme/api"):
    owner, name = full_name.split("/")
    return Repository(name=name, full_name=full_name, owner=owner)


@pytest.fixture
def make_job():
    return build_job


@pytest.fixture
def make_run():
    return build_run


@pytest.fixture
def make_repo():
    return build_repo
