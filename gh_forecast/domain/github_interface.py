"""GitHub API interface (port) for fetching Actions usage data.

This is the anti-corruption layer that shields the domain from GitHub API specifics.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional
from gh_forecast.domain.models import Repository, WorkflowRun, WorkflowJob


class IGitHubClient(ABC):
    """Abstract interface for GitHub API operations."""

    @abstractmethod
    async def list_org_repos(
        self,
        org: str,
        on_page: Optional[Callable[[int], None]] = None
    ) -> List[Repository]:
        """List every repository of an organization.

        Args:
            org: Organization login
            on_page: Called with the running repository total after each page

        Returns:
            All repositories across all pages
        """
        pass

    @abstractmethod
    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        since: datetime,
        until: datetime
    ) -> List[WorkflowRun]:
        """List completed workflow runs created within [since, until].

        Repositories that are inaccessible or have Actions disabled
        yield an empty list instead of raising.
        """
        pass

    @abstractmethod
    async def list_run_jobs(self, owner: str, repo: str, run_id: int) -> List[WorkflowJob]:
        """List the completed jobs of a workflow run.

        Inaccessible runs yield an empty list instead of raising.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass
