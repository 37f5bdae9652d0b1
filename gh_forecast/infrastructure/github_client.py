"""GitHub REST API client implementation with rate limiting and retry logic."""
import asyncio
import json
import logging
import math
import re
import time
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple

import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type
)
from gh_forecast.domain.github_interface import IGitHubClient
from gh_forecast.domain.models import (
    Repository,
    RunRepository,
    WorkflowJob,
    WorkflowRun,
    parse_timestamp,
)


logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
PAGE_SIZE = 100

# Retries after the first attempt
PRIMARY_RATE_LIMIT_RETRIES = 2
SECONDARY_RATE_LIMIT_RETRIES = 1

# Seconds to wait on a secondary rate limit without Retry-After
SECONDARY_RATE_LIMIT_FALLBACK = 60

_SECONDARY_MESSAGE = re.compile(r"\bsecondary rate\b|\babuse\b", re.IGNORECASE)

RateLimitCallback = Callable[[float, str, str], None]


class GitHubApiError(Exception):
    """Exception raised when a GitHub API request fails."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class ServerErrorException(GitHubApiError):
    """Exception raised for 5xx responses, which are safe to retry."""
    pass


class RateLimitException(GitHubApiError):
    """Exception raised when rate limit is hit."""

    def __init__(self, message: str, retry_after: float, status: int, url: str, method: str = "GET"):
        super().__init__(message, status=status, url=url)
        self.retry_after = retry_after
        self.method = method


class PrimaryRateLimitException(RateLimitException):
    """The request quota is exhausted until the reset time."""
    pass


class SecondaryRateLimitException(RateLimitException):
    """GitHub's abuse-detection throttle flagged a request burst."""
    pass


# Failures that turn a per-repository or per-run listing into "no data",
# including payloads without the expected shape
_SKIPPABLE_ERRORS = (
    GitHubApiError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    KeyError,
    TypeError,
    ValueError,
    AttributeError,
)


def _stop_on_rate_limit_budget(retry_state: RetryCallState) -> bool:
    """Stop once the retry budget of the latest rate-limit kind is spent."""
    error = retry_state.outcome.exception()
    if isinstance(error, SecondaryRateLimitException):
        return retry_state.attempt_number > SECONDARY_RATE_LIMIT_RETRIES
    return retry_state.attempt_number > PRIMARY_RATE_LIMIT_RETRIES


def _wait_retry_after(retry_state: RetryCallState) -> float:
    return retry_state.outcome.exception().retry_after


class GitHubRestClient(IGitHubClient):
    """GitHub REST API client with rate limiting and retry mechanisms.

    Implements the IGitHubClient port, providing an anti-corruption layer
    between the domain and GitHub's API. Works against GitHub.com and
    GitHub Enterprise Server (``https://<host>/api/v3``).

    Two retry layers are stacked. The outer one handles rate limits and
    honors the server's wait hint: primary limits get two retries and
    secondary limits one. The inner one retries transport failures and 5xx
    responses with exponential backoff; it never retries 429 or other 4xx.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.github.com",
        on_rate_limit: Optional[RateLimitCallback] = None,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time
    ):
        """Initialize GitHub client.

        Args:
            access_token: GitHub token
            base_url: REST API root
            on_rate_limit: Called with (retry_after_seconds, method, url) before each rate-limit wait
            timeout_seconds: Total timeout per HTTP request
            clock: Source of epoch seconds, used to compute waits until quota reset
        """
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._on_rate_limit = on_rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._clock = clock
        self._session: Optional[aiohttp.ClientSession] = None
        self.rate_limit_waits = 0

    async def _init_session(self) -> aiohttp.ClientSession:
        """Initialize the HTTP session (lazy initialization)."""
        if self._session is None:
            headers = {
                "Authorization": f"Bearer {self._access_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": "gh-forecast",
            }
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._session

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _rate_limit_error(
        self,
        status: int,
        headers: Mapping[str, str],
        message: str,
        url: str
    ) -> Optional[RateLimitException]:
        """Classify a 403/429 response as a primary or secondary rate limit."""
        if status not in (403, 429):
            return None

        retry_after_header = headers.get("Retry-After")
        retry_after: Optional[float] = None
        if retry_after_header and retry_after_header.isdigit():
            retry_after = float(retry_after_header)

        if _SECONDARY_MESSAGE.search(message):
            return SecondaryRateLimitException(
                message,
                retry_after=retry_after if retry_after is not None else SECONDARY_RATE_LIMIT_FALLBACK,
                status=status,
                url=url
            )

        if headers.get("X-RateLimit-Remaining") == "0":
            if retry_after is None:
                reset_at = int(headers.get("X-RateLimit-Reset", "0") or 0)
                retry_after = float(max(math.ceil(reset_at - self._clock()), 0))
            return PrimaryRateLimitException(message, retry_after=retry_after, status=status, url=url)

        if status == 429:
            return SecondaryRateLimitException(
                message,
                retry_after=retry_after if retry_after is not None else SECONDARY_RATE_LIMIT_FALLBACK,
                status=status,
                url=url
            )
        return None

    @retry(
        retry=retry_if_exception_type(
            (ServerErrorException, aiohttp.ClientConnectionError, asyncio.TimeoutError)
        ),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def _send(self, url: str, params: Optional[Dict[str, Any]] = None) -> Tuple[Any, Optional[str]]:
        """Execute a GET request with retry on transient failures.

        Args:
            url: Absolute request URL
            params: Query parameters (already embedded in pagination URLs)

        Returns:
            Decoded JSON body and the URL of the next page, if any

        Raises:
            RateLimitException: When a rate limit is hit
            GitHubApiError: For any other unsuccessful response or a body that is not JSON
        """
        session = await self._init_session()

        async with session.get(url, params=params) as response:
            if response.status >= 400:
                body = await response.text()
                try:
                    message = json.loads(body).get("message", body)
                except (ValueError, AttributeError):
                    message = body
                message = f"{response.status} {message}".strip()

                rate_limit = self._rate_limit_error(response.status, response.headers, message, url)
                if rate_limit is not None:
                    raise rate_limit
                if response.status >= 500:
                    raise ServerErrorException(message, status=response.status, url=url)
                raise GitHubApiError(message, status=response.status, url=url)

            try:
                data = await response.json(content_type=None)
            except ValueError as e:
                raise GitHubApiError(
                    f"{response.status} Invalid JSON body: {e}",
                    status=response.status,
                    url=url
                ) from e
            next_link = response.links.get("next")
            next_url = str(next_link["url"]) if next_link else None
            return data, next_url

    def _before_rate_limit_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        self.rate_limit_waits += 1
        logger.debug(
            f"Rate limited ({type(error).__name__}) on {error.method} {error.url}. "
            f"Retrying in {error.retry_after:.0f} seconds"
        )
        if self._on_rate_limit is not None:
            self._on_rate_limit(error.retry_after, error.method, error.url)

    async def _request(self, url: str, params: Optional[Dict[str, Any]] = None) -> Tuple[Any, Optional[str]]:
        """Execute a GET request, waiting out rate limits within the retry budget."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RateLimitException),
            stop=_stop_on_rate_limit_budget,
            wait=_wait_retry_after,
            before_sleep=self._before_rate_limit_sleep,
            reraise=True
        ):
            with attempt:
                return await self._send(url, params)

    async def _paginate(
        self,
        path: str,
        params: Dict[str, Any],
        items_key: Optional[str] = None
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield each page of a listing until no next page is advertised.

        Args:
            path: API path of the listing
            params: Query parameters of the first page
            items_key: Key holding the items when the body is an object
        """
        url: Optional[str] = self._url(path)
        page_params: Optional[Dict[str, Any]] = dict(params, per_page=PAGE_SIZE)

        while url is not None:
            data, url = await self._request(url, page_params)
            # Pagination URLs already carry the query
            page_params = None
            items = data.get(items_key, []) if items_key else data
            yield items or []

    async def list_org_repos(
        self,
        org: str,
        on_page: Optional[Callable[[int], None]] = None
    ) -> List[Repository]:
        """List all repositories in an organization.

        Errors propagate: there is no fallback for the starting tier.
        """
        repos: List[Repository] = []

        async for page in self._paginate(f"/orgs/{org}/repos", {}):
            for node in page:
                # Transform GitHub API response to domain entity
                repos.append(
                    Repository(
                        name=node["name"],
                        full_name=node["full_name"],
                        owner=node["owner"]["login"]
                    )
                )
            if on_page is not None:
                on_page(len(repos))

        logger.info(f"Found {len(repos)} repositories in {org}")
        return repos

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        since: datetime,
        until: datetime
    ) -> List[WorkflowRun]:
        """List completed workflow runs for a repository within a date range.

        The API filter works on calendar days, so runs are re-checked
        against the exact instants. Repositories that are inaccessible,
        empty or without Actions (404, 403, 409, exhausted rate limits)
        yield no runs.
        """
        runs: List[WorkflowRun] = []
        params = {
            "status": "completed",
            "created": f"{since.date().isoformat()}..{until.date().isoformat()}",
        }

        try:
            async for page in self._paginate(
                f"/repos/{owner}/{repo}/actions/runs", params, items_key="workflow_runs"
            ):
                for node in page:
                    created_at = parse_timestamp(node["created_at"])
                    if not since <= created_at <= until:
                        continue
                    repository = node["repository"]
                    runs.append(
                        WorkflowRun(
                            id=node["id"],
                            name=node.get("name"),
                            status=node.get("status"),
                            conclusion=node.get("conclusion"),
                            created_at=node["created_at"],
                            run_started_at=node.get("run_started_at"),
                            repository=RunRepository(
                                name=repository["name"],
                                full_name=repository["full_name"]
                            )
                        )
                    )
        except _SKIPPABLE_ERRORS as e:
            logger.debug(f"Skipping workflow runs for {owner}/{repo}: {e}")
            return []

        return runs

    async def list_run_jobs(self, owner: str, repo: str, run_id: int) -> List[WorkflowJob]:
        """List jobs for a workflow run, keeping only completed ones."""
        jobs: List[WorkflowJob] = []

        try:
            async for page in self._paginate(
                f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs", {}, items_key="jobs"
            ):
                for node in page:
                    if not node.get("completed_at"):
                        continue
                    jobs.append(
                        WorkflowJob(
                            id=node["id"],
                            run_id=node["run_id"],
                            name=node["name"],
                            status=node["status"],
                            conclusion=node.get("conclusion"),
                            started_at=node["started_at"],
                            completed_at=node["completed_at"],
                            labels=tuple(node.get("labels") or ()),
                            runner_name=node.get("runner_name"),
                            runner_group_name=node.get("runner_group_name")
                        )
                    )
        except _SKIPPABLE_ERRORS as e:
            logger.debug(f"Skipping jobs for {owner}/{repo} run {run_id}: {e}")
            return []

        return jobs

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
