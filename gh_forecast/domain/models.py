"""Domain models representing core business entities."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple


class OSType(str, Enum):
    """Operating system category a job is billed under."""
    LINUX = "linux"
    WINDOWS = "windows"
    MACOS = "macos"
    UNKNOWN = "unknown"


def parse_timestamp(value: str) -> datetime:
    """Parse a GitHub ISO-8601 timestamp into an aware datetime."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class Repository:
    """Immutable domain entity representing a GitHub repository.

    Identity is the full name (owner/name).
    """
    name: str
    full_name: str
    owner: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "full_name": self.full_name, "owner": self.owner}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Repository':
        return cls(name=data["name"], full_name=data["full_name"], owner=data["owner"])


@dataclass(frozen=True)
class RunRepository:
    """The repository reference carried on a workflow run."""
    name: str
    full_name: str

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]


@dataclass(frozen=True)
class WorkflowRun:
    """A single execution of a workflow in one repository.

    ``name`` and ``run_started_at`` are ``None`` when GitHub omits them;
    ``conclusion`` is ``None`` for runs that have not concluded.
    """
    id: int
    name: Optional[str]
    status: Optional[str]
    conclusion: Optional[str]
    created_at: str
    repository: RunRepository
    run_started_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "created_at": self.created_at,
            "run_started_at": self.run_started_at,
            "repository": {
                "name": self.repository.name,
                "full_name": self.repository.full_name,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowRun':
        repository = data["repository"]
        return cls(
            id=data["id"],
            name=data.get("name"),
            status=data.get("status"),
            conclusion=data.get("conclusion"),
            created_at=data["created_at"],
            run_started_at=data.get("run_started_at"),
            repository=RunRepository(
                name=repository["name"],
                full_name=repository["full_name"]
            )
        )


@dataclass(frozen=True)
class WorkflowJob:
    """A job belonging to exactly one workflow run.

    ``completed_at`` is ``None`` while the job is still queued or running;
    such jobs have no billable duration and never enter aggregation.
    """
    id: int
    run_id: int
    name: str
    status: str
    conclusion: Optional[str]
    started_at: str
    completed_at: Optional[str]
    labels: Tuple[str, ...]
    runner_name: Optional[str]
    runner_group_name: Optional[str]

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def with_run(self, run: WorkflowRun) -> 'JobWithRepo':
        """Returns the job denormalized with its parent run's repository and workflow."""
        return JobWithRepo(
            id=self.id,
            run_id=self.run_id,
            name=self.name,
            status=self.status,
            conclusion=self.conclusion,
            started_at=self.started_at,
            completed_at=self.completed_at,
            labels=self.labels,
            runner_name=self.runner_name,
            runner_group_name=self.runner_group_name,
            repo_full_name=run.repository.full_name,
            workflow_name=run.name or "unknown"
        )


@dataclass(frozen=True)
class JobWithRepo(WorkflowJob):
    """A job carrying the repository and workflow it ran under."""
    repo_full_name: str
    workflow_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "name": self.name,
            "status": self.status,
            "conclusion": self.conclusion,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "labels": list(self.labels),
            "runner_name": self.runner_name,
            "runner_group_name": self.runner_group_name,
            "repo_full_name": self.repo_full_name,
            "workflow_name": self.workflow_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobWithRepo':
        return cls(
            id=data["id"],
            run_id=data["run_id"],
            name=data["name"],
            status=data["status"],
            conclusion=data.get("conclusion"),
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            labels=tuple(data.get("labels") or ()),
            runner_name=data.get("runner_name"),
            runner_group_name=data.get("runner_group_name"),
            repo_full_name=data["repo_full_name"],
            workflow_name=data.get("workflow_name") or "unknown"
        )


@dataclass(frozen=True)
class LabelMapping:
    """Operator-supplied runner label pattern (``*`` wildcard) mapped to an OS."""
    pattern: str
    os: OSType


@dataclass(frozen=True)
class BillingResult:
    """Billing details derived from one completed job."""
    job: JobWithRepo
    os: OSType
    duration_minutes: int
    multiplier: int
    billable_minutes: int


@dataclass
class UsageBucket:
    """Minutes, billable minutes and job count accumulated for one grouping key."""
    minutes: int = 0
    billable_minutes: int = 0
    job_count: int = 0

    def add(self, billing: BillingResult) -> None:
        self.minutes += billing.duration_minutes
        self.billable_minutes += billing.billable_minutes
        self.job_count += 1

    def merge(self, other: 'UsageBucket') -> None:
        self.minutes += other.minutes
        self.billable_minutes += other.billable_minutes
        self.job_count += other.job_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minutes": self.minutes,
            "billableMinutes": self.billable_minutes,
            "jobCount": self.job_count,
        }


@dataclass
class WorkflowUsage(UsageBucket):
    """Usage for one ``repo/workflow`` key; run_count counts distinct run ids."""
    run_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["runCount"] = self.run_count
        return data


@dataclass
class RepoUsage(UsageBucket):
    """Usage for one repository plus the distinct workflow names seen in it."""
    workflows: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["workflows"] = sorted(self.workflows)
        return data


@dataclass
class AggregatedBilling:
    """Usage rollups over all completed jobs.

    Produced once by ``aggregate_billing`` and handed to the presentation
    layer, which must treat it as read-only.
    """
    total_minutes: int
    total_billable_minutes: int
    by_os: Dict[OSType, UsageBucket]
    by_workflow: Dict[str, WorkflowUsage]
    by_repo: Dict[str, RepoUsage]
    by_date: Dict[str, UsageBucket]
    job_count: int
    run_count: int
    jobs: List[BillingResult]

    def to_dict(self) -> Dict[str, Any]:
        """Returns a JSON-serializable view of the rollups (without per-job detail)."""
        return {
            "totalMinutes": self.total_minutes,
            "totalBillableMinutes": self.total_billable_minutes,
            "jobCount": self.job_count,
            "runCount": self.run_count,
            "byOS": {os_type.value: bucket.to_dict() for os_type, bucket in self.by_os.items()},
            "byWorkflow": {key: usage.to_dict() for key, usage in self.by_workflow.items()},
            "byRepo": {key: usage.to_dict() for key, usage in self.by_repo.items()},
            "byDate": {key: bucket.to_dict() for key, bucket in self.by_date.items()},
        }


@dataclass(frozen=True)
class CostProjection:
    """Cost and billable minutes extrapolated from the analyzed period."""
    daily: float
    weekly: float
    monthly: float
    daily_billable_minutes: float
    weekly_billable_minutes: float
    monthly_billable_minutes: float

    def to_dict(self) -> Dict[str, float]:
        return {"daily": self.daily, "weekly": self.weekly, "monthly": self.monthly}


@dataclass(frozen=True)
class AuthConfig:
    """Credential and API endpoint resolved before any fetch begins."""
    token: str
    base_url: str


@dataclass(frozen=True)
class CacheConfig:
    """Per-invocation cache policy."""
    enabled: bool = True
    ttl_ms: int = 30 * 60 * 1000


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of the on-disk cache."""
    count: int
    bytes: int
    oldest_age_ms: Optional[int]


@dataclass(frozen=True)
class CacheClearResult:
    """Outcome of clearing the cache."""
    count: int
    bytes: int


@dataclass(frozen=True)
class ForecastMetrics:
    """Metrics for a fetch operation."""
    repositories_scanned: int
    runs_fetched: int
    jobs_fetched: int
    duration_seconds: float
