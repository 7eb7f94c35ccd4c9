"""Pydantic models for agent monitor."""

import math
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agent_monitor.date_utils import parse_timestamp


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class FileOperationType(str, Enum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"


# --- Session log side ---


class FileOperation(BaseModel):
    operation: FileOperationType
    path: str
    timestamp: datetime


class AgentActivity(BaseModel):
    """One unit of delegated work performed by a named agent type."""
    agent_id: str
    agent_type: str
    task_id: str
    start_time: datetime
    end_time: datetime | None = None
    duration: int | None = None  # whole seconds, derived from end_time
    status: TaskStatus = TaskStatus.IN_PROGRESS
    input_tokens: int = 0
    output_tokens: int = 0
    tools_used: list[str] = Field(default_factory=list)
    files: list[FileOperation] = Field(default_factory=list)
    success: bool = False
    error_message: str | None = None
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _derive_duration(self) -> "AgentActivity":
        if self.end_time is None:
            self.duration = None
        else:
            if self.end_time < self.start_time:
                raise ValueError("end_time must not precede start_time")
            self.duration = math.floor((self.end_time - self.start_time).total_seconds())
        if self.success and self.status != TaskStatus.COMPLETED:
            raise ValueError("success=True requires status=completed")
        return self

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def description(self) -> str:
        meta = self.metadata or {}
        return meta.get("task_description") or self.task_id


class Session(BaseModel):
    """One continuous interaction window containing delegated activities."""
    session_id: str
    start_time: datetime
    end_time: datetime | None = None
    duration: int | None = None
    working_directory: str = ""
    total_tasks: int = 0
    completed_tasks: int = 0
    agents: list[AgentActivity] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Session":
        if self.completed_tasks > self.total_tasks:
            raise ValueError("completed_tasks cannot exceed total_tasks")
        if self.end_time is None:
            self.duration = None
        else:
            if self.end_time < self.start_time:
                raise ValueError("end_time must not precede start_time")
            self.duration = math.floor((self.end_time - self.start_time).total_seconds())
        return self

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def recount(self) -> None:
        """Recompute task counters from the activity list."""
        self.total_tasks = len(self.agents)
        self.completed_tasks = sum(1 for a in self.agents if a.success)


class SessionFilter(BaseModel):
    """Query filter for stored sessions. Time bounds are inclusive."""
    start: datetime | None = None
    end: datetime | None = None
    agent_types: set[str] | None = None
    statuses: set[TaskStatus] | None = None


# --- Performance analysis output ---


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class AgentPerformance(BaseModel):
    agent_type: str
    tasks: int
    successful_tasks: int
    success_rate: float
    average_duration: float
    efficiency: float
    token_usage: TokenUsage


class ToolUsage(BaseModel):
    tool_name: str
    usage_count: int
    success_rate: float
    average_duration: float


class SessionSummary(BaseModel):
    total_sessions: int
    average_session_duration: float
    total_tasks: int
    success_rate: float
    most_active_agent: str | None = None
    tool_usage: list[ToolUsage] = Field(default_factory=list)


class PerformanceTrend(BaseModel):
    metric: str
    trend: str
    recent_value: float
    earlier_value: float
    change_rate: float  # fraction, e.g. 0.25 for +25%


class Anomaly(BaseModel):
    """Something unusual across a set of sessions."""
    kind: str  # duration_outlier | low_success_rate | off_hours
    severity: str  # low | medium | high | critical
    description: str
    affected_sessions: list[str] = Field(default_factory=list)
    confidence: float


class RankingEntry(BaseModel):
    agent_type: str
    value: float


class AgentRanking(BaseModel):
    metric: str
    ranking: list[RankingEntry]


class AgentComparison(BaseModel):
    agents: dict[str, AgentPerformance]
    rankings: list[AgentRanking]
    top_performer: str | None = None


class PerformanceReport(BaseModel):
    summary: SessionSummary
    agents: list[AgentPerformance]
    trends: list[PerformanceTrend]
    anomalies: list[Anomaly] = Field(default_factory=list)
    recommendations: list[str]


# --- Repository API entities ---


class Repository(BaseModel):
    id: int
    name: str
    full_name: str
    default_branch: str | None = None
    open_issues_count: int = 0

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Repository":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            full_name=data.get("full_name") or data.get("name", ""),
            default_branch=data.get("default_branch"),
            open_issues_count=data.get("open_issues_count") or 0,
        )


class Commit(BaseModel):
    sha: str
    message: str
    author_name: str
    author_login: str | None = None
    date: datetime
    additions: int = 0
    deletions: int = 0

    @property
    def contributor(self) -> str:
        return self.author_login or self.author_name

    @property
    def is_merge(self) -> bool:
        return (
            self.message.lower().startswith("merge ")
            or "Merge pull request" in self.message
            or "Merge branch" in self.message
        )

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Commit":
        inner = data.get("commit") or {}
        author = inner.get("author") or {}
        stats = data.get("stats") or {}
        login = (data.get("author") or {}).get("login")
        return cls(
            sha=data.get("sha", ""),
            message=inner.get("message", ""),
            author_name=author.get("name") or "unknown",
            author_login=login,
            date=parse_timestamp(author.get("date")),
            additions=stats.get("additions", 0),
            deletions=stats.get("deletions", 0),
        )


class PullRequest(BaseModel):
    number: int
    state: str
    merged: bool = False
    created_at: datetime
    closed_at: datetime | None = None
    merged_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PullRequest":
        merged_at = parse_timestamp(data.get("merged_at"))
        return cls(
            number=data.get("number", 0),
            state=data.get("state", "open"),
            # The list endpoint omits "merged"; merged_at is authoritative there.
            merged=bool(data.get("merged")) or merged_at is not None,
            created_at=parse_timestamp(data.get("created_at")),
            closed_at=parse_timestamp(data.get("closed_at")),
            merged_at=merged_at,
        )


class Issue(BaseModel):
    number: int
    state: str
    created_at: datetime
    closed_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            number=data.get("number", 0),
            state=data.get("state", "open"),
            created_at=parse_timestamp(data.get("created_at")),
            closed_at=parse_timestamp(data.get("closed_at")),
        )


class RateLimitInfo(BaseModel):
    limit: int
    remaining: int
    reset: datetime
    used: int | None = None


# --- Repository analysis output (value objects) ---

_FROZEN = ConfigDict(frozen=True)


class CommitMetrics(BaseModel):
    model_config = _FROZEN
    total: int
    by_author: dict[str, int]
    by_date: dict[str, int]
    average_per_day: float


class PullRequestMetrics(BaseModel):
    model_config = _FROZEN
    total: int
    open: int
    closed: int
    merged: int
    average_merge_time_hours: float


class IssueMetrics(BaseModel):
    model_config = _FROZEN
    total: int
    open: int
    closed: int
    resolution_time_average_hours: float


class CodeChangeMetrics(BaseModel):
    model_config = _FROZEN
    total_additions: int
    total_deletions: int
    lines_per_commit_average: float


class Contributor(BaseModel):
    model_config = _FROZEN
    name: str
    commits: int


class ContributorMetrics(BaseModel):
    model_config = _FROZEN
    total: int
    active_last_30_days: int
    top_contributors: list[Contributor]


class ProjectMetrics(BaseModel):
    model_config = _FROZEN
    commits: CommitMetrics
    pull_requests: PullRequestMetrics
    issues: IssueMetrics
    code_changes: CodeChangeMetrics
    contributors: ContributorMetrics


class WeeklyActivity(BaseModel):
    model_config = _FROZEN
    week: date
    commits: int = 0
    prs: int = 0
    issues_closed: int = 0


class ProjectTrends(BaseModel):
    model_config = _FROZEN
    activity_trend: str
    velocity_trend: str
    issue_resolution_trend: str
    contributor_engagement: str
    weekly_activity: list[WeeklyActivity]


class TimeRange(BaseModel):
    model_config = _FROZEN
    start: datetime
    end: datetime


class ProjectAnalysis(BaseModel):
    model_config = _FROZEN
    repository: str
    analysis_date: datetime
    time_range: TimeRange
    metrics: ProjectMetrics
    trends: ProjectTrends
    health_score: int = Field(ge=0, le=100)
    recommendations: list[str]
    data_integrity_hash: str
