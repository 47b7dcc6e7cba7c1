"""Pydantic schemas for the research orchestration engine.

This module defines the data exchanged between the engine and its
collaborators: the research issue, sub-task proposals and views, researcher
results, evaluation decisions, and the final report and run summary.
All models use Pydantic v2 with strict range validation.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Priority(StrEnum):
    """Sub-task and issue priority levels."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Scheduling rank, lower runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class SubTaskStatus(StrEnum):
    """Lifecycle status of a sub-task inside the task graph."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class Decision(StrEnum):
    """Convergence decision produced after each execution pass."""

    CONTINUE = "continue"
    COMPLETE = "complete"


class RejectionReason(StrEnum):
    """Why a sub-task proposal was refused by the task graph."""

    UNKNOWN_DEPENDENCY = "unknown_dependency"
    WOULD_CYCLE = "would_cycle"
    DUPLICATE_ID = "duplicate_id"


# -----------------------------------------------------------------------------
# Inputs
# -----------------------------------------------------------------------------


class ResearchIssue(BaseModel):
    """The research question driving one orchestration run.

    Created once at run start and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    title: str = Field(min_length=1, description="Short title of the research question")
    description: str = Field(description="What the investigation should answer")
    background: str | None = Field(default=None, description="Optional context")
    objectives: tuple[str, ...] = Field(
        default=(), description="Ordered research objectives"
    )
    scope: str = Field(default="", description="Boundaries of the investigation")
    constraints: str | None = None
    tags: tuple[str, ...] = ()
    priority: Priority = Priority.MEDIUM


class Source(BaseModel):
    """A piece of supporting material cited by a researcher."""

    type: Literal["web", "document", "database", "interview", "survey"] = "web"
    title: str
    url: str | None = None
    author: str | None = None
    published_date: str | None = None
    relevance: float = Field(ge=0.0, le=1.0)
    credibility: float = Field(ge=0.0, le=1.0)
    excerpt: str = ""


class SubTaskProposal(BaseModel):
    """A candidate sub-task proposed by the decomposer or by a result.

    Attributes:
        id: Caller-chosen id. The task graph assigns one when omitted.
        title: Short title.
        description: What the researcher should investigate.
        priority: Scheduling priority.
        dependencies: Ids that must complete first. They may reference
            tasks already in the graph or other members of the same batch.
    """

    id: str | None = None
    title: str = Field(min_length=1)
    description: str = ""
    priority: Priority = Priority.MEDIUM
    dependencies: list[str] = Field(default_factory=list)


class SubTaskResult(BaseModel):
    """The outcome of one successfully researched sub-task.

    Immutable once attached to its sub-task.
    """

    model_config = ConfigDict(frozen=True)

    conclusion: str
    evidence: list[str] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    additional_tasks: list[SubTaskProposal] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=utc_now)

    @field_validator("completed_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        """Naive timestamps are taken to be UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# -----------------------------------------------------------------------------
# Graph views
# -----------------------------------------------------------------------------


class SubTask(BaseModel):
    """Read-only view of a sub-task owned by the task graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    dependencies: tuple[str, ...] = ()
    status: SubTaskStatus = SubTaskStatus.PENDING
    result: SubTaskResult | None = None
    error: str | None = None
    proposed_by: str | None = None
    sequence: int = 0
    iteration: int = 0


class Rejection(BaseModel):
    """A proposal the task graph refused, with the reason."""

    proposal: SubTaskProposal
    reason: RejectionReason
    detail: str = ""


class AddTasksResult(BaseModel):
    """Accepted and rejected proposals from one ``add_tasks`` call."""

    accepted: list[SubTask] = Field(default_factory=list)
    rejected: list[Rejection] = Field(default_factory=list)


class GraphSnapshot(BaseModel):
    """Immutable copy of the task graph at one point in time."""

    model_config = ConfigDict(frozen=True)

    tasks: tuple[SubTask, ...] = ()

    def get(self, task_id: str) -> SubTask | None:
        """Return the task with ``task_id`` or None."""
        return next((task for task in self.tasks if task.id == task_id), None)

    def by_status(self, status: SubTaskStatus) -> list[SubTask]:
        """Return tasks in ``status`` in insertion order."""
        return [task for task in self.tasks if task.status == status]

    def count(self, status: SubTaskStatus) -> int:
        """Number of tasks currently in ``status``."""
        return sum(1 for task in self.tasks if task.status == status)

    def completed(self) -> list[SubTask]:
        """Completed tasks ordered by completion time."""
        done = [task for task in self.by_status(SubTaskStatus.COMPLETED) if task.result]
        return sorted(done, key=lambda task: (task.result.completed_at, task.sequence))


class Evaluation(BaseModel):
    """Convergence decision and the progress estimate behind it."""

    decision: Decision
    progress: float = Field(ge=0.0, le=100.0)
    base_progress: float = 0.0
    coverage_penalty: float = 0.0
    ceiling_reached: bool = False
    reasoning: str = ""


class SubTaskOutcome(BaseModel):
    """What happened to one task handed to the executor."""

    task_id: str
    status: Literal["completed", "failed", "skipped"]
    result: SubTaskResult | None = None
    error: str | None = None
    duration_seconds: float = 0.0
    added_task_ids: list[str] = Field(default_factory=list)
    rejections: list[Rejection] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


class ResearchConfig(BaseModel):
    """Validated options for one orchestration run.

    ``model`` and ``temperature`` are passed through to collaborators and are
    opaque to the engine. ``completion_threshold`` is a fraction and is scaled
    to a percentage when compared against progress.
    """

    model_config = ConfigDict(frozen=True)

    model: str | None = None
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_sub_tasks: int = Field(default=8, ge=1)
    min_sub_tasks: int = Field(default=3, ge=0)
    completion_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    concurrency_limit: int = Field(default=3, ge=1)
    per_task_timeout: float = Field(default=300.0, gt=0.0)
    min_iterations: int | None = Field(default=None, ge=1)
    max_iterations: int | None = Field(default=None, ge=1)
    failure_penalty_weight: float = Field(default=0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_bounds(self) -> "ResearchConfig":
        """Reject contradictory breadth and iteration bounds."""
        if self.min_sub_tasks > self.max_sub_tasks:
            raise ValueError(
                f"min_sub_tasks ({self.min_sub_tasks}) exceeds "
                f"max_sub_tasks ({self.max_sub_tasks})"
            )
        if self.iteration_floor > self.iteration_ceiling:
            raise ValueError(
                f"min_iterations ({self.iteration_floor}) exceeds "
                f"max_iterations ({self.iteration_ceiling})"
            )
        return self

    @property
    def threshold_percent(self) -> float:
        """Completion threshold on the 0-100 progress scale."""
        return round(self.completion_threshold * 100.0, 6)

    @property
    def iteration_floor(self) -> int:
        """Passes required before the run may complete normally."""
        return self.min_iterations if self.min_iterations is not None else 1

    @property
    def iteration_ceiling(self) -> int:
        """Passes after which completion is forced."""
        return self.max_iterations if self.max_iterations is not None else self.max_sub_tasks

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "ResearchConfig":
        """Build a config from application settings plus explicit overrides."""
        values: dict[str, Any] = {
            "temperature": settings.temperature,
            "max_sub_tasks": settings.max_sub_tasks,
            "min_sub_tasks": settings.min_sub_tasks,
            "completion_threshold": settings.completion_threshold,
            "concurrency_limit": settings.concurrency_limit,
            "per_task_timeout": settings.per_task_timeout_seconds,
            "failure_penalty_weight": settings.failure_penalty_weight,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# -----------------------------------------------------------------------------
# Outputs
# -----------------------------------------------------------------------------


class ExecutionMetadata(BaseModel):
    """Run facts handed to the synthesizer alongside the results."""

    started_at: datetime
    completed_at: datetime
    total_execution_time: float = Field(ge=0.0, description="Seconds")
    total_sub_tasks: int = 0
    iterations: int = 0
    failed_tasks: int = 0
    blocked_tasks: int = 0
    ceiling_reached: bool = False
    stalled: bool = False
    cancelled: bool = False
    limitations: list[str] = Field(default_factory=list)


class KeyFinding(BaseModel):
    """One finding promoted into the report."""

    id: str
    title: str
    description: str
    evidence: list[str] = Field(default_factory=list)
    sources: list[Source] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    significance: Priority = Priority.MEDIUM


class Recommendation(BaseModel):
    """An actionable recommendation in the report."""

    id: str
    title: str
    description: str
    rationale: str = ""
    priority: Priority = Priority.MEDIUM
    timeline: str = ""
    resources: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)


class Appendix(BaseModel):
    """Supplementary report material."""

    id: str
    title: str
    content: str
    type: Literal["data", "methodology", "sources", "other"] = "other"


class Report(BaseModel):
    """The synthesized research report."""

    title: str
    executive_summary: str
    methodology: str = ""
    key_findings: list[KeyFinding] = Field(default_factory=list)
    conclusions: list[str] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    limitations: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    appendices: list[Appendix] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)


class RunSummary(BaseModel):
    """Headline numbers for a finished run."""

    total_sub_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    blocked_tasks: int = 0
    key_insights: list[str] = Field(default_factory=list)
    confidence_level: float = Field(default=0.0, ge=0.0, le=1.0)
    ceiling_reached: bool = False
    stalled: bool = False
    cancelled: bool = False


class ResearchOutcome(BaseModel):
    """Everything a caller receives when a run terminates."""

    run_id: str
    report: Report
    summary: RunSummary
    snapshot: GraphSnapshot
    progress: float = Field(ge=0.0, le=100.0)
    iterations: int = 0
    metadata: ExecutionMetadata

