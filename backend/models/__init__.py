"""Models module for Pydantic schemas.

This module exposes the domain models shared by the engine and its collaborators.
"""

from models.schemas import (
    AddTasksResult,
    Appendix,
    Decision,
    Evaluation,
    ExecutionMetadata,
    GraphSnapshot,
    KeyFinding,
    Priority,
    Recommendation,
    Rejection,
    RejectionReason,
    Report,
    ResearchConfig,
    ResearchIssue,
    ResearchOutcome,
    RunSummary,
    Source,
    SubTask,
    SubTaskOutcome,
    SubTaskProposal,
    SubTaskResult,
    SubTaskStatus,
)

__all__ = [
    "AddTasksResult",
    "Appendix",
    "Decision",
    "Evaluation",
    "ExecutionMetadata",
    "GraphSnapshot",
    "KeyFinding",
    "Priority",
    "Recommendation",
    "Rejection",
    "RejectionReason",
    "Report",
    "ResearchConfig",
    "ResearchIssue",
    "ResearchOutcome",
    "RunSummary",
    "Source",
    "SubTask",
    "SubTaskOutcome",
    "SubTaskProposal",
    "SubTaskResult",
    "SubTaskStatus",
]
