"""Interfaces the orchestration engine calls out to.

The engine decides when and in what order work happens; the collaborators
decide what the work is. Any object with matching async methods satisfies
these protocols, which keeps LLM adapters and in-process test stubs
interchangeable.
"""

from typing import Protocol, runtime_checkable

from models.schemas import (
    ExecutionMetadata,
    Report,
    ResearchIssue,
    SubTask,
    SubTaskProposal,
    SubTaskResult,
)


@runtime_checkable
class Decomposer(Protocol):
    """Proposes sub-tasks for an issue given what has been learned so far."""

    async def propose(
        self,
        issue: ResearchIssue,
        completed_results: list[SubTask],
        iteration: int,
    ) -> list[SubTaskProposal]:
        """Return new proposals.

        Called once with empty history to seed the graph, then after every
        evaluation that decides to continue. An empty list is a valid answer.
        """
        ...


@runtime_checkable
class Researcher(Protocol):
    """Executes one sub-task. Must be safe to call concurrently."""

    async def execute(
        self,
        sub_task: SubTask,
        issue: ResearchIssue,
        timeout: float,
    ) -> SubTaskResult:
        """Investigate ``sub_task`` and return its result, raising on failure."""
        ...


@runtime_checkable
class Synthesizer(Protocol):
    """Merges completed sub-task results into the final report."""

    async def synthesize(
        self,
        issue: ResearchIssue,
        completed_sub_tasks: list[SubTask],
        metadata: ExecutionMetadata,
    ) -> Report:
        ...
