"""Shared test fixtures for backend tests.

Provides an isolated EventBus, LLM response factories, and scripted
collaborators so tests never touch real LLM APIs.
"""

import asyncio
import sys
from collections.abc import Callable
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from research.task_graph import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMResponse  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import LLMMetrics, ResearchEvent  # noqa: E402
from models.schemas import (  # noqa: E402
    ExecutionMetadata,
    Report,
    ResearchIssue,
    SubTask,
    SubTaskProposal,
    SubTaskResult,
)
from rate_limiter import reset_rate_limiter  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    reset_rate_limiter()
    bus = EventBus()
    return bus


def collect_events(event_bus: EventBus, run_id: str) -> list[ResearchEvent]:
    """Return every event recorded for ``run_id`` in publish order."""
    return event_bus.get_event_history(run_id)


# ---------------------------------------------------------------------------
# Domain Factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def issue() -> ResearchIssue:
    return ResearchIssue(
        title="Urban heat islands",
        description="Which interventions reduce urban heat island intensity most?",
        objectives=("Measure effect sizes", "Compare costs"),
    )


def proposal(
    task_id: str | None,
    title: str | None = None,
    dependencies: list[str] | None = None,
    priority: str = "medium",
) -> SubTaskProposal:
    """Build a proposal whose title defaults to its id."""
    return SubTaskProposal(
        id=task_id,
        title=title or task_id or "untitled",
        description=f"Investigate {title or task_id}",
        priority=priority,
        dependencies=dependencies or [],
    )


def make_result(
    conclusion: str = "Done",
    confidence: float = 0.8,
    additional_tasks: list[SubTaskProposal] | None = None,
) -> SubTaskResult:
    return SubTaskResult(
        conclusion=conclusion,
        evidence=[f"evidence for {conclusion}"],
        confidence=confidence,
        additional_tasks=additional_tasks or [],
    )


def make_llm_response(content: str = "", finish_reason: str = "stop") -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        finish_reason=finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


# ---------------------------------------------------------------------------
# Scripted Collaborators
# ---------------------------------------------------------------------------


class ScriptedDecomposer:
    """Decomposer returning one scripted batch per call.

    ``rounds[0]`` answers the seed call; later entries answer continuation
    calls. Calls beyond the script return no proposals. An exception in the
    script is raised instead of returned.
    """

    def __init__(self, rounds: list[list[SubTaskProposal] | Exception] | None = None) -> None:
        self.rounds = list(rounds or [])
        self.calls: list[dict[str, Any]] = []

    async def propose(
        self,
        issue: ResearchIssue,
        completed_results: list[SubTask],
        iteration: int,
    ) -> list[SubTaskProposal]:
        self.calls.append(
            {"iteration": iteration, "completed": [task.id for task in completed_results]}
        )
        index = len(self.calls) - 1
        if index >= len(self.rounds):
            return []
        batch = self.rounds[index]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


class ScriptedResearcher:
    """Researcher whose behaviour per task id is a result, an exception or a callable.

    Tasks without an entry complete with a default result. Tracks how many
    calls are in flight at once.
    """

    def __init__(
        self,
        behaviours: dict[str, Any] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.behaviours = behaviours or {}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(
        self,
        sub_task: SubTask,
        issue: ResearchIssue,
        timeout: float,
    ) -> SubTaskResult:
        self.calls.append(sub_task.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            behaviour = self.behaviours.get(sub_task.id)
            if isinstance(behaviour, Exception):
                raise behaviour
            if isinstance(behaviour, SubTaskResult):
                return behaviour
            if callable(behaviour):
                return await behaviour(sub_task)
            return make_result(conclusion=f"Findings for {sub_task.title}")
        finally:
            self.in_flight -= 1


class RecordingSynthesizer:
    """Synthesizer that records its inputs and returns a minimal report."""

    def __init__(self) -> None:
        self.completed_ids: list[str] = []
        self.metadata: ExecutionMetadata | None = None

    async def synthesize(
        self,
        issue: ResearchIssue,
        completed_sub_tasks: list[SubTask],
        metadata: ExecutionMetadata,
    ) -> Report:
        self.completed_ids = [task.id for task in completed_sub_tasks]
        self.metadata = metadata
        return Report(
            title=f"{issue.title} - Research Report",
            executive_summary=f"{len(completed_sub_tasks)} sub-tasks completed",
            limitations=list(metadata.limitations),
        )


@pytest.fixture()
def synthesizer() -> RecordingSynthesizer:
    return RecordingSynthesizer()


@pytest.fixture()
def make_researcher() -> Callable[..., ScriptedResearcher]:
    return ScriptedResearcher
