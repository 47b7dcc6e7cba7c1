"""Research orchestration state machine.

This module implements the run loop as a LangGraph StateGraph:

    seed ──► execute ──► evaluate ──► synthesize ──► END
      │         │  ▲          │            ▲
      │         │  └──────────┘            │
      └─────────┴──────────────────────────┘

1. seed: the decomposer proposes the initial sub-tasks
2. execute: the current ready set runs through the executor (one pass)
3. evaluate: the convergence evaluator scores the graph; on "continue" the
   decomposer may extend it and the loop repeats
4. synthesize: completed results are merged into the report

The iteration ceiling, not the framework recursion limit, bounds the loop.
"""

import asyncio
import operator
from datetime import datetime
from typing import Annotated, Any, Literal, TypedDict
from uuid import uuid4

import structlog
from langgraph.graph import END, START, StateGraph
from pydantic import ValidationError

from events.bus import EventBus, get_event_bus
from events.types import EventType, ResearchEvent
from metrics import MetricsCollector
from models.schemas import (
    Decision,
    Evaluation,
    ExecutionMetadata,
    GraphSnapshot,
    Rejection,
    Report,
    ResearchConfig,
    ResearchIssue,
    ResearchOutcome,
    RunSummary,
    SubTaskStatus,
    utc_now,
)
from research.collaborators import Decomposer, Researcher, Synthesizer
from research.convergence import ConvergenceEvaluator
from research.errors import ConfigurationError, OrchestrationStallError
from research.executor import SubTaskExecutor
from research.task_graph import TaskGraph

logger = structlog.get_logger(__name__)

# Confidence above which a conclusion counts as a key insight.
KEY_INSIGHT_CONFIDENCE = 0.7
MAX_KEY_INSIGHTS = 5


# -----------------------------------------------------------------------------
# State Schema Definitions
# -----------------------------------------------------------------------------


class RunState(TypedDict):
    """State for one research run.

    Attributes:
        run_id: Identifier used in events, logs and metrics
        issue: The research question
        task_graph: The run's sub-task graph
        cancel_event: Signal that stops dispatching new work
        phase: Current state machine phase
        iteration: Number of finished execution passes
        progress: Latest progress score (0-100)
        decision: Latest convergence decision
        ceiling_reached: The iteration ceiling forced completion
        stalled: Nothing was runnable while the evaluator wanted more
        cancelled: The run was cancelled
        started_at: Run start time
        completed_at: Run end time
        rejections: Proposals refused by the task graph (accumulated)
        evaluations: Every evaluation in order (accumulated)
        limitations: Engine disclosures passed to the synthesizer (accumulated)
        metadata: Run facts handed to the synthesizer
        report: Final report
        summary: Final summary
    """

    run_id: str
    issue: ResearchIssue
    task_graph: TaskGraph
    cancel_event: asyncio.Event
    phase: Literal["seeding", "executing", "evaluating", "synthesizing", "done"]
    iteration: int
    progress: float
    decision: Decision
    ceiling_reached: bool
    stalled: bool
    cancelled: bool
    started_at: datetime
    completed_at: datetime | None
    rejections: Annotated[list[Rejection], operator.add]
    evaluations: Annotated[list[Evaluation], operator.add]
    limitations: Annotated[list[str], operator.add]
    metadata: ExecutionMetadata | None
    report: Report | None
    summary: RunSummary | None


def create_research_initial_state(
    issue: ResearchIssue,
    cancel_event: asyncio.Event | None = None,
    run_id: str | None = None,
) -> RunState:
    """Create the initial state for a research run.

    Args:
        issue: The research question
        cancel_event: Optional externally owned cancellation signal
        run_id: Optional run id (generated when omitted)

    Returns:
        Initial RunState dict
    """
    return RunState(
        run_id=run_id or f"run_{uuid4().hex[:8]}",
        issue=issue,
        task_graph=TaskGraph(),
        cancel_event=cancel_event if cancel_event is not None else asyncio.Event(),
        phase="seeding",
        iteration=0,
        progress=0.0,
        decision=Decision.CONTINUE,
        ceiling_reached=False,
        stalled=False,
        cancelled=False,
        started_at=utc_now(),
        completed_at=None,
        rejections=[],
        evaluations=[],
        limitations=[],
        metadata=None,
        report=None,
        summary=None,
    )


def build_config(**options: Any) -> ResearchConfig:
    """Validate run options, raising ConfigurationError on any violation."""
    try:
        return ResearchConfig(**options)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid research configuration: {e}") from e


def build_run_summary(
    snapshot: GraphSnapshot,
    ceiling_reached: bool = False,
    stalled: bool = False,
    cancelled: bool = False,
) -> RunSummary:
    """Compute the headline numbers of a run from its final graph.

    ``successful_tasks`` counts completed sub-tasks. Key insights are the
    conclusions of confident results in completion order. Confidence level is
    the mean confidence of completed sub-tasks.
    """
    completed = snapshot.completed()
    confidences = [task.result.confidence for task in completed if task.result]
    insights = [
        task.result.conclusion
        for task in completed
        if task.result and task.result.confidence > KEY_INSIGHT_CONFIDENCE
    ]
    return RunSummary(
        total_sub_tasks=len(snapshot.tasks),
        successful_tasks=len(completed),
        failed_tasks=snapshot.count(SubTaskStatus.FAILED),
        blocked_tasks=snapshot.count(SubTaskStatus.BLOCKED),
        key_insights=insights[:MAX_KEY_INSIGHTS],
        confidence_level=sum(confidences) / len(confidences) if confidences else 0.0,
        ceiling_reached=ceiling_reached,
        stalled=stalled,
        cancelled=cancelled,
    )


# -----------------------------------------------------------------------------
# ResearchOrchestrator Class
# -----------------------------------------------------------------------------


class ResearchOrchestrator:
    """Drives one research issue from decomposition to report.

    Usage:
        >>> orchestrator = ResearchOrchestrator(decomposer, researcher, synthesizer)
        >>> outcome = await orchestrator.run(issue)
        >>> print(outcome.summary.successful_tasks)
    """

    def __init__(
        self,
        decomposer: Decomposer,
        researcher: Researcher,
        synthesizer: Synthesizer,
        config: ResearchConfig | dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            decomposer: Proposes sub-tasks
            researcher: Executes sub-tasks
            synthesizer: Writes the report
            config: Run options, validated here
            event_bus: Event bus for progress events (global bus if None)
            metrics: Optional per-run metrics collector

        Raises:
            ConfigurationError: If the options are invalid
        """
        if config is None:
            config = ResearchConfig()
        elif isinstance(config, dict):
            config = build_config(**config)
        self.config = config
        self.decomposer = decomposer
        self.researcher = researcher
        self.synthesizer = synthesizer
        self.event_bus = event_bus or get_event_bus()
        self.metrics = metrics or MetricsCollector()
        self.evaluator = ConvergenceEvaluator(config)
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(RunState)

        graph.add_node("seed", self._seed)
        graph.add_node("execute", self._execute)
        graph.add_node("evaluate", self._evaluate)
        graph.add_node("synthesize", self._synthesize)

        graph.add_edge(START, "seed")
        graph.add_conditional_edges(
            "seed",
            self._route_after_seed,
            {"execute": "execute", "synthesize": "synthesize"},
        )
        graph.add_conditional_edges(
            "execute",
            self._route_after_execute,
            {"evaluate": "evaluate", "synthesize": "synthesize"},
        )
        graph.add_conditional_edges(
            "evaluate",
            self._route_after_evaluate,
            {"execute": "execute", "synthesize": "synthesize"},
        )
        graph.add_edge("synthesize", END)

        return graph.compile()

    @property
    def recursion_limit(self) -> int:
        """Framework step budget: seed, two steps per pass, synthesize, and slack."""
        return 2 * self.config.iteration_ceiling + 4

    # -------------------------------------------------------------------------
    # Event Emission Helpers
    # -------------------------------------------------------------------------

    async def _publish(
        self,
        event_type: EventType,
        run_id: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.event_bus.publish(
            ResearchEvent(type=event_type, run_id=run_id, source="orchestrator", data=data or {})
        )

    async def _publish_rejections(self, run_id: str, rejections: list[Rejection]) -> None:
        if not rejections:
            return
        await self._publish(
            EventType.TASKS_REJECTED,
            run_id,
            {
                "rejections": [
                    {
                        "title": rejection.proposal.title,
                        "reason": rejection.reason.value,
                        "detail": rejection.detail,
                    }
                    for rejection in rejections
                ]
            },
        )

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _seed(self, state: RunState) -> dict[str, Any]:
        """Ask the decomposer for the initial plan and load it into the graph.

        Decomposer errors here propagate and abort the run.
        """
        run_id = state["run_id"]
        issue = state["issue"]
        task_graph = state["task_graph"]

        proposals = await self.decomposer.propose(issue, [], 0)
        if not self.config.min_sub_tasks <= len(proposals) <= self.config.max_sub_tasks:
            logger.warning(
                "seed_plan_size_outside_bounds",
                run_id=run_id,
                proposals=len(proposals),
                min_sub_tasks=self.config.min_sub_tasks,
                max_sub_tasks=self.config.max_sub_tasks,
            )

        added = task_graph.add_tasks(proposals, iteration=0)
        await self._publish(
            EventType.PLAN_PROPOSED,
            run_id,
            {
                "iteration": 0,
                "accepted": [task.id for task in added.accepted],
                "proposed_by": None,
            },
        )
        await self._publish_rejections(run_id, added.rejected)

        logger.info(
            "research_seeded",
            run_id=run_id,
            accepted=len(added.accepted),
            rejected=len(added.rejected),
        )

        update: dict[str, Any] = {"phase": "executing", "rejections": added.rejected}
        if not task_graph.ready_tasks():
            counts = task_graph.counts()
            stall = OrchestrationStallError(
                0, counts[SubTaskStatus.BLOCKED], counts[SubTaskStatus.FAILED]
            )
            logger.warning("research_stalled", run_id=run_id, iteration=0, reason=str(stall))
            await self._publish(
                EventType.RUN_STALLED, run_id, {"iteration": 0, "reason": str(stall)}
            )
            update.update(
                phase="synthesizing",
                stalled=True,
                decision=Decision.COMPLETE,
                limitations=[f"{stall}. The initial plan produced no runnable sub-tasks."],
            )
        return update

    async def _execute(self, state: RunState) -> dict[str, Any]:
        """Run the ready set captured at the start of the pass."""
        run_id = state["run_id"]
        task_graph = state["task_graph"]
        cancel_event = state["cancel_event"]
        iteration = state["iteration"] + 1

        executor = SubTaskExecutor(
            task_graph,
            concurrency_limit=self.config.concurrency_limit,
            per_task_timeout=self.config.per_task_timeout,
            event_bus=self.event_bus,
            run_id=run_id,
            metrics=self.metrics,
        )
        outcomes = await executor.run_ready(
            task_graph.ready_tasks(),
            self.researcher,
            state["issue"],
            cancel_event=cancel_event,
            iteration=iteration,
        )
        self.metrics.record_pass(run_id)

        update: dict[str, Any] = {
            "phase": "evaluating",
            "iteration": iteration,
            "rejections": [rejection for outcome in outcomes for rejection in outcome.rejections],
        }
        if cancel_event.is_set():
            skipped = sum(1 for outcome in outcomes if outcome.status == "skipped")
            logger.warning(
                "research_cancelled", run_id=run_id, iteration=iteration, skipped=skipped
            )
            await self._publish(
                EventType.RUN_CANCELLED,
                run_id,
                {"iteration": iteration, "skipped": skipped},
            )
            update.update(
                phase="synthesizing",
                cancelled=True,
                decision=Decision.COMPLETE,
                limitations=[
                    f"Run cancelled during pass {iteration}; {skipped} undispatched sub-tasks "
                    "were skipped and remaining work was not executed."
                ],
            )
        return update

    async def _evaluate(self, state: RunState) -> dict[str, Any]:
        """Score the graph and, when continuing, let the decomposer extend it."""
        run_id = state["run_id"]
        task_graph = state["task_graph"]
        iteration = state["iteration"]

        snapshot = task_graph.snapshot()
        evaluation = self.evaluator.evaluate(snapshot, iteration)
        await self._publish(
            EventType.EVALUATION_RESULT,
            run_id,
            {
                "decision": evaluation.decision.value,
                "progress": evaluation.progress,
                "iteration": iteration,
                "ceiling_reached": evaluation.ceiling_reached,
                "reasoning": evaluation.reasoning,
            },
        )

        update: dict[str, Any] = {
            "progress": evaluation.progress,
            "decision": evaluation.decision,
            "evaluations": [evaluation],
        }

        if evaluation.decision == Decision.COMPLETE:
            update["phase"] = "synthesizing"
            if evaluation.ceiling_reached:
                await self._publish(
                    EventType.CEILING_REACHED,
                    run_id,
                    {"iteration": iteration, "progress": evaluation.progress},
                )
                update.update(
                    ceiling_reached=True,
                    limitations=[
                        f"Iteration ceiling of {self.config.iteration_ceiling} passes reached "
                        f"at {evaluation.progress:.1f}% progress; "
                        "the investigation may be incomplete."
                    ],
                )
            return update

        try:
            proposals = await self.decomposer.propose(
                state["issue"], snapshot.completed(), iteration
            )
        except Exception as e:
            logger.error(
                "decomposer_failed",
                run_id=run_id,
                iteration=iteration,
                error_type=type(e).__name__,
                error=str(e),
            )
            proposals = []

        rejections: list[Rejection] = []
        if proposals:
            added = task_graph.add_tasks(proposals, iteration=iteration)
            rejections = added.rejected
            await self._publish(
                EventType.PLAN_PROPOSED,
                run_id,
                {
                    "iteration": iteration,
                    "accepted": [task.id for task in added.accepted],
                    "proposed_by": None,
                },
            )
            await self._publish_rejections(run_id, rejections)
        update["rejections"] = rejections

        if task_graph.ready_tasks():
            update["phase"] = "executing"
            return update

        counts = task_graph.counts()
        stall = OrchestrationStallError(
            iteration, counts[SubTaskStatus.BLOCKED], counts[SubTaskStatus.FAILED]
        )
        logger.warning("research_stalled", run_id=run_id, iteration=iteration, reason=str(stall))
        await self._publish(
            EventType.RUN_STALLED,
            run_id,
            {"iteration": iteration, "reason": str(stall)},
        )
        update.update(
            phase="synthesizing",
            stalled=True,
            decision=Decision.COMPLETE,
            limitations=[f"{stall}. Completed early at {evaluation.progress:.1f}% progress."],
        )
        return update

    async def _synthesize(self, state: RunState) -> dict[str, Any]:
        """Hand the completed results to the synthesizer and summarize the run."""
        run_id = state["run_id"]
        task_graph = state["task_graph"]
        snapshot = task_graph.snapshot()
        completed = snapshot.completed()

        await self._publish(EventType.SYNTHESIS_STARTED, run_id, {"completed": len(completed)})

        limitations = list(state.get("limitations", []))
        failed = snapshot.by_status(SubTaskStatus.FAILED)
        blocked = snapshot.by_status(SubTaskStatus.BLOCKED)
        if failed:
            limitations.append(
                f"{len(failed)} sub-tasks failed: " + ", ".join(task.id for task in failed)
            )
        if blocked:
            limitations.append(
                f"{len(blocked)} sub-tasks were blocked by failed dependencies: "
                + ", ".join(task.id for task in blocked)
            )

        completed_at = utc_now()
        started_at = state["started_at"]
        metadata = ExecutionMetadata(
            started_at=started_at,
            completed_at=completed_at,
            total_execution_time=max((completed_at - started_at).total_seconds(), 0.0),
            total_sub_tasks=len(snapshot.tasks),
            iterations=state["iteration"],
            failed_tasks=len(failed),
            blocked_tasks=len(blocked),
            ceiling_reached=state["ceiling_reached"],
            stalled=state["stalled"],
            cancelled=state["cancelled"],
            limitations=limitations,
        )

        report = await self.synthesizer.synthesize(state["issue"], completed, metadata)
        summary = build_run_summary(
            snapshot,
            ceiling_reached=state["ceiling_reached"],
            stalled=state["stalled"],
            cancelled=state["cancelled"],
        )
        progress, _, _ = self.evaluator.score(snapshot)

        await self._publish(
            EventType.RUN_COMPLETE,
            run_id,
            {"progress": progress, "summary": summary.model_dump()},
        )
        logger.info(
            "research_complete",
            run_id=run_id,
            iterations=state["iteration"],
            progress=round(progress, 2),
            successful_tasks=summary.successful_tasks,
            failed_tasks=summary.failed_tasks,
            blocked_tasks=summary.blocked_tasks,
        )

        return {
            "phase": "done",
            "progress": progress,
            "completed_at": completed_at,
            "metadata": metadata,
            "report": report,
            "summary": summary,
        }

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def _route_after_seed(self, state: RunState) -> str:
        return "synthesize" if state["stalled"] else "execute"

    def _route_after_execute(self, state: RunState) -> str:
        return "synthesize" if state["cancelled"] else "evaluate"

    def _route_after_evaluate(self, state: RunState) -> str:
        if state["decision"] == Decision.COMPLETE:
            return "synthesize"
        return "execute"

    # -------------------------------------------------------------------------
    # Public Methods
    # -------------------------------------------------------------------------

    async def run(
        self,
        issue: ResearchIssue | dict[str, Any],
        cancel_event: asyncio.Event | None = None,
        run_id: str | None = None,
    ) -> ResearchOutcome:
        """Run one research issue to completion.

        Args:
            issue: The research question
            cancel_event: Set it to stop dispatching new sub-tasks
            run_id: Optional run id for events and logs

        Returns:
            The report, summary, final graph snapshot and run metadata
        """
        if not isinstance(issue, ResearchIssue):
            issue = ResearchIssue.model_validate(issue)

        initial_state = create_research_initial_state(issue, cancel_event, run_id)
        run_id = initial_state["run_id"]
        self.metrics.start(run_id)

        with structlog.contextvars.bound_contextvars(run_id=run_id):
            await self._publish(
                EventType.RUN_STARTED,
                run_id,
                {"title": issue.title, "config": self.config.model_dump()},
            )
            logger.info("research_started", title=issue.title)
            try:
                final_state = await self._compiled_graph.ainvoke(
                    initial_state,
                    config={"recursion_limit": self.recursion_limit},
                )
            finally:
                self.metrics.finish(run_id)
                await self.event_bus.close_run(run_id)

        return ResearchOutcome(
            run_id=run_id,
            report=final_state["report"],
            summary=final_state["summary"],
            snapshot=final_state["task_graph"].snapshot(),
            progress=final_state["progress"],
            iterations=final_state["iteration"],
            metadata=final_state["metadata"],
        )
