"""Bounded-concurrency execution of one batch of ready sub-tasks.

Each task in the batch moves through ``mark_running`` and the researcher call,
then ``mark_completed`` or ``mark_failed``. Workers run under an
``asyncio.Semaphore`` and are gathered together. Follow-up tasks proposed by
results are inserted only once the whole batch has finished, in batch order,
so the graph does not change shape while the batch runs.
"""

import asyncio
import time

import structlog

from events.bus import EventBus
from events.types import EventType, ResearchEvent
from metrics import MetricsCollector
from models.schemas import ResearchIssue, SubTask, SubTaskOutcome
from research.collaborators import Researcher
from research.errors import InvalidTransitionError, TaskExecutionError
from research.task_graph import TaskGraph

logger = structlog.get_logger(__name__)


class SubTaskExecutor:
    """Runs ready sub-tasks against a researcher.

    Attributes:
        task_graph: Graph whose tasks are transitioned.
        concurrency_limit: Maximum researcher calls in flight.
        per_task_timeout: Seconds before a single researcher call is abandoned.
    """

    def __init__(
        self,
        task_graph: TaskGraph,
        concurrency_limit: int = 3,
        per_task_timeout: float = 300.0,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.task_graph = task_graph
        self.concurrency_limit = concurrency_limit
        self.per_task_timeout = per_task_timeout
        self.event_bus = event_bus
        self.run_id = run_id
        self.metrics = metrics

    async def run_ready(
        self,
        tasks: list[SubTask],
        researcher: Researcher,
        issue: ResearchIssue,
        cancel_event: asyncio.Event | None = None,
        iteration: int = 0,
    ) -> list[SubTaskOutcome]:
        """Execute ``tasks`` and return one outcome per distinct task id.

        There are no automatic retries; a failed task stays failed. Once
        ``cancel_event`` is set, workers that have not started yet report
        ``skipped`` and leave their task ready. Workers already inside the
        researcher run to completion.

        Args:
            tasks: Ready tasks, normally from ``TaskGraph.ready_tasks()``.
            researcher: Collaborator that performs the work.
            issue: The run's research issue.
            cancel_event: Optional run cancellation signal.
            iteration: Pass number used for follow-up tasks.

        Returns:
            Outcomes in batch order.
        """
        unique: dict[str, SubTask] = {}
        for task in tasks:
            unique.setdefault(task.id, task)
        batch = list(unique.values())
        if not batch:
            return []

        semaphore = asyncio.Semaphore(self.concurrency_limit)

        async def worker(task: SubTask) -> SubTaskOutcome:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return SubTaskOutcome(task_id=task.id, status="skipped")
                return await self._execute_one(task, researcher, issue)

        logger.info(
            "executor_batch_started",
            run_id=self.run_id,
            iteration=iteration,
            batch_size=len(batch),
            concurrency_limit=self.concurrency_limit,
        )
        outcomes = list(await asyncio.gather(*(worker(task) for task in batch)))

        for outcome in outcomes:
            if outcome.result is None or not outcome.result.additional_tasks:
                continue
            added = self.task_graph.add_tasks(
                outcome.result.additional_tasks,
                proposed_by=outcome.task_id,
                iteration=iteration,
            )
            outcome.added_task_ids = [task.id for task in added.accepted]
            outcome.rejections = added.rejected
            if added.accepted:
                await self._publish(
                    EventType.PLAN_PROPOSED,
                    None,
                    {
                        "iteration": iteration,
                        "accepted": outcome.added_task_ids,
                        "proposed_by": outcome.task_id,
                    },
                )
            if added.rejected:
                await self._publish(
                    EventType.TASKS_REJECTED,
                    None,
                    {
                        "proposed_by": outcome.task_id,
                        "rejections": [
                            {
                                "title": rejection.proposal.title,
                                "reason": rejection.reason.value,
                                "detail": rejection.detail,
                            }
                            for rejection in added.rejected
                        ],
                    },
                )

        logger.info(
            "executor_batch_finished",
            run_id=self.run_id,
            iteration=iteration,
            completed=sum(1 for outcome in outcomes if outcome.status == "completed"),
            failed=sum(1 for outcome in outcomes if outcome.status == "failed"),
            skipped=sum(1 for outcome in outcomes if outcome.status == "skipped"),
        )
        return outcomes

    async def _execute_one(
        self,
        task: SubTask,
        researcher: Researcher,
        issue: ResearchIssue,
    ) -> SubTaskOutcome:
        try:
            running = self.task_graph.mark_running(task.id)
        except InvalidTransitionError as e:
            # Blocked or already taken since the batch was captured.
            logger.warning("subtask_not_runnable", task_id=task.id, error=str(e))
            return SubTaskOutcome(task_id=task.id, status="skipped", error=str(e))

        await self._publish(EventType.SUBTASK_STARTED, task.id, {"title": task.title})
        started = time.monotonic()
        timeout = self.per_task_timeout

        try:
            result = await asyncio.wait_for(
                researcher.execute(running, issue, timeout),
                timeout=timeout,
            )
        except TimeoutError:
            reason = f"timeout after {timeout:g}s"
        except TaskExecutionError as e:
            reason = f"{type(e).__name__}: {e.reason}"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
        else:
            duration = time.monotonic() - started
            completed = self.task_graph.mark_completed(task.id, result)
            self._record(status="completed", duration=duration)
            logger.info(
                "subtask_completed",
                run_id=self.run_id,
                task_id=task.id,
                confidence=result.confidence,
                duration_seconds=round(duration, 3),
            )
            await self._publish(
                EventType.SUBTASK_COMPLETED,
                task.id,
                {
                    "title": task.title,
                    "confidence": result.confidence,
                    "duration_seconds": duration,
                },
            )
            return SubTaskOutcome(
                task_id=task.id,
                status="completed",
                result=completed.result,
                duration_seconds=duration,
            )

        duration = time.monotonic() - started
        self.task_graph.mark_failed(task.id, reason)
        self._record(status="failed", duration=duration)
        logger.warning(
            "subtask_failed",
            run_id=self.run_id,
            task_id=task.id,
            reason=reason,
            duration_seconds=round(duration, 3),
        )
        await self._publish(
            EventType.SUBTASK_FAILED,
            task.id,
            {"title": task.title, "error": reason, "duration_seconds": duration},
        )
        return SubTaskOutcome(
            task_id=task.id,
            status="failed",
            error=reason,
            duration_seconds=duration,
        )

    def _record(self, status: str, duration: float) -> None:
        if self.metrics and self.run_id:
            self.metrics.record_subtask(self.run_id, status, duration)

    async def _publish(self, event_type: EventType, task_id: str | None, data: dict) -> None:
        if self.event_bus is None or self.run_id is None:
            return
        await self.event_bus.publish(
            ResearchEvent(
                type=event_type,
                run_id=self.run_id,
                task_id=task_id,
                source="executor",
                data=data,
            )
        )
