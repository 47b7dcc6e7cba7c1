"""In-memory metrics collection for active research runs.

This module provides the MetricsCollector class that accumulates token usage,
pass counts and sub-task outcomes for running research runs. When a run
finishes, ``finish`` returns the final numbers with the run duration filled in.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> collector.start("run_abc123")
    >>> collector.record_llm_call("run_abc123", prompt_tokens=100, completion_tokens=50)
    >>> collector.record_subtask("run_abc123", "completed", duration_seconds=2.5)
    >>> collector.record_pass("run_abc123")
    >>> final = collector.finish("run_abc123")
    >>> print(final)  # RunMetricsData(...)
"""

import time
from dataclasses import asdict, dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RunMetricsData:
    """Accumulated metrics for a single research run.

    Attributes:
        total_tokens: Sum of prompt and completion tokens.
        prompt_tokens: Total input tokens across all LLM calls.
        completion_tokens: Total output tokens across all LLM calls.
        llm_calls: Number of LLM invocations.
        passes: Number of execution passes over the ready set.
        subtasks_completed: Sub-tasks that produced a result.
        subtasks_failed: Sub-tasks that raised or timed out.
        subtask_seconds: Wall-clock seconds spent inside the researcher.
        duration_ms: Total run time in milliseconds (set by finish()).
        started_at: Unix timestamp when tracking began.
    """

    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    passes: int = 0
    subtasks_completed: int = 0
    subtasks_failed: int = 0
    subtask_seconds: float = 0.0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, float]:
        """Convert to a plain dict for logging or event payloads."""
        data = asdict(self)
        data.pop("started_at")
        return data


class MetricsCollector:
    """In-memory collector that tracks per-run metrics.

    Each active run gets its own RunMetricsData instance. Recording against a
    run that is not tracked logs a warning and does nothing.

    Attributes:
        _runs: Mapping from run_id to its metrics data.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunMetricsData] = {}

    def start(self, run_id: str) -> None:
        """Begin tracking metrics for a run. No-op if already tracked."""
        if run_id in self._runs:
            logger.debug("metrics_already_tracking", run_id=run_id)
            return

        self._runs[run_id] = RunMetricsData()
        logger.debug("metrics_tracking_started", run_id=run_id)

    def record_llm_call(
        self,
        run_id: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> None:
        """Record token usage from a single LLM call.

        Args:
            run_id: The run the LLM call belongs to.
            prompt_tokens: Number of input tokens used.
            completion_tokens: Number of output tokens used.
        """
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_record_no_run", run_id=run_id)
            return

        data.prompt_tokens += prompt_tokens
        data.completion_tokens += completion_tokens
        data.total_tokens += prompt_tokens + completion_tokens
        data.llm_calls += 1

        logger.debug(
            "metrics_llm_call_recorded",
            run_id=run_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_llm_calls=data.llm_calls,
        )

    def record_subtask(self, run_id: str, status: str, duration_seconds: float) -> None:
        """Record the outcome of one sub-task attempt.

        Args:
            run_id: The run the sub-task belongs to.
            status: "completed" or "failed". Other values are ignored.
            duration_seconds: Time spent in the researcher.
        """
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_subtask_no_run", run_id=run_id)
            return

        if status == "completed":
            data.subtasks_completed += 1
        elif status == "failed":
            data.subtasks_failed += 1
        else:
            return
        data.subtask_seconds += duration_seconds

    def record_pass(self, run_id: str) -> None:
        """Increment the execution pass counter for a run."""
        data = self._runs.get(run_id)
        if data is None:
            logger.warning("metrics_pass_no_run", run_id=run_id)
            return

        data.passes += 1

    def finish(self, run_id: str) -> RunMetricsData | None:
        """Finalize metrics for a run, calculating duration.

        The run's data is removed from the collector after this call.

        Returns:
            The final RunMetricsData, or None if not tracked.
        """
        data = self._runs.pop(run_id, None)
        if data is None:
            logger.warning("metrics_finish_no_run", run_id=run_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)

        logger.info(
            "metrics_run_finished",
            run_id=run_id,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            passes=data.passes,
            subtasks_completed=data.subtasks_completed,
            subtasks_failed=data.subtasks_failed,
            duration_ms=data.duration_ms,
        )

        return data

    def get(self, run_id: str) -> RunMetricsData | None:
        """Get in-progress metrics for a run without removing them."""
        return self._runs.get(run_id)
