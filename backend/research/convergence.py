"""Progress scoring and the continue/complete decision.

Progress is measured on a 0-100 scale from the task graph alone:

    base     = 100 * completed / max(1, completed + pending + ready + running)
    penalty  = failure_penalty_weight * 100 * (failed + blocked) / max(1, total)
    progress = clamp(base - penalty, 0, 100)

The penalty keeps a run whose work keeps failing from reporting full coverage
merely because nothing is left to run.
"""

import structlog

from models.schemas import Decision, Evaluation, GraphSnapshot, ResearchConfig, SubTaskStatus

logger = structlog.get_logger(__name__)


class ConvergenceEvaluator:
    """Decides after each execution pass whether the research is done."""

    def __init__(self, config: ResearchConfig) -> None:
        self.config = config

    def score(self, snapshot: GraphSnapshot) -> tuple[float, float, float]:
        """Return ``(progress, base_progress, coverage_penalty)`` for a snapshot."""
        completed = snapshot.count(SubTaskStatus.COMPLETED)
        live = (
            completed
            + snapshot.count(SubTaskStatus.PENDING)
            + snapshot.count(SubTaskStatus.READY)
            + snapshot.count(SubTaskStatus.RUNNING)
        )
        dead = snapshot.count(SubTaskStatus.FAILED) + snapshot.count(SubTaskStatus.BLOCKED)
        total = len(snapshot.tasks)

        base = 100.0 * completed / max(1, live)
        penalty = self.config.failure_penalty_weight * 100.0 * dead / max(1, total)
        progress = min(max(base - penalty, 0.0), 100.0)
        return progress, base, penalty

    def evaluate(self, snapshot: GraphSnapshot, iteration: int) -> Evaluation:
        """Score the graph and decide whether to continue.

        Completion requires all of: progress at or above the threshold, no
        ready or running work, at least the minimum number of passes, and at
        least ``min_sub_tasks`` completed sub-tasks. A run that reaches the
        iteration ceiling completes regardless, flagged ``ceiling_reached``.

        Args:
            snapshot: The task graph after the pass.
            iteration: Number of execution passes finished so far.
        """
        config = self.config
        progress, base, penalty = self.score(snapshot)
        completed = snapshot.count(SubTaskStatus.COMPLETED)
        outstanding = snapshot.count(SubTaskStatus.READY) + snapshot.count(SubTaskStatus.RUNNING)

        unmet: list[str] = []
        if progress < config.threshold_percent:
            unmet.append(f"progress {progress:.1f} below {config.threshold_percent:.1f}")
        if outstanding:
            unmet.append(f"{outstanding} sub-tasks still ready or running")
        if iteration < config.iteration_floor:
            unmet.append(f"only {iteration} of {config.iteration_floor} required passes")
        if completed < config.min_sub_tasks:
            unmet.append(f"{completed} of {config.min_sub_tasks} required sub-tasks completed")

        if not unmet:
            decision = Decision.COMPLETE
            ceiling_reached = False
            reasoning = f"progress {progress:.1f} meets threshold after {iteration} passes"
        elif iteration >= config.iteration_ceiling:
            decision = Decision.COMPLETE
            ceiling_reached = True
            reasoning = f"iteration ceiling {config.iteration_ceiling} reached; " + "; ".join(unmet)
        else:
            decision = Decision.CONTINUE
            ceiling_reached = False
            reasoning = "; ".join(unmet)

        logger.info(
            "convergence_evaluated",
            iteration=iteration,
            decision=decision.value,
            progress=round(progress, 2),
            base_progress=round(base, 2),
            coverage_penalty=round(penalty, 2),
            ceiling_reached=ceiling_reached,
        )

        return Evaluation(
            decision=decision,
            progress=progress,
            base_progress=base,
            coverage_penalty=penalty,
            ceiling_reached=ceiling_reached,
            reasoning=reasoning,
        )
