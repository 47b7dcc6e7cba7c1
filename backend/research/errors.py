"""Exception hierarchy for the research orchestration engine.

Only ``ConfigurationError`` aborts a run, and it is raised before any work
begins. The other kinds are either raised for API misuse
(``InvalidTransitionError``, ``TaskNotFoundError``) or captured into task and
run state instead of escaping the loop.
"""

from models.schemas import RejectionReason


class ResearchError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ResearchError):
    """Raised at start-up when run options are invalid."""


class InvalidTransitionError(ResearchError):
    """Raised when a status transition is not allowed from the current state."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move task '{task_id}' from {current} to {target}")


class TaskNotFoundError(ResearchError, KeyError):
    """Raised when a transition names a task id the graph does not hold."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Unknown task id: {task_id}")

    def __str__(self) -> str:
        return str(self.args[0])


class StructuralGraphError(ResearchError):
    """Describes a proposal rejected at the task graph boundary.

    Instances are carried in rejection details; ``add_tasks`` never raises them.
    """

    def __init__(self, reason: RejectionReason, detail: str) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}")


class TaskExecutionError(ResearchError):
    """A researcher failed or timed out on a single sub-task."""

    def __init__(self, task_id: str, reason: str) -> None:
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task '{task_id}' failed: {reason}")


class OrchestrationStallError(ResearchError):
    """No work is ready or running while the evaluator still wants to continue.

    The orchestrator records this as a limitation and forces completion.
    """

    def __init__(self, iteration: int, blocked: int, failed: int) -> None:
        self.iteration = iteration
        self.blocked = blocked
        self.failed = failed
        super().__init__(
            f"Research stalled at iteration {iteration}: no runnable sub-tasks "
            f"({failed} failed, {blocked} blocked)"
        )
