"""Research orchestration engine.

This package decides when and in what order sub-tasks run and when an
investigation is done:
- TaskGraph: dependency graph of sub-tasks with readiness and transitions
- SubTaskExecutor: bounded-concurrency execution of a ready batch
- ConvergenceEvaluator: progress score and continue/complete decision
- ResearchOrchestrator: the seed/execute/evaluate/synthesize state machine
- Decomposer, Researcher, Synthesizer: collaborator protocols

LLM-backed collaborators live in ``agents``; ``research.factory`` wires them.
"""

from research.collaborators import Decomposer, Researcher, Synthesizer
from research.convergence import ConvergenceEvaluator
from research.errors import (
    ConfigurationError,
    InvalidTransitionError,
    OrchestrationStallError,
    ResearchError,
    StructuralGraphError,
    TaskExecutionError,
    TaskNotFoundError,
)
from research.executor import SubTaskExecutor
from research.orchestrator import (
    ResearchOrchestrator,
    RunState,
    build_config,
    build_run_summary,
    create_research_initial_state,
)
from research.task_graph import TaskGraph

__all__ = [
    # Collaborators
    "Decomposer",
    "Researcher",
    "Synthesizer",
    # Errors
    "ConfigurationError",
    "InvalidTransitionError",
    "OrchestrationStallError",
    "ResearchError",
    "StructuralGraphError",
    "TaskExecutionError",
    "TaskNotFoundError",
    # Engine
    "ConvergenceEvaluator",
    "ResearchOrchestrator",
    "RunState",
    "SubTaskExecutor",
    "TaskGraph",
    "build_config",
    "build_run_summary",
    "create_research_initial_state",
]
