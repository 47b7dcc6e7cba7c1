"""Event type definitions for the research event system.

This module defines the events published while a research run progresses.
Every phase change of the orchestrator and every sub-task transition produces
an event, so a subscriber can follow a run without polling the task graph.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the research system.

    Events are categorized by:
    - Run lifecycle: start, cancellation, completion and the close sentinel
    - Planning: proposals accepted or rejected by the task graph
    - Execution: sub-task start, completion and failure
    - Convergence: evaluation results, stalls and the iteration ceiling
    - Observability: LLM call metrics and collaborator errors
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    RUN_CANCELLED = "run_cancelled"
    RUN_CLOSED = "run_closed"

    # Planning
    PLAN_PROPOSED = "plan_proposed"
    TASKS_REJECTED = "tasks_rejected"

    # Execution
    SUBTASK_STARTED = "subtask_started"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_FAILED = "subtask_failed"

    # Convergence
    EVALUATION_RESULT = "evaluation_result"
    RUN_STALLED = "run_stalled"
    CEILING_REACHED = "ceiling_reached"
    SYNTHESIS_STARTED = "synthesis_started"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"
    AGENT_ERROR = "agent_error"


class ResearchEvent(BaseModel):
    """An event emitted during a research run.

    Payload schemas by event type:

    RUN_STARTED:
        - title: str - Issue title
        - config: dict - Effective run configuration

    PLAN_PROPOSED:
        - iteration: int - Pass the proposals belong to
        - accepted: list[str] - Ids added to the graph
        - proposed_by: Optional[str] - Sub-task that proposed them

    TASKS_REJECTED:
        - rejections: list[dict] - Proposal title, reason and detail

    SUBTASK_STARTED / SUBTASK_COMPLETED / SUBTASK_FAILED:
        - title: str - Sub-task title
        - confidence: float - Result confidence (completed only)
        - error: str - Failure reason (failed only)
        - duration_seconds: float - Wall-clock time of the attempt

    EVALUATION_RESULT:
        - decision: str - "continue" or "complete"
        - progress: float - Progress on the 0-100 scale
        - iteration: int - Completed passes

    RUN_COMPLETE:
        - progress: float
        - summary: dict - The run summary

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    task_id: str | None = None
    source: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "subtask_completed",
                    "timestamp": 1699876543.123,
                    "run_id": "run_abc123",
                    "task_id": "subtask_1",
                    "source": "executor",
                    "data": {"title": "Market size", "confidence": 0.8},
                }
            ]
        }
    }


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier (e.g., "gpt-4o-mini")
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
