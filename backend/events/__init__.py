"""Event system for research run progress.

This package provides the pub/sub infrastructure that reports what a research
run is doing while it runs. It is based on asyncio.Queue subscribers keyed by
run id.

Key Components:
    - EventType: Enum of all event types in the system
    - ResearchEvent: Pydantic model for events flowing through the bus
    - EventBus: Async pub/sub implementation for event distribution
    - LLMMetrics: Token and latency metrics for individual LLM calls

Usage:
    >>> from events import EventType, ResearchEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(ResearchEvent(
    ...     type=EventType.SUBTASK_STARTED,
    ...     run_id="run_123",
    ...     task_id="subtask_1",
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    LLMMetrics,
    ResearchEvent,
)

__all__ = [
    # Event types
    "EventType",
    "ResearchEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
