"""Async event bus for research run progress.

This module provides an EventBus that fans research events out to any number
of subscribers per run. The orchestrator and executor publish; callers such as
the command-line runner subscribe and render progress.

The bus supports:
- Multiple subscribers per run, each with its own asyncio.Queue
- Buffering of events published before the first subscriber attaches
- Bounded per-run history for late subscribers
- A close sentinel that lets consumers leave their read loops cleanly
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, ResearchEvent

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus keyed by run id.

    Event Buffering:
        Events published before any subscriber connects are buffered and
        handed to the first subscriber on ``subscribe``. A run usually starts
        publishing before its consumer has attached.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock. Queue puts
        happen outside the lock.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(ResearchEvent(type=EventType.RUN_STARTED, run_id="run_123"))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")
    """

    # Maximum number of events retained per run for history replay.
    MAX_HISTORY_PER_RUN = 5000

    # Seconds to wait on a stalled subscriber before dropping an event for it.
    DELIVERY_TIMEOUT_SECONDS = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[ResearchEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[ResearchEvent]] = defaultdict(list)
        self._event_history: dict[str, list[ResearchEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.debug("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[ResearchEvent]:
        """Subscribe to events for a run.

        Buffered events for the run, if any, are delivered to the new queue
        immediately.

        Args:
            run_id: The run to follow

        Returns:
            A queue receiving ResearchEvent objects in publish order
        """
        queue: asyncio.Queue[ResearchEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])
            buffered_events = self._event_buffer.pop(run_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[ResearchEvent]) -> None:
        """Remove ``queue`` from the run's subscribers. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]
            logger.info("subscriber_removed", run_id=run_id, subscriber_count=len(queues))

    async def publish(self, event: ResearchEvent) -> None:
        """Publish an event to every subscriber of its run.

        The event is recorded in the run history. Without subscribers it is
        buffered until one attaches.

        Args:
            event: The ResearchEvent to publish
        """
        with self._lock:
            if event.type != EventType.RUN_CLOSED:
                history = self._event_history[event.run_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_RUN:
                    self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

            subscribers = list(self._subscribers.get(event.run_id, []))
            if not subscribers:
                self._event_buffer[event.run_id].append(event)
                logger.debug(
                    "event_buffered",
                    run_id=event.run_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.run_id]),
                )
                return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT_SECONDS)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            task_id=event.task_id,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, run_id: str) -> list[ResearchEvent]:
        """Return all recorded events for a run in publish order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Signal the end of a run to every subscriber.

        Each queue receives a RUN_CLOSED sentinel, then subscribers and
        buffered events are dropped. History is kept until
        ``clear_event_history`` is called.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            buffered = self._event_buffer.pop(run_id, [])

        for queue in queues_to_signal:
            await queue.put(
                ResearchEvent(
                    type=EventType.RUN_CLOSED,
                    run_id=run_id,
                    data={"reason": "run_closed"},
                )
            )

        logger.info(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def clear_event_history(self, run_id: str) -> None:
        """Forget the recorded history of a finished run."""
        with self._lock:
            self._event_history.pop(run_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the process-wide EventBus, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global EventBus so the next caller gets a fresh one. Used by tests."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
