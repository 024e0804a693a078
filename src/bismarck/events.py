"""Event fan-out for plan and loop state changes.

Every state transition the engine makes is published here. The bus persists
the event first (so it can be replayed after a restart) and then hands it to
each subscriber without ever blocking: subscribers have a bounded buffer and
the oldest buffered event is dropped when a slow consumer falls behind.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Literal, Optional

from pydantic import BaseModel, Field

from bismarck.state.db import BismarckDB

logger = logging.getLogger(__name__)

EventLevel = Literal["info", "success", "warning", "error"]


class EventKind:
    """Known event kinds."""

    PLAN_STATUS = "plan_status"
    PLAN_ACTIVITY = "plan_activity"
    TASK_STATUS = "task_status"
    TASK_OUTPUT = "task_output"
    CRITIC_STATUS = "critic_status"
    WORKTREE_STATUS = "worktree_status"
    LOOP_STATUS = "loop_status"
    LOOP_ITERATION = "loop_iteration"
    LOOP_OUTPUT = "loop_output"


class EngineEvent(BaseModel):
    """A state-change notification."""

    kind: str = Field(description="Event kind, one of EventKind")
    subject_id: str = Field(description="Plan or loop id the event belongs to")
    task_id: Optional[str] = Field(default=None, description="Task the event concerns, if any")
    status: Optional[str] = Field(default=None, description="New status for status events")
    level: EventLevel = Field(default="info", description="Severity shown to observers")
    message: str = Field(default="", description="Human readable summary")
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    sequence: Optional[int] = Field(default=None, description="Replay log position once persisted")


StatusCallback = Callable[[EngineEvent], None]

_CLOSED = object()


class Subscription:
    """Bounded, drop-oldest stream of events for one consumer."""

    def __init__(self, bus: "EventBus", subject_id: Optional[str], maxsize: int):
        self._bus = bus
        self.subject_id = subject_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: EngineEvent) -> bool:
        return self.subject_id is None or event.subject_id == self.subject_id

    def _offer(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def deliver(self, event: EngineEvent) -> None:
        if not self.closed:
            self._offer(event)

    def pending(self) -> list[EngineEvent]:
        """Drain and return everything buffered right now."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                items.append(item)
        return items

    async def get(self) -> Optional[EngineEvent]:
        """Wait for the next event; None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        self._offer(_CLOSED)

    def __aiter__(self) -> AsyncIterator[EngineEvent]:
        return self

    async def __anext__(self) -> EngineEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Persists engine events and fans them out to observers."""

    def __init__(self, store: Optional[BismarckDB] = None, buffer_size: int = 256):
        self.store = store
        self.buffer_size = buffer_size
        self._subscriptions: list[Subscription] = []
        self._callbacks: list[StatusCallback] = []

    def publish(self, event: EngineEvent, persist: bool = True) -> EngineEvent:
        """Persist (unless persist=False) and deliver an event.

        Raises:
            PersistenceError: If the event cannot be written
        """
        if persist and self.store is not None:
            event.sequence = self.store.create_event(event)

        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

        if event.status is not None:
            for callback in list(self._callbacks):
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Status callback failed for {event.kind} on {event.subject_id}")
        return event

    def emit(
        self,
        kind: str,
        subject_id: str,
        message: str = "",
        *,
        task_id: Optional[str] = None,
        status: Optional[str] = None,
        level: EventLevel = "info",
        persist: bool = True,
        **details: Any,
    ) -> EngineEvent:
        """Build and publish an event in one call."""
        event = EngineEvent(
            kind=kind,
            subject_id=subject_id,
            task_id=task_id,
            status=status,
            level=level,
            message=message,
            details=details,
        )
        return self.publish(event, persist=persist)

    def subscribe(self, subject_id: Optional[str] = None, buffer_size: Optional[int] = None) -> Subscription:
        """Subscribe to one plan or loop, or to everything when subject_id is None."""
        subscription = Subscription(self, subject_id, buffer_size or self.buffer_size)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a callback for status events. Returns an unregister function."""
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def replay(self, subject_id: str, limit: Optional[int] = None) -> list[EngineEvent]:
        """Persisted events for a plan or loop, oldest first."""
        if self.store is None:
            return []
        return [EngineEvent.model_validate(row) for row in self.store.get_events(subject_id, limit)]
