"""Best-effort pub/sub for scheduler lifecycle events.

Publishing never blocks or fails the publisher. Each subscriber keeps a bounded
history (drop-oldest), and a subscriber that keeps raising is disabled.
"""

import asyncio
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flowpatch.logging import get_logger
from flowpatch.models.base import utcnow

logger = get_logger(__name__)

_MAX_CONSECUTIVE_FAILURES = 10


class EventType(str, Enum):
    JOB_ENQUEUED = "job_enqueued"
    JOB_CLAIMED = "job_claimed"
    JOB_SUCCEEDED = "job_succeeded"
    JOB_FAILED = "job_failed"
    JOB_RETRY_SCHEDULED = "job_retry_scheduled"
    JOB_PENDING_APPROVAL = "job_pending_approval"
    JOB_CANCELED = "job_canceled"
    WORKTREE_CREATED = "worktree_created"
    WORKTREE_LOCKED = "worktree_locked"
    WORKTREE_RELEASED = "worktree_released"
    WORKTREE_CLEANED = "worktree_cleaned"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict[str, Any]
    at: datetime = field(default_factory=utcnow)


EventCallback = Callable[[Event], Any]
EventFilter = Callable[[Event], bool] | None


@dataclass
class _Subscriber:
    callback: EventCallback
    event_filter: EventFilter
    history: deque[Event]
    consecutive_failures: int = 0


class EventBus:
    """In-process event sink with bounded per-subscriber history.

    Callbacks may be sync or async; async callbacks are scheduled on the running
    loop and their failures are logged like sync ones.
    """

    def __init__(self, *, max_history: int = 1000) -> None:
        self._max_history = max_history
        self._subscribers: dict[str, _Subscriber] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: EventCallback, *, event_filter: EventFilter = None) -> str:
        sub_id = str(uuid.uuid4())
        self._subscribers[sub_id] = _Subscriber(
            callback=callback,
            event_filter=event_filter,
            history=deque(maxlen=self._max_history),
        )
        logger.debug("event_bus.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        return self._subscribers.pop(sub_id, None) is not None

    def history(self, sub_id: str) -> list[Event]:
        sub = self._subscribers.get(sub_id)
        return list(sub.history) if sub else []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event_type: EventType, **data: Any) -> None:
        """Publish an event to every matching subscriber."""
        event = Event(type=event_type, data=data)
        for sub_id, sub in list(self._subscribers.items()):
            if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(event):
                    continue
                sub.history.append(event)
                result = sub.callback(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(lambda t, s=sub_id: self._on_task_done(s, t))
                else:
                    sub.consecutive_failures = 0
            except Exception:
                self._record_failure(sub_id, event)

    def _on_task_done(self, sub_id: str, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            self._record_failure(sub_id, None, task.exception())
        elif sub_id in self._subscribers:
            self._subscribers[sub_id].consecutive_failures = 0

    def _record_failure(
        self, sub_id: str, event: Event | None, exc: BaseException | None = None
    ) -> None:
        sub = self._subscribers.get(sub_id)
        if sub is None:
            return
        sub.consecutive_failures += 1
        logger.warning(
            "event_bus.subscriber_error",
            subscriber_id=sub_id,
            event_type=event.type.value if event else None,
            consecutive_failures=sub.consecutive_failures,
            exc_info=exc or True,
        )
        if sub.consecutive_failures >= _MAX_CONSECUTIVE_FAILURES:
            logger.error("event_bus.subscriber_disabled", subscriber_id=sub_id)
