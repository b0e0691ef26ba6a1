"""
Queue events — typed observer registration for broker lifecycle events.

Each queue owns an EventStream; the MessageQueueSystem subscribes to every
queue's stream and re-publishes onto its own, attaching the queue name.

Usage:
    sub = system.events.subscribe(on_sent, EventType.MESSAGE_SENT)
    ...
    sub.unsubscribe()
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

logger = structlog.get_logger()


class EventType(str, Enum):
    MESSAGE_SENT = "messageSent"
    MESSAGES_RECEIVED = "messagesReceived"
    MESSAGE_ACKNOWLEDGED = "messageAcknowledged"
    MESSAGE_DEAD_LETTERED = "messageDeadLettered"
    MESSAGE_FAILED = "messageFailed"
    MESSAGE_EXPIRED = "messageExpired"
    MESSAGE_REQUEUED = "messageRequeued"
    QUEUE_PURGED = "queuePurged"
    QUEUE_ATTRIBUTES_UPDATED = "queueAttributesUpdated"
    MESSAGES_VISIBLE = "messagesVisible"
    MESSAGE_DELAY_CHANGED = "messageDelayChanged"
    MAINTENANCE_COMPLETED = "maintenanceCompleted"
    QUEUE_CREATED = "queueCreated"
    QUEUE_DELETED = "queueDeleted"
    DEAD_LETTER_QUEUE_SET = "deadLetterQueueSet"


# Events a queue emits about itself; these are forwarded by the system.
QUEUE_EVENTS = frozenset({
    EventType.MESSAGE_SENT,
    EventType.MESSAGES_RECEIVED,
    EventType.MESSAGE_ACKNOWLEDGED,
    EventType.MESSAGE_DEAD_LETTERED,
    EventType.MESSAGE_FAILED,
    EventType.MESSAGE_EXPIRED,
    EventType.MESSAGE_REQUEUED,
    EventType.QUEUE_PURGED,
    EventType.QUEUE_ATTRIBUTES_UPDATED,
    EventType.MESSAGES_VISIBLE,
    EventType.MESSAGE_DELAY_CHANGED,
})


@dataclass(frozen=True)
class QueueEvent:
    type: EventType
    queue_name: Optional[str]
    data: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[[QueueEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by EventStream.subscribe()."""

    def __init__(self, stream: EventStream, token: int):
        self._stream = stream
        self._token = token

    @property
    def active(self) -> bool:
        return self._token in self._stream._handlers

    def unsubscribe(self) -> None:
        self._stream._handlers.pop(self._token, None)


class EventStream:
    """
    Synchronous fan-out of QueueEvents to registered handlers.

    Handlers may be plain callables or coroutine functions; coroutines are
    scheduled on the running loop. A failing handler is logged and skipped,
    it never breaks the operation that produced the event.
    """

    def __init__(self):
        self._handlers: dict[int, tuple[EventHandler, Optional[frozenset[EventType]]]] = {}
        self._tokens = itertools.count()
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, handler: EventHandler, *event_types: EventType) -> Subscription:
        """Register a handler for the given event types (all events if none given)."""
        token = next(self._tokens)
        self._handlers[token] = (handler, frozenset(event_types) if event_types else None)
        return Subscription(self, token)

    def publish(self, event: QueueEvent) -> None:
        for handler, types in list(self._handlers.values()):
            if types is not None and event.type not in types:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._handler_done)
            except Exception as e:
                logger.error("event_handler_error",
                             event_type=event.type.value,
                             queue=event.queue_name,
                             error=str(e),
                             exc_info=True)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("event_handler_error", error=str(task.exception()))

    def clear(self) -> None:
        self._handlers.clear()
