"""
Delayed queue — messages stay invisible until their delay has passed.

Two heaps:
  _delayed  (available_at, enqueue_sequence, id)  future messages
  _ready    (enqueue_sequence, id)                due messages, FIFO

Due messages are promoted from _delayed to _ready at the start of every
receive and during maintenance. Heap entries are never removed in place;
an entry whose message moved on (leased, deleted, delay changed) no longer
matches the message's fields and is dropped when popped.
"""
from __future__ import annotations

import heapq
import structlog
from typing import Optional

from broker.errors import QueueError, QueueValidationError
from broker.events import EventType
from broker.queue_base import BaseQueue
from models.schemas import Message, MessageStatus, QueueType

logger = structlog.get_logger()


class DelayedQueue(BaseQueue):

    queue_type = QueueType.DELAYED

    def __init__(self, *args, **kwargs):
        self._delayed: list[tuple[float, int, str]] = []
        super().__init__(*args, **kwargs)

    def _order_key(self, message: Message) -> tuple:
        return (message.enqueue_sequence,)

    def _index(self, message: Message, now: float) -> None:
        if message.available_at > now:
            heapq.heappush(self._delayed, (message.available_at, message.enqueue_sequence, message.id))
        else:
            super()._index(message, now)

    def _park(self, entry: tuple, skipped: list[tuple]) -> None:
        # the _delayed heap already tracks it
        return

    def _reset_secondary_indexes(self) -> None:
        self._delayed = []

    def _rebuild_indexes(self) -> None:
        super()._rebuild_indexes()
        heapq.heapify(self._delayed)

    def _validate_delay(self, delay_seconds: float) -> float:
        if isinstance(delay_seconds, bool) or not isinstance(delay_seconds, (int, float)):
            raise QueueValidationError(f"Invalid delay: {delay_seconds!r}", self.name)
        max_delay = self.options.max_delay_seconds
        if delay_seconds < 0 or delay_seconds > max_delay:
            raise QueueValidationError(
                f"Invalid delay: {delay_seconds}. Must be between 0 and {max_delay} seconds",
                self.name,
            )
        return float(delay_seconds)

    def _initial_available_at(self, now: float, delay_seconds: Optional[float]) -> float:
        if delay_seconds is None:
            delay_seconds = self.options.default_delay_seconds
        return now + self._validate_delay(delay_seconds)

    def _promote(self, now: float) -> int:
        visible: list[str] = []
        while self._delayed and self._delayed[0][0] <= now:
            available_at, _, message_id = heapq.heappop(self._delayed)
            message = self._messages.get(message_id)
            if (
                message is None
                or message.status != MessageStatus.AVAILABLE
                or message.available_at != available_at
            ):
                continue
            super()._index(message, now)
            visible.append(message_id)

        if visible:
            self._emit(EventType.MESSAGES_VISIBLE, count=len(visible), ids=visible)
            logger.info("delayed_messages_visible", queue=self.name, count=len(visible))
        return len(visible)

    async def change_message_delay(self, message_id: str, delay_seconds: float) -> bool:
        """Reschedule an Available message to become visible delay_seconds from now."""
        delay = self._validate_delay(delay_seconds)
        async with self._transaction():
            message = self._require(message_id)
            if message.status != MessageStatus.AVAILABLE:
                raise QueueError(
                    f"Cannot change delay of message {message_id}: it is in flight",
                    self.name,
                )
            now = self._now()
            message.available_at = now + delay
            self._index(message, now)
            self._emit(EventType.MESSAGE_DELAY_CHANGED, id=message_id, new_delay=delay)

        logger.info("message_delay_changed",
                    queue=self.name, message_id=message_id, delay_seconds=delay)
        return True
