"""
Priority queue — higher priority first, FIFO among equals.

Ready messages sit in a heap keyed on (-priority, enqueue_sequence), giving
O(log n) insertion and selection. Receivers may restrict a receive to a
priority band with min_priority / max_priority. When the priority_levels
option is set, only those priorities are accepted on send.
"""
from __future__ import annotations

from typing import Optional

from broker.errors import QueueValidationError
from broker.queue_base import BaseQueue
from models.schemas import Message, QueueType


class PriorityQueue(BaseQueue):

    queue_type = QueueType.PRIORITY

    def _order_key(self, message: Message) -> tuple:
        return (-message.priority, message.enqueue_sequence)

    def _initial_priority(self, priority: Optional[int]) -> int:
        if priority is None:
            priority = self.options.default_priority
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise QueueValidationError(f"Invalid priority: {priority!r}", self.name)
        levels = self.options.priority_levels
        if levels is not None and priority not in levels:
            raise QueueValidationError(
                f"Invalid priority level: {priority}. Valid levels are: {', '.join(map(str, levels))}",
                self.name,
            )
        return priority

    async def dequeue(
        self,
        max_messages: int = 1,
        visibility_timeout_seconds: Optional[float] = None,
        min_priority: Optional[int] = None,
        max_priority: Optional[int] = None,
    ) -> list[Message]:
        if min_priority is None and max_priority is None:
            return await self._lease(max_messages, visibility_timeout_seconds)

        def in_band(message: Message) -> bool:
            if min_priority is not None and message.priority < min_priority:
                return False
            if max_priority is not None and message.priority > max_priority:
                return False
            return True

        return await self._lease(max_messages, visibility_timeout_seconds, in_band)
