"""
FIFO queue — strict insertion order, with message groups and deduplication.

Selection is by enqueue_sequence. A redelivered message keeps its original
sequence number, so it goes back to the front of the line instead of
behind everything sent while it was leased.

Every message belongs to a message group ("default" unless given). Order
within a group is the same send order, and a receive can be limited to one
group. A send whose deduplication id matches a message still in the queue
(in the same group, or anywhere when deduplication_scope is "queue") is
dropped and the existing message's id is returned. With
content_based_deduplication the id defaults to a hash of the body.
"""
from __future__ import annotations

import hashlib
from typing import Optional

from broker.errors import QueueValidationError
from broker.queue_base import BaseQueue, Body
from models.schemas import Message, QueueType

DEFAULT_GROUP = "default"


class FifoQueue(BaseQueue):

    queue_type = QueueType.FIFO

    def _order_key(self, message: Message) -> tuple:
        return (message.enqueue_sequence,)

    def _group_fields(
        self,
        body: Body,
        message_group_id: Optional[str],
        deduplication_id: Optional[str],
    ) -> tuple[Optional[str], Optional[str]]:
        for label, value in (("message group id", message_group_id),
                             ("deduplication id", deduplication_id)):
            if value is not None and (not isinstance(value, str) or not value):
                raise QueueValidationError(f"Invalid {label}: {value!r}", self.name)
        if deduplication_id is None and self.options.content_based_deduplication:
            deduplication_id = content_hash(body)
        return message_group_id or DEFAULT_GROUP, deduplication_id

    def _find_duplicate(self, group_id: Optional[str], deduplication_id: Optional[str]) -> Optional[str]:
        if deduplication_id is None:
            return None
        queue_wide = self.options.deduplication_scope == "queue"
        for message in self._messages.values():
            if message.deduplication_id != deduplication_id:
                continue
            if queue_wide or message.message_group_id == group_id:
                return message.id
        return None

    async def dequeue(
        self,
        max_messages: int = 1,
        visibility_timeout_seconds: Optional[float] = None,
        message_group_id: Optional[str] = None,
    ) -> list[Message]:
        if message_group_id is None:
            return await self._lease(max_messages, visibility_timeout_seconds)
        return await self._lease(
            max_messages, visibility_timeout_seconds,
            lambda message: message.message_group_id == message_group_id,
        )


def content_hash(body: Body) -> str:
    raw = body if isinstance(body, bytes) else body.encode("utf-8")
    return hashlib.md5(raw).hexdigest()
