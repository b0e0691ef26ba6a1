"""
Base Queue — leasing, acknowledgement, dead-lettering and persistence shared
by every queue discipline.

Subclasses only decide ordering:
  FifoQueue      — (enqueue_sequence,)
  PriorityQueue  — (-priority, enqueue_sequence)
  DelayedQueue   — (enqueue_sequence,) plus a second heap of future messages

Message lifecycle inside one queue:

    enqueue ──▶ Available ──dequeue──▶ InFlight ──ack──▶ (deleted)
                   ▲                      │
                   └──── lease expiry ────┘   receive_count += 1
                   │
      receive_count >= max_receive_count (DLQ set)
                   ▼
              DeadLettered ──moved to DLQ──▶ (deleted)

Every mutation runs in `_transaction()`: it holds the queue lock, persists
the whole queue snapshot through the store before returning, and rolls the
in-memory state back if anything (including the write) fails. Events are
published only once the snapshot is durable.
"""
from __future__ import annotations

import asyncio
import heapq
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Union

from pydantic import ValidationError

from broker.errors import (
    MessageNotFoundError, MessageSerializationError, QueueError,
    QueueFullError, QueueNotFoundError, QueueRateLimitError,
    QueueValidationError, StorageError,
)
from broker.events import EventStream, EventType, QueueEvent
from models.schemas import (
    MaintenanceResult, Message, MessageStatus, QueueAttributes,
    QueueCounters, QueueOptions, QueueSnapshot, QueueStats, QueueType,
)
from storage.store_base import BaseQueueStore

logger = structlog.get_logger()

Body = Union[bytes, str]

_RESUMED_REASON = "Resumed interrupted dead-letter move"


class BaseQueue(ABC):
    """A single named queue. Not instantiated directly."""

    queue_type: QueueType

    def __init__(
        self,
        name: str,
        options: Optional[QueueOptions] = None,
        storage: Optional[BaseQueueStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        if storage is None:
            raise QueueValidationError("A queue needs a storage adapter", name)
        self.name = name
        self.options = options or QueueOptions()
        self.storage = storage
        self.events = EventStream()
        self.dead_letter_queue_name: Optional[str] = None

        self._clock = clock
        self._lock = asyncio.Lock()
        self._messages: dict[str, Message] = {}
        self._ready: list[tuple] = []              # heap of (*order_key, id)
        self._next_sequence = 1
        self._counters = QueueCounters()
        self._dead_letter_reasons: dict[str, str] = {}
        self._moving: set[str] = set()             # ids with a DLQ move under way
        self._pending_events: list[tuple[EventType, dict[str, Any]]] = []
        self._rate_window: tuple[float, int] = (0.0, 0)
        self._resolve: Callable[[str], Optional[BaseQueue]] = lambda _name: None
        self._closed = False

    # ── Ordering hooks ────────────────────────────────────

    @abstractmethod
    def _order_key(self, message: Message) -> tuple:
        """Sort key among eligible messages; smaller is delivered first."""
        ...

    def _index(self, message: Message, now: float) -> None:
        """Make an Available message selectable."""
        heapq.heappush(self._ready, (*self._order_key(message), message.id))

    def _park(self, entry: tuple, skipped: list[tuple]) -> None:
        """Handle a ready entry whose message is Available but not yet due."""
        skipped.append(entry)

    def _promote(self, now: float) -> int:
        """Move messages that became due into the ready heap. Returns the count."""
        return 0

    def _initial_priority(self, priority: Optional[int]) -> int:
        return priority if priority is not None else 0

    def _initial_available_at(self, now: float, delay_seconds: Optional[float]) -> float:
        if delay_seconds:
            raise QueueError(
                f"Queue {self.name} ({self.queue_type.value}) does not support delayed delivery",
                self.name,
            )
        return now

    def _group_fields(
        self,
        body: Body,
        message_group_id: Optional[str],
        deduplication_id: Optional[str],
    ) -> tuple[Optional[str], Optional[str]]:
        """Resolve (group id, deduplication id) for a new message."""
        if message_group_id is not None or deduplication_id is not None:
            raise QueueError(
                f"Queue {self.name} ({self.queue_type.value}) does not support message groups or deduplication",
                self.name,
            )
        return None, None

    def _find_duplicate(self, group_id: Optional[str], deduplication_id: Optional[str]) -> Optional[str]:
        return None

    def _rebuild_indexes(self) -> None:
        """Rebuild ordering structures purely from stored message fields."""
        now = self._now()
        self._ready = []
        self._reset_secondary_indexes()
        for message in self._messages.values():
            if message.status == MessageStatus.AVAILABLE:
                self._index(message, now)
        heapq.heapify(self._ready)

    def _reset_secondary_indexes(self) -> None:
        pass

    # ── Wiring ────────────────────────────────────────────

    def bind_resolver(self, resolver: Callable[[str], Optional[BaseQueue]]) -> None:
        """Give the queue a way to look up its dead-letter queue by name."""
        self._resolve = resolver

    def _now(self) -> float:
        return self._clock()

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self._pending_events.append((event_type, data))

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            if self._closed:
                raise QueueNotFoundError(self.name)
            saved = self._capture()
            self._pending_events = []
            try:
                yield
                await self._persist()
            except BaseException:
                self._restore_state(saved)
                self._pending_events = []
                raise
            events, self._pending_events = self._pending_events, []
            if len(self._ready) > 2 * len(self._messages) + 64:
                self._rebuild_indexes()
        for event_type, data in events:
            self.events.publish(QueueEvent(event_type, self.name, data))

    def _capture(self) -> tuple:
        return (
            {mid: m.model_copy(deep=True) for mid, m in self._messages.items()},
            self._next_sequence,
            self._counters.model_copy(),
            self.options,
            self.dead_letter_queue_name,
            dict(self._dead_letter_reasons),
        )

    def _restore_state(self, saved: tuple) -> None:
        (self._messages, self._next_sequence, self._counters, self.options,
         self.dead_letter_queue_name, self._dead_letter_reasons) = saved
        self._rebuild_indexes()

    async def _persist(self) -> None:
        try:
            await self.storage.save_queue(self.name, self.snapshot().to_document())
        except StorageError:
            raise
        except Exception as e:
            raise StorageError("save_queue", e, self.name) from e

    # ── Snapshot / restore ────────────────────────────────

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            type=self.queue_type,
            options=self.options,
            dead_letter_queue_name=self.dead_letter_queue_name,
            next_sequence=self._next_sequence,
            counters=self._counters,
            messages=sorted(self._messages.values(), key=lambda m: m.enqueue_sequence),
        )

    @classmethod
    def from_snapshot(
        cls,
        name: str,
        snapshot: QueueSnapshot,
        storage: BaseQueueStore,
        clock: Callable[[], float] = time.time,
    ) -> BaseQueue:
        queue = cls(name, snapshot.options, storage, clock=clock)
        queue.dead_letter_queue_name = snapshot.dead_letter_queue_name
        queue._next_sequence = snapshot.next_sequence
        queue._counters = snapshot.counters.model_copy()
        for message in snapshot.messages:
            message.queue_name = name
            queue._messages[message.id] = message
        queue._rebuild_indexes()
        logger.info("queue_restored",
                    queue=name,
                    type=cls.queue_type.value,
                    messages=len(queue._messages))
        return queue

    async def save(self) -> None:
        """Persist the current state (used when the queue is first created)."""
        async with self._transaction():
            pass

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
        self.events.clear()

    # ── Helpers ───────────────────────────────────────────

    def _require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None or message.status == MessageStatus.DEAD_LETTERED:
            raise MessageNotFoundError(message_id, self.name)
        return message

    def _check_rate_limit(self, now: float) -> None:
        limit = self.options.rate_limit_per_second
        if not limit:
            return
        start, count = self._rate_window
        if now - start >= 1.0:
            self._rate_window = (now, 1)
            return
        if count >= limit:
            raise QueueRateLimitError(self.name, count, limit)
        self._rate_window = (start, count + 1)

    @staticmethod
    def _check_body(body: Any) -> None:
        if not isinstance(body, (str, bytes)):
            raise MessageSerializationError(
                f"Message body must be str or bytes, got {type(body).__name__}"
            )

    def _check_attributes(self, attributes: Any) -> dict[str, str]:
        if attributes is None:
            return {}
        if not isinstance(attributes, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in attributes.items()
        ):
            raise QueueValidationError("Message attributes must map str to str", self.name)
        return dict(attributes)

    def _add_message(
        self,
        message_id: str,
        body: Body,
        attributes: dict[str, str],
        priority: int,
        available_at: float,
        now: float,
        message_group_id: Optional[str] = None,
        deduplication_id: Optional[str] = None,
    ) -> Message:
        message = Message(
            id=message_id,
            body=body,
            attributes=attributes,
            queue_name=self.name,
            enqueue_sequence=self._next_sequence,
            priority=priority,
            available_at=available_at,
            sent_at=now,
            message_group_id=message_group_id,
            deduplication_id=deduplication_id,
        )
        self._next_sequence += 1
        self._messages[message_id] = message
        self._index(message, now)
        self._counters.total_sent += 1
        self._emit(EventType.MESSAGE_SENT, id=message_id)
        return message

    def _select(
        self,
        max_messages: int,
        now: float,
        accept: Optional[Callable[[Message], bool]] = None,
    ) -> list[Message]:
        """Pop up to max_messages eligible messages off the ready heap."""
        selected: list[Message] = []
        seen: set[str] = set()
        skipped: list[tuple] = []
        while self._ready and len(selected) < max_messages:
            entry = heapq.heappop(self._ready)
            message_id = entry[-1]
            message = self._messages.get(message_id)
            if (
                message is None
                or message_id in seen
                or message.status != MessageStatus.AVAILABLE
                or entry[:-1] != self._order_key(message)
            ):
                continue  # stale entry
            if message.available_at > now:
                self._park(entry, skipped)
                continue
            if accept is not None and not accept(message):
                skipped.append(entry)
                continue
            seen.add(message_id)
            selected.append(message)
        for entry in skipped:
            heapq.heappush(self._ready, entry)
        return selected

    # ── Operations ────────────────────────────────────────

    async def enqueue(
        self,
        body: Body,
        *,
        attributes: Optional[dict[str, str]] = None,
        priority: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        message_id: Optional[str] = None,
        message_group_id: Optional[str] = None,
        deduplication_id: Optional[str] = None,
    ) -> str:
        """
        Add a message. Returns its id, or the id of the message already
        queued under the same deduplication id.
        """
        self._check_body(body)
        attributes = self._check_attributes(attributes)
        group_id, dedup_id = self._group_fields(body, message_group_id, deduplication_id)
        async with self._transaction():
            now = self._now()
            duplicate = self._find_duplicate(group_id, dedup_id)
            if duplicate is not None:
                logger.info("duplicate_message_ignored", queue=self.name,
                            message_id=duplicate, deduplication_id=dedup_id)
                return duplicate
            if len(self._messages) >= self.options.max_size:
                raise QueueFullError(self.name, self.options.max_size)
            message_id = message_id or uuid.uuid4().hex
            if message_id in self._messages:
                raise QueueError(f"Duplicate message id {message_id} in queue {self.name}", self.name)
            available_at = self._initial_available_at(now, delay_seconds)
            resolved_priority = self._initial_priority(priority)
            self._check_rate_limit(now)
            self._add_message(message_id, body, attributes, resolved_priority, available_at, now,
                              message_group_id=group_id, deduplication_id=dedup_id)

        logger.debug("message_sent", queue=self.name, message_id=message_id)
        return message_id

    async def dequeue(
        self,
        max_messages: int = 1,
        visibility_timeout_seconds: Optional[float] = None,
    ) -> list[Message]:
        return await self._lease(max_messages, visibility_timeout_seconds)

    async def _lease(
        self,
        max_messages: int,
        visibility_timeout_seconds: Optional[float],
        accept: Optional[Callable[[Message], bool]] = None,
    ) -> list[Message]:
        """Select and lease messages in one atomic step."""
        if not isinstance(max_messages, int) or max_messages < 1:
            raise QueueValidationError("max_messages must be a positive integer", self.name)
        timeout = (visibility_timeout_seconds
                   if visibility_timeout_seconds is not None
                   else self.options.visibility_timeout_seconds)
        if timeout <= 0:
            raise QueueValidationError("visibility timeout must be positive", self.name)

        async with self._transaction():
            now = self._now()
            self._promote(now)
            selected = self._select(max_messages, now, accept)
            for message in selected:
                message.status = MessageStatus.IN_FLIGHT
                message.visibility_deadline = now + timeout
                message.receipt_handle = uuid.uuid4().hex
            if selected:
                self._counters.total_received += len(selected)
                self._emit(EventType.MESSAGES_RECEIVED, ids=[m.id for m in selected])
            leased = [m.model_copy(deep=True) for m in selected]

        if leased:
            logger.info("messages_received", queue=self.name, count=len(leased))
        return leased

    async def ack(self, message_id: str, receipt_handle: Optional[str] = None) -> bool:
        """
        Acknowledge an in-flight message, deleting it.

        Only a leased message can be acknowledged. When a receipt handle is
        given it must belong to the current lease, so a consumer whose lease
        lapsed cannot delete a message someone else now holds.
        """
        async with self._transaction():
            message = self._require(message_id)
            if message.status != MessageStatus.IN_FLIGHT:
                raise MessageNotFoundError(message_id, self.name)
            if receipt_handle is not None and receipt_handle != message.receipt_handle:
                raise MessageNotFoundError(message_id, self.name)
            del self._messages[message_id]
            self._counters.total_acknowledged += 1
            self._emit(EventType.MESSAGE_ACKNOWLEDGED, id=message_id)

        logger.debug("message_acknowledged", queue=self.name, message_id=message_id)
        return True

    async def requeue(self, message_id: str) -> int:
        """Return an in-flight message to the queue now. Returns its receive count."""
        async with self._transaction():
            message = self._require(message_id)
            if message.status != MessageStatus.IN_FLIGHT:
                raise QueueError(f"Message {message_id} is not in flight", self.name)
            self._release(message, self._now())
            receive_count = message.receive_count

        logger.info("message_requeued", queue=self.name,
                    message_id=message_id, receive_count=receive_count)
        return receive_count

    def _release(self, message: Message, now: float) -> None:
        message.status = MessageStatus.AVAILABLE
        message.visibility_deadline = None
        message.receipt_handle = None
        message.receive_count += 1
        message.available_at = now
        self._index(message, now)
        self._counters.total_requeued += 1
        self._emit(EventType.MESSAGE_REQUEUED,
                   id=message.id, receive_count=message.receive_count)

    async def dead_letter(self, message_id: str, reason: str) -> bool:
        """
        Move a message to the dead-letter queue.

        Returns False when no dead-letter queue is configured: the message is
        then discarded and a messageFailed event is emitted.
        """
        target = self._dead_letter_target()
        marked = False
        try:
            async with self._transaction():
                message = self._require(message_id)
                if target is None:
                    del self._messages[message_id]
                    self._counters.total_failed += 1
                    self._emit(EventType.MESSAGE_FAILED, id=message_id,
                               error=f"No dead-letter queue configured: {reason}")
                else:
                    previous = (message.status, message.visibility_deadline, message.receipt_handle)
                    message.status = MessageStatus.DEAD_LETTERED
                    message.visibility_deadline = None
                    message.receipt_handle = None
                    self._dead_letter_reasons[message_id] = reason
                    self._moving.add(message_id)
                    marked = True
                    in_transit = message.model_copy(deep=True)
        except BaseException:
            if marked:
                self._moving.discard(message_id)
            raise

        if target is None:
            logger.warning("message_discarded_no_dlq",
                           queue=self.name, message_id=message_id, reason=reason)
            return False

        await self._move_to_dead_letter(in_transit, reason, target, previous)
        return True

    def _dead_letter_target(self) -> Optional[BaseQueue]:
        if not self.dead_letter_queue_name:
            return None
        target = self._resolve(self.dead_letter_queue_name)
        if target is None:
            raise QueueError(
                f"Dead-letter queue {self.dead_letter_queue_name} for {self.name} does not exist",
                self.name,
            )
        return target

    async def _move_to_dead_letter(
        self,
        message: Message,
        reason: str,
        target: BaseQueue,
        previous: tuple[MessageStatus, Optional[float], Optional[str]],
    ) -> None:
        """
        Copy into the DLQ, then delete here. The two steps take the two
        queue locks one after the other, never nested. The id stays in
        _moving until both are done so a sweep in between leaves it alone.
        """
        try:
            try:
                await target.receive_dead_letter(message, reason, source=self.name)
            except QueueError as e:
                await self._abort_dead_letter(message.id, previous, str(e))
                raise QueueError(
                    f"Failed to move message {message.id} to dead-letter queue {target.name}: {e}",
                    self.name,
                ) from e

            async with self._transaction():
                current = self._messages.get(message.id)
                if current is not None and current.status == MessageStatus.DEAD_LETTERED:
                    del self._messages[message.id]
                self._dead_letter_reasons.pop(message.id, None)
                self._counters.total_dead_lettered += 1
                self._emit(EventType.MESSAGE_DEAD_LETTERED,
                           id=message.id, reason=reason, dead_letter_queue=target.name)
        finally:
            self._moving.discard(message.id)

        logger.info("message_dead_lettered",
                    queue=self.name, message_id=message.id,
                    dead_letter_queue=target.name, reason=reason)

    async def _abort_dead_letter(
        self,
        message_id: str,
        previous: tuple[MessageStatus, Optional[float], Optional[str]],
        error: str,
    ) -> None:
        async with self._transaction():
            message = self._messages.get(message_id)
            if message is not None and message.status == MessageStatus.DEAD_LETTERED:
                message.status, message.visibility_deadline, message.receipt_handle = previous
                if message.status == MessageStatus.AVAILABLE:
                    self._index(message, self._now())
            self._dead_letter_reasons.pop(message_id, None)
            self._counters.total_failed += 1
            self._emit(EventType.MESSAGE_FAILED, id=message_id, error=error)
        logger.error("dead_letter_move_failed",
                     queue=self.name, message_id=message_id, error=error)

    async def receive_dead_letter(self, message: Message, reason: str, source: str) -> str:
        """Accept a message moved here from another queue's dead-letter path."""
        attributes = {
            **message.attributes,
            "original_queue": source,
            "dead_letter_reason": reason,
        }
        async with self._transaction():
            now = self._now()
            if len(self._messages) >= self.options.max_size:
                raise QueueFullError(self.name, self.options.max_size)
            message_id = message.id if message.id not in self._messages else uuid.uuid4().hex
            self._add_message(message_id, message.body, attributes, message.priority, now, now,
                              message_group_id=message.message_group_id)
        return message_id

    async def purge(self) -> int:
        async with self._transaction():
            count = len(self._messages)
            self._messages.clear()
            self._ready = []
            self._reset_secondary_indexes()
            self._dead_letter_reasons.clear()
            self._emit(EventType.QUEUE_PURGED, count=count)

        logger.info("queue_purged", queue=self.name, count=count)
        return count

    async def set_dead_letter_queue(self, queue_name: Optional[str]) -> None:
        async with self._transaction():
            self.dead_letter_queue_name = queue_name
        logger.info("dead_letter_queue_set", queue=self.name, dead_letter_queue=queue_name)

    # ── Attributes ────────────────────────────────────────

    def get_attributes(self) -> QueueAttributes:
        now = self._now()
        stats = QueueStats(**self._counters.model_dump())
        for message in self._messages.values():
            if message.status == MessageStatus.IN_FLIGHT:
                stats.in_flight += 1
            elif message.status == MessageStatus.DEAD_LETTERED:
                stats.dead_lettering += 1
            elif message.is_eligible(now):
                stats.available += 1
            else:
                stats.delayed += 1
        return QueueAttributes(
            name=self.name,
            type=self.queue_type,
            options=self.options.model_copy(),
            dead_letter_queue_name=self.dead_letter_queue_name,
            stats=stats,
        )

    async def set_attributes(self, attributes: dict[str, Any]) -> QueueAttributes:
        if not isinstance(attributes, dict):
            raise QueueValidationError("Queue attributes must be a mapping", self.name)
        changes = dict(attributes)
        requested_type = changes.pop("type", None)
        if isinstance(requested_type, QueueType):
            requested_type = requested_type.value
        if requested_type is not None and str(requested_type).lower() != self.queue_type.value:
            raise QueueValidationError("Queue type cannot be changed", self.name)
        try:
            options = QueueOptions(**{**self.options.model_dump(), **changes})
        except ValidationError as e:
            raise QueueValidationError(str(e), self.name) from e

        async with self._transaction():
            self.options = options
            self._emit(EventType.QUEUE_ATTRIBUTES_UPDATED, attrs=changes)

        logger.info("queue_attributes_updated", queue=self.name, attrs=changes)
        return self.get_attributes()

    # ── Maintenance ───────────────────────────────────────

    async def maintenance(self) -> MaintenanceResult:
        """
        One sweep: retention expiry, lease reclamation, delayed promotion,
        then dead-lettering of messages past max_receive_count. Without a
        dead-letter queue those messages are discarded instead.
        """
        result = MaintenanceResult()
        moves: list[tuple[Message, str]] = []
        target: Optional[BaseQueue] = None

        try:
            async with self._transaction():
                now = self._now()
                result.expired = self._expire(now)
                result.requeued = self._reclaim(now)
                result.promoted = self._promote(now)
                result.failed = self._discard_exhausted()
                target = self._sweep_target()
                moves = self._mark_for_dead_letter(target, now)
        except BaseException:
            self._moving.difference_update(message.id for message, _ in moves)
            raise

        for message, reason in moves:
            try:
                await self._move_to_dead_letter(
                    message, reason, target, (MessageStatus.AVAILABLE, None, None),
                )
                result.dead_lettered += 1
            except QueueError as e:
                logger.warning("maintenance_dead_letter_failed",
                               queue=self.name, message_id=message.id, error=str(e))

        if any(result.model_dump().values()):
            logger.info("queue_maintenance", queue=self.name, **result.model_dump())
        return result

    def _expire(self, now: float) -> int:
        retention = self.options.message_retention_seconds
        expired = [m for m in self._messages.values()
                   if m.sent_at + retention <= now and m.id not in self._moving]
        for message in expired:
            del self._messages[message.id]
            self._dead_letter_reasons.pop(message.id, None)
            self._counters.total_expired += 1
            self._emit(EventType.MESSAGE_EXPIRED, id=message.id)
        return len(expired)

    def _reclaim(self, now: float) -> int:
        lapsed = sorted(
            (m for m in self._messages.values()
             if m.status == MessageStatus.IN_FLIGHT
             and m.visibility_deadline is not None
             and m.visibility_deadline <= now),
            key=lambda m: m.enqueue_sequence,
        )
        for message in lapsed:
            self._release(message, now)
        return len(lapsed)

    def _discard_exhausted(self) -> int:
        """Drop messages past max_receive_count when no dead-letter queue is set."""
        if self.dead_letter_queue_name:
            return 0
        limit = self.options.max_receive_count
        exhausted = sorted(
            (m for m in self._messages.values()
             if m.status == MessageStatus.AVAILABLE and m.receive_count >= limit),
            key=lambda m: m.enqueue_sequence,
        )
        for message in exhausted:
            del self._messages[message.id]
            self._dead_letter_reasons.pop(message.id, None)
            self._counters.total_failed += 1
            self._emit(EventType.MESSAGE_FAILED, id=message.id,
                       error=f"Exceeded maximum receive count ({limit})")
        if exhausted:
            logger.warning("messages_discarded_no_dlq", queue=self.name, count=len(exhausted))
        return len(exhausted)

    def _sweep_target(self) -> Optional[BaseQueue]:
        if not self.dead_letter_queue_name:
            return None
        target = self._resolve(self.dead_letter_queue_name)
        if target is None:
            logger.warning("dead_letter_queue_missing",
                           queue=self.name, dead_letter_queue=self.dead_letter_queue_name)
        return target

    def _mark_for_dead_letter(self, target: Optional[BaseQueue], now: float) -> list[tuple[Message, str]]:
        """
        Mark messages for a DLQ move. A DeadLettered message that no live
        move owns was left behind by a crash and is moved again.
        """
        moves: list[tuple[Message, str]] = []
        limit = self.options.max_receive_count
        for message in sorted(self._messages.values(), key=lambda m: m.enqueue_sequence):
            if message.id in self._moving:
                continue
            if message.status == MessageStatus.DEAD_LETTERED:
                if target is None:
                    # nowhere to move it; make it deliverable again
                    message.status = MessageStatus.AVAILABLE
                    self._index(message, now)
                    self._dead_letter_reasons.pop(message.id, None)
                    continue
                reason = self._dead_letter_reasons.get(message.id, _RESUMED_REASON)
            elif (target is not None
                  and message.status == MessageStatus.AVAILABLE
                  and message.receive_count >= limit):
                reason = f"Exceeded maximum receive count ({limit})"
                message.status = MessageStatus.DEAD_LETTERED
                self._dead_letter_reasons[message.id] = reason
            else:
                continue
            self._moving.add(message.id)
            moves.append((message.model_copy(deep=True), reason))
        return moves
