"""
MessageQueueSystem — registry and entry point for all queues.

Creates and deletes queues, routes every operation to the owning queue,
runs the periodic maintenance sweep and re-publishes every queue event on
one system-wide EventStream.

Usage:
    async with MessageQueueSystem(storage_type="file",
                                  storage_options={"data_dir": "./data/queues"}) as mq:
        await mq.create_queue("orders", {"type": "fifo"})
        msg_id = await mq.send_message("orders", "A")
        [msg] = await mq.receive_messages("orders", max_messages=1)
        await mq.acknowledge_message("orders", msg.id)

Construct one instance and pass it to producers and consumers; there is no
module-level instance.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from broker.delayed import DelayedQueue
from broker.errors import (
    QueueError, QueueNotFoundError, QueueValidationError, StorageError,
)
from broker.events import QUEUE_EVENTS, EventStream, EventType, QueueEvent, Subscription
from broker.fifo import FifoQueue
from broker.maintenance import MaintenanceScheduler
from broker.priority import PriorityQueue
from broker.queue_base import BaseQueue, Body
from models.schemas import (
    Message, QueueAttributes, QueueOptions, QueueSnapshot, QueueType, SystemStats,
)
from storage.store_base import BaseQueueStore
from storage.store_factory import create_store

logger = structlog.get_logger()

QUEUE_CLASSES: dict[QueueType, type[BaseQueue]] = {
    QueueType.FIFO: FifoQueue,
    QueueType.PRIORITY: PriorityQueue,
    QueueType.DELAYED: DelayedQueue,
}


class MessageQueueSystem:

    def __init__(
        self,
        storage: Optional[BaseQueueStore] = None,
        *,
        storage_type: str = "memory",
        storage_options: Optional[dict[str, Any]] = None,
        maintenance_interval: float = 60.0,
        auto_start: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage or create_store(storage_type, storage_options)
        self.storage_type = self.storage.storage_type or storage_type
        self.maintenance_interval = maintenance_interval
        self.auto_start = auto_start
        self.events = EventStream()

        self._clock = clock
        self._queues: dict[str, BaseQueue] = {}
        self._forwarders: dict[str, Subscription] = {}
        self._registry_lock = asyncio.Lock()
        self._scheduler = MaintenanceScheduler(self.run_maintenance, maintenance_interval)
        self._initialized = False

    # ── Lifecycle ─────────────────────────────────────────

    @classmethod
    async def from_settings(cls, settings, **kwargs) -> MessageQueueSystem:
        """
        Build and initialize a system from config.settings.Settings, creating
        any declared queues that do not exist yet.
        """
        broker = settings.broker
        system = cls(
            storage_type=broker.storage_type,
            storage_options={"data_dir": broker.storage_dir},
            maintenance_interval=broker.maintenance_interval,
            auto_start=broker.auto_start_maintenance,
            **kwargs,
        )
        await system.initialize()
        for definition in settings.queues:
            if not system.has_queue(definition.name):
                await system.create_queue(
                    definition.name, {"type": definition.type, **definition.options}
                )
        for definition in settings.queues:
            if definition.dead_letter_queue:
                await system.set_dead_letter_queue(definition.name, definition.dead_letter_queue)
        return system

    async def initialize(self) -> MessageQueueSystem:
        """Check storage, reload every persisted queue, optionally start maintenance."""
        if self._initialized:
            return self

        if not await self.storage.is_available():
            raise QueueError(f"Storage is not available: {self.storage_type}")

        for name in await self.storage.list_queues():
            document = await self.storage.load_queue(name)
            if document is None:
                continue
            try:
                snapshot = QueueSnapshot.from_document(name, document)
            except (ValidationError, KeyError, TypeError, ValueError) as e:
                raise StorageError("load_queue", e, name) from e
            queue = QUEUE_CLASSES[snapshot.type].from_snapshot(
                name, snapshot, self.storage, clock=self._clock,
            )
            self._register(queue)

        self._initialized = True
        logger.info("queue_system_initialized",
                    queues=len(self._queues), storage=self.storage_type)

        if self.auto_start:
            await self.start_maintenance()
        return self

    async def close(self) -> None:
        await self.stop_maintenance()
        for name in list(self._queues):
            await self._queues[name].close()
        logger.info("queue_system_closed")

    async def __aenter__(self) -> MessageQueueSystem:
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ── Registry ──────────────────────────────────────────

    def _register(self, queue: BaseQueue) -> None:
        queue.bind_resolver(self._queues.get)
        self._queues[queue.name] = queue
        self._forwarders[queue.name] = queue.events.subscribe(self.events.publish, *QUEUE_EVENTS)

    def _get(self, name: str) -> BaseQueue:
        queue = self._queues.get(name)
        if queue is None:
            raise QueueNotFoundError(name)
        return queue

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    async def create_queue(
        self,
        name: str,
        options: Optional[Union[dict[str, Any], QueueOptions]] = None,
    ) -> BaseQueue:
        """Create a queue. options["type"] picks fifo (default), priority or delayed."""
        if not isinstance(name, str) or not name.strip():
            raise QueueValidationError("Queue name must be a non-empty string")
        name = name.strip()

        if isinstance(options, QueueOptions):
            raw_options = options.model_dump()
        else:
            raw_options = dict(options or {})
        requested_type = raw_options.pop("type", QueueType.FIFO.value)
        if isinstance(requested_type, QueueType):
            requested_type = requested_type.value
        try:
            queue_type = QueueType(str(requested_type).lower())
        except ValueError:
            raise QueueValidationError(f"Invalid queue type: {requested_type}", name) from None
        try:
            queue_options = QueueOptions(**raw_options)
        except ValidationError as e:
            raise QueueValidationError(str(e), name) from e

        async with self._registry_lock:
            if name in self._queues:
                raise QueueValidationError(f"Queue already exists: {name}", name)
            queue = QUEUE_CLASSES[queue_type](name, queue_options, self.storage, clock=self._clock)
            await queue.save()
            self._register(queue)

        self.events.publish(QueueEvent(EventType.QUEUE_CREATED, name, {"type": queue_type.value}))
        logger.info("queue_created", queue=name, type=queue_type.value)
        return queue

    async def delete_queue(self, name: str) -> bool:
        async with self._registry_lock:
            queue = self._get(name)
            del self._queues[name]
            subscription = self._forwarders.pop(name, None)
            if subscription:
                subscription.unsubscribe()
            await queue.close()
            await self.storage.delete_queue(name)

        self.events.publish(QueueEvent(EventType.QUEUE_DELETED, name, {}))
        logger.info("queue_deleted", queue=name)
        return True

    async def list_queues(self, prefix: Optional[str] = None) -> list[str]:
        return await self.storage.list_queues(prefix)

    async def set_dead_letter_queue(self, source_queue_name: str, dead_letter_queue_name: str) -> bool:
        source = self._get(source_queue_name)
        self._get(dead_letter_queue_name)
        if source_queue_name == dead_letter_queue_name:
            raise QueueValidationError("A queue cannot be its own dead-letter queue", source_queue_name)

        await source.set_dead_letter_queue(dead_letter_queue_name)
        self.events.publish(QueueEvent(
            EventType.DEAD_LETTER_QUEUE_SET, source_queue_name,
            {"dead_letter_queue": dead_letter_queue_name},
        ))
        return True

    # ── Message operations ────────────────────────────────

    async def send_message(
        self,
        queue_name: str,
        body: Body,
        *,
        attributes: Optional[dict[str, str]] = None,
        priority: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        message_id: Optional[str] = None,
        message_group_id: Optional[str] = None,
        deduplication_id: Optional[str] = None,
    ) -> str:
        return await self._get(queue_name).enqueue(
            body,
            attributes=attributes,
            priority=priority,
            delay_seconds=delay_seconds,
            message_id=message_id,
            message_group_id=message_group_id,
            deduplication_id=deduplication_id,
        )

    async def receive_messages(
        self,
        queue_name: str,
        *,
        max_messages: int = 1,
        visibility_timeout_seconds: Optional[float] = None,
        min_priority: Optional[int] = None,
        max_priority: Optional[int] = None,
        message_group_id: Optional[str] = None,
    ) -> list[Message]:
        """Lease up to max_messages messages. Returns [] at once when none are eligible."""
        queue = self._get(queue_name)
        if message_group_id is not None and (min_priority is not None or max_priority is not None):
            raise QueueValidationError(
                "message_group_id cannot be combined with priority filters", queue_name,
            )
        if message_group_id is not None:
            if not isinstance(queue, FifoQueue):
                raise QueueError(f"Queue {queue_name} does not support message groups", queue_name)
            return await queue.dequeue(
                max_messages, visibility_timeout_seconds, message_group_id=message_group_id,
            )
        if min_priority is not None or max_priority is not None:
            if not isinstance(queue, PriorityQueue):
                raise QueueError(f"Queue {queue_name} does not support priority filters", queue_name)
            return await queue.dequeue(
                max_messages, visibility_timeout_seconds,
                min_priority=min_priority, max_priority=max_priority,
            )
        return await queue.dequeue(max_messages, visibility_timeout_seconds)

    async def acknowledge_message(
        self, queue_name: str, message_id: str, receipt_handle: Optional[str] = None,
    ) -> bool:
        return await self._get(queue_name).ack(message_id, receipt_handle)

    async def dead_letter_message(self, queue_name: str, message_id: str, reason: str) -> bool:
        return await self._get(queue_name).dead_letter(message_id, reason)

    async def requeue_message(self, queue_name: str, message_id: str) -> int:
        return await self._get(queue_name).requeue(message_id)

    async def purge_queue(self, queue_name: str) -> int:
        return await self._get(queue_name).purge()

    async def get_queue_attributes(self, queue_name: str) -> QueueAttributes:
        return self._get(queue_name).get_attributes()

    async def set_queue_attributes(self, queue_name: str, attributes: dict[str, Any]) -> QueueAttributes:
        return await self._get(queue_name).set_attributes(attributes)

    async def change_message_delay(self, queue_name: str, message_id: str, delay_seconds: float) -> bool:
        queue = self._get(queue_name)
        if not isinstance(queue, DelayedQueue):
            raise QueueError(
                f"Queue {queue_name} does not support changing message delay", queue_name,
            )
        return await queue.change_message_delay(message_id, delay_seconds)

    async def get_system_stats(self) -> SystemStats:
        queue_stats = {name: q.get_attributes().stats for name, q in self._queues.items()}
        return SystemStats(
            queue_count=len(self._queues),
            total_message_count=sum(s.message_count for s in queue_stats.values()),
            total_in_flight_count=sum(s.in_flight for s in queue_stats.values()),
            queue_stats=queue_stats,
            storage_type=self.storage_type,
            maintenance_interval=self.maintenance_interval,
            maintenance_active=self.maintenance_active,
        )

    # ── Maintenance ───────────────────────────────────────

    @property
    def maintenance_active(self) -> bool:
        return self._scheduler.running

    async def start_maintenance(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()
        logger.info("queue_maintenance_started", interval=self.maintenance_interval)

    async def stop_maintenance(self) -> None:
        if self._scheduler.running:
            await self._scheduler.stop()
            logger.info("queue_maintenance_stopped")

    async def run_maintenance(self) -> dict[str, dict[str, Any]]:
        """
        Sweep every queue concurrently. A failure in one queue is recorded
        under its name as {"error": ...} and never stops the others.
        """
        queues = list(self._queues.values())
        outcomes = await asyncio.gather(
            *(q.maintenance() for q in queues), return_exceptions=True,
        )

        results: dict[str, dict[str, Any]] = {}
        for queue, outcome in zip(queues, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("queue_maintenance_failed",
                             queue=queue.name, error=str(outcome), exc_info=outcome)
                results[queue.name] = {"error": str(outcome)}
            else:
                results[queue.name] = outcome.model_dump()

        self.events.publish(QueueEvent(EventType.MAINTENANCE_COMPLETED, None, {"results": results}))
        return results
