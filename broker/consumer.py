"""
Queue Consumer — pulls messages from one queue and drives a handler.

Runs as an async task inside the application process. Several consumers may
share a queue; leasing guarantees each message is held by one of them at a
time.

Flow:
  ┌──────────────┐  send   ┌────────────┐  receive   ┌────────────┐
  │   Producer   │────────▶│   Queue    │───────────▶│  Consumer  │
  └──────────────┘         └─────▲──────┘            └─────┬──────┘
                                 │       handler ok: ack   │
                                 └──── handler raised: ────┘
                                       requeue (DLQ after
                                       max_receive_count)
"""
from __future__ import annotations

import asyncio
import inspect
import structlog
from typing import Any, Awaitable, Callable, Optional, Union

from broker.errors import MessageNotFoundError, QueueError, QueueNotFoundError
from broker.events import EventType, QueueEvent, Subscription
from models.schemas import Message

logger = structlog.get_logger()

MessageHandler = Callable[[Message], Union[Any, Awaitable[Any]]]

_WAKE_EVENTS = (
    EventType.MESSAGE_SENT,
    EventType.MESSAGES_VISIBLE,
    EventType.MESSAGE_REQUEUED,
)


class QueueConsumer:
    """
    Consumes messages from a single queue of a MessageQueueSystem.

    Usage:
        consumer = QueueConsumer(system, "orders", handle_order)
        await consumer.start()             # blocks until stop()
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()

    A handler that returns normally gets its message acknowledged. A handler
    that raises gets it requeued, so the queue's max_receive_count and
    dead-letter queue decide when to give up.
    """

    def __init__(
        self,
        system,  # type: broker.system.MessageQueueSystem (avoid circular import)
        queue_name: str,
        handler: MessageHandler,
        *,
        batch_size: int = 1,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        visibility_timeout_seconds: Optional[float] = None,
    ):
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be positive")
        self.system = system
        self.queue_name = queue_name
        self.handler = handler
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.visibility_timeout_seconds = visibility_timeout_seconds

        self.processed = 0
        self.failed = 0

        self._semaphore = asyncio.Semaphore(concurrency)
        self._wakeup = asyncio.Event()
        self._subscription: Optional[Subscription] = None
        self._workers: set[asyncio.Task] = set()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @classmethod
    def from_settings(cls, system, queue_name: str, handler: MessageHandler, consumer_config) -> QueueConsumer:
        """Build a consumer from config.settings.ConsumerConfig."""
        return cls(
            system, queue_name, handler,
            batch_size=consumer_config.batch_size,
            concurrency=consumer_config.concurrency,
            poll_interval=consumer_config.poll_interval,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        self._subscription = self.system.events.subscribe(self._on_event, *_WAKE_EVENTS)
        logger.info("queue_consumer_starting",
                    queue=self.queue_name,
                    batch_size=self.batch_size,
                    concurrency=self.concurrency)
        try:
            while self._running:
                # clear first so a send during the receive is not missed
                self._wakeup.clear()
                messages = await self._receive()
                if messages is None:
                    break
                if not messages:
                    await self._idle()
                    continue
                for message in messages:
                    await self._semaphore.acquire()
                    worker = asyncio.create_task(self._process(message))
                    self._workers.add(worker)
                    worker.add_done_callback(self._worker_done)
        finally:
            self._running = False
            if self._subscription:
                self._subscription.unsubscribe()
                self._subscription = None

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Stop receiving, let in-progress handlers finish, then cancel the loop."""
        self._running = False
        self._wakeup.set()
        if self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_consumer_stopped",
                    queue=self.queue_name,
                    processed=self.processed,
                    failed=self.failed)

    # ── Internals ─────────────────────────────────────────

    def _on_event(self, event: QueueEvent) -> None:
        if event.queue_name == self.queue_name:
            self._wakeup.set()

    async def _idle(self):
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _receive(self) -> Optional[list[Message]]:
        """Lease the next batch. None means the queue is gone and the loop should end."""
        try:
            return await self.system.receive_messages(
                self.queue_name,
                max_messages=self.batch_size,
                visibility_timeout_seconds=self.visibility_timeout_seconds,
            )
        except QueueNotFoundError:
            logger.error("consumer_queue_missing", queue=self.queue_name)
            return None
        except QueueError as e:
            logger.error("consumer_receive_error", queue=self.queue_name, error=str(e))
            return []

    def _worker_done(self, task: asyncio.Task) -> None:
        self._workers.discard(task)
        self._semaphore.release()

    async def _process(self, message: Message):
        logger.info("processing_message",
                    queue=self.queue_name,
                    message_id=message.id,
                    receive_count=message.receive_count)
        try:
            result = self.handler(message)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.warning("message_handler_failed",
                           queue=self.queue_name,
                           message_id=message.id,
                           error=str(e))
            await self._settle(self.system.requeue_message(self.queue_name, message.id), message)
            return

        if await self._settle(
            self.system.acknowledge_message(self.queue_name, message.id, message.receipt_handle),
            message,
        ):
            self.processed += 1

    async def _settle(self, operation: Awaitable[Any], message: Message) -> bool:
        """Run ack/requeue; a lapsed lease or deleted queue is logged, not raised."""
        try:
            await operation
            return True
        except MessageNotFoundError:
            logger.warning("message_lease_lost",
                           queue=self.queue_name, message_id=message.id)
        except QueueError as e:
            logger.warning("message_settle_failed",
                           queue=self.queue_name, message_id=message.id, error=str(e))
        return False
