"""
Message broker — named FIFO, priority and delayed queues with leasing,
redelivery and dead-lettering over a pluggable store.

Quick start:
  from broker import MessageQueueSystem
  async with MessageQueueSystem(auto_start=False) as mq:
      await mq.create_queue("orders")
      await mq.send_message("orders", "A")
"""
# errors first: the storage package imports them while broker is initializing
from broker.errors import (
    QueueError, QueueNotFoundError, MessageNotFoundError, QueueValidationError,
    QueueFullError, QueueRateLimitError, MessageSerializationError, StorageError,
)
from broker.events import EventStream, EventType, QueueEvent, Subscription
from broker.queue_base import BaseQueue
from broker.fifo import FifoQueue
from broker.priority import PriorityQueue
from broker.delayed import DelayedQueue
from broker.maintenance import MaintenanceScheduler
from broker.system import MessageQueueSystem, QUEUE_CLASSES
from broker.consumer import QueueConsumer

__all__ = [
    "QueueError", "QueueNotFoundError", "MessageNotFoundError", "QueueValidationError",
    "QueueFullError", "QueueRateLimitError", "MessageSerializationError", "StorageError",
    "EventStream", "EventType", "QueueEvent", "Subscription",
    "BaseQueue", "FifoQueue", "PriorityQueue", "DelayedQueue",
    "MaintenanceScheduler", "MessageQueueSystem", "QUEUE_CLASSES",
    "QueueConsumer",
]
