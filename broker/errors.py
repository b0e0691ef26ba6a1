"""
Queue errors — structured error hierarchy for the broker.

Every public broker operation raises one of these; callers never have to
inspect return values to detect failure.
"""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""

    def __init__(self, message: str, queue_name: str = ""):
        self.queue_name = queue_name
        super().__init__(message)


class QueueNotFoundError(QueueError):
    def __init__(self, queue_name: str):
        super().__init__(f"Queue not found: {queue_name}", queue_name)


class MessageNotFoundError(QueueError):
    def __init__(self, message_id: str, queue_name: str = ""):
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id} in queue {queue_name}", queue_name)


class QueueValidationError(QueueError):
    def __init__(self, message: str, queue_name: str = ""):
        super().__init__(f"Validation error: {message}", queue_name)


class QueueFullError(QueueError):
    def __init__(self, queue_name: str, max_size: int):
        self.max_size = max_size
        super().__init__(f"Queue {queue_name} is full (max size: {max_size})", queue_name)


class QueueRateLimitError(QueueError):
    def __init__(self, queue_name: str, current_rate: int, max_rate: int):
        self.current_rate = current_rate
        self.max_rate = max_rate
        super().__init__(
            f"Rate limit exceeded for queue {queue_name}: {current_rate}/{max_rate}",
            queue_name,
        )


class MessageSerializationError(QueueError):
    """Raised when a message body is not an opaque str/bytes payload."""


class StorageError(QueueError):
    """A storage adapter operation failed. Wraps the underlying exception."""

    def __init__(self, operation: str, original: BaseException, queue_name: str = ""):
        self.operation = operation
        self.original = original
        super().__init__(f"Storage operation '{operation}' failed: {original}", queue_name)
