"""
Core data models for the message broker.
These are the universal types shared by queues, storage and the system.
"""
from __future__ import annotations

import base64
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueType(str, Enum):
    FIFO = "fifo"
    PRIORITY = "priority"
    DELAYED = "delayed"


class MessageStatus(str, Enum):
    AVAILABLE = "Available"
    IN_FLIGHT = "InFlight"
    DEAD_LETTERED = "DeadLettered"


# ──────────────────────────────────────────────────────────────
#  Message — one unit of work with delivery-state metadata
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """
    A message owned by exactly one queue.

    The body is opaque: the broker stores and returns it untouched and never
    looks inside. Structured metadata belongs in `attributes`.
    """
    id: str
    body: Union[bytes, str]
    attributes: dict[str, str] = {}
    queue_name: str = ""
    enqueue_sequence: int
    priority: int = 0
    available_at: float                      # epoch seconds; invisible before this
    visibility_deadline: Optional[float] = None  # set while leased
    receive_count: int = 0
    status: MessageStatus = MessageStatus.AVAILABLE
    sent_at: float
    receipt_handle: Optional[str] = None     # identifies the current lease
    message_group_id: Optional[str] = None   # fifo queues
    deduplication_id: Optional[str] = None   # fifo queues

    def is_eligible(self, now: float) -> bool:
        return self.status == MessageStatus.AVAILABLE and self.available_at <= now

    def to_record(self) -> dict[str, Any]:
        """Serialize to the JSON-safe persisted layout."""
        if isinstance(self.body, bytes):
            body, encoding = base64.b64encode(self.body).decode("ascii"), "base64"
        else:
            body, encoding = self.body, "text"
        return {
            "id": self.id,
            "body": body,
            "bodyEncoding": encoding,
            "attributes": dict(self.attributes),
            "enqueueSequence": self.enqueue_sequence,
            "priority": self.priority,
            "availableAt": self.available_at,
            "visibilityDeadline": self.visibility_deadline,
            "receiveCount": self.receive_count,
            "status": self.status.value,
            "sentAt": self.sent_at,
            "receiptHandle": self.receipt_handle,
            "messageGroupId": self.message_group_id,
            "deduplicationId": self.deduplication_id,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any], queue_name: str) -> Message:
        body = record["body"]
        if record.get("bodyEncoding") == "base64":
            body = base64.b64decode(body)
        return cls(
            id=record["id"],
            body=body,
            attributes=record.get("attributes") or {},
            queue_name=queue_name,
            enqueue_sequence=record["enqueueSequence"],
            priority=record.get("priority", 0),
            available_at=record["availableAt"],
            visibility_deadline=record.get("visibilityDeadline"),
            receive_count=record.get("receiveCount", 0),
            status=MessageStatus(record.get("status", MessageStatus.AVAILABLE.value)),
            sent_at=record.get("sentAt", record["availableAt"]),
            receipt_handle=record.get("receiptHandle"),
            message_group_id=record.get("messageGroupId"),
            deduplication_id=record.get("deduplicationId"),
        )


# ──────────────────────────────────────────────────────────────
#  Queue configuration and snapshots
# ──────────────────────────────────────────────────────────────

class QueueOptions(BaseModel):
    """Per-queue tunables. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    visibility_timeout_seconds: float = Field(default=30, gt=0)
    max_receive_count: int = Field(default=3, ge=1)
    message_retention_seconds: float = Field(default=86400, gt=0)
    max_size: int = Field(default=10000, ge=1)
    rate_limit_per_second: int = Field(default=0, ge=0)   # 0 = unlimited
    default_priority: int = 5                              # priority queues
    default_delay_seconds: float = Field(default=0, ge=0)  # delayed queues
    max_delay_seconds: float = Field(default=900, ge=0)    # delayed queues
    priority_levels: Optional[list[int]] = None             # priority queues; None = any int
    content_based_deduplication: bool = False               # fifo queues
    deduplication_scope: Literal["queue", "message_group"] = "message_group"  # fifo queues


class QueueCounters(BaseModel):
    """Lifetime counters, persisted with the queue."""
    total_sent: int = 0
    total_received: int = 0
    total_acknowledged: int = 0
    total_dead_lettered: int = 0
    total_requeued: int = 0
    total_expired: int = 0
    total_failed: int = 0


class QueueSnapshot(BaseModel):
    """Full persisted state of one queue."""
    type: QueueType
    options: QueueOptions = Field(default_factory=QueueOptions)
    dead_letter_queue_name: Optional[str] = None
    next_sequence: int = 1
    counters: QueueCounters = Field(default_factory=QueueCounters)
    messages: list[Message] = []

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "options": self.options.model_dump(),
            "deadLetterQueueName": self.dead_letter_queue_name,
            "nextSequence": self.next_sequence,
            "stats": self.counters.model_dump(),
            "messages": [m.to_record() for m in self.messages],
        }

    @classmethod
    def from_document(cls, name: str, document: dict[str, Any]) -> QueueSnapshot:
        messages = [Message.from_record(r, name) for r in document.get("messages") or []]
        highest = max((m.enqueue_sequence for m in messages), default=0)
        return cls(
            type=QueueType(document["type"]),
            options=QueueOptions(**(document.get("options") or {})),
            dead_letter_queue_name=document.get("deadLetterQueueName"),
            # never hand out a sequence that is already in use
            next_sequence=max(document.get("nextSequence", 1), highest + 1),
            counters=QueueCounters(**(document.get("stats") or {})),
            messages=messages,
        )


# ──────────────────────────────────────────────────────────────
#  Reporting
# ──────────────────────────────────────────────────────────────

class QueueStats(QueueCounters):
    available: int = 0
    in_flight: int = 0
    delayed: int = 0
    dead_lettering: int = 0

    @property
    def message_count(self) -> int:
        return self.available + self.in_flight + self.delayed + self.dead_lettering


class QueueAttributes(BaseModel):
    name: str
    type: QueueType
    options: QueueOptions
    dead_letter_queue_name: Optional[str] = None
    stats: QueueStats


class MaintenanceResult(BaseModel):
    expired: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    promoted: int = 0
    failed: int = 0


class SystemStats(BaseModel):
    queue_count: int
    total_message_count: int
    total_in_flight_count: int
    queue_stats: dict[str, QueueStats] = {}
    storage_type: str
    maintenance_interval: float
    maintenance_active: bool
