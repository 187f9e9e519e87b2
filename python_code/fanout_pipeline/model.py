"""
Data models for the image fan-out pipeline.

This module defines the core data structures passed between the event source,
the fan-out topic, the durable queue and the batch consumer. Using dataclasses
and TypedDicts keeps the data contracts explicit, statically checked by mypy,
and self-documenting.
"""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TypedDict
from urllib.parse import quote_plus, unquote_plus

from .exceptions import MalformedMessageError

OBJECT_CREATED_PUT = "ObjectCreated:Put"


class SQSEventRecord(TypedDict):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    This provides static type checking for message attributes, ensuring that any
    access to keys like 'messageId' or 'receiptHandle' is validated by mypy.
    """

    messageId: str
    receiptHandle: str
    body: str
    # Other SQS attributes are available but are not used by this application.


@dataclass(frozen=True)
class ObjectRef:
    """A pointer to one object in a bucket."""

    bucket: str
    key: str

    def __str__(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass(frozen=True)
class Notification:
    """
    One object-creation event, as emitted by the event source.

    Notifications are immutable once emitted. They are consumed exactly once
    logically but may be delivered more than once.

    Attributes:
        bucket: Name of the bucket the object was created in.
        key: The (decoded) object key.
        size: Object size in bytes.
        event_time: UTC timestamp of the creation.
        event_name: The S3 event name, always a creation event here.
    """

    bucket: str
    key: str
    size: int
    event_time: datetime
    event_name: str = OBJECT_CREATED_PUT

    @property
    def object_ref(self) -> ObjectRef:
        return ObjectRef(self.bucket, self.key)

    def to_record(self) -> Dict[str, Any]:
        """Renders the notification as a single S3 event record."""
        return {
            "eventVersion": "2.1",
            "eventSource": "aws:s3",
            "eventTime": self.event_time.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "eventName": self.event_name,
            "s3": {
                "s3SchemaVersion": "1.0",
                "bucket": {"name": self.bucket},
                "object": {"key": quote_plus(self.key, safe="/"), "size": self.size},
            },
        }

    def to_json(self) -> str:
        return json.dumps({"Records": [self.to_record()]})

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Notification":
        try:
            s3 = record["s3"]
            raw_time = record.get("eventTime")
            event_time = (
                datetime.fromisoformat(raw_time.replace("Z", "+00:00"))
                if raw_time
                else datetime.now(timezone.utc)
            )
            return cls(
                bucket=s3["bucket"]["name"],
                key=unquote_plus(s3["object"]["key"]),
                size=int(s3["object"].get("size", 0)),
                event_time=event_time,
                event_name=record.get("eventName", OBJECT_CREATED_PUT),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedMessageError(f"Invalid S3 event record: {e}") from e


class MessageState(str, enum.Enum):
    VISIBLE = "VISIBLE"
    IN_FLIGHT = "IN_FLIGHT"
    DELETED = "DELETED"


@dataclass
class Message:
    """
    A queue-resident wrapper around one topic envelope.

    The queue owns every field except `body`. A `receipt_handle` is only valid
    for the receive that issued it; a redelivery issues a new one.

    Attributes:
        message_id: Stable identifier for the lifetime of the message.
        body: The serialized envelope delivered by the topic.
        enqueued_at: Clock reading when the message was enqueued.
        state: Current lifecycle state.
        receipt_handle: Token for the current receive, if in flight.
        receive_count: Number of transitions into IN_FLIGHT so far.
        visible_at: Clock reading at which an in-flight message expires.
        first_received_at: Clock reading of the first receive.
    """

    message_id: str
    body: str
    enqueued_at: float
    state: MessageState = MessageState.VISIBLE
    receipt_handle: Optional[str] = None
    receive_count: int = 0
    visible_at: float = 0.0
    first_received_at: Optional[float] = None

    def snapshot(self) -> "Message":
        """Returns a detached copy safe to hand to a consumer."""
        return Message(
            message_id=self.message_id,
            body=self.body,
            enqueued_at=self.enqueued_at,
            state=self.state,
            receipt_handle=self.receipt_handle,
            receive_count=self.receive_count,
            visible_at=self.visible_at,
            first_received_at=self.first_received_at,
        )


Batch = List[Message]


@dataclass
class ItemResult:
    """
    The outcome of processing a single message.

    Attributes:
        message_id: The message the outcome belongs to.
        receipt_handle: Handle used to acknowledge or release the message.
        success: True when every notification in the message was processed.
        reason: Failure description, set only when `success` is False.
        outputs: Objects written while processing the message.
    """

    message_id: str
    receipt_handle: Optional[str]
    success: bool
    reason: Optional[str] = None
    outputs: List[ObjectRef] = field(default_factory=list)

    @classmethod
    def ok(cls, message: Message, outputs: List[ObjectRef]) -> "ItemResult":
        return cls(message.message_id, message.receipt_handle, True, outputs=outputs)

    @classmethod
    def failed(cls, message: Message, reason: str) -> "ItemResult":
        return cls(message.message_id, message.receipt_handle, False, reason=reason)


@dataclass
class InvocationResult:
    """A clear data structure for returning the outcome of one consumer invocation."""

    results: List[ItemResult] = field(default_factory=list)
    deleted: int = 0
    released: int = 0
    unprocessed: int = 0
    response: Dict[str, Any] = field(default_factory=dict)

    @property
    def received(self) -> int:
        return len(self.results) + self.unprocessed
