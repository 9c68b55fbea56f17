"""
Data models for the image event pipeline.

This module defines the core data structures passed between the envelope
decoder, the consumers and the record store. Using dataclasses and TypedDicts
keeps the data contracts explicit, statically checked by mypy, and
self-documenting.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TypedDict, Union


class MutationKind(str, enum.Enum):
    """The class of object-storage mutation an event describes."""

    CREATED = "Created"
    REMOVED = "Removed"
    ATTRIBUTE_CHANGED = "AttributeChanged"


class SQSEventRecord(TypedDict):
    """
    Represents the structure of a single SQS message record from a Lambda event.

    The receipt handle and receive count form the delivery envelope. They are
    owned by the queue, never by the Event decoded from the body.
    """

    messageId: str
    receiptHandle: str
    body: str
    attributes: Dict[str, str]
    messageAttributes: Dict[str, Any]
    eventSource: str


@dataclass(frozen=True)
class Event:
    """
    The canonical, immutable unit flowing through the pipeline.

    Attributes:
        source_location: The bucket the object lives in.
        object_key: The decoded object key ('+' -> space, percent-decoded).
        mutation_kind: Created, Removed or AttributeChanged.
        attributes: Message-level annotations, e.g. {"comment_type": "Caption"}.
        description: The new description carried by an AttributeChanged event.
    """

    source_location: str
    object_key: str
    mutation_kind: MutationKind
    attributes: Mapping[str, str] = field(default_factory=dict)
    description: Optional[str] = None

    @property
    def identifier(self) -> str:
        """A human-readable identifier used in logs and notifications."""
        if self.source_location:
            return f"{self.source_location}/{self.object_key}"
        return self.object_key


@dataclass
class Record:
    """
    A persisted image record.

    The DynamoDB item layout (`ImageName`, `Bucket`, `Description`) is kept
    inside this class so that nothing else needs to know attribute names.
    """

    id: str
    source_location: str
    description: Optional[str] = None

    def to_item(self) -> Dict[str, str]:
        item = {"ImageName": self.id, "Bucket": self.source_location}
        if self.description is not None:
            item["Description"] = self.description
        return item

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "Record":
        return cls(
            id=item["ImageName"],
            source_location=item.get("Bucket", ""),
            description=item.get("Description"),
        )


@dataclass(frozen=True)
class Accept:
    """Classification outcome for a key with a supported image type."""

    image_type: str


@dataclass(frozen=True)
class Reject:
    """Classification outcome for a key that must not enter the record store."""

    reason: str
    image_type: Optional[str] = None


Classification = Union[Accept, Reject]


@dataclass
class BatchResult:
    """
    The outcome of draining one batch from a queue.

    Attributes:
        processed: Message ids that were handled successfully and acknowledged.
        failed: Message ids that raised and must be redelivered or dead-lettered.
    """

    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class NotificationSummary:
    """
    Counts produced by a best-effort notification consumer.

    Attributes:
        sent: Notifications accepted by the sink.
        failed: Notifications the sink refused; logged and dropped.
        skipped: Events that were not relevant or could not be decoded.
    """

    sent: int = 0
    failed: int = 0
    skipped: int = 0
