"""
Envelope decoding.

A notification can reach a consumer in several shapes depending on the
delivery path:

  - a direct SNS invocation: ``{"Sns": {"Message": "<json>", ...}}``
  - an SQS record whose body is an SNS notification:
    ``{"body": "{\"Type\": \"Notification\", \"Message\": \"<json>\"}"}``
  - an SQS record whose body is the raw S3 event (raw message delivery)

Each layer is identified by its own tag and peeled off until an S3 event or
an attribute-change message remains. Callers always get a flat list of
canonical Event objects, whatever the nesting was.
"""

import enum
import json
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .errors import MalformedEvent
from .model import Event, MutationKind
from .validation import decode_key


class EnvelopeKind(enum.Enum):
    JSON_TEXT = "json_text"
    SQS_RECORD = "sqs_record"
    SNS_RECORD = "sns_record"
    SNS_NOTIFICATION = "sns_notification"
    RECORD_LIST = "record_list"
    S3_RECORD = "s3_record"
    S3_TEST_EVENT = "s3_test_event"
    ATTRIBUTE_CHANGE = "attribute_change"


def envelope_kind(payload: Any) -> EnvelopeKind:
    """Identifies the outermost layer of a payload."""
    if isinstance(payload, (str, bytes)):
        return EnvelopeKind.JSON_TEXT
    if not isinstance(payload, dict):
        raise MalformedEvent(f"Unexpected payload type {type(payload).__name__}")
    if "Sns" in payload:
        return EnvelopeKind.SNS_RECORD
    if "body" in payload and ("receiptHandle" in payload or payload.get("eventSource") == "aws:sqs"):
        return EnvelopeKind.SQS_RECORD
    if payload.get("Type") == "Notification" and "Message" in payload:
        return EnvelopeKind.SNS_NOTIFICATION
    if isinstance(payload.get("Records"), list):
        return EnvelopeKind.RECORD_LIST
    if "s3" in payload:
        return EnvelopeKind.S3_RECORD
    if payload.get("Event") == "s3:TestEvent":
        return EnvelopeKind.S3_TEST_EVENT
    if "name" in payload:
        return EnvelopeKind.ATTRIBUTE_CHANGE
    raise MalformedEvent(f"Unrecognised envelope with keys {sorted(payload)}")


def _flatten_attributes(raw: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    # SNS uses {"Type", "Value"}; SQS raw delivery uses {"dataType", "stringValue"}.
    flattened: Dict[str, str] = {}
    if not isinstance(raw, dict):
        return flattened
    for name, value in raw.items():
        if isinstance(value, dict):
            value = value.get("Value", value.get("stringValue"))
        if value is not None:
            flattened[name] = str(value)
    return flattened


def _mutation_kind(event_name: Any) -> MutationKind:
    if not isinstance(event_name, str):
        raise MalformedEvent(f"S3 event name must be a string, got {event_name!r}")
    if event_name.startswith("ObjectCreated"):
        return MutationKind.CREATED
    if event_name.startswith("ObjectRemoved"):
        return MutationKind.REMOVED
    raise MalformedEvent(f"Unsupported S3 event name {event_name!r}")


def _unwrap(payload: Any, attributes: Dict[str, str]) -> Iterator[Event]:
    kind = envelope_kind(payload)

    if kind is EnvelopeKind.JSON_TEXT:
        try:
            inner = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedEvent(f"Message body is not valid JSON: {e}") from e
        yield from _unwrap(inner, attributes)

    elif kind is EnvelopeKind.SQS_RECORD:
        merged = {**attributes, **_flatten_attributes(payload.get("messageAttributes"))}
        yield from _unwrap(payload["body"], merged)

    elif kind is EnvelopeKind.SNS_RECORD:
        sns = payload["Sns"]
        if not isinstance(sns, dict) or "Message" not in sns:
            raise MalformedEvent("SNS record has no Message")
        merged = {**attributes, **_flatten_attributes(sns.get("MessageAttributes"))}
        yield from _unwrap(sns["Message"], merged)

    elif kind is EnvelopeKind.SNS_NOTIFICATION:
        merged = {**attributes, **_flatten_attributes(payload.get("MessageAttributes"))}
        yield from _unwrap(payload["Message"], merged)

    elif kind is EnvelopeKind.RECORD_LIST:
        for record in payload["Records"]:
            yield from _unwrap(record, attributes)

    elif kind is EnvelopeKind.S3_RECORD:
        try:
            s3 = payload["s3"]
            event = Event(
                source_location=s3["bucket"]["name"],
                object_key=decode_key(s3["object"]["key"]),
                mutation_kind=_mutation_kind(payload.get("eventName") or ""),
                attributes=dict(attributes),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedEvent(f"S3 record is malformed: {e!r}") from e
        yield event

    elif kind is EnvelopeKind.ATTRIBUTE_CHANGE:
        yield Event(
            source_location=str(payload.get("bucket", "")),
            object_key=str(payload["name"]),
            mutation_kind=MutationKind.ATTRIBUTE_CHANGED,
            attributes=dict(attributes),
            description=payload.get("description"),
        )

    # S3_TEST_EVENT carries no object and decodes to nothing.


def decode_events(payload: Any, attributes: Optional[Mapping[str, str]] = None) -> List[Event]:
    """
    Decodes any supported envelope into canonical events, in delivery order.

    Args:
        payload: A Lambda record, a message body string, or a parsed message.
        attributes: Message attributes already known from an outer layer.

    Raises:
        MalformedEvent: If a layer cannot be recognised or parsed.
    """
    return list(_unwrap(payload, dict(attributes or {})))
