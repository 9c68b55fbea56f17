"""
Core business logic for the image event pipeline.

These functions are designed to be "pure" and testable: they perform no
client construction and hold no global state. The record store, object
store, notifier and the Powertools logger are passed in by the handlers in
app.py (or by the in-process topology), so every consumer can be unit-tested
in isolation against mocked AWS services.
"""

from typing import Any, Dict, List

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit
from botocore.exceptions import BotoCoreError, ClientError

from .envelope import decode_events
from .errors import (
    MalformedEvent,
    ObjectNotFound,
    PipelineError,
    RecordNotFound,
    StorageWriteFailure,
    TransientFetchFailure,
)
from .model import Accept, Event, MutationKind, NotificationSummary, Record
from .notify import Notifier
from .store import ObjectStore, RecordStore
from .validation import classify, require_supported

CAPTION_COMMENT_TYPE = "Caption"
METRICS_NAMESPACE = "ImagePipeline"


def _validate(event: Event, logger: Logger) -> str:
    try:
        return require_supported(event.object_key)
    except PipelineError as e:
        logger.error(str(e), extra=e.log_extra())
        raise


# --- Ingestion ---


def ingest_event(event: Event, records: RecordStore, objects: ObjectStore, logger: Logger) -> Record:
    """
    Validates a Created event, fetches its object and upserts the record.

    Re-processing the same event leaves the store in the same state, so
    duplicate deliveries are harmless.

    Raises:
        MalformedKey, UnsupportedType: The key is not an accepted image. Permanent.
        ObjectNotFound: The object was removed before it could be fetched. Permanent.
        TransientFetchFailure: The fetch or the write failed for an infrastructure reason.
    """
    image_type = _validate(event, logger)

    try:
        payload = objects.get(event.source_location, event.object_key)
    except (ClientError, BotoCoreError) as e:
        raise TransientFetchFailure(f"Could not fetch {event.identifier}: {e}", key=event.object_key) from e
    if payload is None:
        raise ObjectNotFound(f"Object {event.identifier} no longer exists.", key=event.object_key)

    record = Record(id=event.object_key, source_location=event.source_location)
    try:
        records.put(record)
    except (ClientError, BotoCoreError) as e:
        logger.exception("Error adding image record.", extra={"object_key": event.object_key})
        raise TransientFetchFailure(f"Could not store record for {event.identifier}: {e}", key=event.object_key) from e

    logger.info(
        "Image record stored.",
        extra={"object_key": event.object_key, "bucket": event.source_location, "image_type": image_type, "size": len(payload)},
    )
    return record


def ingest_message(body: Any, records: RecordStore, objects: ObjectStore, logger: Logger) -> List[Record]:
    """
    Processes one queue message from the creation queue.

    The message may carry several S3 records; they are handled in order and
    the first failure aborts the message so the queue can redeliver it.
    """
    stored = []
    for event in decode_events(body):
        if event.mutation_kind is not MutationKind.CREATED:
            logger.info("Ignoring non-creation event.", extra={"object_key": event.object_key, "kind": event.mutation_kind.value})
            continue
        stored.append(ingest_event(event, records, objects, logger))
    return stored


# --- Deletion ---


def delete_event(event: Event, records: RecordStore, logger: Logger) -> None:
    """
    Deletes the record for a Removed event.

    Keys that fail validation are never deleted. Deleting a record that does
    not exist is not an error.

    Raises:
        MalformedKey, UnsupportedType: The key is not an accepted image.
        StorageWriteFailure: The delete call itself failed.
    """
    _validate(event, logger)
    try:
        records.delete(event.object_key)
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Couldn't delete {event.object_key}", extra={"object_key": event.object_key, "error": str(e)})
        raise StorageWriteFailure(f"Couldn't delete {event.object_key}", key=event.object_key) from e
    logger.info(f"Deleted {event.object_key}", extra={"object_key": event.object_key})


def process_removal(payload: Any, records: RecordStore, logger: Logger) -> int:
    """Handles one notification from the removal topic. Returns the number of deletions."""
    deleted = 0
    for event in decode_events(payload):
        if event.mutation_kind is not MutationKind.REMOVED:
            continue
        delete_event(event, records, logger)
        deleted += 1
    return deleted


# --- Update ---


def update_event(event: Event, records: RecordStore, logger: Logger) -> bool:
    """
    Applies a caption to an existing record.

    Returns:
        True if the description was written, False if the event is not a caption.

    Raises:
        TransientFetchFailure: The record lookup failed.
        RecordNotFound: No record exists for the caption's target. Nothing is written.
        StorageWriteFailure: The record exists but the update failed.
    """
    if event.mutation_kind is not MutationKind.ATTRIBUTE_CHANGED:
        return False
    if event.attributes.get("comment_type") != CAPTION_COMMENT_TYPE:
        logger.debug("Ignoring non-caption attribute change.", extra={"object_key": event.object_key})
        return False

    key = event.object_key
    try:
        existing = records.get(key)
    except (ClientError, BotoCoreError) as e:
        raise TransientFetchFailure(f"Could not read record {key}: {e}", key=key) from e

    if existing is None:
        error = RecordNotFound(f"The image you're updating doesn't exist: {key}", key=key)
        logger.error(str(error), extra=error.log_extra())
        raise error

    try:
        records.update_description(key, event.description or "")
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            raise RecordNotFound(f"The image {key} was removed before the update was applied.", key=key) from e
        logger.exception("Error updating image description.", extra={"object_key": key})
        raise StorageWriteFailure(f"Error can't update image {key}.", key=key) from e
    except BotoCoreError as e:
        logger.exception("Error updating image description.", extra={"object_key": key})
        raise StorageWriteFailure(f"Error can't update image {key}.", key=key) from e

    logger.info("Image description updated.", extra={"object_key": key})
    return True


def process_update(payload: Any, records: RecordStore, logger: Logger) -> int:
    """Handles one notification from the update topic. Returns the number of updates applied."""
    return sum(1 for event in decode_events(payload) if update_event(event, records, logger))


# --- Notifications (best-effort) ---


def rejection_reason(event: Event) -> str:
    result = classify(event.object_key)
    if isinstance(result, Accept):
        return "the image could not be processed"
    return result.reason


def notify_rejections(
    messages: List[Any], notifier: Notifier, recipient: str, logger: Logger
) -> NotificationSummary:
    """
    Sends a failure notification for every event drained from the rejection queue.

    Notification delivery is best-effort: undecodable messages and refused
    sends are logged and the batch carries on.
    """
    summary = NotificationSummary()
    for message in messages:
        try:
            events = decode_events(message)
        except MalformedEvent as e:
            logger.warning("Skipping undecodable rejected message.", extra=e.log_extra())
            summary.skipped += 1
            continue

        for event in events:
            reason = rejection_reason(event)
            subject = "Image upload rejected"
            body = f"Your upload {event.identifier} was rejected: {reason}."
            try:
                notifier.send(recipient, subject, body)
                summary.sent += 1
            except (ClientError, BotoCoreError) as e:
                logger.warning("Rejection notification failed.", extra={"object_key": event.object_key, "error": str(e)})
                summary.failed += 1
    return summary


def acknowledge_uploads(
    messages: List[Any], notifier: Notifier, recipient: str, logger: Logger
) -> NotificationSummary:
    """
    Sends an acknowledgment for every accepted upload drained from the mailer queue.

    Rejected keys are skipped, the rejection path reports them.
    """
    summary = NotificationSummary()
    for message in messages:
        try:
            events = decode_events(message)
        except MalformedEvent as e:
            logger.warning("Skipping undecodable upload message.", extra=e.log_extra())
            summary.skipped += 1
            continue

        for event in events:
            if event.mutation_kind is not MutationKind.CREATED or not isinstance(classify(event.object_key), Accept):
                summary.skipped += 1
                continue
            body = f"We received your image. Its URL is s3://{event.identifier}"
            try:
                notifier.send(recipient, "New image upload", body)
                summary.sent += 1
            except (ClientError, BotoCoreError) as e:
                logger.warning("Acknowledgment notification failed.", extra={"object_key": event.object_key, "error": str(e)})
                summary.failed += 1
    return summary


# --- Metrics ---


def emit_metrics(metrics: Metrics, environment: str, status: str, payload: Dict[str, Any]) -> None:
    """
    Records one invocation's metrics on a Powertools `Metrics` instance.

    Every numeric value in `payload` becomes a metric; everything else,
    including `status`, is carried along as metadata. The handler's
    `log_metrics` decorator flushes them as a single EMF document.
    Dashboards and alarms should filter or group by the 'Environment' dimension.
    """
    metrics.add_dimension(name="Environment", value=environment)
    metrics.add_metadata(key="Status", value=status)
    for name, value in payload.items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            unit = MetricUnit.Milliseconds if name.endswith("LatencyMs") else MetricUnit.Count
            metrics.add_metric(name=name, unit=unit, value=value)
        else:
            metrics.add_metadata(key=name, value=value)
