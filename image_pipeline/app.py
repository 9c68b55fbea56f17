"""
AWS Lambda handlers for the image event pipeline.

This module is the entry point and orchestrator for every consumer function.
Its responsibilities include:
  - Loading configuration once per execution environment.
  - Obtaining the cached, lazily-created AWS clients.
  - Receiving batches from SQS (ingestion, mailer, rejection queues) or
    direct invocations from SNS (deletion and update consumers).
  - Calling the pure, testable business logic in the 'core' module.
  - Reporting per-message failures back to SQS, emitting metrics, and
    re-raising so that the queue or topic can redeliver.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.utilities.batch import BatchProcessor, EventType, process_partial_response
from aws_lambda_powertools.utilities.data_classes.sqs_event import SQSRecord
from aws_lambda_powertools.utilities.typing import LambdaContext

from . import core
from .clients import get_clients
from .config import PipelineConfig, load_config
from .errors import PipelineError
from .notify import Notifier
from .store import ObjectStore, RecordStore

SERVICE_NAME = "image-pipeline"

logger = Logger(service=SERVICE_NAME, level=load_config().log_level)
metrics = Metrics(namespace=core.METRICS_NAMESPACE, service=SERVICE_NAME)
processor = BatchProcessor(event_type=EventType.SQS)


def _services() -> Tuple[PipelineConfig, RecordStore, ObjectStore, Notifier]:
    config = load_config()
    clients = get_clients()
    return (
        config,
        RecordStore.from_resource(clients.dynamodb, config.table_name),
        ObjectStore(clients.s3),
        Notifier(clients.ses, config.email_from),
    )


def _latency_ms(start_time: datetime) -> int:
    return int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)


def _fail(config: PipelineConfig, start_time: datetime, e: Exception) -> None:
    error_payload = {"error_type": type(e).__name__, "error_message": str(e), "ProcessingLatencyMs": _latency_ms(start_time)}
    if isinstance(e, PipelineError):
        error_payload["permanent"] = e.permanent
    core.emit_metrics(metrics, config.environment, "Failure", error_payload)
    logger.error(f"Processing failed: {json.dumps(error_payload)}", exc_info=True)


# --- Queue consumers ---


@logger.inject_lambda_context(clear_state=True)
@metrics.log_metrics
def ingest_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Consumes the image-process queue.

    Each SQS message is processed in delivery order. Messages that fail are
    returned as batch item failures so that only they are redelivered, and
    with a receive budget of one, dead-lettered to the rejection queue.
    """
    start_time = datetime.now(timezone.utc)
    sqs_messages = event.get("Records", [])
    if not sqs_messages:
        return {"batchItemFailures": []}

    config, records, objects, _ = _services()
    logger.info(f"Received {len(sqs_messages)} messages to process.")
    ingested = 0

    def record_handler(record: SQSRecord) -> None:
        nonlocal ingested
        logger.append_keys(messageId=record.message_id)
        try:
            ingested += len(core.ingest_message(record.raw_event, records, objects, logger))
        except PipelineError as e:
            logger.error("Message failed ingestion.", extra=e.log_extra())
            raise
        finally:
            logger.remove_keys(["messageId"])

    try:
        response = process_partial_response(
            event=event, record_handler=record_handler, processor=processor, context=context
        )
    except Exception as e:
        _fail(config, start_time, e)
        raise

    failures = len(response.get("batchItemFailures", []))
    core.emit_metrics(
        metrics,
        config.environment,
        "Success" if not failures else "PartialFailure",
        {"RecordsIngested": ingested, "MessagesFailed": failures, "ProcessingLatencyMs": _latency_ms(start_time)},
    )
    return response


@logger.inject_lambda_context(clear_state=True)
@metrics.log_metrics
def mailer_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """Consumes the mailer queue and acknowledges accepted uploads. Best-effort."""
    start_time = datetime.now(timezone.utc)
    config, _, _, notifier = _services()
    summary = core.acknowledge_uploads(event.get("Records", []), notifier, config.email_to, logger)
    core.emit_metrics(
        metrics,
        config.environment,
        "Success",
        {"NotificationsSent": summary.sent, "NotificationFailures": summary.failed, "ProcessingLatencyMs": _latency_ms(start_time)},
    )
    return {"sent": summary.sent, "failed": summary.failed, "skipped": summary.skipped}


@logger.inject_lambda_context(clear_state=True)
@metrics.log_metrics
def rejection_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Consumes the rejection (dead-letter) queue and sends a failure notification
    per event. A notification that cannot be sent is logged and dropped; the
    batch is never failed because of it.
    """
    start_time = datetime.now(timezone.utc)
    config, _, _, notifier = _services()
    summary = core.notify_rejections(event.get("Records", []), notifier, config.email_to, logger)
    core.emit_metrics(
        metrics,
        config.environment,
        "Success",
        {"EventsRejected": summary.sent + summary.failed, "NotificationsSent": summary.sent,
         "NotificationFailures": summary.failed, "ProcessingLatencyMs": _latency_ms(start_time)},
    )
    return {"sent": summary.sent, "failed": summary.failed, "skipped": summary.skipped}


# --- Direct topic subscribers ---


@logger.inject_lambda_context(clear_state=True)
@metrics.log_metrics
def delete_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """Deletes the record of every removed image in an SNS invocation."""
    start_time = datetime.now(timezone.utc)
    config, records, _, _ = _services()
    deleted = 0
    try:
        for record in event.get("Records", []):
            deleted += core.process_removal(record, records, logger)
    except Exception as e:
        _fail(config, start_time, e)
        raise
    core.emit_metrics(metrics, config.environment, "Success", {"RecordsDeleted": deleted, "ProcessingLatencyMs": _latency_ms(start_time)})
    return {"deleted": deleted}


@logger.inject_lambda_context(clear_state=True)
@metrics.log_metrics
def update_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """Applies caption updates carried by an SNS invocation."""
    start_time = datetime.now(timezone.utc)
    config, records, _, _ = _services()
    updated = 0
    try:
        for record in event.get("Records", []):
            updated += core.process_update(record, records, logger)
    except Exception as e:
        _fail(config, start_time, e)
        raise
    core.emit_metrics(metrics, config.environment, "Success", {"RecordsUpdated": updated, "ProcessingLatencyMs": _latency_ms(start_time)})
    return {"updated": updated}
