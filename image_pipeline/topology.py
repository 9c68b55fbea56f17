"""
In-process fan-out broker and durable queues.

This module reproduces the delivery model the pipeline relies on in AWS so
the whole topology can run locally and be exercised end to end:

  - A `Topic` delivers an independent copy of every published message to
    each of its subscriptions. A failing subscriber never prevents delivery
    to the others.
  - A `DurableQueue` buffers messages, hands them to a consumer in batches,
    counts receives per message, and moves a message to its dead-letter
    queue once a failed receive reaches `max_receive_count`.

Messages travel in the same shapes AWS uses (SNS notifications inside SQS
records, SNS records for direct subscribers), so the consumers see identical
input whether they are driven by Lambda or by this module.
"""

import copy
import json
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aws_lambda_powertools import Logger

from . import core
from .config import PipelineConfig
from .model import BatchResult, SQSEventRecord
from .notify import Notifier
from .store import ObjectStore, RecordStore

RecordHandler = Callable[[SQSEventRecord], Any]
DirectHandler = Callable[[Dict[str, Any]], Any]


def s3_event(bucket: str, key: str, event_name: str = "ObjectCreated:Put") -> Dict[str, Any]:
    """Builds an S3 notification document for a single object, as S3 would emit it."""
    return {
        "Records": [
            {
                "eventVersion": "2.1",
                "eventSource": "aws:s3",
                "eventTime": datetime.now(timezone.utc).isoformat(),
                "eventName": event_name,
                "s3": {
                    "s3SchemaVersion": "1.0",
                    "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
                    "object": {"key": key},
                },
            }
        ]
    }


@dataclass
class _QueuedMessage:
    message_id: str
    body: str
    message_attributes: Dict[str, Any] = field(default_factory=dict)
    receive_count: int = 0
    sent_at: float = field(default_factory=time.time)

    def as_record(self, queue_name: str) -> SQSEventRecord:
        return {
            "messageId": self.message_id,
            "receiptHandle": f"{queue_name}:{self.message_id}:{self.receive_count}",
            "body": self.body,
            "attributes": {
                "ApproximateReceiveCount": str(self.receive_count),
                "SentTimestamp": str(int(self.sent_at * 1000)),
            },
            "messageAttributes": copy.deepcopy(self.message_attributes),
            "eventSource": "aws:sqs",
        }


class DurableQueue:
    """
    A thread-safe queue with batched delivery and dead-lettering.

    Args:
        name: Queue name, used in receipt handles and logs.
        batch_size: Maximum number of messages handed to a consumer at once.
        batch_window_seconds: Longest time `receive` waits to fill a batch.
        max_receive_count: Failed receives allowed before dead-lettering.
        dead_letter_queue: Where exhausted messages go. Without one they are retried forever.
        logger: Powertools logger for delivery events.
    """

    def __init__(
        self,
        name: str,
        logger: Logger,
        batch_size: int = 5,
        batch_window_seconds: float = 10,
        max_receive_count: int = 1,
        dead_letter_queue: Optional["DurableQueue"] = None,
    ):
        self.name = name
        self.batch_size = batch_size
        self.batch_window_seconds = batch_window_seconds
        self.max_receive_count = max_receive_count
        self.dead_letter_queue = dead_letter_queue
        self._logger = logger
        self._visible: "OrderedDict[str, _QueuedMessage]" = OrderedDict()
        self._in_flight: Dict[str, _QueuedMessage] = {}
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._visible)

    @property
    def in_flight(self) -> int:
        """Messages received but neither acknowledged nor failed yet."""
        with self._cond:
            return len(self._in_flight)

    def send(self, body: str, message_attributes: Optional[Dict[str, Any]] = None, message_id: Optional[str] = None) -> str:
        message = _QueuedMessage(
            message_id=message_id or str(uuid.uuid4()), body=body, message_attributes=message_attributes or {}
        )
        self._enqueue(message)
        return message.message_id

    def _enqueue(self, message: _QueuedMessage) -> None:
        with self._cond:
            self._visible[message.message_id] = message
            self._cond.notify_all()

    def peek(self) -> List[SQSEventRecord]:
        """Returns the visible messages without receiving them."""
        with self._cond:
            return [m.as_record(self.name) for m in self._visible.values()]

    def receive(self, wait_seconds: Optional[float] = None) -> List[SQSEventRecord]:
        """
        Receives up to `batch_size` messages.

        Returns as soon as a full batch is available or `wait_seconds`
        (default: no wait) has elapsed, whichever comes first.
        """
        deadline = time.monotonic() + (wait_seconds or 0)
        with self._cond:
            while len(self._visible) < self.batch_size:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)

            batch = []
            while self._visible and len(batch) < self.batch_size:
                _, message = self._visible.popitem(last=False)
                message.receive_count += 1
                self._in_flight[message.message_id] = message
                batch.append(message.as_record(self.name))
            return batch

    def acknowledge(self, message_id: str) -> None:
        with self._cond:
            self._in_flight.pop(message_id, None)

    def fail(self, message_id: str) -> None:
        """Returns a received message to the queue, or dead-letters it when its budget is spent."""
        with self._cond:
            message = self._in_flight.pop(message_id, None)
        if message is None:
            return

        if self.dead_letter_queue is not None and message.receive_count >= self.max_receive_count:
            self._logger.warning(
                "Moving message to dead-letter queue.",
                extra={"queue": self.name, "dead_letter_queue": self.dead_letter_queue.name,
                       "messageId": message.message_id, "receive_count": message.receive_count},
            )
            self.dead_letter_queue._enqueue(copy.deepcopy(message))
        else:
            self._enqueue(message)

    def drain(self, record_handler: RecordHandler, wait_seconds: Optional[float] = None) -> BatchResult:
        """
        Receives one batch and runs `record_handler` on each message in delivery order.

        A message whose handler raises is failed individually; the rest of
        the batch is still processed and acknowledged.
        """
        result = BatchResult()
        for record in self.receive(wait_seconds):
            message_id = record["messageId"]
            try:
                record_handler(record)
            except Exception:
                self._logger.exception("Message processing failed.", extra={"queue": self.name, "messageId": message_id})
                self.fail(message_id)
                result.failed.append(message_id)
            else:
                self.acknowledge(message_id)
                result.processed.append(message_id)
        return result


class QueueSubscription:
    """Delivers topic messages into a durable queue, wrapped as SNS notifications."""

    def __init__(self, queue: DurableQueue):
        self.queue = queue
        self.name = queue.name

    def deliver(self, notification: Dict[str, Any]) -> None:
        self.queue.send(json.dumps(notification))


class DirectSubscription:
    """Invokes a handler synchronously with a Lambda-style SNS event."""

    def __init__(self, name: str, handler: DirectHandler):
        self.name = name
        self._handler = handler

    def deliver(self, notification: Dict[str, Any]) -> None:
        self._handler({"Records": [{"EventSource": "aws:sns", "EventVersion": "1.0", "Sns": notification}]})


@dataclass
class PublishResult:
    message_id: str
    delivered: List[str] = field(default_factory=list)
    failures: Dict[str, Exception] = field(default_factory=dict)


class Topic:
    """A publish/subscribe topic with a fixed subscriber list."""

    def __init__(self, name: str, logger: Logger):
        self.name = name
        self.arn = f"arn:aws:sns:local:000000000000:{name}"
        self.subscriptions: List[Any] = []
        self._logger = logger

    def subscribe(self, subscription: Any) -> None:
        self.subscriptions.append(subscription)

    def publish(self, message: Any, message_attributes: Optional[Dict[str, str]] = None) -> PublishResult:
        """
        Delivers an independent copy of `message` to every subscription.

        Subscriber failures are logged and reported in the result; they never
        stop delivery to the remaining subscribers.
        """
        notification = {
            "Type": "Notification",
            "MessageId": str(uuid.uuid4()),
            "TopicArn": self.arn,
            "Message": message if isinstance(message, str) else json.dumps(message),
            "Timestamp": datetime.now(timezone.utc).isoformat(),
            "MessageAttributes": {
                name: {"Type": "String", "Value": value} for name, value in (message_attributes or {}).items()
            },
        }
        result = PublishResult(message_id=notification["MessageId"])
        for subscription in self.subscriptions:
            try:
                subscription.deliver(copy.deepcopy(notification))
                result.delivered.append(subscription.name)
            except Exception as e:
                self._logger.exception("Subscriber delivery failed.", extra={"topic": self.name, "subscriber": subscription.name})
                result.failures[subscription.name] = e
        return result


@dataclass
class Topology:
    """The wired topics, queues and consumers of the pipeline."""

    created_topic: Topic
    removed_topic: Topic
    ingestion_queue: DurableQueue
    mailer_queue: DurableQueue
    rejection_queue: DurableQueue
    ingest: RecordHandler
    acknowledge: Callable[[List[SQSEventRecord]], Any]
    reject: Callable[[List[SQSEventRecord]], Any]

    def run_consumers(self, wait: bool = False) -> Dict[str, Any]:
        """
        Drains every queue once: ingestion first, so its dead-lettered
        messages are picked up by the rejection consumer in the same pass.

        With `wait`, each receive waits up to the queue's batch window for a
        full batch, like a long-polling event source mapping.
        """
        def window(queue: DurableQueue) -> float:
            return queue.batch_window_seconds if wait else 0

        ingested = self.ingestion_queue.drain(self.ingest, window(self.ingestion_queue))
        acknowledged = self._drain_best_effort(self.mailer_queue, self.acknowledge, window(self.mailer_queue))
        rejected = self._drain_best_effort(self.rejection_queue, self.reject, window(self.rejection_queue))
        return {"ingested": ingested, "acknowledged": acknowledged, "rejected": rejected}

    @staticmethod
    def _drain_best_effort(queue: DurableQueue, consumer: Callable[[List[SQSEventRecord]], Any], wait_seconds: float) -> Any:
        batch = queue.receive(wait_seconds)
        try:
            return consumer(batch)
        finally:
            for record in batch:
                queue.acknowledge(record["messageId"])


def build_topology(
    config: PipelineConfig, records: RecordStore, objects: ObjectStore, notifier: Notifier, logger: Logger
) -> Topology:
    """
    Wires the pipeline's static subscription topology.

      ObjectCreated          -> ingestion queue, mailer queue, rejection queue
      ObjectRemovedOrUpdated -> deletion consumer, update consumer
      ingestion queue        -> dead-letters into the rejection queue
    """
    def make_queue(name: str, dead_letter_queue: Optional[DurableQueue] = None) -> DurableQueue:
        return DurableQueue(
            name,
            logger,
            batch_size=config.batch_size,
            batch_window_seconds=config.batch_window_seconds,
            max_receive_count=config.max_receive_count,
            dead_letter_queue=dead_letter_queue,
        )

    rejection_queue = make_queue("RejectionQueue")
    mailer_queue = make_queue("MailerQueue")
    ingestion_queue = make_queue("ImageProcessQueue", dead_letter_queue=rejection_queue)

    created_topic = Topic("ObjectCreated", logger)
    created_topic.subscribe(QueueSubscription(ingestion_queue))
    created_topic.subscribe(QueueSubscription(mailer_queue))
    created_topic.subscribe(QueueSubscription(rejection_queue))

    removed_topic = Topic("ObjectRemovedOrUpdated", logger)
    removed_topic.subscribe(DirectSubscription("process-delete", lambda event: core.process_removal(event, records, logger)))
    removed_topic.subscribe(DirectSubscription("process-update", lambda event: core.process_update(event, records, logger)))

    return Topology(
        created_topic=created_topic,
        removed_topic=removed_topic,
        ingestion_queue=ingestion_queue,
        mailer_queue=mailer_queue,
        rejection_queue=rejection_queue,
        ingest=lambda record: core.ingest_message(record, records, objects, logger),
        acknowledge=lambda batch: core.acknowledge_uploads(batch, notifier, config.email_to, logger),
        reject=lambda batch: core.notify_rejections(batch, notifier, config.email_to, logger),
    )
