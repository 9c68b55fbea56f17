"""
Tests for the in-process fan-out broker, the durable queues, and the
end-to-end behaviour of the wired topology.
"""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from image_pipeline.config import PipelineConfig
from image_pipeline.model import Record
from image_pipeline.topology import (
    DirectSubscription,
    DurableQueue,
    QueueSubscription,
    Topic,
    Topology,
    build_topology,
    s3_event,
)
from tests.helpers import BUCKET, RECIPIENT, SENDER, sent_count


def always_fails(record):
    raise RuntimeError("boom")


# =============================================================================
# Topic
# =============================================================================


class TestTopic:
    def test_every_subscriber_receives_a_copy(self, logger):
        topic = Topic("ObjectCreated", logger)
        queues = [DurableQueue(name, logger) for name in ("a", "b", "c")]
        for queue in queues:
            topic.subscribe(QueueSubscription(queue))

        result = topic.publish(s3_event(BUCKET, "vacation.jpeg"))

        assert result.delivered == ["a", "b", "c"]
        for queue in queues:
            (record,) = queue.peek()
            notification = json.loads(record["body"])
            assert notification["MessageId"] == result.message_id
            assert json.loads(notification["Message"])["Records"][0]["s3"]["object"]["key"] == "vacation.jpeg"

    def test_copies_are_independent(self, logger):
        topic = Topic("ObjectRemovedOrUpdated", logger)
        seen = []

        def mutating(event):
            event["Records"][0]["Sns"]["Message"] = "tampered"

        topic.subscribe(DirectSubscription("mutating", mutating))
        topic.subscribe(DirectSubscription("observer", lambda event: seen.append(event["Records"][0]["Sns"]["Message"])))

        topic.publish({"name": "a.png"})

        assert seen == [json.dumps({"name": "a.png"})]

    def test_failing_subscriber_does_not_block_others(self, logger):
        topic = Topic("ObjectRemovedOrUpdated", logger)
        calls = []
        topic.subscribe(DirectSubscription("broken", always_fails))
        topic.subscribe(DirectSubscription("healthy", calls.append))

        result = topic.publish({"name": "a.png"}, {"comment_type": "Caption"})

        assert result.delivered == ["healthy"]
        assert isinstance(result.failures["broken"], RuntimeError)
        assert calls[0]["Records"][0]["Sns"]["MessageAttributes"] == {"comment_type": {"Type": "String", "Value": "Caption"}}


# =============================================================================
# DurableQueue
# =============================================================================


class TestDurableQueue:
    def test_batches_are_capped_at_batch_size(self, logger):
        queue = DurableQueue("q", logger, batch_size=5)
        for i in range(7):
            queue.send(f"m{i}")

        first = queue.receive()
        second = queue.receive()

        assert [r["body"] for r in first] == ["m0", "m1", "m2", "m3", "m4"]
        assert [r["body"] for r in second] == ["m5", "m6"]

    def test_receive_returns_early_once_batch_is_full(self, logger):
        queue = DurableQueue("q", logger, batch_size=2)

        def produce():
            queue.send("late-1")
            queue.send("late-2")

        timer = threading.Timer(0.05, produce)
        timer.start()
        batch = queue.receive(wait_seconds=5)
        timer.join()

        assert len(batch) == 2

    def test_receive_waits_out_the_batch_window_for_a_partial_batch(self, logger):
        queue = DurableQueue("q", logger, batch_size=5)
        queue.send("only")

        started = time.monotonic()
        batch = queue.receive(wait_seconds=0.05)
        elapsed = time.monotonic() - started

        assert [r["body"] for r in batch] == ["only"]
        assert elapsed >= 0.05
        assert queue.in_flight == 1

    def test_receive_without_wait_returns_immediately(self, logger):
        queue = DurableQueue("q", logger, batch_size=5)

        started = time.monotonic()
        batch = queue.receive()

        assert batch == []
        assert time.monotonic() - started < 1

    def test_failed_message_is_dead_lettered_after_one_receive(self, logger):
        dlq = DurableQueue("dlq", logger)
        queue = DurableQueue("q", logger, max_receive_count=1, dead_letter_queue=dlq)
        message_id = queue.send("payload")

        result = queue.drain(always_fails)

        assert result.failed == [message_id]
        assert len(queue) == 0
        (dead,) = dlq.peek()
        assert dead["messageId"] == message_id
        assert dead["body"] == "payload"

    def test_failed_message_is_redelivered_within_budget(self, logger):
        dlq = DurableQueue("dlq", logger)
        queue = DurableQueue("q", logger, max_receive_count=2, dead_letter_queue=dlq)
        queue.send("payload")

        queue.drain(always_fails)
        (redelivered,) = queue.peek()
        assert len(dlq) == 0

        queue.drain(always_fails)
        assert len(queue) == 0
        (dead,) = dlq.peek()
        assert dead["attributes"]["ApproximateReceiveCount"] == "2"
        assert redelivered["messageId"] == dead["messageId"]

    def test_partial_batch_failure_only_fails_the_bad_message(self, logger):
        dlq = DurableQueue("dlq", logger)
        queue = DurableQueue("q", logger, dead_letter_queue=dlq)
        good = queue.send("good")
        bad = queue.send("bad")
        handled = []

        def handler(record):
            if record["body"] == "bad":
                raise ValueError("bad message")
            handled.append(record["body"])

        result = queue.drain(handler)

        assert result.processed == [good]
        assert result.failed == [bad]
        assert handled == ["good"]
        assert [r["messageId"] for r in dlq.peek()] == [bad]

    def test_receive_count_is_reported_in_the_envelope(self, logger):
        queue = DurableQueue("q", logger)
        queue.send("payload")

        (record,) = queue.receive()

        assert record["attributes"]["ApproximateReceiveCount"] == "1"
        assert record["eventSource"] == "aws:sqs"


# =============================================================================
# End to end
# =============================================================================


@pytest.fixture
def topology(s3, record_store, object_store, notifier, logger):
    config = PipelineConfig(email_from=SENDER, email_to=RECIPIENT)
    return build_topology(config, record_store, object_store, notifier, logger)


class TestTopologyEndToEnd:
    def test_creation_topic_fans_out_to_three_queues(self, topology):
        topology.created_topic.publish(s3_event(BUCKET, "vacation.jpeg"))

        assert len(topology.ingestion_queue) == 1
        assert len(topology.mailer_queue) == 1
        assert len(topology.rejection_queue) == 1

    def test_accepted_upload_creates_record(self, topology, s3, record_store, ses):
        s3.put_object(Bucket=BUCKET, Key="vacation.jpeg", Body=b"img")

        topology.created_topic.publish(s3_event(BUCKET, "vacation.jpeg"))
        outcome = topology.run_consumers()

        assert record_store.get("vacation.jpeg") == Record(id="vacation.jpeg", source_location=BUCKET)
        assert outcome["ingested"].failed == []
        assert outcome["acknowledged"].sent == 1

    def test_rejected_upload_is_dead_lettered_after_one_attempt(self, topology, s3, table):
        s3.put_object(Bucket=BUCKET, Key="malware.exe", Body=b"MZ")
        topology.created_topic.publish(s3_event(BUCKET, "malware.exe"))
        (queued,) = topology.ingestion_queue.peek()

        result = topology.ingestion_queue.drain(topology.ingest)

        assert result.failed == [queued["messageId"]]
        assert table.scan()["Items"] == []
        assert len(topology.ingestion_queue) == 0
        dead_lettered = [r for r in topology.rejection_queue.peek() if r["messageId"] == queued["messageId"]]
        assert len(dead_lettered) == 1
        assert dead_lettered[0]["attributes"]["ApproximateReceiveCount"] == "1"

    def test_rejection_consumer_notifies_for_dead_lettered_messages(self, topology, s3, ses):
        topology.created_topic.publish(s3_event(BUCKET, "malware.exe"))

        outcome = topology.run_consumers()

        # one fan-out copy plus the dead-lettered original
        assert outcome["rejected"].sent == 2
        assert outcome["acknowledged"].sent == 0
        assert sent_count(ses) == 2
        assert len(topology.rejection_queue) == 0

    def test_duplicate_publication_keeps_a_single_record(self, topology, s3, table):
        s3.put_object(Bucket=BUCKET, Key="vacation.jpeg", Body=b"img")

        topology.created_topic.publish(s3_event(BUCKET, "vacation.jpeg"))
        topology.created_topic.publish(s3_event(BUCKET, "vacation.jpeg"))
        topology.run_consumers()

        assert table.scan()["Items"] == [{"ImageName": "vacation.jpeg", "Bucket": BUCKET}]

    def test_removal_deletes_existing_record(self, topology, record_store):
        record_store.put(Record(id="vacation.jpeg", source_location=BUCKET))

        result = topology.removed_topic.publish(s3_event(BUCKET, "vacation.jpeg", "ObjectRemoved:Delete"))

        assert result.failures == {}
        assert record_store.get("vacation.jpeg") is None

    def test_caption_updates_existing_record(self, topology, record_store):
        record_store.put(Record(id="vacation.jpeg", source_location=BUCKET))

        result = topology.removed_topic.publish(
            {"name": "vacation.jpeg", "description": "Sunset"}, {"comment_type": "Caption"}
        )

        assert result.failures == {}
        assert record_store.get("vacation.jpeg") == Record(
            id="vacation.jpeg", source_location=BUCKET, description="Sunset"
        )

    def test_caption_for_missing_record_fails_only_the_update_consumer(self, topology, table):
        result = topology.removed_topic.publish({"name": "ghost.png", "description": "Boo"}, {"comment_type": "Caption"})

        assert result.delivered == ["process-delete"]
        assert type(result.failures["process-update"]).__name__ == "RecordNotFound"
        assert table.scan()["Items"] == []

    def test_invalid_removal_is_refused(self, topology, table):
        table.put_item(Item={"ImageName": "script.exe", "Bucket": BUCKET})

        result = topology.removed_topic.publish(s3_event(BUCKET, "script.exe", "ObjectRemoved:Delete"))

        assert type(result.failures["process-delete"]).__name__ == "UnsupportedType"
        assert len(table.scan()["Items"]) == 1


def test_build_topology_applies_configured_queue_parameters(logger):
    config = PipelineConfig(batch_size=3, batch_window_seconds=4, max_receive_count=2)

    topology = build_topology(config, MagicMock(), MagicMock(), MagicMock(), logger)

    assert topology.ingestion_queue.batch_size == 3
    assert topology.ingestion_queue.batch_window_seconds == 4
    assert topology.ingestion_queue.max_receive_count == 2
    assert topology.ingestion_queue.dead_letter_queue is topology.rejection_queue
    assert [s.name for s in topology.created_topic.subscriptions] == ["ImageProcessQueue", "MailerQueue", "RejectionQueue"]
    assert [s.name for s in topology.removed_topic.subscriptions] == ["process-delete", "process-update"]


def test_best_effort_batches_are_acknowledged_even_when_the_consumer_raises(logger):
    def broken_mailer(batch):
        raise RuntimeError("mailer crashed")

    queues = {name: DurableQueue(name, logger) for name in ("ingest", "mailer", "rejection")}
    topology = Topology(
        created_topic=Topic("ObjectCreated", logger),
        removed_topic=Topic("ObjectRemovedOrUpdated", logger),
        ingestion_queue=queues["ingest"],
        mailer_queue=queues["mailer"],
        rejection_queue=queues["rejection"],
        ingest=lambda record: None,
        acknowledge=broken_mailer,
        reject=lambda batch: None,
    )
    queues["mailer"].send("payload")

    with pytest.raises(RuntimeError):
        topology.run_consumers()

    assert len(queues["mailer"]) == 0
    assert queues["mailer"].in_flight == 0
