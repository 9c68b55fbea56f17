"""Builders for the message shapes the pipeline receives from SNS and SQS."""

import json
import uuid
from typing import Any, Dict, Optional

from image_pipeline.topology import s3_event

REGION = "us-east-1"
TABLE_NAME = "Images"
BUCKET = "bucketX"
SENDER = "pipeline@example.com"
RECIPIENT = "owner@example.com"


def sns_notification(message: Any, attributes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "Type": "Notification",
        "MessageId": str(uuid.uuid4()),
        "TopicArn": "arn:aws:sns:us-east-1:123456789012:ObjectCreated",
        "Message": message if isinstance(message, str) else json.dumps(message),
        "MessageAttributes": {k: {"Type": "String", "Value": v} for k, v in (attributes or {}).items()},
    }


def sqs_record(body: Any, message_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "messageId": message_id or str(uuid.uuid4()),
        "receiptHandle": "AQEBwJnKyrHigUMZj6rYigCgxlaS3SLy0a",
        "body": body if isinstance(body, str) else json.dumps(body),
        "attributes": {"ApproximateReceiveCount": "1", "SentTimestamp": "1545082649183"},
        "messageAttributes": {},
        "md5OfBody": "e4e68fb7bd0e697a0ae8f1bb342846b3",
        "eventSource": "aws:sqs",
        "eventSourceARN": "arn:aws:sqs:us-east-1:123456789012:ImageProcessQueue",
        "awsRegion": "us-east-1",
    }


def sns_record(message: Any, attributes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {"EventSource": "aws:sns", "EventVersion": "1.0", "Sns": sns_notification(message, attributes)}


def created_message(bucket: str, key: str, message_id: Optional[str] = None) -> Dict[str, Any]:
    """An SQS record carrying an SNS-wrapped ObjectCreated notification."""
    return sqs_record(sns_notification(s3_event(bucket, key)), message_id)


def removed_record(bucket: str, key: str) -> Dict[str, Any]:
    return sns_record(s3_event(bucket, key, "ObjectRemoved:Delete"))


def caption_record(name: str, description: str, comment_type: str = "Caption") -> Dict[str, Any]:
    return sns_record({"name": name, "description": description}, {"comment_type": comment_type})


def sent_count(ses_client) -> int:
    return int(ses_client.get_send_quota()["SentLast24Hours"])
