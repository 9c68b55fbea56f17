"""
Thin wrappers around the record table and the image bucket.

These classes only shape requests and responses. They let botocore errors
propagate untouched; translating them into pipeline error kinds is the job
of the consumers in `core`, which know whether a failure is transient or
permanent for the operation at hand.
"""

from typing import Optional

from botocore.exceptions import ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource, Table
from mypy_boto3_s3 import S3Client

from .model import Record

NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class RecordStore:
    """Image records keyed by `ImageName` in a DynamoDB table."""

    def __init__(self, table: Table):
        self._table = table

    @classmethod
    def from_resource(cls, dynamodb: DynamoDBServiceResource, table_name: str) -> "RecordStore":
        return cls(dynamodb.Table(table_name))

    def get(self, record_id: str) -> Optional[Record]:
        response = self._table.get_item(Key={"ImageName": record_id}, ConsistentRead=True)
        item = response.get("Item")
        return Record.from_item(item) if item else None

    def put(self, record: Record) -> None:
        """Inserts or replaces the record. Writing the same record twice is a no-op."""
        self._table.put_item(Item=record.to_item())

    def update_description(self, record_id: str, description: str) -> None:
        """
        Sets the description of an existing record.

        Raises:
            botocore.exceptions.ClientError: With code ConditionalCheckFailedException
                if the record does not exist, or any storage-level error.
        """
        self._table.update_item(
            Key={"ImageName": record_id},
            UpdateExpression="SET Description = :description",
            ConditionExpression="attribute_exists(ImageName)",
            ExpressionAttributeValues={":description": description},
        )

    def delete(self, record_id: str) -> None:
        """Deletes the record if it exists. Deleting a missing record succeeds."""
        self._table.delete_item(Key={"ImageName": record_id})


class ObjectStore:
    """Read access to uploaded images."""

    def __init__(self, s3_client: S3Client):
        self._s3 = s3_client

    def get(self, bucket: str, key: str) -> Optional[bytes]:
        """
        Fetches an object's payload.

        Returns:
            The object bytes, or None if the object does not exist.
        """
        try:
            response = self._s3.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in NOT_FOUND_CODES:
                return None
            raise
        with response["Body"] as body:
            return body.read()
