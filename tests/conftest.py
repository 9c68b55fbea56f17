"""
Pytest configuration and shared fixtures.

Every AWS call made by the tests is intercepted by moto. The `aws` fixture
opens a `mock_aws` context, and the resource fixtures (table, bucket, SES
identity) build on it, so a test only asks for what it touches.
"""

from types import SimpleNamespace

import boto3
import pytest
from aws_lambda_powertools import Logger, Metrics
from moto import mock_aws

from image_pipeline.clients import reset_clients
from image_pipeline.config import load_config
from image_pipeline.notify import Notifier
from image_pipeline.store import ObjectStore, RecordStore
from tests.helpers import BUCKET, RECIPIENT, REGION, SENDER, TABLE_NAME


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    """Fake credentials and pipeline configuration; fresh config and clients per test."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("USE_MOTO", "1")
    monkeypatch.setenv("TABLE_NAME", TABLE_NAME)
    monkeypatch.setenv("SES_EMAIL_FROM", SENDER)
    monkeypatch.setenv("SES_EMAIL_TO", RECIPIENT)
    monkeypatch.setenv("ENVIRONMENT", "test")
    load_config.cache_clear()
    reset_clients()
    yield
    load_config.cache_clear()
    reset_clients()


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture
def table(aws):
    dynamodb = boto3.resource("dynamodb", region_name=REGION)
    return dynamodb.create_table(
        TableName=TABLE_NAME,
        KeySchema=[{"AttributeName": "ImageName", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "ImageName", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def s3(aws):
    client = boto3.client("s3", region_name=REGION)
    client.create_bucket(Bucket=BUCKET)
    return client


@pytest.fixture
def ses(aws):
    client = boto3.client("ses", region_name=REGION)
    client.verify_email_identity(EmailAddress=SENDER)
    return client


@pytest.fixture
def record_store(table):
    return RecordStore(table)


@pytest.fixture
def object_store(s3):
    return ObjectStore(s3)


@pytest.fixture
def notifier(ses):
    return Notifier(ses, SENDER)


@pytest.fixture
def logger():
    return Logger(service="image-pipeline-test", level="DEBUG")


@pytest.fixture
def metrics():
    metrics = Metrics(namespace="ImagePipeline", service="image-pipeline-test")
    metrics.clear_metrics()
    yield metrics
    metrics.clear_metrics()


@pytest.fixture
def lambda_context():
    return SimpleNamespace(
        function_name="image-pipeline-test",
        function_version="$LATEST",
        memory_limit_in_mb=128,
        invoked_function_arn=f"arn:aws:lambda:{REGION}:123456789012:function:image-pipeline-test",
        aws_request_id="c6af9ac6-7b61-11e6-9a41-93e8deadbeef",
    )
