"""
A factory module for creating and providing boto3 clients.

This module is the core of the Dependency Injection (DI) pattern for the
pipeline. Handlers receive either real AWS clients or, under test, clients
whose calls are intercepted by `moto`. The clients are created once per
process on first use and are then shared read-only by every invocation
that lands in the same execution environment.
"""

import logging
import os
import threading
from typing import NamedTuple, Optional

import boto3
import botocore.config

from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
from mypy_boto3_s3 import S3Client
from mypy_boto3_ses import SESClient

from .config import PipelineConfig, load_config

logger = logging.getLogger(__name__)


class Clients(NamedTuple):
    s3: S3Client
    dynamodb: DynamoDBServiceResource
    ses: SESClient


_CLIENTS: Optional[Clients] = None
_CLIENTS_LOCK = threading.Lock()


def boto_config(config: PipelineConfig) -> botocore.config.Config:
    """
    Builds the shared botocore configuration.

    Every external call gets a bounded connect and read timeout so that a
    stalled dependency surfaces as a timeout error, which the consumers
    treat as transient.
    """
    return botocore.config.Config(
        connect_timeout=config.call_timeout_seconds,
        read_timeout=config.call_timeout_seconds,
        retries={"max_attempts": config.call_max_attempts, "mode": "standard"},
    )


def get_boto_clients(config: PipelineConfig) -> Clients:
    """
    Returns the AWS service clients used by the pipeline.

    The AWS region is taken from the configuration to keep behaviour
    consistent across all clients. In a test run with the moto fixture,
    these calls are hijacked to create mocked clients.

    Returns:
        A Clients tuple of (s3_client, dynamodb_resource, ses_client).
    """
    if not config.region:
        logger.warning("AWS region not configured, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    retry_config = boto_config(config)
    s3_client: S3Client = boto3.client("s3", region_name=config.region, config=retry_config)
    dynamodb_resource: DynamoDBServiceResource = boto3.resource(
        "dynamodb", region_name=config.region, config=retry_config
    )
    ses_client: SESClient = boto3.client("ses", region_name=config.region, config=retry_config)

    return Clients(s3=s3_client, dynamodb=dynamodb_resource, ses=ses_client)


def get_clients() -> Clients:
    """
    Returns the process-wide client handle, creating it on first use.

    Concurrent first calls from different threads build the clients only
    once. No teardown is required before the process exits.
    """
    global _CLIENTS
    if _CLIENTS is None:
        with _CLIENTS_LOCK:
            if _CLIENTS is None:
                _CLIENTS = get_boto_clients(load_config())
    return _CLIENTS


def reset_clients() -> None:
    """Drops the cached clients so the next get_clients() call rebuilds them."""
    global _CLIENTS
    with _CLIENTS_LOCK:
        _CLIENTS = None
