"""
Configuration for the image event pipeline.

All settings come from environment variables and are resolved once per
process. Required variables fail fast with a ValueError, the same way the
handlers refuse to start with a half-configured environment.
"""

import functools
import os
from dataclasses import dataclass
from typing import Optional


def get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Gets an environment variable or raises a ValueError for fast-failure.

    Args:
        name: The name of the environment variable.
        default: An optional default value. If not provided, the variable is required.

    Returns:
        The value of the environment variable.

    Raises:
        ValueError: If the required environment variable is not set.
    """
    value = os.environ.get(name, default)
    if value is None:
        raise ValueError(f"FATAL: Environment variable '{name}' is not set.")
    return value


@dataclass(frozen=True)
class PipelineConfig:
    """
    Static configuration shared by every consumer.

    Attributes:
        table_name: The DynamoDB table holding image records.
        region: AWS region for all clients; None lets boto3 resolve it.
        email_from: Verified SES sender for acknowledgment and rejection mail.
        email_to: The fixed recipient channel for notifications.
        environment: Deployment environment, used as the metrics dimension.
        log_level: Log level for the Powertools logger.
        batch_size: Maximum number of messages per queue batch.
        batch_window_seconds: Maximum time a partial batch waits before dispatch.
        max_receive_count: Receives allowed before a message is dead-lettered.
        call_timeout_seconds: Connect/read timeout for every external call.
        call_max_attempts: botocore attempts per external call.
    """

    table_name: str = "Images"
    region: Optional[str] = None
    email_from: str = ""
    email_to: str = ""
    environment: str = "dev"
    log_level: str = "INFO"
    batch_size: int = 5
    batch_window_seconds: int = 10
    max_receive_count: int = 1
    call_timeout_seconds: int = 3
    call_max_attempts: int = 2


def config_from_env() -> PipelineConfig:
    """Builds a PipelineConfig from the current environment."""
    region = os.environ.get("AWS_REGION") or os.environ.get("REGION")
    config = PipelineConfig(
        table_name=get_env_var("TABLE_NAME", "Images"),
        region=region,
        email_from=get_env_var("SES_EMAIL_FROM", ""),
        email_to=get_env_var("SES_EMAIL_TO", ""),
        environment=get_env_var("ENVIRONMENT", "dev"),
        log_level=get_env_var("LOG_LEVEL", "INFO").upper(),
        batch_size=int(get_env_var("BATCH_SIZE", "5")),
        batch_window_seconds=int(get_env_var("BATCH_WINDOW_SECONDS", "10")),
        max_receive_count=int(get_env_var("MAX_RECEIVE_COUNT", "1")),
        call_timeout_seconds=int(get_env_var("CALL_TIMEOUT_SECONDS", "3")),
        call_max_attempts=int(get_env_var("CALL_MAX_ATTEMPTS", "2")),
    )
    if not 1 <= config.batch_size <= 10:
        raise ValueError(f"FATAL: BATCH_SIZE must be between 1 and 10, got {config.batch_size}.")
    if config.max_receive_count < 1:
        raise ValueError(f"FATAL: MAX_RECEIVE_COUNT must be at least 1, got {config.max_receive_count}.")
    return config


@functools.lru_cache(maxsize=None)
def load_config() -> PipelineConfig:
    """Returns the process-wide configuration, read from the environment on first use."""
    return config_from_env()
