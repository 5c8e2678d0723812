"""Environment-driven settings for the image labeling pipeline."""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class PipelineSettings:
    """
    Runtime settings for one Lambda container.

    Timeouts default to 20s per call and a 60s
    budget per attempt, under the one-minute function timeout.
    """

    bucket_name: Optional[str] = None
    aws_region: Optional[str] = None

    # Dispatcher
    max_concurrency: int = 8
    max_retries: int = 3
    retry_base_seconds: float = 0.5
    retry_max_seconds: float = 20.0
    retry_jitter: bool = True

    # Processing Unit
    fetch_timeout_seconds: float = 20.0
    classify_timeout_seconds: float = 20.0
    invocation_timeout_seconds: float = 60.0

    # Classifier
    max_labels: int = 10
    min_confidence: float = 70.0
    classifier_deterministic: bool = False

    # Collaborators
    dead_letter_queue_url: Optional[str] = None
    result_table_name: Optional[str] = None

    # Security boundary
    grant_role_arn: Optional[str] = None
    grant_ttl_seconds: int = 900
    grant_propagation_grace_seconds: float = 10.0

    # Observability
    service_name: str = "image-labeler"
    log_level: str = "INFO"
    log_retention_days: int = 5

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "PipelineSettings":
        """Build settings from environment variables (and a local .env file)."""
        if dotenv:
            load_dotenv()

        settings = cls(
            bucket_name=os.getenv("SOURCE_BUCKET_NAME") or None,
            aws_region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION")) or None,
            max_concurrency=_get_int("MAX_CONCURRENCY", 8, minimum=1),
            max_retries=_get_int("MAX_RETRIES", 3),
            retry_base_seconds=_get_float("RETRY_BASE_SECONDS", 0.5),
            retry_max_seconds=_get_float("RETRY_MAX_SECONDS", 20.0),
            retry_jitter=_get_bool("RETRY_JITTER", True),
            fetch_timeout_seconds=_get_float("FETCH_TIMEOUT_SECONDS", 20.0, minimum=0.001),
            classify_timeout_seconds=_get_float("CLASSIFY_TIMEOUT_SECONDS", 20.0, minimum=0.001),
            invocation_timeout_seconds=_get_float("INVOCATION_TIMEOUT_SECONDS", 60.0, minimum=0.001),
            max_labels=_get_int("MAX_LABELS", 10, minimum=1),
            min_confidence=_get_float("MIN_CONFIDENCE", 70.0),
            classifier_deterministic=_get_bool("CLASSIFIER_DETERMINISTIC", False),
            dead_letter_queue_url=os.getenv("DEAD_LETTER_QUEUE_URL") or None,
            result_table_name=os.getenv("RESULT_TABLE_NAME") or None,
            grant_role_arn=os.getenv("GRANT_ROLE_ARN") or None,
            grant_ttl_seconds=_get_int("GRANT_TTL_SECONDS", 900, minimum=1),
            grant_propagation_grace_seconds=_get_float("GRANT_PROPAGATION_GRACE_SECONDS", 10.0),
            service_name=os.getenv("OTEL_SERVICE_NAME", "image-labeler"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_retention_days=_get_int("LOG_RETENTION_DAYS", 5, minimum=1),
        )

        if settings.retry_max_seconds < settings.retry_base_seconds:
            raise ConfigurationError(
                "RETRY_MAX_SECONDS must not be smaller than RETRY_BASE_SECONDS"
            )
        if settings.min_confidence > 100:
            raise ConfigurationError("MIN_CONFIDENCE must be between 0 and 100")

        logger.info(
            f"PipelineSettings loaded: bucket={settings.bucket_name}, "
            f"concurrency={settings.max_concurrency}, retries={settings.max_retries}, "
            f"dlq={'sqs' if settings.dead_letter_queue_url else 'memory'}, "
            f"results={'dynamodb' if settings.result_table_name else 'memory'}"
        )
        return settings

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def require_bucket(self) -> str:
        if not self.bucket_name:
            raise ConfigurationError("SOURCE_BUCKET_NAME is not set")
        return self.bucket_name
