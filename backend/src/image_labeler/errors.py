"""Shared error taxonomy for the image labeling pipeline"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """Standard error codes recorded on outcomes, spans and dead-letter entries"""

    # Non-retryable
    OBJECT_NOT_FOUND = "object_not_found"
    CLASSIFICATION_REJECTED = "classification_rejected"
    GRANT_DENIED = "grant_denied"
    INTERNAL_ERROR = "internal_error"

    # Retryable
    CLASSIFICATION_UNAVAILABLE = "classification_unavailable"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"
    PERMISSION_PROPAGATION_DELAY = "permission_propagation_delay"

    # Raised to the caller, never dead-lettered
    INVALID_EVENT = "invalid_event"
    CONFIGURATION_ERROR = "configuration_error"
    INVALID_STATE_TRANSITION = "invalid_state_transition"


class PipelineError(Exception):
    """Base class for every error the pipeline raises on purpose."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata


class ObjectNotFound(PipelineError):
    """The object version was deleted or overwritten before it was fetched."""

    code = ErrorCode.OBJECT_NOT_FOUND


class ClassificationRejected(PipelineError):
    """The classifier refused the input (malformed or unsupported image)."""

    code = ErrorCode.CLASSIFICATION_REJECTED


class GrantDenied(PipelineError):
    """The capability grant does not cover an action the invocation needs."""

    code = ErrorCode.GRANT_DENIED


class ClassificationUnavailable(PipelineError):
    code = ErrorCode.CLASSIFICATION_UNAVAILABLE
    retryable = True


class TimeoutExceeded(PipelineError):
    code = ErrorCode.TIMEOUT_EXCEEDED
    retryable = True


class StoreUnavailable(PipelineError):
    code = ErrorCode.STORE_UNAVAILABLE
    retryable = True


class PermissionPropagationDelay(PipelineError):
    """AccessDenied seen while a freshly issued grant may still be propagating."""

    code = ErrorCode.PERMISSION_PROPAGATION_DELAY
    retryable = True


class InvalidEvent(PipelineError):
    code = ErrorCode.INVALID_EVENT


class ConfigurationError(PipelineError):
    code = ErrorCode.CONFIGURATION_ERROR


class InvalidStateTransition(PipelineError):
    code = ErrorCode.INVALID_STATE_TRANSITION


# Error codes AWS services return for throttling and transient failures
THROTTLING_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "SlowDown",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "LimitExceededException",
})

TRANSIENT_ERROR_CODES = frozenset({
    "InternalError",
    "InternalServerError",
    "InternalFailure",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "RequestTimeout",
    "RequestTimeoutException",
})

ACCESS_DENIED_ERROR_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "403",
    "Forbidden",
})


def client_error_code(error: Exception) -> str:
    """Extract the AWS error code from a botocore ClientError (empty if absent)."""
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def is_transient_code(code: str) -> bool:
    """Check whether an AWS error code denotes a throttle or transient outage"""
    return code in THROTTLING_ERROR_CODES or code in TRANSIENT_ERROR_CODES


def http_status_to_error_code(status_code: int) -> ErrorCode:
    """Map HTTP status codes returned by AWS to ErrorCode enum values"""

    mapping = {
        403: ErrorCode.GRANT_DENIED,
        404: ErrorCode.OBJECT_NOT_FOUND,
        412: ErrorCode.OBJECT_NOT_FOUND,
        429: ErrorCode.STORE_UNAVAILABLE,
        500: ErrorCode.STORE_UNAVAILABLE,
        502: ErrorCode.STORE_UNAVAILABLE,
        503: ErrorCode.STORE_UNAVAILABLE,
        504: ErrorCode.TIMEOUT_EXCEEDED,
    }

    return mapping.get(status_code, ErrorCode.INTERNAL_ERROR)
