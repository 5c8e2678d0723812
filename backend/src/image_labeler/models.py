"""Data models for the image labeling pipeline."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .errors import ErrorCode, InvalidStateTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class ObjectIdentity:
    """(bucket, key, version) triple identifying one unit of classification work."""

    bucket: str
    key: str
    version: str

    def as_key(self) -> str:
        """Stable string form used as a storage key."""
        return f"{self.bucket}/{self.key}#{self.version}"

    def __str__(self) -> str:
        return self.as_key()


@dataclass(frozen=True)
class ObjectRecord:
    """
    One written object, as described by the store notification.

    ``version_id`` is only set for versioned buckets; otherwise the ETag
    identifies the written content.
    """

    bucket: str
    key: str
    version_id: Optional[str] = None
    etag: Optional[str] = None
    size: int = 0
    created_at: Optional[datetime] = None

    @property
    def version(self) -> str:
        return self.version_id or self.etag or ""

    @property
    def identity(self) -> ObjectIdentity:
        return ObjectIdentity(bucket=self.bucket, key=self.key, version=self.version)

    def to_dict(self) -> dict:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "versionId": self.version_id,
            "eTag": self.etag,
            "size": self.size,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ObjectRecord":
        return cls(
            bucket=data.get("bucket", ""),
            key=data.get("key", ""),
            version_id=data.get("versionId"),
            etag=data.get("eTag"),
            size=int(data.get("size", 0) or 0),
            created_at=_parse_timestamp(data.get("createdAt")),
        )


class EventType(str, Enum):
    CREATED = "created"


@dataclass(frozen=True)
class NotificationEvent:
    """A created-object notification. Redeliveries carry the same event_id."""

    object: ObjectRecord
    event_id: str
    event_time: datetime
    event_type: EventType = EventType.CREATED

    @property
    def identity(self) -> ObjectIdentity:
        return self.object.identity

    def to_dict(self) -> dict:
        return {
            "eventType": self.event_type.value,
            "eventId": self.event_id,
            "eventTime": self.event_time.isoformat(),
            "object": self.object.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationEvent":
        return cls(
            object=ObjectRecord.from_dict(data.get("object", {})),
            event_id=data.get("eventId", ""),
            event_time=_parse_timestamp(data.get("eventTime")) or utc_now(),
            event_type=EventType(data.get("eventType", EventType.CREATED.value)),
        )


class InvocationState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


# Legal transitions; SUCCEEDED and FAILED_TERMINAL are absorbing
_TRANSITIONS: Dict[InvocationState, frozenset] = {
    InvocationState.PENDING: frozenset({
        InvocationState.FETCHING,
        InvocationState.FAILED_RETRYABLE,
        InvocationState.FAILED_TERMINAL,
    }),
    InvocationState.FETCHING: frozenset({
        InvocationState.CLASSIFYING,
        InvocationState.FAILED_RETRYABLE,
        InvocationState.FAILED_TERMINAL,
    }),
    InvocationState.CLASSIFYING: frozenset({
        InvocationState.SUCCEEDED,
        InvocationState.FAILED_RETRYABLE,
        InvocationState.FAILED_TERMINAL,
    }),
    InvocationState.FAILED_RETRYABLE: frozenset({
        InvocationState.PENDING,
        InvocationState.FAILED_TERMINAL,
    }),
    InvocationState.SUCCEEDED: frozenset(),
    InvocationState.FAILED_TERMINAL: frozenset(),
}


@dataclass
class InvocationRequest:
    """
    One event on its way through the Processing Unit.

    Owned by the dispatcher; ``attempt`` is 1-based and counts every
    Processing Unit run for this event.
    """

    event: NotificationEvent
    trace_context: Optional[Any] = None
    attempt: int = 0
    state: InvocationState = InvocationState.PENDING
    history: List[InvocationState] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state in (InvocationState.SUCCEEDED, InvocationState.FAILED_TERMINAL)

    def transition(self, new_state: InvocationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Illegal transition {self.state.value} -> {new_state.value} "
                f"for event {self.event.event_id}"
            )
        self.state = new_state
        self.history.append(new_state)


@dataclass(frozen=True)
class LabelScore:
    label: str
    confidence: float

    def as_tuple(self) -> Tuple[str, float]:
        return (self.label, self.confidence)


@dataclass(frozen=True)
class ClassificationResult:
    """Labels for one object version, ordered by descending confidence."""

    bucket: str
    key: str
    version: str
    labels: Tuple[LabelScore, ...] = ()
    latency_ms: float = 0.0

    @property
    def identity(self) -> ObjectIdentity:
        return ObjectIdentity(bucket=self.bucket, key=self.key, version=self.version)

    def label_pairs(self) -> List[Tuple[str, float]]:
        return [label.as_tuple() for label in self.labels]

    def to_dict(self) -> dict:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "version": self.version,
            "labels": [{"name": l.label, "confidence": l.confidence} for l in self.labels],
            "latencyMs": self.latency_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClassificationResult":
        return cls(
            bucket=data.get("bucket", ""),
            key=data.get("key", ""),
            version=data.get("version", ""),
            labels=tuple(
                LabelScore(label=l["name"], confidence=float(l["confidence"]))
                for l in data.get("labels", [])
            ),
            latency_ms=float(data.get("latencyMs", 0.0)),
        )


class TerminalState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TerminalRecord:
    """
    Marker of the terminal outcome for one object version.

    The first record written for an identity is canonical; later writes for
    the same identity are discarded by the result store.
    """

    identity: ObjectIdentity
    state: TerminalState
    event_id: str
    result: Optional[ClassificationResult] = None
    error_code: Optional[str] = None
    attempts: int = 0
    recorded_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "bucket": self.identity.bucket,
            "key": self.identity.key,
            "version": self.identity.version,
            "state": self.state.value,
            "eventId": self.event_id,
            "result": self.result.to_dict() if self.result else None,
            "errorCode": self.error_code,
            "attempts": self.attempts,
            "recordedAt": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TerminalRecord":
        result_data = data.get("result")
        return cls(
            identity=ObjectIdentity(
                bucket=data.get("bucket", ""),
                key=data.get("key", ""),
                version=data.get("version", ""),
            ),
            state=TerminalState(data.get("state", TerminalState.FAILED.value)),
            event_id=data.get("eventId", ""),
            result=ClassificationResult.from_dict(result_data) if result_data else None,
            error_code=data.get("errorCode"),
            attempts=int(data.get("attempts", 0) or 0),
            recorded_at=_parse_timestamp(data.get("recordedAt")) or utc_now(),
        )


class DeadLetterRecord(BaseModel):
    """Dead-letter entry: the event plus its final failure reason."""

    event: Dict[str, Any]
    attempt_count: int
    error_kind: ErrorCode
    reason: str
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        use_enum_values = True


class InvocationOutcome(BaseModel):
    """What dispatch() reports for one event."""

    event_id: str
    bucket: str
    key: str
    version: str
    state: InvocationState
    attempts: int = 0
    labels: List[Tuple[str, float]] = Field(default_factory=list)
    latency_ms: Optional[float] = None
    error_code: Optional[ErrorCode] = None
    reason: Optional[str] = None
    duplicate: bool = False
    dead_lettered: bool = False

    class Config:
        use_enum_values = True

    @property
    def succeeded(self) -> bool:
        return self.state == InvocationState.SUCCEEDED
