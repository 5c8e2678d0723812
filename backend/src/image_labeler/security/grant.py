"""Capability grant: the immutable permission set attached to one invocation."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import FrozenSet, Optional

from ..models import utc_now


class Action(str, Enum):
    """The only actions a Processing Unit may ever be granted."""

    READ_OBJECT = "read_object"
    INVOKE_CLASSIFICATION = "invoke_classification"
    WRITE_TELEMETRY = "write_telemetry"


PROCESSING_UNIT_ACTIONS: FrozenSet[Action] = frozenset(Action)

# IAM actions backing each grant action
IAM_ACTIONS = {
    Action.READ_OBJECT: ["s3:GetObject", "s3:GetObjectVersion"],
    Action.INVOKE_CLASSIFICATION: ["rekognition:DetectLabels"],
    Action.WRITE_TELEMETRY: [
        "logs:CreateLogGroup",
        "logs:CreateLogStream",
        "logs:PutLogEvents",
        "xray:PutTraceSegments",
        "xray:PutTelemetryRecords",
    ],
}


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime

    def __repr__(self) -> str:
        return f"TemporaryCredentials(access_key_id={self.access_key_id[:4]}..., expiration={self.expiration})"


@dataclass(frozen=True)
class CapabilityGrant:
    """
    Minimal, time-scoped permission set for one Processing Unit.

    Frozen: nothing can add actions or widen the bucket scope once issued.
    ``actions`` is always a subset of PROCESSING_UNIT_ACTIONS.
    """

    principal: str
    bucket: str
    issued_at: datetime
    expires_at: datetime
    actions: FrozenSet[Action] = PROCESSING_UNIT_ACTIONS
    partition: str = "aws"
    credentials: Optional[TemporaryCredentials] = field(default=None, compare=False)
    # When the session policy backing the grant was created; None for the
    # execution role, whose policy is provisioned ahead of time
    propagating_since: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self):
        actions = frozenset(Action(a) for a in self.actions)
        if not actions <= PROCESSING_UNIT_ACTIONS:
            raise ValueError(f"Grant may not include actions outside {sorted(a.value for a in PROCESSING_UNIT_ACTIONS)}")
        if not self.bucket or "*" in self.bucket or "/" in self.bucket:
            raise ValueError(f"Grant must be scoped to exactly one bucket, got {self.bucket!r}")
        if self.expires_at <= self.issued_at:
            raise ValueError("Grant expiry must be after its issue time")
        object.__setattr__(self, "actions", actions)

    @classmethod
    def for_bucket(
        cls,
        principal: str,
        bucket: str,
        ttl_seconds: int = 900,
        now: Optional[datetime] = None,
        credentials: Optional[TemporaryCredentials] = None,
        propagating_since: Optional[datetime] = None,
    ) -> "CapabilityGrant":
        issued_at = now or utc_now()
        return cls(
            principal=principal,
            bucket=bucket,
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl_seconds),
            credentials=credentials,
            propagating_since=propagating_since,
        )

    def permits(self, action: Action) -> bool:
        return action in self.actions

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def propagation_age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the backing session policy was created, or None if nothing propagates."""
        if self.propagating_since is None:
            return None
        return ((now or utc_now()) - self.propagating_since).total_seconds()

    @property
    def bucket_arn(self) -> str:
        return f"arn:{self.partition}:s3:::{self.bucket}"

    def to_policy_document(self) -> dict:
        """
        Render the IAM policy that backs this grant.

        Object reads are limited to this bucket's objects. DetectLabels and
        the X-Ray write actions do not support resource-level scoping, so
        they use "*".
        """
        statements = []
        if self.permits(Action.READ_OBJECT):
            statements.append({
                "Sid": "ReadSourceObjects",
                "Effect": "Allow",
                "Action": IAM_ACTIONS[Action.READ_OBJECT],
                "Resource": [f"{self.bucket_arn}/*"],
            })
        if self.permits(Action.INVOKE_CLASSIFICATION):
            statements.append({
                "Sid": "InvokeClassification",
                "Effect": "Allow",
                "Action": IAM_ACTIONS[Action.INVOKE_CLASSIFICATION],
                "Resource": "*",
            })
        if self.permits(Action.WRITE_TELEMETRY):
            statements.append({
                "Sid": "WriteTelemetry",
                "Effect": "Allow",
                "Action": IAM_ACTIONS[Action.WRITE_TELEMETRY],
                "Resource": "*",
            })
        return {"Version": "2012-10-17", "Statement": statements}
