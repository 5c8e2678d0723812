"""
Capabilities handed to a Processing Unit, derived from a CapabilityGrant.

A Processing Unit never receives a store, a client or credentials: it
receives a BucketReader bound to the granted bucket and a ClassifierInvoker.
Neither offers a way to name another bucket or widen the grant.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from botocore.config import Config

from ..classification import Classifier, RekognitionClassifier
from ..errors import GrantDenied, PermissionPropagationDelay
from ..storage.object_store import ObjectStore, S3ObjectStore
from ..models import LabelScore
from .grant import Action, CapabilityGrant

logger = logging.getLogger(__name__)


def _denied_or_propagating(
    grant: CapabilityGrant, error: GrantDenied, grace_seconds: float
) -> Exception:
    """AccessDenied right after a session policy is created may be IAM propagation; later it is fatal."""
    age = grant.propagation_age_seconds()
    if age is not None and age < grace_seconds:
        return PermissionPropagationDelay(
            f"{error.message} (session policy is {age:.1f}s old, may still be propagating)",
            error.metadata,
        )
    return error


class BucketReader:
    """Read-only access to objects in the granted bucket."""

    def __init__(self, grant: CapabilityGrant, store: ObjectStore, grace_seconds: float = 0.0):
        self._grant = grant
        self._store = store
        self._grace_seconds = grace_seconds

    @property
    def bucket(self) -> str:
        return self._grant.bucket

    def get(self, key: str, version: str) -> bytes:
        try:
            return self._store.get(self._grant.bucket, key, version)
        except GrantDenied as e:
            raise _denied_or_propagating(self._grant, e, self._grace_seconds) from e


class ClassifierInvoker:
    """Invoke-only access to the classification capability."""

    def __init__(self, grant: CapabilityGrant, classifier: Classifier, grace_seconds: float = 0.0):
        self._grant = grant
        self._classifier = classifier
        self._grace_seconds = grace_seconds

    @property
    def deterministic(self) -> bool:
        return self._classifier.deterministic

    def classify(self, data: bytes) -> List[LabelScore]:
        try:
            return self._classifier.classify(data)
        except GrantDenied as e:
            raise _denied_or_propagating(self._grant, e, self._grace_seconds) from e


@dataclass(frozen=True)
class GrantedCapabilities:
    """Everything a Processing Unit may touch, fixed for one invocation."""

    grant: CapabilityGrant
    reader: BucketReader
    classifier: ClassifierInvoker

    @classmethod
    def from_grant(
        cls,
        grant: CapabilityGrant,
        store: ObjectStore,
        classifier: Classifier,
        bucket: Optional[str] = None,
        grace_seconds: float = 0.0,
        now: Optional[datetime] = None,
    ) -> "GrantedCapabilities":
        """
        Build the capability set for one invocation.

        Raises:
            GrantDenied: If the grant is expired, lacks a required action, or
                does not cover ``bucket``
        """
        if grant.is_expired(now):
            raise GrantDenied(f"Grant for {grant.principal} expired at {grant.expires_at.isoformat()}")
        missing = [a.value for a in (Action.READ_OBJECT, Action.INVOKE_CLASSIFICATION) if not grant.permits(a)]
        if missing:
            raise GrantDenied(f"Grant for {grant.principal} lacks {', '.join(missing)}")
        if bucket is not None and bucket != grant.bucket:
            raise GrantDenied(
                f"Grant for {grant.principal} covers bucket {grant.bucket!r}, not {bucket!r}",
                metadata={"bucket": bucket},
            )

        return cls(
            grant=grant,
            reader=BucketReader(grant, store, grace_seconds),
            classifier=ClassifierInvoker(grant, classifier, grace_seconds),
        )


class CapabilityProvider:
    """Builds GrantedCapabilities from fixed store and classifier instances."""

    def __init__(self, store: ObjectStore, classifier: Classifier, grace_seconds: float = 0.0):
        self.store = store
        self.classifier = classifier
        self.grace_seconds = grace_seconds

    def capabilities_for(self, grant: CapabilityGrant, bucket: str) -> GrantedCapabilities:
        return GrantedCapabilities.from_grant(
            grant,
            self.store,
            self.classifier,
            bucket=bucket,
            grace_seconds=self.grace_seconds,
        )


class AwsCapabilityProvider(CapabilityProvider):
    """
    Builds S3 and Rekognition clients for a grant.

    Grants carrying STS credentials get clients signed with those
    credentials; execution-role grants share one set of clients per
    container. botocore retries are limited to a single attempt because the
    dispatcher owns retry.
    """

    def __init__(
        self,
        region: Optional[str] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 20.0,
        max_labels: int = 10,
        min_confidence: float = 70.0,
        deterministic: bool = False,
        grace_seconds: float = 0.0,
        session=None,
    ):
        import boto3

        self.region = region
        self.max_labels = max_labels
        self.min_confidence = min_confidence
        self.deterministic = deterministic
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        self._session = session or boto3.session.Session(region_name=region)
        store, classifier = self._build(self._session)
        super().__init__(store, classifier, grace_seconds)

    def _build(self, session):
        store = S3ObjectStore(session.client("s3", config=self._config))
        classifier = RekognitionClassifier(
            session.client("rekognition", config=self._config),
            max_labels=self.max_labels,
            min_confidence=self.min_confidence,
            deterministic=self.deterministic,
        )
        return store, classifier

    def capabilities_for(self, grant: CapabilityGrant, bucket: str) -> GrantedCapabilities:
        if grant.credentials is None:
            return super().capabilities_for(grant, bucket)

        import boto3

        creds = grant.credentials
        session = boto3.session.Session(
            aws_access_key_id=creds.access_key_id,
            aws_secret_access_key=creds.secret_access_key,
            aws_session_token=creds.session_token,
            region_name=self.region,
        )
        store, classifier = self._build(session)
        return GrantedCapabilities.from_grant(
            grant, store, classifier, bucket=bucket, grace_seconds=self.grace_seconds
        )
