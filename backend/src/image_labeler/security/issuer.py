"""Grant issuance: execution-role grants and STS down-scoped grants."""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import (
    ACCESS_DENIED_ERROR_CODES,
    GrantDenied,
    StoreUnavailable,
    client_error_code,
    is_transient_code,
)
from ..models import utc_now
from .grant import CapabilityGrant, TemporaryCredentials

logger = logging.getLogger(__name__)

# STS RoleSessionName: 2-64 chars of [\w+=,.@-]
_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")


def session_name_for(event_id: str, prefix: str = "image-labeler") -> str:
    name = _SESSION_NAME_INVALID.sub("-", f"{prefix}-{event_id}")
    return name[:64]


class GrantIssuer(ABC):
    """Abstract interface for the security-boundary collaborator."""

    @abstractmethod
    def issue(self, bucket: str, session_name: str) -> CapabilityGrant:
        """
        Issue a grant for one invocation against ``bucket``.

        Raises:
            GrantDenied: If the boundary refuses to issue the grant
        """
        pass


class StaticGrantIssuer(GrantIssuer):
    """
    Grants backed by the Lambda execution role.

    The role itself is provisioned with exactly the grant's policy
    document; this issuer only stamps the time scope and refuses buckets
    other than the configured one. Nothing is propagating for these grants,
    so AccessDenied on them is always fatal.
    """

    def __init__(
        self,
        allowed_bucket: str,
        principal: str = "image-labeler",
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.allowed_bucket = allowed_bucket
        self.principal = principal
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, bucket: str, session_name: str) -> CapabilityGrant:
        if bucket != self.allowed_bucket:
            raise GrantDenied(
                f"No grant for bucket {bucket!r}; this function is scoped to {self.allowed_bucket!r}",
                metadata={"bucket": bucket, "session": session_name},
            )
        return CapabilityGrant.for_bucket(
            principal=self.principal,
            bucket=bucket,
            ttl_seconds=self.ttl_seconds,
            now=self._clock(),
        )


class StsGrantIssuer(GrantIssuer):
    """
    Grants backed by temporary STS credentials.

    Assumes ``role_arn`` with the grant's policy document as an inline
    session policy, so the credentials can do nothing outside the grant
    even when the role allows more.

    Grants are cached per session name, so every attempt for one event
    reuses the same credentials and the propagation window is measured from
    the first AssumeRole call.
    """

    # Credentials closer than this to expiry are not handed out again
    REUSE_MARGIN = timedelta(seconds=60)

    def __init__(
        self,
        role_arn: str,
        allowed_bucket: str,
        client=None,
        ttl_seconds: int = 900,
        region: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        import boto3

        self.role_arn = role_arn
        self.allowed_bucket = allowed_bucket
        # STS enforces a 15 minute minimum session duration
        self.ttl_seconds = max(ttl_seconds, 900)
        self._client = client or boto3.client("sts", region_name=region)
        self._clock = clock
        self._grants: Dict[str, CapabilityGrant] = {}
        self._lock = threading.Lock()

    def issue(self, bucket: str, session_name: str) -> CapabilityGrant:
        if bucket != self.allowed_bucket:
            raise GrantDenied(
                f"No grant for bucket {bucket!r}; this function is scoped to {self.allowed_bucket!r}",
                metadata={"bucket": bucket, "session": session_name},
            )

        now = self._clock()
        with self._lock:
            self._grants = {
                name: grant for name, grant in self._grants.items() if not grant.is_expired(now)
            }
            cached = self._grants.get(session_name)
        if cached is not None and not cached.is_expired(now + self.REUSE_MARGIN):
            return cached

        grant = self._assume_role(bucket, session_name, now)
        with self._lock:
            self._grants[session_name] = grant
        return grant

    def _assume_role(self, bucket: str, session_name: str, now: datetime) -> CapabilityGrant:
        draft = CapabilityGrant.for_bucket(
            principal=self.role_arn, bucket=bucket, ttl_seconds=self.ttl_seconds, now=now
        )
        try:
            response = self._client.assume_role(
                RoleArn=self.role_arn,
                RoleSessionName=session_name,
                Policy=json.dumps(draft.to_policy_document()),
                DurationSeconds=self.ttl_seconds,
            )
        except ClientError as e:
            code = client_error_code(e)
            if code in ACCESS_DENIED_ERROR_CODES:
                raise GrantDenied(f"AssumeRole on {self.role_arn} denied ({code})")
            if is_transient_code(code):
                raise StoreUnavailable(f"STS is unavailable ({code})")
            logger.error(f"AssumeRole failed for {self.role_arn}: {e}")
            raise GrantDenied(f"AssumeRole on {self.role_arn} failed ({code})")
        except BotoCoreError as e:
            raise StoreUnavailable(f"STS is unreachable: {e}")

        creds = response["Credentials"]
        credentials = TemporaryCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds["Expiration"],
        )
        principal = response.get("AssumedRoleUser", {}).get("Arn", self.role_arn)
        logger.debug(f"Issued STS grant for {bucket}: principal={principal}")

        return CapabilityGrant(
            principal=principal,
            bucket=bucket,
            issued_at=draft.issued_at,
            expires_at=min(draft.expires_at, credentials.expiration),
            credentials=credentials,
            propagating_since=draft.issued_at,
        )
