"""Object store abstraction: versioned blob storage that emits created events."""

import logging
import threading
import uuid
import hashlib
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError, BotoCoreError

from ..errors import (
    ACCESS_DENIED_ERROR_CODES,
    ErrorCode,
    GrantDenied,
    ObjectNotFound,
    StoreUnavailable,
    PipelineError,
    client_error_code,
    http_status_to_error_code,
    is_transient_code,
)
from ..models import NotificationEvent, ObjectRecord, utc_now

logger = logging.getLogger(__name__)

NOT_FOUND_ERROR_CODES = frozenset({"NoSuchKey", "NoSuchVersion", "NotFound", "404", "PreconditionFailed", "412"})


class ObjectStore(ABC):
    """Abstract interface for the object store."""

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes) -> str:
        """
        Write an object.

        Returns:
            The version of the written object (version id, or ETag when the
            bucket is not versioned)
        """
        pass

    @abstractmethod
    def get(self, bucket: str, key: str, version: str) -> bytes:
        """
        Read one object version.

        Raises:
            ObjectNotFound: If that version no longer exists
        """
        pass


class InMemoryObjectStore(ObjectStore):
    """
    In-memory versioned store for local development and tests.

    Every completed put emits exactly one NotificationEvent to each
    subscriber, synchronously, after the write is stored.
    """

    def __init__(self):
        # Format: {(bucket, key): [(version, data), ...]}
        self._objects: Dict[Tuple[str, str], List[Tuple[str, bytes]]] = {}
        self._subscribers: List[Callable[[NotificationEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[NotificationEvent], None]) -> None:
        self._subscribers.append(callback)

    def put(self, bucket: str, key: str, data: bytes) -> str:
        version = uuid.uuid4().hex
        with self._lock:
            self._objects.setdefault((bucket, key), []).append((version, bytes(data)))

        now = utc_now()
        event = NotificationEvent(
            object=ObjectRecord(
                bucket=bucket,
                key=key,
                version_id=version,
                etag=hashlib.md5(data).hexdigest(),
                size=len(data),
                created_at=now,
            ),
            event_id=uuid.uuid4().hex,
            event_time=now,
        )
        for callback in self._subscribers:
            callback(event)
        return version

    def get(self, bucket: str, key: str, version: str) -> bytes:
        with self._lock:
            for stored_version, data in self._objects.get((bucket, key), []):
                if stored_version == version:
                    return data
        raise ObjectNotFound(
            f"Object {bucket}/{key} version {version} not found",
            metadata={"bucket": bucket, "key": key, "version": version},
        )

    def delete(self, bucket: str, key: str, version: Optional[str] = None) -> None:
        """Delete one version, or every version when none is given."""
        with self._lock:
            versions = self._objects.get((bucket, key), [])
            if version is None:
                versions.clear()
            else:
                versions[:] = [(v, d) for v, d in versions if v != version]


class S3ObjectStore(ObjectStore):
    """S3-backed object store."""

    def __init__(self, client):
        """
        Args:
            client: boto3 S3 client (already scoped to the granted credentials)
        """
        self._client = client

    def put(self, bucket: str, key: str, data: bytes) -> str:
        try:
            response = self._client.put_object(Bucket=bucket, Key=key, Body=data)
        except ClientError as e:
            raise self._map_client_error(e, bucket, key, None)
        except BotoCoreError as e:
            raise StoreUnavailable(f"S3 put_object failed: {e}")
        return response.get("VersionId") or response.get("ETag", "").strip('"')

    def get(self, bucket: str, key: str, version: str) -> bytes:
        params = {"Bucket": bucket, "Key": key}
        if self._looks_like_etag(version):
            # Unversioned bucket: only accept the exact content we were notified about
            params["IfMatch"] = f'"{version}"'
        elif version:
            params["VersionId"] = version

        try:
            response = self._client.get_object(**params)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except ClientError as e:
            raise self._map_client_error(e, bucket, key, version)
        except BotoCoreError as e:
            raise StoreUnavailable(f"S3 get_object failed for {bucket}/{key}: {e}")

    @staticmethod
    def _looks_like_etag(version: str) -> bool:
        # ETags are 32 hex chars, optionally with a multipart "-N" suffix
        head = version.split("-", 1)[0] if version else ""
        return len(head) == 32 and all(c in "0123456789abcdef" for c in head.lower())

    @staticmethod
    def _map_client_error(
        error: ClientError, bucket: str, key: str, version: Optional[str]
    ) -> PipelineError:
        code = client_error_code(error)
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        metadata = {"bucket": bucket, "key": key, "version": version, "awsErrorCode": code}

        if code in NOT_FOUND_ERROR_CODES:
            return ObjectNotFound(f"Object {bucket}/{key} version {version} not found", metadata)
        if is_transient_code(code):
            return StoreUnavailable(f"S3 is unavailable ({code})", metadata)

        mapped = http_status_to_error_code(status)
        if mapped == ErrorCode.OBJECT_NOT_FOUND:
            return ObjectNotFound(f"Object {bucket}/{key} version {version} not found", metadata)
        if mapped in (ErrorCode.STORE_UNAVAILABLE, ErrorCode.TIMEOUT_EXCEEDED):
            return StoreUnavailable(f"S3 is unavailable ({code or status})", metadata)

        if code in ACCESS_DENIED_ERROR_CODES or mapped == ErrorCode.GRANT_DENIED:
            return GrantDenied(f"S3 denied access to {bucket}/{key} ({code or status})", metadata)

        logger.error(f"Unexpected S3 error for {bucket}/{key}: {error}")
        return PipelineError(f"S3 error for {bucket}/{key}: {code or status}", metadata)
