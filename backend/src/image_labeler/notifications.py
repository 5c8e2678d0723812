"""
Event notifier contract.

Turns S3 object-created notifications (delivered directly, or wrapped in an
SQS batch) into NotificationEvent values. The notifier carries no business
logic: records that are not object creations are skipped, and structurally
broken records are rejected with InvalidEvent.
"""

import json
import logging
import urllib.parse
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .errors import InvalidEvent
from .models import NotificationEvent, ObjectRecord, utc_now

logger = logging.getLogger(__name__)

OBJECT_CREATED_PREFIX = "ObjectCreated:"
S3_TEST_EVENT = "s3:TestEvent"

# Namespace for event ids derived from record contents
_EVENT_ID_NAMESPACE = uuid.UUID("6f1f6c53-5d1b-4c5e-9f2a-3b1b0c7a9e11")


def _parse_event_time(value: Optional[str]) -> datetime:
    if not value:
        return utc_now()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidEvent(f"Invalid eventTime: {value!r}")


def _strip_etag(etag: Optional[str]) -> Optional[str]:
    if not etag:
        return None
    return etag.strip('"')


def build_event_id(record: Dict[str, Any], obj: ObjectRecord, event_time: datetime) -> str:
    """
    Derive a redelivery-stable event id for one S3 record.

    S3 does not ship an event id, but the request id of the write plus the
    object sequencer is unique per write. Without them the id is a UUIDv5
    over the object identity and event time.
    """
    request_id = (record.get("responseElements") or {}).get("x-amz-request-id")
    sequencer = ((record.get("s3") or {}).get("object") or {}).get("sequencer")
    if request_id and sequencer:
        return f"{request_id}:{sequencer}"

    name = f"{obj.bucket}/{obj.key}#{obj.version}@{event_time.isoformat()}"
    return str(uuid.uuid5(_EVENT_ID_NAMESPACE, name))


def parse_s3_record(record: Dict[str, Any]) -> Optional[NotificationEvent]:
    """
    Convert one S3 notification record into a NotificationEvent.

    Args:
        record: A single entry of the notification's ``Records`` list

    Returns:
        NotificationEvent, or None when the record is not an object creation

    Raises:
        InvalidEvent: If bucket name or object key is missing
    """
    event_name = record.get("eventName", "")
    if not event_name.startswith(OBJECT_CREATED_PREFIX):
        logger.info(f"Skipping non-creation record: eventName={event_name!r}")
        return None

    s3 = record.get("s3") or {}
    bucket = (s3.get("bucket") or {}).get("name")
    if not bucket:
        raise InvalidEvent("No bucket name")

    s3_object = s3.get("object") or {}
    raw_key = s3_object.get("key")
    if not raw_key:
        raise InvalidEvent("No object name")

    event_time = _parse_event_time(record.get("eventTime"))
    obj = ObjectRecord(
        bucket=bucket,
        # S3 URL-encodes keys in notifications, with '+' for spaces
        key=urllib.parse.unquote_plus(raw_key),
        version_id=s3_object.get("versionId") or None,
        etag=_strip_etag(s3_object.get("eTag")),
        size=int(s3_object.get("size", 0) or 0),
        created_at=event_time,
    )
    return NotificationEvent(
        object=obj,
        event_id=build_event_id(record, obj, event_time),
        event_time=event_time,
    )


def _iter_s3_records(payload: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    if payload.get("Event") == S3_TEST_EVENT:
        logger.info("Ignoring s3:TestEvent notification")
        return

    for record in payload.get("Records") or []:
        if record.get("eventSource") == "aws:sqs":
            try:
                body = json.loads(record.get("body") or "{}")
            except json.JSONDecodeError as e:
                raise InvalidEvent(f"SQS message body is not JSON: {e}")
            # SQS messages hold a full S3 notification
            yield from _iter_s3_records(body)
        else:
            yield record


def parse_notification_events(payload: Dict[str, Any]) -> List[NotificationEvent]:
    """
    Parse a Lambda payload into NotificationEvents.

    Accepts a direct S3 notification or an SQS batch whose bodies are S3
    notifications.

    Raises:
        InvalidEvent: If the payload is not a notification or a record is broken
    """
    if not isinstance(payload, dict):
        raise InvalidEvent(f"Expected a JSON object, got {type(payload).__name__}")
    if "Records" not in payload and payload.get("Event") != S3_TEST_EVENT:
        raise InvalidEvent("Payload has no Records")

    events = []
    for record in _iter_s3_records(payload):
        event = parse_s3_record(record)
        if event is not None:
            events.append(event)

    logger.debug(f"Parsed {len(events)} notification event(s)")
    return events
