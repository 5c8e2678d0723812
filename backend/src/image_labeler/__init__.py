"""Image labeling pipeline

Turns S3 object-created notifications into exactly one least-privilege,
traced classification invocation per object version.

Processing Flow:
1. Parse the notification into NotificationEvents
2. Dispatch each event under a concurrency ceiling, with retries
3. Fetch the object version and classify it with Rekognition
4. Record the canonical outcome; dead-letter terminal failures
"""

from image_labeler.config import PipelineSettings
from image_labeler.dispatcher import InvocationDispatcher
from image_labeler.models import (
    ClassificationResult,
    InvocationOutcome,
    InvocationState,
    NotificationEvent,
    ObjectRecord,
)
from image_labeler.notifications import parse_notification_events
from image_labeler.pipeline import build_dispatcher

__all__ = [
    'PipelineSettings',
    'InvocationDispatcher',
    'ClassificationResult',
    'InvocationOutcome',
    'InvocationState',
    'NotificationEvent',
    'ObjectRecord',
    'parse_notification_events',
    'build_dispatcher',
]
