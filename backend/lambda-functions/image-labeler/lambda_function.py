"""
Image Labeler Lambda
Triggered by S3 object-created notifications; labels each new image with Rekognition
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from opentelemetry import context as otel_context

from image_labeler.config import PipelineSettings
from image_labeler.dispatcher import InvocationDispatcher
from image_labeler.errors import InvalidEvent
from image_labeler.notifications import parse_notification_events
from image_labeler.observability import (
    flush_traces,
    get_trace_id,
    init_observability,
    span_context_from_environment,
)
from image_labeler.pipeline import build_dispatcher

logger = logging.getLogger()

# Built once per container and reused across warm invocations
_settings: Optional[PipelineSettings] = None
_dispatcher: Optional[InvocationDispatcher] = None


def get_dispatcher() -> InvocationDispatcher:
    """
    Get the container's dispatcher (with caching)
    """
    global _settings, _dispatcher

    if _dispatcher is None:
        _settings = PipelineSettings.from_env()
        init_observability(_settings)
        _dispatcher = build_dispatcher(_settings)
        logger.info(
            f"Dispatcher ready: bucket={_settings.bucket_name}, "
            f"max_concurrency={_settings.max_concurrency}, max_retries={_settings.max_retries}"
        )

    return _dispatcher


def lambda_handler(event, context):
    """
    Lambda handler for S3 object-created notifications

    Every record reaches a terminal outcome inside this invocation: retryable
    failures are retried here, terminal ones go to the dead-letter sink.
    """
    dispatcher = get_dispatcher()
    parent_context = span_context_from_environment()
    logger.debug(f"Parent context: {parent_context}")

    try:
        events = parse_notification_events(event)
    except InvalidEvent as e:
        logger.error(f"Invalid event: {e.message}")
        raise

    token = otel_context.attach(parent_context) if parent_context is not None else None
    try:
        logger.info(f"Trace ID is {get_trace_id()}; dispatching {len(events)} event(s)")
        outcomes = asyncio.run(dispatcher.dispatch_many(events, parent_context=parent_context))
    finally:
        if token is not None:
            otel_context.detach(token)
        flush_traces()

    for outcome in outcomes:
        logger.info(
            f"Outcome for {outcome.key}: {outcome.state} labels={outcome.labels}",
            extra={"event_id": outcome.event_id},
        )

    return build_response(outcomes, dispatcher.get_stats())


def build_response(outcomes, stats: Dict[str, int]) -> Dict[str, Any]:
    """Format the invocation summary"""
    labels = {o.key: [name for name, _ in o.labels] for o in outcomes if o.succeeded}
    return {
        'message': f"Labels is {labels}!",
        'outcomes': [o.model_dump(mode='json') for o in outcomes],
        'stats': stats,
    }
