"""Wires a dispatcher from settings for the Lambda runtime."""

import logging
from typing import Optional

from opentelemetry import trace

from .config import PipelineSettings
from .dead_letter import DeadLetterSink, InMemoryDeadLetterSink, SQSDeadLetterSink
from .dispatcher import InvocationDispatcher
from .security.capabilities import AwsCapabilityProvider, CapabilityProvider
from .security.issuer import GrantIssuer, StaticGrantIssuer, StsGrantIssuer
from .storage.result_store import DynamoDBResultStore, InMemoryResultStore, ResultStore

logger = logging.getLogger(__name__)


def build_issuer(settings: PipelineSettings) -> GrantIssuer:
    bucket = settings.require_bucket()
    if settings.grant_role_arn:
        return StsGrantIssuer(
            role_arn=settings.grant_role_arn,
            allowed_bucket=bucket,
            ttl_seconds=settings.grant_ttl_seconds,
            region=settings.aws_region,
        )
    return StaticGrantIssuer(
        allowed_bucket=bucket,
        principal=settings.service_name,
        ttl_seconds=settings.grant_ttl_seconds,
    )


def build_dead_letter_sink(settings: PipelineSettings) -> DeadLetterSink:
    if settings.dead_letter_queue_url:
        return SQSDeadLetterSink(settings.dead_letter_queue_url, region=settings.aws_region)
    logger.warning(
        "DEAD_LETTER_QUEUE_URL not set. Dead-lettered events are only kept in memory "
        "and logged."
    )
    return InMemoryDeadLetterSink()


def build_result_store(settings: PipelineSettings) -> ResultStore:
    if settings.result_table_name:
        return DynamoDBResultStore(table_name=settings.result_table_name, region=settings.aws_region)

    if not settings.classifier_deterministic:
        logger.warning(
            "RESULT_TABLE_NAME not set and CLASSIFIER_DETERMINISTIC is false. "
            "Redeliveries reaching another container may produce a divergent result."
        )
    return InMemoryResultStore()


def build_dispatcher(
    settings: PipelineSettings,
    provider: Optional[CapabilityProvider] = None,
    issuer: Optional[GrantIssuer] = None,
    dead_letter: Optional[DeadLetterSink] = None,
    result_store: Optional[ResultStore] = None,
    tracer: Optional[trace.Tracer] = None,
) -> InvocationDispatcher:
    """
    Build the dispatcher for one container.

    Collaborators not passed in are created from settings.
    """
    if provider is None:
        provider = AwsCapabilityProvider(
            region=settings.aws_region,
            read_timeout=max(settings.fetch_timeout_seconds, settings.classify_timeout_seconds),
            max_labels=settings.max_labels,
            min_confidence=settings.min_confidence,
            deterministic=settings.classifier_deterministic,
            grace_seconds=settings.grant_propagation_grace_seconds,
        )

    return InvocationDispatcher(
        issuer=issuer or build_issuer(settings),
        provider=provider,
        dead_letter=dead_letter or build_dead_letter_sink(settings),
        result_store=result_store or build_result_store(settings),
        max_concurrency=settings.max_concurrency,
        max_retries=settings.max_retries,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        retry_jitter=settings.retry_jitter,
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
        classify_timeout_seconds=settings.classify_timeout_seconds,
        invocation_timeout_seconds=settings.invocation_timeout_seconds,
        tracer=tracer,
    )
