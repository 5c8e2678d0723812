"""Logging and tracing plumbing for the image labeler."""

import json
import logging
import os
import uuid
from typing import Dict, Mapping, Optional

from opentelemetry import context, trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.botocore import BotocoreInstrumentor
from opentelemetry.propagators.aws import AwsXRayPropagator
from opentelemetry.propagators.aws.aws_xray_propagator import TRACE_HEADER_KEY
from opentelemetry.sdk.extension.aws.trace import AwsXRayIdGenerator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.trace import Span, Status, StatusCode

from .config import PipelineSettings

__all__ = [
    "TRACER_NAME",
    "JsonLogFormatter",
    "configure_logging",
    "configure_tracing",
    "init_observability",
    "get_tracer",
    "get_trace_id",
    "span_context_from_environment",
    "record_error",
    "flush_traces",
]

TRACER_NAME = "image-labeler"
XRAY_TRACE_ENV_VAR = "_X_AMZN_TRACE_ID"

# Extra LogRecord attributes copied into the JSON line
_CONTEXT_FIELDS = ("event_id", "bucket", "key", "version", "attempt", "error_code")

_TRACER_PROVIDER: Optional[TracerProvider] = None
_LOGGING_CONFIGURED = False


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, correlated with the active span."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = format(span_context.trace_id, "032x")
            payload["span_id"] = format(span_context.span_id, "016x")

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    """
    Install the JSON formatter on the root logger.

    The Lambda runtime pre-installs a root handler; it is reused so log
    lines keep flowing to CloudWatch.
    """
    global _LOGGING_CONFIGURED

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    formatter = JsonLogFormatter()
    for handler in root.handlers:
        handler.setFormatter(formatter)

    # boto is chatty at DEBUG
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _LOGGING_CONFIGURED = True


def _otlp_headers() -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for pair in os.getenv("OTEL_EXPORTER_OTLP_HEADERS", "").split(","):
        if "=" not in pair:
            continue
        key, value = pair.split("=", 1)
        headers[key.strip()] = value.strip()
    return headers


def configure_tracing(
    service_name: str,
    exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """
    Configure the global tracer provider once per process.

    Trace ids are X-Ray compatible so spans join the Lambda's active trace.
    """
    global _TRACER_PROVIDER
    if _TRACER_PROVIDER is not None:
        return _TRACER_PROVIDER

    resource = Resource.create(
        {
            "service.name": service_name,
            "cloud.provider": "aws",
            "faas.name": os.getenv("AWS_LAMBDA_FUNCTION_NAME", service_name),
            "service.instance.id": os.getenv("AWS_LAMBDA_LOG_STREAM_NAME", uuid.uuid4().hex),
        }
    )
    provider = TracerProvider(resource=resource, id_generator=AwsXRayIdGenerator())

    if exporter is None:
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if endpoint and not endpoint.rstrip("/").endswith("/v1/traces"):
            endpoint = endpoint.rstrip("/") + "/v1/traces"
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=_otlp_headers() or None, timeout=3)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    # S3, Rekognition, SQS and DynamoDB calls become child spans
    BotocoreInstrumentor().instrument(tracer_provider=provider)
    _TRACER_PROVIDER = provider
    return provider


def init_observability(settings: PipelineSettings, exporter: Optional[SpanExporter] = None) -> TracerProvider:
    """Wire up JSON logging and OTLP tracing for the function."""
    if not _LOGGING_CONFIGURED:
        configure_logging(settings.log_level)
    return configure_tracing(settings.service_name, exporter)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def get_trace_id() -> str:
    """Hex trace id of the current span (all zeros outside a trace)."""
    return format(trace.get_current_span().get_span_context().trace_id, "032x")


def span_context_from_environment(environ: Optional[Mapping[str, str]] = None) -> Optional[context.Context]:
    """
    Build a parent context from the Lambda X-Ray trace header.

    Returns:
        Context carrying the remote parent span, or None when the variable is
        unset or unparseable
    """
    environ = os.environ if environ is None else environ
    header = environ.get(XRAY_TRACE_ENV_VAR)
    if not header:
        return None

    parent = AwsXRayPropagator().extract({TRACE_HEADER_KEY: header})
    if not trace.get_current_span(parent).get_span_context().is_valid:
        logging.getLogger(__name__).warning(f"Invalid {XRAY_TRACE_ENV_VAR}: {header!r}")
        return None
    return parent


def record_error(span: Span, error: BaseException) -> None:
    """Mark a span as failed with the error's code and message."""
    if not span.is_recording():
        return
    span.record_exception(error)
    code = getattr(error, "code", None)
    if code is not None:
        span.set_attribute("error.code", getattr(code, "value", str(code)))
    span.set_attribute("error.retryable", bool(getattr(error, "retryable", False)))
    span.set_status(Status(StatusCode.ERROR, str(error)))


def flush_traces(timeout_millis: int = 3000) -> bool:
    """Export buffered spans before the Lambda execution environment freezes."""
    provider = trace.get_tracer_provider()
    force_flush = getattr(provider, "force_flush", None)
    if force_flush is None:
        return True
    return force_flush(timeout_millis)
