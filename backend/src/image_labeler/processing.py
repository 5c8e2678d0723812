"""Processing Unit: fetch one object version, classify it, emit the result."""

import asyncio
import logging
import time
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .errors import PipelineError, TimeoutExceeded
from .models import ClassificationResult, InvocationRequest, InvocationState
from .observability import get_tracer, record_error
from .security.capabilities import GrantedCapabilities

logger = logging.getLogger(__name__)


class ProcessingUnit:
    """
    Stateless executor for a single InvocationRequest.

    Drives the request through Pending -> Fetching -> Classifying and into
    Succeeded or one of the Failed states. It only touches what its
    GrantedCapabilities expose; there is no other way to reach a store or
    the classifier from here.
    """

    def __init__(
        self,
        capabilities: GrantedCapabilities,
        fetch_timeout_seconds: float = 20.0,
        classify_timeout_seconds: float = 20.0,
        tracer: Optional[trace.Tracer] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._capabilities = capabilities
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.classify_timeout_seconds = classify_timeout_seconds
        self._tracer = tracer or get_tracer()
        self._clock = clock

    async def _call_with_timeout(self, operation: str, timeout: float, fn, *args):
        # to_thread copies contextvars, so the active span follows the call.
        # A timed-out call keeps running in its thread and its result is dropped.
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(f"{operation} exceeded {timeout:.1f}s")

    async def run(self, request: InvocationRequest) -> ClassificationResult:
        """
        Execute one attempt for ``request``.

        Returns:
            ClassificationResult for the object version

        Raises:
            PipelineError: Retryable or terminal failure; ``request.state``
                is set to the matching Failed state before raising
        """
        event = request.event
        obj = event.object
        log_extra = {"event_id": event.event_id, "key": obj.key, "attempt": request.attempt}

        with self._tracer.start_as_current_span(
            "invocation",
            attributes={
                "event.id": event.event_id,
                "s3.bucket": obj.bucket,
                "s3.key": obj.key,
                "s3.version": obj.version,
                "invocation.attempt": request.attempt,
            },
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                request.transition(InvocationState.FETCHING)
                with self._tracer.start_as_current_span("fetch-object") as fetch_span:
                    data = await self._call_with_timeout(
                        "fetch", self.fetch_timeout_seconds,
                        self._capabilities.reader.get, obj.key, obj.version,
                    )
                    fetch_span.set_attribute("object.size", len(data))
                logger.debug(f"Fetched {len(data)} bytes for {obj.key}", extra=log_extra)

                request.transition(InvocationState.CLASSIFYING)
                started = self._clock()
                with self._tracer.start_as_current_span("detect-labels") as classify_span:
                    labels = await self._call_with_timeout(
                        "classify", self.classify_timeout_seconds,
                        self._capabilities.classifier.classify, data,
                    )
                    classify_span.set_attribute("label_num", len(labels))
                latency_ms = round((self._clock() - started) * 1000.0, 3)

                with self._tracer.start_as_current_span("emit-result") as emit_span:
                    result = ClassificationResult(
                        bucket=obj.bucket,
                        key=obj.key,
                        version=obj.version,
                        labels=tuple(labels),
                        latency_ms=latency_ms,
                    )
                    emit_span.set_attribute("label_num", len(result.labels))
                    if result.labels:
                        emit_span.set_attribute("label.top", result.labels[0].label)
                    logger.info(f"Labels for {obj.key}: {result.label_pairs()}", extra=log_extra)

                request.transition(InvocationState.SUCCEEDED)
                span.set_status(Status(StatusCode.OK))
                return result

            except PipelineError as e:
                request.transition(
                    InvocationState.FAILED_RETRYABLE if e.retryable else InvocationState.FAILED_TERMINAL
                )
                record_error(span, e)
                logger.warning(
                    f"Attempt {request.attempt} for {obj.key} failed: {e.code.value}: {e.message}",
                    extra={**log_extra, "error_code": e.code.value},
                )
                raise
            except Exception as e:
                request.transition(InvocationState.FAILED_TERMINAL)
                record_error(span, e)
                logger.exception(f"Unexpected failure processing {obj.key}", extra=log_extra)
                raise PipelineError(f"Unexpected {type(e).__name__}: {e}") from e
