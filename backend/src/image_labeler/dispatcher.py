"""
Invocation dispatcher.

Maps each NotificationEvent to exactly one terminal outcome: it bounds the
number of concurrently running Processing Units, retries retryable failures
with exponential backoff, routes terminal and exhausted failures to the
dead-letter sink, and turns redeliveries into no-ops through the result
store.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from .dead_letter import DeadLetterSink
from .errors import (
    ErrorCode,
    GrantDenied,
    PermissionPropagationDelay,
    PipelineError,
    StoreUnavailable,
    TimeoutExceeded,
)
from .models import (
    ClassificationResult,
    DeadLetterRecord,
    InvocationOutcome,
    InvocationRequest,
    InvocationState,
    NotificationEvent,
    TerminalRecord,
    TerminalState,
)
from .observability import get_tracer, record_error
from .processing import ProcessingUnit
from .security.capabilities import CapabilityProvider
from .security.issuer import GrantIssuer, session_name_for
from .storage.result_store import InMemoryResultStore, ResultStore

logger = logging.getLogger(__name__)

_ACTIVE_STATES = (InvocationState.PENDING, InvocationState.FETCHING, InvocationState.CLASSIFYING)


class InvocationDispatcher:
    """
    Dispatches notification events to Processing Units.

    Shared state (in-flight counter, in-flight identities, statistics) lives
    on one event loop and is only changed between awaits; the semaphore is
    what bounds concurrency. A new event loop (one ``asyncio.run`` per Lambda
    invocation) gets a fresh semaphore.
    """

    def __init__(
        self,
        issuer: GrantIssuer,
        provider: CapabilityProvider,
        dead_letter: DeadLetterSink,
        result_store: Optional[ResultStore] = None,
        max_concurrency: int = 8,
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 20.0,
        retry_jitter: bool = True,
        fetch_timeout_seconds: float = 20.0,
        classify_timeout_seconds: float = 20.0,
        invocation_timeout_seconds: float = 60.0,
        tracer: Optional[trace.Tracer] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")

        self._issuer = issuer
        self._provider = provider
        self._dead_letter = dead_letter
        self._result_store = result_store or InMemoryResultStore()
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.retry_jitter = retry_jitter
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.classify_timeout_seconds = classify_timeout_seconds
        self.invocation_timeout_seconds = invocation_timeout_seconds
        self._tracer = tracer or get_tracer()
        self._sleep = sleep

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._running = 0
        self._stats = {
            "dispatched": 0,
            "attempts": 0,
            "retries": 0,
            "succeeded": 0,
            "deadLettered": 0,
            "duplicates": 0,
            "peakInFlight": 0,
        }

    @property
    def result_store(self) -> ResultStore:
        return self._result_store

    def _bind_loop(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._semaphore = asyncio.Semaphore(self.max_concurrency)
            self._in_flight = {}
        return self._semaphore

    # =========================================================================
    # Public API
    # =========================================================================

    async def dispatch(
        self,
        event: NotificationEvent,
        parent_context: Optional[otel_context.Context] = None,
    ) -> InvocationOutcome:
        """
        Drive one event to its terminal outcome.

        Redeliveries of an identity that already reached a terminal outcome,
        or that is currently in flight here, return that outcome with
        ``duplicate=True`` and cause no further processing.
        """
        self._bind_loop()
        key = event.identity.as_key()

        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            logger.info(
                f"Event {event.event_id} duplicates in-flight {key}, awaiting it",
                extra={"event_id": event.event_id},
            )
            self._stats["duplicates"] += 1
            outcome = await asyncio.shield(in_flight)
            return outcome.model_copy(update={"event_id": event.event_id, "duplicate": True, "attempts": 0})

        task = asyncio.ensure_future(self._dispatch_new(event, parent_context))
        self._in_flight[key] = task

        def _release(done: asyncio.Task, key: str = key) -> None:
            if self._in_flight.get(key) is done:
                del self._in_flight[key]

        task.add_done_callback(_release)
        return await task

    async def dispatch_many(
        self,
        events: Iterable[NotificationEvent],
        parent_context: Optional[otel_context.Context] = None,
    ) -> List[InvocationOutcome]:
        """Dispatch a batch concurrently; outcomes keep the input order."""
        return list(await asyncio.gather(*(self.dispatch(e, parent_context) for e in events)))

    def get_stats(self) -> Dict[str, int]:
        """Get dispatcher statistics for monitoring."""
        return {**self._stats, "inFlight": self._running}

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.retry_base_seconds * (2 ** (attempt - 1)), self.retry_max_seconds)
        if self.retry_jitter:
            delay = random.uniform(0, delay)
        return delay

    # =========================================================================
    # Dispatch internals
    # =========================================================================

    async def _dispatch_new(
        self,
        event: NotificationEvent,
        parent_context: Optional[otel_context.Context],
    ) -> InvocationOutcome:
        obj = event.object
        log_extra = {"event_id": event.event_id, "bucket": obj.bucket, "key": obj.key, "version": obj.version}

        with self._tracer.start_as_current_span(
            "dispatch",
            context=parent_context,
            kind=SpanKind.CONSUMER,
            attributes={
                "event.id": event.event_id,
                "s3.bucket": obj.bucket,
                "s3.key": obj.key,
                "s3.version": obj.version,
                "s3.size": obj.size,
            },
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            existing = await self._lookup(event)
            if existing is not None:
                self._stats["duplicates"] += 1
                span.set_attribute("dispatch.duplicate", True)
                logger.info(
                    f"{event.identity} already reached {existing.state.value}, skipping redelivery",
                    extra=log_extra,
                )
                return self._outcome_from_record(event, existing, duplicate=True)

            self._stats["dispatched"] += 1
            request = InvocationRequest(event=event, trace_context=span.get_span_context())

            while True:
                request.attempt += 1
                try:
                    result = await self._attempt(request)
                except PipelineError as error:
                    if error.retryable and request.attempt <= self.max_retries:
                        request.transition(InvocationState.PENDING)
                        self._stats["retries"] += 1
                        delay = self.backoff_delay(request.attempt)
                        span.add_event(
                            "retry",
                            {"attempt": request.attempt, "error.code": error.code.value, "delay": delay},
                        )
                        logger.warning(
                            f"Retrying {obj.key} in {delay:.2f}s after attempt "
                            f"{request.attempt}/{self.max_retries + 1}: {error.code.value}",
                            extra=log_extra,
                        )
                        await self._sleep(delay)
                        continue

                    if request.state == InvocationState.FAILED_RETRYABLE:
                        request.transition(InvocationState.FAILED_TERMINAL)
                    if isinstance(error, PermissionPropagationDelay):
                        # The window is over and access is still refused
                        error = GrantDenied(
                            f"{error.message}; still denied after {request.attempt} attempt(s)",
                            error.metadata,
                        )
                    return await self._fail(request, error, span)

                return await self._succeed(request, result, span)

    async def _attempt(self, request: InvocationRequest) -> ClassificationResult:
        semaphore = self._bind_loop()
        event = request.event

        async with semaphore:
            self._running += 1
            self._stats["attempts"] += 1
            self._stats["peakInFlight"] = max(self._stats["peakInFlight"], self._running)
            try:
                grant = await asyncio.to_thread(
                    self._issuer.issue, event.object.bucket, session_name_for(event.event_id)
                )
                capabilities = self._provider.capabilities_for(grant, event.object.bucket)
                unit = ProcessingUnit(
                    capabilities,
                    fetch_timeout_seconds=self.fetch_timeout_seconds,
                    classify_timeout_seconds=self.classify_timeout_seconds,
                    tracer=self._tracer,
                )
                return await asyncio.wait_for(unit.run(request), self.invocation_timeout_seconds)
            except asyncio.TimeoutError:
                self._mark_failed(request, retryable=True)
                raise TimeoutExceeded(
                    f"Invocation exceeded {self.invocation_timeout_seconds:.1f}s and was cancelled"
                )
            except PipelineError as error:
                # Grant issuance failures happen before the unit leaves Pending
                self._mark_failed(request, retryable=error.retryable)
                raise
            except Exception as e:
                self._mark_failed(request, retryable=False)
                logger.exception(
                    f"Unexpected failure preparing {event.object.key}",
                    extra={"event_id": event.event_id, "attempt": request.attempt},
                )
                raise PipelineError(f"Unexpected {type(e).__name__}: {e}") from e
            finally:
                self._running -= 1

    @staticmethod
    def _mark_failed(request: InvocationRequest, retryable: bool) -> None:
        if request.state in _ACTIVE_STATES:
            request.transition(
                InvocationState.FAILED_RETRYABLE if retryable else InvocationState.FAILED_TERMINAL
            )

    async def _succeed(self, request: InvocationRequest, result: ClassificationResult, span) -> InvocationOutcome:
        event = request.event
        record = TerminalRecord(
            identity=event.identity,
            state=TerminalState.SUCCEEDED,
            event_id=event.event_id,
            result=result,
            attempts=request.attempt,
        )
        canonical = await self._record(record)
        self._stats["succeeded"] += 1

        if canonical is not record:
            # Another delivery got there first; its result stays canonical
            logger.info(
                f"{event.identity} already recorded by event {canonical.event_id}, keeping canonical result",
                extra={"event_id": event.event_id},
            )
            span.set_attribute("dispatch.duplicate", True)
            outcome = self._outcome_from_record(event, canonical, duplicate=True)
            return outcome.model_copy(update={"attempts": request.attempt})

        span.set_attribute("invocation.attempts", request.attempt)
        span.set_status(Status(StatusCode.OK))
        return self._outcome_from_record(event, canonical, duplicate=False)

    async def _fail(self, request: InvocationRequest, error: PipelineError, span) -> InvocationOutcome:
        event = request.event
        log_extra = {"event_id": event.event_id, "key": event.object.key, "error_code": error.code.value}

        if isinstance(error, GrantDenied):
            logger.critical(f"Security boundary misconfiguration: {error.message}", extra=log_extra)
        else:
            logger.error(
                f"Giving up on {event.object.key} after {request.attempt} attempt(s): {error.message}",
                extra=log_extra,
            )

        dead_letter = DeadLetterRecord(
            event=event.to_dict(),
            attempt_count=request.attempt,
            error_kind=error.code,
            reason=error.message,
        )
        await asyncio.to_thread(self._dead_letter.send, dead_letter)
        self._stats["deadLettered"] += 1

        record = TerminalRecord(
            identity=event.identity,
            state=TerminalState.FAILED,
            event_id=event.event_id,
            error_code=error.code.value,
            attempts=request.attempt,
        )
        canonical = await self._record(record)

        span.set_attribute("invocation.attempts", request.attempt)
        span.set_attribute("dispatch.dead_lettered", True)
        record_error(span, error)

        outcome = self._outcome_from_record(event, canonical, duplicate=canonical is not record)
        return outcome.model_copy(
            update={"reason": error.message, "attempts": request.attempt, "dead_lettered": True}
        )

    # =========================================================================
    # Result store access
    # =========================================================================

    async def _lookup(self, event: NotificationEvent) -> Optional[TerminalRecord]:
        try:
            return await asyncio.to_thread(self._result_store.get, event.identity)
        except StoreUnavailable as e:
            # put_if_absent still decides the canonical record
            logger.warning(
                f"Result marker lookup failed for {event.identity}: {e.message}; processing anyway",
                extra={"event_id": event.event_id},
            )
            return None

    async def _record(self, record: TerminalRecord) -> TerminalRecord:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.to_thread(self._result_store.put_if_absent, record)
            except StoreUnavailable as e:
                if attempt > self.max_retries:
                    logger.error(f"Could not record terminal outcome for {record.identity}: {e.message}")
                    raise
                await self._sleep(self.backoff_delay(attempt))

    @staticmethod
    def _outcome_from_record(
        event: NotificationEvent, record: TerminalRecord, duplicate: bool
    ) -> InvocationOutcome:
        obj = event.object
        succeeded = record.state == TerminalState.SUCCEEDED
        return InvocationOutcome(
            event_id=event.event_id,
            bucket=obj.bucket,
            key=obj.key,
            version=obj.version,
            state=InvocationState.SUCCEEDED if succeeded else InvocationState.FAILED_TERMINAL,
            attempts=0 if duplicate else record.attempts,
            labels=record.result.label_pairs() if record.result else [],
            latency_ms=record.result.latency_ms if record.result else None,
            error_code=ErrorCode(record.error_code) if record.error_code else None,
            duplicate=duplicate,
            dead_lettered=not succeeded and not duplicate,
        )
