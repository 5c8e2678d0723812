"""Tests for logging and tracing helpers."""

import json
import logging
import sys

from opentelemetry import trace
from opentelemetry.trace import StatusCode

from image_labeler.errors import ClassificationRejected, StoreUnavailable
from image_labeler.observability import JsonLogFormatter, record_error, span_context_from_environment

XRAY_HEADER = "Root=1-65dc5008-1561ed7046ffcbcb114af027;Parent=b510129166d5a083;Sampled=1"


def make_record(message="Processed image1.jpg", **extra):
    record = logging.LogRecord(
        name="image_labeler.dispatcher",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestSpanContextFromEnvironment:
    def test_parses_lambda_trace_header(self):
        parent = span_context_from_environment({"_X_AMZN_TRACE_ID": XRAY_HEADER})

        span_context = trace.get_current_span(parent).get_span_context()
        assert format(span_context.trace_id, "032x") == "65dc50081561ed7046ffcbcb114af027"
        assert format(span_context.span_id, "016x") == "b510129166d5a083"
        assert span_context.is_remote
        assert span_context.trace_flags.sampled

    def test_missing_header(self):
        assert span_context_from_environment({}) is None

    def test_garbage_header(self):
        assert span_context_from_environment({"_X_AMZN_TRACE_ID": "Root=nonsense"}) is None


class TestJsonLogFormatter:
    def test_plain_record(self):
        line = JsonLogFormatter().format(make_record())

        payload = json.loads(line)
        assert payload["level"] == "INFO"
        assert payload["logger"] == "image_labeler.dispatcher"
        assert payload["message"] == "Processed image1.jpg"
        assert "trace_id" not in payload

    def test_context_fields_and_trace_correlation(self, tracer):
        with tracer.start_as_current_span("invocation") as span:
            line = JsonLogFormatter().format(
                make_record(event_id="evt-1", key="image1.jpg", attempt=2, unrelated="dropped")
            )
            expected_trace_id = format(span.get_span_context().trace_id, "032x")

        payload = json.loads(line)
        assert payload["event_id"] == "evt-1"
        assert payload["key"] == "image1.jpg"
        assert payload["attempt"] == 2
        assert payload["trace_id"] == expected_trace_id
        assert "unrelated" not in payload

    def test_exception_is_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record("failed")
            record.exc_info = sys.exc_info()

        payload = json.loads(JsonLogFormatter().format(record))
        assert "ValueError: boom" in payload["exception"]


def test_record_error_marks_span(tracer, span_exporter):
    with tracer.start_as_current_span("dispatch") as span:
        record_error(span, StoreUnavailable("S3 is unavailable (SlowDown)"))

    finished = span_exporter.get_finished_spans()[0]
    assert finished.status.status_code == StatusCode.ERROR
    assert finished.attributes["error.code"] == "store_unavailable"
    assert finished.attributes["error.retryable"] is True
    assert finished.events[0].name == "exception"


def test_record_error_terminal(tracer, span_exporter):
    with tracer.start_as_current_span("dispatch") as span:
        record_error(span, ClassificationRejected("InvalidImageFormatException"))

    finished = span_exporter.get_finished_spans()[0]
    assert finished.attributes["error.code"] == "classification_rejected"
    assert finished.attributes["error.retryable"] is False
