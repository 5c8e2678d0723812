"""Tests for the invocation state machine and record serialization."""

from datetime import datetime, timezone

import pytest

from image_labeler.errors import InvalidStateTransition
from image_labeler.models import (
    ClassificationResult,
    InvocationRequest,
    InvocationState,
    LabelScore,
    NotificationEvent,
    ObjectRecord,
    TerminalRecord,
    TerminalState,
)


def make_event(version_id="v1", etag=None):
    return NotificationEvent(
        object=ObjectRecord(bucket="photos", key="cats/image1.jpg", version_id=version_id, etag=etag, size=204800),
        event_id="evt-1",
        event_time=datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc),
    )


class TestInvocationStateMachine:
    def test_success_path(self):
        request = InvocationRequest(event=make_event())

        request.transition(InvocationState.FETCHING)
        request.transition(InvocationState.CLASSIFYING)
        request.transition(InvocationState.SUCCEEDED)

        assert request.is_terminal
        assert request.history == [
            InvocationState.PENDING,
            InvocationState.FETCHING,
            InvocationState.CLASSIFYING,
            InvocationState.SUCCEEDED,
        ]

    def test_retryable_failure_returns_to_pending(self):
        request = InvocationRequest(event=make_event())
        request.transition(InvocationState.FETCHING)
        request.transition(InvocationState.FAILED_RETRYABLE)

        request.transition(InvocationState.PENDING)

        assert request.state == InvocationState.PENDING
        assert not request.is_terminal

    @pytest.mark.parametrize("absorbing", [InvocationState.SUCCEEDED, InvocationState.FAILED_TERMINAL])
    def test_absorbing_states_reject_every_transition(self, absorbing):
        request = InvocationRequest(event=make_event(), state=InvocationState.CLASSIFYING)
        request.transition(absorbing)

        for target in InvocationState:
            with pytest.raises(InvalidStateTransition):
                request.transition(target)

    def test_cannot_skip_fetching(self):
        request = InvocationRequest(event=make_event())

        with pytest.raises(InvalidStateTransition):
            request.transition(InvocationState.CLASSIFYING)


def test_object_version_falls_back_to_etag():
    assert make_event(version_id=None, etag="abc123").object.version == "abc123"
    assert make_event(version_id="v9", etag="abc123").identity.version == "v9"


def test_terminal_record_round_trips_through_dict():
    result = ClassificationResult(
        bucket="photos",
        key="cats/image1.jpg",
        version="v1",
        labels=(LabelScore("cat", 0.97), LabelScore("animal", 0.95)),
        latency_ms=12.5,
    )
    record = TerminalRecord(
        identity=result.identity,
        state=TerminalState.SUCCEEDED,
        event_id="evt-1",
        result=result,
        attempts=2,
    )

    restored = TerminalRecord.from_dict(record.to_dict())

    assert restored.identity == record.identity
    assert restored.result == result
    assert restored.attempts == 2
    assert restored.result.label_pairs() == [("cat", 0.97), ("animal", 0.95)]
