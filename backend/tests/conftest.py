"""Pytest configuration for test suite."""

import json
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

# Add backend/src and the Lambda source to Python path for imports
# This file is in backend/tests/, so we need to go up one level to backend/
BACKEND_DIR = Path(__file__).parent.parent
SRC_DIR = BACKEND_DIR / "src"
LAMBDA_DIR = BACKEND_DIR / "lambda-functions" / "image-labeler"
EVENTS_DIR = Path(__file__).parent / "events"

for path in (SRC_DIR, LAMBDA_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from image_labeler.classification import Classifier  # noqa: E402
from image_labeler.dead_letter import InMemoryDeadLetterSink  # noqa: E402
from image_labeler.dispatcher import InvocationDispatcher  # noqa: E402
from image_labeler.models import LabelScore, NotificationEvent  # noqa: E402
from image_labeler.security import CapabilityProvider, StaticGrantIssuer  # noqa: E402
from image_labeler.storage import InMemoryObjectStore, InMemoryResultStore  # noqa: E402

BUCKET = "DOC-EXAMPLE-BUCKET"


class ScriptedClassifier(Classifier):
    """
    Test classifier: fixed labels per image, optional scripted failures.

    ``failures`` are raised on successive calls, one per call, before any
    call returns labels. Tracks how many calls run at the same time.
    """

    def __init__(
        self,
        labels: Optional[Dict[bytes, Sequence[Tuple[str, float]]]] = None,
        default: Sequence[Tuple[str, float]] = (("cat", 0.97),),
        failures: Optional[List[Exception]] = None,
        delay: float = 0.0,
        deterministic: bool = True,
    ):
        self.labels = labels or {}
        self.default = list(default)
        self.failures = list(failures or [])
        self.delay = delay
        self.deterministic = deterministic
        self.calls = 0
        self.active = 0
        self.peak_active = 0
        self._lock = threading.Lock()

    def classify(self, data: bytes) -> List[LabelScore]:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
            failure = self.failures.pop(0) if self.failures else None
        try:
            if self.delay:
                time.sleep(self.delay)
            if failure is not None:
                raise failure
            pairs = self.labels.get(data, self.default)
            return [LabelScore(label=l, confidence=c) for l, c in pairs]
        finally:
            with self._lock:
                self.active -= 1


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def load_event(name: str) -> dict:
    with open(EVENTS_DIR / name) as f:
        return json.load(f)


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer(span_exporter):
    """Tracer on a private provider so tests never touch the global one."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider.get_tracer("image-labeler-tests")


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def notifications(store) -> List[NotificationEvent]:
    """Every NotificationEvent the in-memory store emits."""
    emitted: List[NotificationEvent] = []
    store.subscribe(emitted.append)
    return emitted


@pytest.fixture
def dead_letters():
    return InMemoryDeadLetterSink()


@pytest.fixture
def result_store():
    return InMemoryResultStore()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_dispatcher(store, dead_letters, result_store, tracer, recording_sleep):
    """Build a dispatcher over the in-memory collaborators."""

    def _make(classifier: Classifier, **kwargs) -> InvocationDispatcher:
        kwargs.setdefault("retry_jitter", False)
        kwargs.setdefault("sleep", recording_sleep)
        return InvocationDispatcher(
            issuer=kwargs.pop("issuer", StaticGrantIssuer(allowed_bucket=BUCKET)),
            provider=kwargs.pop("provider", CapabilityProvider(store, classifier)),
            dead_letter=dead_letters,
            result_store=result_store,
            tracer=tracer,
            **kwargs,
        )

    return _make
