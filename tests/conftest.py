import threading
import time
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from services.exceptions import DetectorFailure, EnrichmentFailure, IngestFailure
from services.gemini.text_generator import NullTextGenerator
from services.storage.detection_store import InMemoryDetectionStore
from services.streaming.frame_source import FrameSource
from services.vision.analyzer import FrameAnalyzer
from services.vision.annotator import VisionCapability

HAPPY_CHILD_FACE = {
    "detection_confidence": 0.9,
    "joy_likelihood": "VERY_LIKELY",
    "sorrow_likelihood": "VERY_UNLIKELY",
    "anger_likelihood": "VERY_UNLIKELY",
    "surprise_likelihood": "UNLIKELY",
    "bounding_poly": {"vertices": [{"x": 10, "y": 20}, {"x": 50, "y": 20}, {"x": 50, "y": 80}, {"x": 10, "y": 80}]},
}

NEUTRAL_ADULT_FACE = {
    "detection_confidence": 0.7,
    "joy_likelihood": "UNLIKELY",
    "sorrow_likelihood": "UNLIKELY",
    "anger_likelihood": "VERY_UNLIKELY",
    "surprise_likelihood": "VERY_UNLIKELY",
}


class FakeVision(VisionCapability):
    """Returns a fixed annotation for every frame; counts calls."""

    def __init__(self, response: Optional[Dict[str, Any]] = None, fail: bool = False):
        self.response = response if response is not None else {"faces": [HAPPY_CHILD_FACE]}
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def annotate(self, image_bytes: bytes) -> Dict[str, Any]:
        with self._lock:
            self.calls += 1
        if self.fail:
            raise DetectorFailure("vision backend unavailable")
        return self.response


class FakeTextGenerator(NullTextGenerator):
    """Succeeds for summaries, enhancement, suggestions and classification."""

    def summarize(self, context):
        return f"Summary of {context['name']}: {context['people']} people"

    def enhance_answer(self, query, matches, context):
        return f"Enhanced: {len(matches)} results for '{query}'"

    def suggest(self, context):
        return ["Is anyone reading?"]

    def classify(self, query):
        raise EnrichmentFailure("classifier offline")


class ScriptedFrameSource(FrameSource):
    """Serves a fixed number of frames, then reports no frames.

    open() can be gated on an event to hold a stream in WAITING, and fails
    when open_error is set. read() raises once frames run out if
    fail_when_exhausted is set.
    """

    def __init__(
        self,
        frame_total: int = 0,
        fps: float = 25.0,
        open_gate: Optional[threading.Event] = None,
        open_error: Optional[str] = None,
        fail_when_exhausted: bool = False,
    ):
        self.frame_total = frame_total
        self.fps = fps
        self.open_gate = open_gate
        self.open_error = open_error
        self.fail_when_exhausted = fail_when_exhausted
        self.served = 0
        self.opened = False
        self.released = False

    def open(self) -> None:
        if self.open_gate is not None:
            self.open_gate.wait(timeout=5.0)
        if self.open_error:
            raise IngestFailure(self.open_error)
        self.opened = True

    def read(self) -> Optional[np.ndarray]:
        if self.served >= self.frame_total:
            if self.fail_when_exhausted:
                raise IngestFailure("stream dropped")
            time.sleep(0.001)
            return None
        self.served += 1
        return np.zeros((16, 16, 3), dtype=np.uint8)

    @property
    def frame_rate(self) -> float:
        return self.fps

    def release(self) -> None:
        self.released = True


class RecordingStore(InMemoryDetectionStore):
    """Keeps every status a session was saved with, in order."""

    def __init__(self):
        super().__init__()
        self.status_history: Dict[str, List] = {}

    def save_session(self, session) -> None:
        with self._lock:
            self.status_history.setdefault(session.stream_key, []).append(session.status)
            super().save_session(session)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def vision():
    return FakeVision()


@pytest.fixture
def analyzer(vision):
    return FrameAnalyzer(vision)
