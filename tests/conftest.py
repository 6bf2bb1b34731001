"""Shared fixtures: temporary frame store, fake provider, fake capture and a controllable clock."""

import io
from datetime import datetime, timedelta

import pytest
from PIL import Image

from flowlog.capture import CapturedImage, ScreenCaptureError
from flowlog.combiner import ResultCombiner
from flowlog.config import Config
from flowlog.controller import RecordingController
from flowlog.models import format_timestamp
from flowlog.orchestrator import SessionAnalyzer
from flowlog.providers import AnalysisProvider, OllamaProvider, ProviderError, ProviderRegistry
from flowlog.schemas import END_MARKER, Activity, Segmentation, TimelineSegment, TitleResult
from flowlog.storage import FrameStore

T0 = datetime(2025, 1, 6, 9, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def png_bytes(size=(16, 16), color=(40, 90, 160)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, "PNG")
    return buffer.getvalue()


class FakeCapture:
    """Stands in for ScreenCapture; ``fail_next`` makes the next grabs fail."""

    def __init__(self):
        self.fail_next = 0
        self.calls = 0

    def grab(self, region=None) -> CapturedImage:
        self.calls += 1
        if self.fail_next:
            self.fail_next -= 1
            raise ScreenCaptureError("Cannot connect to display server")
        return CapturedImage(data=png_bytes(), width=16, height=16, format="png")


class FakeProvider(AnalysisProvider):
    """Deterministic provider recording how often each capability is used."""

    name = "fake"

    def __init__(self):
        super().__init__(model="fake-model", timeout=5)
        self.calls = {"analyze_batch": 0, "summarize": 0, "title_for": 0, "segment": 0}
        self.fail_on = set()
        self.credential = None

    def set_credential(self, value):
        self.credential = value

    def _check(self, operation: str):
        self.calls[operation] += 1
        if operation in self.fail_on:
            raise ProviderError(f"{operation} failed")

    def analyze_batch(self, images):
        self._check("analyze_batch")
        return [
            Activity(
                timestamp=img.frame.timestamp,
                frame_number=img.frame.frame_number,
                apps=["Editor"],
                activity=f"Editing module {img.frame.frame_number}",
            )
            for img in images
        ]

    def summarize(self, activities):
        self._check("summarize")
        return f"Worked through {len(activities)} editing steps."

    def title_for(self, summary):
        self._check("title_for")
        return TitleResult(title="Focused Editing Session", reasoning="Summary mentions editing")

    def segment(self, activities):
        self._check("segment")
        return Segmentation(
            segments=[
                TimelineSegment(start="00:00", end="02:30", description="Editing"),
                TimelineSegment(start="02:30", end=END_MARKER, description="Reviewing"),
            ],
            reasoning="Two phases",
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    config = Config()
    config.storage.data_dir = str(tmp_path / "data")
    # Keep the capture thread idle; tests drive ticks through capture_frame().
    config.capture.interval_seconds = 3600
    return config


@pytest.fixture
def store(config):
    return FrameStore(config.storage.db_path, config.storage.recordings_dir)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def registry(provider):
    return ProviderRegistry({"fake": provider, "ollama": OllamaProvider(timeout=5)}, "fake")


@pytest.fixture
def analyzer(store, registry, config, clock):
    return SessionAnalyzer(store, registry, config.analysis, clock=clock)


@pytest.fixture
def combiner(registry, clock):
    return ResultCombiner(registry, "30 minutes", clock=clock)


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def controller(config, store, fake_capture, registry, clock):
    controller = RecordingController(
        config, store=store, capture=fake_capture, registry=registry, clock=clock
    )
    yield controller
    controller.shutdown()


@pytest.fixture
def session(store, clock):
    """An active session started at the current clock time."""
    return store.create_session("2025-01-06_09-00-00", format_timestamp(clock()))


@pytest.fixture
def add_frames(store, clock):
    """Write real PNG frames for a session, one second apart on the clock."""
    def _add(session_id: str, count: int, start_number: int = 0, step_seconds: float = 1):
        session_dir = store.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        frames = []
        for n in range(start_number, start_number + count):
            path = session_dir / f"frame_{n:06d}.png"
            data = png_bytes()
            path.write_bytes(data)
            frames.append(store.create_frame(
                session_id=session_id,
                frame_number=n,
                file_path=str(path),
                timestamp=format_timestamp(clock()),
                file_size=len(data),
                width=16,
                height=16,
            ))
            clock.advance(seconds=step_seconds)
        return frames
    return _add
