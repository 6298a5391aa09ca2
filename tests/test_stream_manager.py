import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from services.exceptions import ConfigurationError, NotFoundError
from services.gemini.text_generator import NullTextGenerator
from services.media.models import (
    MediaItem,
    MediaKind,
    ProcessingState,
    StreamConfig,
    StreamRequest,
    StreamStatus,
)
from services.streaming.manager import StreamLifecycleManager, resolve_url

from tests.conftest import FakeTextGenerator, RecordingStore, ScriptedFrameSource, wait_until


class SourceFactory:
    """Hands out ScriptedFrameSources and remembers them by URL."""

    def __init__(self, **source_kwargs):
        self.source_kwargs = source_kwargs
        self.sources = {}
        self.created = []

    def __call__(self, url):
        source = ScriptedFrameSource(**self.source_kwargs)
        self.sources[url] = source
        self.created.append(source)
        return source


@pytest.fixture
def factory():
    return SourceFactory()


@pytest.fixture
def manager(store, analyzer, factory):
    manager = StreamLifecycleManager(
        store, analyzer, NullTextGenerator(), source_factory=factory, sampling_interval=10
    )
    yield manager
    manager.shutdown()


def start(manager, name="lobby", **config):
    request = StreamRequest(stream_name=name, config=StreamConfig(**config) if config else None)
    return manager.start(request)


def wait_for_status(manager, stream_key, status):
    return wait_until(lambda: manager.status(stream_key).status == status)


def test_start_registers_waiting_session_and_goes_active(manager, store, factory):
    session = start(manager)

    assert session.status == StreamStatus.WAITING
    assert session.ingest_url == f"rtmp://localhost:1935/live/{session.stream_key}"
    assert session.playback_url == f"/hls/{session.stream_key}/playlist.m3u8"
    assert session.ingest_url in factory.sources

    item = store.get_media_item(session.media_item_id)
    assert item.kind == MediaKind.LIVE_STREAM
    assert item.state == ProcessingState.STREAMING
    assert item.is_live

    assert wait_for_status(manager, session.stream_key, StreamStatus.ACTIVE)
    assert [s.stream_key for s in manager.list_active()] == [session.stream_key]


def test_stop_ends_stream_and_completes_media_item(manager, store):
    session = start(manager)
    assert wait_for_status(manager, session.stream_key, StreamStatus.ACTIVE)

    stopped = manager.stop(session.stream_key)

    assert stopped.status == StreamStatus.ENDED
    assert stopped.end_time is not None
    assert stopped.duration_seconds >= 0
    assert manager.list_active() == []

    item = store.get_media_item(session.media_item_id)
    assert item.state == ProcessingState.COMPLETED
    assert not item.is_live
    assert item.duration == stopped.duration_seconds
    # Null text generator: counts-only summary
    assert item.ai_summary == "Detected 0 people, 0 objects, and 0 books in lobby."


def test_stop_is_idempotent(manager):
    session = start(manager)
    first = manager.stop(session.stream_key)
    second = manager.stop(session.stream_key)

    assert second.status == StreamStatus.ENDED
    assert second.end_time == first.end_time
    assert manager.status(session.stream_key).status == StreamStatus.ENDED


def test_stop_on_waiting_session_goes_straight_to_ended(store, analyzer):
    gate = threading.Event()
    factory = SourceFactory(open_gate=gate)
    manager = StreamLifecycleManager(store, analyzer, NullTextGenerator(), source_factory=factory)
    try:
        session = start(manager)
        assert manager.status(session.stream_key).status == StreamStatus.WAITING

        threading.Timer(0.2, gate.set).start()
        stopped = manager.stop(session.stream_key)

        assert stopped.status == StreamStatus.ENDED
        assert store.status_history[session.stream_key] == [StreamStatus.WAITING, StreamStatus.ENDED]
        assert manager.status(session.stream_key).status == StreamStatus.ENDED
        assert factory.sources[session.ingest_url].released
    finally:
        manager.shutdown()


def test_unknown_stream_key_is_not_found(manager):
    with pytest.raises(NotFoundError):
        manager.stop("missing")
    with pytest.raises(NotFoundError):
        manager.status("missing")
    with pytest.raises(NotFoundError):
        manager.pause("missing")


def test_ingest_failure_moves_stream_to_error(store, analyzer):
    factory = SourceFactory(open_error="connection refused")
    manager = StreamLifecycleManager(store, analyzer, NullTextGenerator(), source_factory=factory)
    try:
        session = start(manager)
        assert wait_for_status(manager, session.stream_key, StreamStatus.ERROR)

        failed = manager.status(session.stream_key)
        assert failed.error_message == "connection refused"
        assert failed.end_time is not None
        assert wait_until(
            lambda: store.get_media_item(session.media_item_id).state == ProcessingState.FAILED
        )
        assert manager.list_active() == []

        # stop after an error is a no-op that reports the terminal state
        assert manager.stop(session.stream_key).status == StreamStatus.ERROR
    finally:
        manager.shutdown()


def test_concurrent_starts_keep_sessions_independent(manager, store):
    sessions = []
    lock = threading.Lock()

    def launch(name):
        session = start(manager, name=name)
        with lock:
            sessions.append(session)

    threads = [threading.Thread(target=launch, args=(f"cam-{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    first, second = sessions
    assert first.stream_key != second.stream_key
    assert first.media_item_id != second.media_item_id
    assert wait_for_status(manager, first.stream_key, StreamStatus.ACTIVE)
    assert wait_for_status(manager, second.stream_key, StreamStatus.ACTIVE)

    manager.stop(first.stream_key)

    assert manager.status(first.stream_key).status == StreamStatus.ENDED
    assert manager.status(second.stream_key).status == StreamStatus.ACTIVE
    for session in sessions:
        assert store.status_history[session.stream_key][:2] == [StreamStatus.WAITING, StreamStatus.ACTIVE]


def test_pause_resume_and_viewer_count(manager):
    session = start(manager)
    assert wait_for_status(manager, session.stream_key, StreamStatus.ACTIVE)

    assert manager.pause(session.stream_key).status == StreamStatus.PAUSED
    assert manager.pause(session.stream_key).status == StreamStatus.PAUSED
    assert manager.list_active() == []
    assert manager.resume(session.stream_key).status == StreamStatus.ACTIVE
    assert manager.set_viewer_count(session.stream_key, 3).viewer_count == 3

    with pytest.raises(ValueError):
        manager.set_viewer_count(session.stream_key, -1)


def test_detections_are_counted_until_stop(store, analyzer):
    factory = SourceFactory(frame_total=50)
    manager = StreamLifecycleManager(
        store, analyzer, FakeTextGenerator(), source_factory=factory, sampling_interval=10
    )
    try:
        session = start(manager, name="reading room", analysis_interval=5)
        assert wait_until(
            lambda: store.get_media_item(session.media_item_id).frames_processed == 10
        )
        manager.stop(session.stream_key)

        item = store.get_media_item(session.media_item_id)
        assert item.people_count == 10
        assert item.ai_summary == "Summary of reading room: 10 people"
        frames = sorted(p.info.frame_number for p in store.find_by_media_item(item.id).people)
        assert frames == list(range(5, 51, 5))
    finally:
        manager.shutdown()


def test_process_stream_url_uses_external_key(manager, store, factory):
    store.add_media_item(MediaItem(id="cam-7", name="entrance", kind=MediaKind.VIDEO))

    session = manager.process_stream_url("rtsp://camera.local/stream", "cam-7")

    assert session.stream_key == "external-cam-7"
    assert session.ingest_url == "rtsp://camera.local/stream"
    assert "rtsp://camera.local/stream" in factory.sources
    assert store.get_media_item("cam-7").state == ProcessingState.STREAMING

    with pytest.raises(NotFoundError):
        manager.process_stream_url("rtsp://camera.local/other", "unknown")


def test_bad_url_template_is_a_configuration_error(store, analyzer, factory):
    manager = StreamLifecycleManager(
        store, analyzer, NullTextGenerator(), source_factory=factory, ingest_url_template="rtmp://host/live"
    )
    try:
        with pytest.raises(ConfigurationError):
            start(manager)
        assert factory.sources == {}
    finally:
        manager.shutdown()

    with pytest.raises(ConfigurationError):
        resolve_url("rtmp://host/{stream_key}/{other}", "abc")
    assert resolve_url("rtmp://host/{stream_key}", "abc") == "rtmp://host/abc"


class LockstepStore(RecordingStore):
    """Holds callers of get_media_item at a barrier while one is set."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)

    def get_media_item(self, media_item_id):
        item = super().get_media_item(media_item_id)
        if self.barrier is not None:
            self.barrier.wait()
        return item


def test_concurrent_process_stream_url_launches_one_processor(analyzer, factory):
    store = LockstepStore(parties=2)
    store.add_media_item(MediaItem(id="cam", name="entrance", kind=MediaKind.VIDEO))
    manager = StreamLifecycleManager(store, analyzer, NullTextGenerator(), source_factory=factory)
    try:
        sessions = []
        threads = [
            threading.Thread(target=lambda: sessions.append(manager.process_stream_url("rtsp://x", "cam")))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        store.barrier = None

        assert [s.stream_key for s in sessions] == ["external-cam", "external-cam"]
        assert len(factory.created) == 1

        manager.stop("external-cam")
        assert all(source.released for source in factory.created)
    finally:
        manager.shutdown()


def test_stop_cancels_stream_queued_behind_full_pool(store, analyzer, factory):
    stream_pool = ThreadPoolExecutor(max_workers=1)
    manager = StreamLifecycleManager(
        store, analyzer, NullTextGenerator(), source_factory=factory, stream_pool=stream_pool
    )
    try:
        running = start(manager, name="running")
        assert wait_for_status(manager, running.stream_key, StreamStatus.ACTIVE)
        queued = start(manager, name="queued")

        began = time.monotonic()
        stopped = manager.stop(queued.stream_key)

        assert time.monotonic() - began < 1.0
        assert stopped.status == StreamStatus.ENDED

        manager.stop(running.stream_key)
        stream_pool.shutdown(wait=True)
        queued_source = factory.sources[queued.ingest_url]
        assert not queued_source.opened
        assert queued_source.released
    finally:
        manager.shutdown()
        stream_pool.shutdown(wait=True)
