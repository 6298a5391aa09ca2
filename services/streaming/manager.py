"""Stream lifecycle manager.

Owns the registry of live streams. Each registered stream has its own lock
guarding its session; the registry lock is held only to insert or remove an
entry, so one stream's transitions never wait on another's.

Lifecycle: WAITING -> ACTIVE -> {ENDED | ERROR}, with PAUSED between ACTIVE
states on request. Transitions not listed in STREAM_TRANSITIONS are ignored.
When stop() and an ingest failure race, whichever terminal transition takes
the stream lock first is kept.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from config.pipeline_config import PipelineConfig
from services.exceptions import ConfigurationError, NotFoundError
from services.gemini.text_generator import TextGenerator
from services.media.models import (
    STREAM_TRANSITIONS,
    MediaItem,
    MediaKind,
    ProcessingState,
    StreamRequest,
    StreamSession,
    StreamStatus,
)
from services.media.summary import attach_summary
from services.pipeline.aggregator import DetectionAggregator
from services.storage.detection_store import DetectionStore
from services.streaming.frame_processor import StreamFrameProcessor
from services.streaming.frame_source import FrameSource, OpenCVStreamSource
from services.vision.analyzer import FrameAnalyzer

logger = logging.getLogger(__name__)

SourceFactory = Callable[[str], FrameSource]


def resolve_url(template: Optional[str], stream_key: str) -> str:
    """Fill a URL template with the stream key.

    Raises:
        ConfigurationError: template missing or not formattable
    """
    if not template or "{stream_key}" not in template:
        raise ConfigurationError(f"URL template must contain {{stream_key}}: {template!r}")
    try:
        return template.format(stream_key=stream_key)
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigurationError(f"Invalid URL template {template!r}: {e}") from e


class _StreamEntry:
    """Registry entry: one session, its lock and its workers."""

    def __init__(self, session: StreamSession):
        self.session = session
        self.lock = threading.Lock()
        self.processor: Optional[StreamFrameProcessor] = None
        self.aggregator: Optional[DetectionAggregator] = None
        self.future: Optional[Future] = None


class StreamLifecycleManager:
    def __init__(
        self,
        store: DetectionStore,
        analyzer: FrameAnalyzer,
        text_generator: TextGenerator,
        source_factory: Optional[SourceFactory] = None,
        stream_pool: Optional[ThreadPoolExecutor] = None,
        analysis_pool: Optional[ThreadPoolExecutor] = None,
        sampling_interval: Optional[int] = None,
        ingest_url_template: Optional[str] = None,
        playback_url_template: Optional[str] = None,
    ):
        """Initialize manager.

        Args:
            store: Persistence for sessions, media items and detections
            analyzer: Frame analyzer shared by all streams
            text_generator: Used for the end-of-stream summary
            source_factory: Builds a FrameSource from an ingest URL
            stream_pool: Runs one processor loop per stream
            analysis_pool: Runs frame analysis calls
            sampling_interval: Default every-Nth-frame interval
            ingest_url_template: Template with {stream_key}
            playback_url_template: Template with {stream_key}
        """
        self.store = store
        self.analyzer = analyzer
        self.text_generator = text_generator
        self.source_factory = source_factory or OpenCVStreamSource
        self.sampling_interval = sampling_interval or PipelineConfig.FRAME_SAMPLING_INTERVAL
        self.ingest_url_template = (
            PipelineConfig.INGEST_URL_TEMPLATE if ingest_url_template is None else ingest_url_template
        )
        self.playback_url_template = (
            PipelineConfig.PLAYBACK_URL_TEMPLATE
            if playback_url_template is None
            else playback_url_template
        )

        self._owned_pools = []
        if stream_pool is None:
            stream_pool = ThreadPoolExecutor(
                max_workers=PipelineConfig.STREAM_POOL_SIZE, thread_name_prefix="stream"
            )
            self._owned_pools.append(stream_pool)
        if analysis_pool is None:
            analysis_pool = ThreadPoolExecutor(
                max_workers=PipelineConfig.ANALYSIS_POOL_SIZE, thread_name_prefix="analysis"
            )
            self._owned_pools.append(analysis_pool)
        self.stream_pool = stream_pool
        self.analysis_pool = analysis_pool

        self._registry: Dict[str, _StreamEntry] = {}
        self._registry_lock = threading.Lock()

    # ---- public API --------------------------------------------------------

    def start(self, request: StreamRequest) -> StreamSession:
        """Register a new stream and launch its processor.

        Returns the session in WAITING; it moves to ACTIVE once the ingest
        source opens.

        Raises:
            ConfigurationError: ingest or playback URL cannot be built
        """
        stream_key = uuid.uuid4().hex
        ingest_url = resolve_url(self.ingest_url_template, stream_key)
        playback_url = resolve_url(self.playback_url_template, stream_key)

        config = request.config
        interval = (config.analysis_interval if config else None) or self.sampling_interval
        analysis_enabled = config.enable_analysis if config else True

        item = MediaItem(
            id=str(uuid.uuid4()),
            name=request.stream_name,
            kind=MediaKind.LIVE_STREAM,
            state=ProcessingState.STREAMING,
            stream_url=ingest_url,
            playback_url=playback_url,
            is_live=True,
            frame_rate=config.frame_rate if config else None,
        )
        self.store.add_media_item(item)

        session = StreamSession(
            stream_key=stream_key,
            media_item_id=item.id,
            ingest_url=ingest_url,
            playback_url=playback_url,
        )
        entry, _ = self._register(session, interval, analysis_enabled)
        self._submit(entry)
        logger.info(f"Stream {stream_key} registered for '{request.stream_name}' ({ingest_url})")
        return session.snapshot()

    def process_stream_url(self, stream_url: str, media_item_id: str) -> StreamSession:
        """Attach an external stream URL to an existing media item.

        Calling it again while the stream is registered returns the running
        session; only one processor ever feeds a media item's external key.

        Raises:
            NotFoundError: unknown media item
        """
        item = self.store.get_media_item(media_item_id)
        stream_key = f"external-{media_item_id}"
        try:
            playback_url = resolve_url(self.playback_url_template, stream_key)
        except ConfigurationError:
            playback_url = stream_url
        session = StreamSession(
            stream_key=stream_key,
            media_item_id=item.id,
            ingest_url=stream_url,
            playback_url=playback_url,
        )
        entry, created = self._register(session, self.sampling_interval, True)
        if not created:
            with entry.lock:
                return entry.session.snapshot()

        self.store.update_media_item(
            item.id,
            state=ProcessingState.STREAMING,
            stream_url=stream_url,
            playback_url=playback_url,
            is_live=True,
        )
        self._submit(entry)
        logger.info(f"Processing external stream {stream_url} for media item {media_item_id}")
        return session.snapshot()

    def stop(self, stream_key: str) -> StreamSession:
        """End a stream.

        Idempotent: stopping an ENDED or ERROR stream returns its snapshot
        unchanged. A processor still queued behind a full stream pool is
        cancelled and never opens its source.

        Raises:
            NotFoundError: unknown stream key
        """
        with self._registry_lock:
            entry = self._registry.pop(stream_key, None)
        if entry is None:
            # Unregistered keys are either terminal or unknown
            return self.store.get_session(stream_key)

        entry.processor.stop()
        with entry.lock:
            ended = self._apply(entry, StreamStatus.ENDED)
            snapshot = entry.session.snapshot()
            started = entry.future is not None and not entry.future.cancel()
        if not started:
            entry.processor.cancel()

        self._drain(entry, join=started)
        if ended:
            self.store.update_media_item(
                snapshot.media_item_id,
                state=ProcessingState.COMPLETED,
                is_live=False,
                duration=snapshot.duration_seconds,
            )
            attach_summary(self.store, self.text_generator, snapshot.media_item_id)
            logger.info(
                f"Stream {stream_key} ended after {snapshot.duration_seconds:.1f}s"
            )
        return snapshot

    def status(self, stream_key: str) -> StreamSession:
        """Current session snapshot.

        Raises:
            NotFoundError: unknown stream key
        """
        entry = self._entry(stream_key)
        if entry is None:
            return self.store.get_session(stream_key)
        with entry.lock:
            return entry.session.snapshot()

    def list_active(self) -> List[StreamSession]:
        with self._registry_lock:
            entries = list(self._registry.values())
        active = []
        for entry in entries:
            with entry.lock:
                if entry.session.status == StreamStatus.ACTIVE:
                    active.append(entry.session.snapshot())
        return active

    def pause(self, stream_key: str) -> StreamSession:
        """Stop forwarding frames for analysis; ingest keeps running."""
        entry = self._require_entry(stream_key)
        with entry.lock:
            if self._apply(entry, StreamStatus.PAUSED):
                entry.processor.pause()
            return entry.session.snapshot()

    def resume(self, stream_key: str) -> StreamSession:
        entry = self._require_entry(stream_key)
        with entry.lock:
            if entry.session.status == StreamStatus.PAUSED and self._apply(
                entry, StreamStatus.ACTIVE
            ):
                entry.processor.resume()
            return entry.session.snapshot()

    def set_viewer_count(self, stream_key: str, viewer_count: int) -> StreamSession:
        if viewer_count < 0:
            raise ValueError("viewer_count must be >= 0")
        entry = self._require_entry(stream_key)
        with entry.lock:
            entry.session.viewer_count = viewer_count
            self.store.save_session(entry.session)
            return entry.session.snapshot()

    def stop_media_item(self, media_item_id: str) -> List[StreamSession]:
        """Stop every registered stream feeding one media item."""
        with self._registry_lock:
            keys = [k for k, e in self._registry.items() if e.session.media_item_id == media_item_id]
        return [self.stop(stream_key) for stream_key in keys]

    def shutdown(self) -> None:
        """Stop every registered stream, then the pools this manager created."""
        with self._registry_lock:
            keys = list(self._registry)
        for stream_key in keys:
            try:
                self.stop(stream_key)
            except NotFoundError:
                pass
        for pool in self._owned_pools:
            pool.shutdown(wait=False)
        logger.info(f"Stream manager shut down ({len(keys)} streams stopped)")

    # ---- internals ---------------------------------------------------------

    def _register(
        self, session: StreamSession, interval: int, analysis_enabled: bool
    ) -> Tuple[_StreamEntry, bool]:
        """Reserve the stream key. Returns (entry, created); an existing entry wins."""
        with self._registry_lock:
            existing = self._registry.get(session.stream_key)
            if existing is not None:
                return existing, False
            entry = _StreamEntry(session)
            entry.aggregator = DetectionAggregator(session.media_item_id, self.store)
            entry.processor = StreamFrameProcessor(
                stream_key=session.stream_key,
                source=self.source_factory(session.ingest_url),
                analyzer=self.analyzer,
                aggregator=entry.aggregator,
                analysis_executor=self.analysis_pool,
                on_status=lambda status, error: self._on_processor_status(entry, status, error),
                sampling_interval=interval,
                analysis_enabled=analysis_enabled,
            )
            self._registry[session.stream_key] = entry
        self.store.save_session(session)
        return entry, True

    def _submit(self, entry: _StreamEntry) -> None:
        with entry.lock:
            # stop() got here first; it has already released the processor
            if entry.session.status.is_terminal:
                return
            entry.future = self.stream_pool.submit(entry.processor.run)

    def _on_processor_status(
        self, entry: _StreamEntry, status: StreamStatus, error: Optional[str]
    ) -> None:
        with entry.lock:
            applied = self._apply(entry, status, error)
            media_item_id = entry.session.media_item_id
            stream_key = entry.session.stream_key
        if not applied or status != StreamStatus.ERROR:
            return

        with self._registry_lock:
            if self._registry.get(stream_key) is entry:
                del self._registry[stream_key]
        self.store.update_media_item(
            media_item_id, state=ProcessingState.FAILED, is_live=False, error_message=error
        )
        # Called from the processor's own thread, so it cannot be joined here
        self._drain(entry, join=False)

    def _apply(
        self, entry: _StreamEntry, status: StreamStatus, error: Optional[str] = None
    ) -> bool:
        """Apply a transition under entry.lock. Returns False if it is not allowed."""
        session = entry.session
        if status not in STREAM_TRANSITIONS[session.status]:
            logger.debug(
                f"Stream {session.stream_key}: ignoring {session.status.value} -> {status.value}"
            )
            return False

        session.status = status
        if status.is_terminal:
            session.end_time = time.time()
            session.duration_seconds = session.end_time - session.start_time
            if error:
                session.error_message = error
        self.store.save_session(session)
        logger.info(f"Stream {session.stream_key}: {status.value}")
        return True

    def _drain(self, entry: _StreamEntry, join: bool = True) -> None:
        """Wait (bounded) for the processor and its in-flight analyses, then close the aggregator."""
        timeout = PipelineConfig.STOP_JOIN_TIMEOUT
        stream_key = entry.session.stream_key
        if join and not entry.processor.join(timeout):
            logger.warning(f"Stream {stream_key}: processor did not exit within {timeout}s")
        if not entry.processor.wait_for_analyses(timeout):
            logger.warning(
                f"Stream {stream_key}: {entry.processor.pending_analyses()} analyses "
                f"still running after {timeout}s"
            )
        entry.aggregator.close(timeout=timeout)

    def _entry(self, stream_key: str) -> Optional[_StreamEntry]:
        with self._registry_lock:
            return self._registry.get(stream_key)

    def _require_entry(self, stream_key: str) -> _StreamEntry:
        entry = self._entry(stream_key)
        if entry is None:
            # Raises NotFoundError for unknown keys
            session = self.store.get_session(stream_key)
            raise NotFoundError(
                f"Stream {stream_key} is {session.status.value} and no longer running"
            )
        return entry
