"""Per-stream frame processor.

One StreamFrameProcessor owns one ingest source. It pulls frames, forwards
every Nth frame for analysis without waiting for the result, and exits when
its stop flag is set or the source fails. Status changes are reported to the
owner through a callback; the processor never sets ENDED itself.
"""

import logging
import threading
from concurrent.futures import Executor, Future
from typing import Callable, Optional, Set

from config.pipeline_config import PipelineConfig
from services.exceptions import IngestFailure
from services.media.models import StreamStatus
from services.pipeline.aggregator import DetectionAggregator
from services.streaming.frame_source import FrameSource, encode_jpeg
from services.vision.analyzer import FrameAnalyzer

logger = logging.getLogger(__name__)

StatusCallback = Callable[[StreamStatus, Optional[str]], None]


class FrameSampler:
    """Counts grabbed frames and selects every Nth one.

    The counter is incremented before the test, so for T grabbed frames
    exactly floor(T / N) frames are selected, numbered N, 2N, ...
    """

    def __init__(self, interval: int):
        if interval < 1:
            raise ValueError("sampling interval must be >= 1")
        self.interval = interval
        self.frame_count = 0

    def offer(self) -> Optional[int]:
        """Register one grabbed frame; return its number if it is sampled."""
        self.frame_count += 1
        if self.frame_count % self.interval == 0:
            return self.frame_count
        return None


class StreamFrameProcessor:
    def __init__(
        self,
        stream_key: str,
        source: FrameSource,
        analyzer: FrameAnalyzer,
        aggregator: DetectionAggregator,
        analysis_executor: Executor,
        on_status: StatusCallback,
        sampling_interval: Optional[int] = None,
        analysis_enabled: bool = True,
        idle_wait: Optional[float] = None,
        max_idle_reads: Optional[int] = None,
    ):
        """Initialize processor.

        Args:
            stream_key: Stream this processor is bound to
            source: Ingest source (not yet opened)
            analyzer: Frame analyzer run on the analysis executor
            aggregator: Receives analysis results for persistence
            analysis_executor: Pool that runs analyzer calls
            on_status: Called with (status, error message) on ACTIVE / ERROR
            sampling_interval: Forward every Nth frame
            analysis_enabled: When False frames are grabbed but never analyzed
            idle_wait: Seconds to wait after an empty read
            max_idle_reads: Consecutive empty reads before the source counts as failed
        """
        self.stream_key = stream_key
        self.source = source
        self.analyzer = analyzer
        self.aggregator = aggregator
        self.analysis_executor = analysis_executor
        self.on_status = on_status
        self.sampler = FrameSampler(sampling_interval or PipelineConfig.FRAME_SAMPLING_INTERVAL)
        self.analysis_enabled = analysis_enabled
        self.idle_wait = PipelineConfig.IDLE_WAIT_SECONDS if idle_wait is None else idle_wait
        self.max_idle_reads = max_idle_reads or PipelineConfig.MAX_IDLE_READS

        self._stop_event = threading.Event()
        self._paused = threading.Event()
        self._done = threading.Event()
        self._pending: Set[Future] = set()
        self._pending_cond = threading.Condition()
        self.frames_dispatched = 0

    @property
    def frames_grabbed(self) -> int:
        return self.sampler.frame_count

    def stop(self) -> None:
        """Ask the loop to exit at its next iteration."""
        self._stop_event.set()

    def cancel(self) -> None:
        """Release the source of a processor whose run() was never scheduled."""
        self._stop_event.set()
        self.source.release()
        self._done.set()

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for run() to return. Returns False on timeout."""
        return self._done.wait(timeout)

    def pending_analyses(self) -> int:
        with self._pending_cond:
            return len(self._pending)

    def wait_for_analyses(self, timeout: Optional[float] = None) -> bool:
        """Wait until every dispatched analysis has been handed to the aggregator."""
        with self._pending_cond:
            return self._pending_cond.wait_for(lambda: not self._pending, timeout=timeout)

    def run(self) -> None:
        """Processor loop; runs on a stream pool worker."""
        try:
            if self._stop_event.is_set() or not self._open():
                return
            self._loop()
        finally:
            self.source.release()
            self._done.set()
            logger.info(
                f"Stream {self.stream_key}: processor exited "
                f"({self.frames_grabbed} grabbed, {self.frames_dispatched} dispatched)"
            )

    def _open(self) -> bool:
        try:
            self.source.open()
        except IngestFailure as e:
            logger.error(f"Stream {self.stream_key}: {e}")
            self.on_status(StreamStatus.ERROR, str(e))
            return False

        if self._stop_event.is_set():
            return False
        self.on_status(StreamStatus.ACTIVE, None)
        logger.info(f"Stream {self.stream_key}: processor started")
        return True

    def _loop(self) -> None:
        idle_reads = 0
        while not self._stop_event.is_set():
            try:
                frame = self.source.read()
            except IngestFailure as e:
                self._fail(str(e))
                return
            except Exception as e:
                logger.exception(f"Stream {self.stream_key}: read error")
                self._fail(f"Read error: {e}")
                return

            if frame is None:
                idle_reads += 1
                if idle_reads >= self.max_idle_reads:
                    self._fail(f"No frames for {idle_reads} consecutive reads")
                    return
                self._stop_event.wait(self.idle_wait)
                continue

            idle_reads = 0
            frame_number = self.sampler.offer()
            if frame_number is None or self._paused.is_set() or not self.analysis_enabled:
                continue
            if not self._dispatch(frame, frame_number):
                return

    def _dispatch(self, frame, frame_number: int) -> bool:
        try:
            image_bytes = encode_jpeg(frame)
        except ValueError as e:
            logger.warning(f"Stream {self.stream_key}: frame {frame_number} skipped: {e}")
            return True

        timestamp = frame_number / self.source.frame_rate
        try:
            future = self.analysis_executor.submit(
                self.analyzer.analyze_frame, image_bytes, frame_number, timestamp
            )
        except RuntimeError as e:
            # Analysis pool shut down underneath us
            logger.warning(f"Stream {self.stream_key}: analysis pool unavailable: {e}")
            return False

        with self._pending_cond:
            self._pending.add(future)
        future.add_done_callback(self._on_analysis_done)
        self.frames_dispatched += 1
        return True

    def _on_analysis_done(self, future: Future) -> None:
        try:
            self.aggregator.post_future(future)
        finally:
            with self._pending_cond:
                self._pending.discard(future)
                self._pending_cond.notify_all()

    def _fail(self, message: str) -> None:
        logger.error(f"Stream {self.stream_key}: ingest failed: {message}")
        self.on_status(StreamStatus.ERROR, message)
