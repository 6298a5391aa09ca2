"""Upload pipeline: analyze an uploaded image or video file.

An image is analyzed as a single frame (0, 0.0). A video is read front to
back and every Nth frame (0-indexed, so frame 0 is always included) is
analyzed synchronously. Each file runs on the upload pool, apart from the
live-stream workers.
"""

import logging
import mimetypes
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

from config.pipeline_config import PipelineConfig
from services.exceptions import IngestFailure, NotFoundError
from services.gemini.text_generator import TextGenerator
from services.media.models import MediaItem, MediaKind, ProcessingState
from services.media.summary import attach_summary
from services.pipeline.aggregator import DetectionAggregator
from services.storage.detection_store import DetectionStore
from services.streaming.frame_source import VideoFileSource, encode_jpeg
from services.vision.analyzer import FrameAnalyzer

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv", ".webm", ".m4v", ".mpg", ".mpeg"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".gif", ".webp", ".tif", ".tiff"}


def detect_media_kind(file_path: str, content_type: Optional[str] = None) -> MediaKind:
    """Classify a file as IMAGE or VIDEO from its content type or extension."""
    if content_type is None:
        content_type, _ = mimetypes.guess_type(file_path)
    if content_type:
        if content_type.startswith("video/"):
            return MediaKind.VIDEO
        if content_type.startswith("image/"):
            return MediaKind.IMAGE

    extension = os.path.splitext(file_path)[1].lower()
    if extension in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    if extension in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    raise ValueError(f"Unsupported media type: {file_path}")


def sample_file_frames(
    frames: Iterator[np.ndarray], interval: int
) -> Iterator[Tuple[int, np.ndarray]]:
    """Yield (frame_index, frame) for every 0-indexed frame divisible by interval."""
    for frame_index, frame in enumerate(frames):
        if frame_index % interval == 0:
            yield frame_index, frame


class MediaUploadPipeline:
    def __init__(
        self,
        store: DetectionStore,
        analyzer: FrameAnalyzer,
        text_generator: TextGenerator,
        upload_pool: Optional[ThreadPoolExecutor] = None,
        sampling_interval: Optional[int] = None,
    ):
        self.store = store
        self.analyzer = analyzer
        self.text_generator = text_generator
        self.sampling_interval = sampling_interval or PipelineConfig.FRAME_SAMPLING_INTERVAL
        self._owns_pool = upload_pool is None
        self.upload_pool = upload_pool or ThreadPoolExecutor(
            max_workers=PipelineConfig.UPLOAD_POOL_SIZE, thread_name_prefix="upload"
        )
        self._jobs: Dict[str, Future] = {}
        self._jobs_lock = threading.Lock()

    def upload_and_process(
        self,
        file_path: str,
        name: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Register a media item for the file and queue its analysis.

        Returns:
            The new media item id

        Raises:
            NotFoundError: file does not exist
            ValueError: file is neither an image nor a video
        """
        if not os.path.isfile(file_path):
            raise NotFoundError(f"File not found: {file_path}")
        kind = detect_media_kind(file_path, content_type)

        item = MediaItem(
            id=str(uuid.uuid4()),
            name=name or os.path.basename(file_path),
            kind=kind,
            state=ProcessingState.PROCESSING,
            file_path=file_path,
        )
        self.store.add_media_item(item)

        future = self.upload_pool.submit(self.process, item.id)
        with self._jobs_lock:
            self._jobs[item.id] = future
        future.add_done_callback(lambda done: self._on_job_done(item.id, done))
        logger.info(f"Queued {kind.value.lower()} {file_path} as media item {item.id}")
        return item.id

    def wait(self, media_item_id: str, timeout: Optional[float] = None) -> MediaItem:
        """Block until a queued item finishes, then return it."""
        with self._jobs_lock:
            future = self._jobs.get(media_item_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get_media_item(media_item_id)

    def pending_jobs(self) -> int:
        with self._jobs_lock:
            return len(self._jobs)

    def process(self, media_item_id: str) -> None:
        """Analyze one media item to completion. Runs on the upload pool."""
        item = self.store.get_media_item(media_item_id)
        aggregator = DetectionAggregator(media_item_id, self.store)
        try:
            if item.kind == MediaKind.IMAGE:
                self._process_image(item, aggregator)
            else:
                self._process_video(item, aggregator)
            aggregator.wait_idle()
        except (IngestFailure, OSError) as e:
            aggregator.close()
            logger.error(f"Media item {media_item_id} failed: {e}")
            self.store.update_media_item(
                media_item_id, state=ProcessingState.FAILED, error_message=str(e)
            )
            return
        except Exception as e:
            aggregator.close()
            logger.exception(f"Media item {media_item_id} failed unexpectedly")
            self.store.update_media_item(
                media_item_id, state=ProcessingState.FAILED, error_message=str(e)
            )
            return

        aggregator.close()
        try:
            attach_summary(self.store, self.text_generator, media_item_id)
            self.store.update_media_item(media_item_id, state=ProcessingState.COMPLETED)
        except NotFoundError:
            logger.warning(f"Media item {media_item_id} was deleted while processing")
            return
        logger.info(f"Media item {media_item_id} completed: {aggregator.get_stats()}")

    def shutdown(self) -> None:
        if self._owns_pool:
            self.upload_pool.shutdown(wait=False)

    def _on_job_done(self, media_item_id: str, future: Future) -> None:
        with self._jobs_lock:
            self._jobs.pop(media_item_id, None)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Media item {media_item_id}: processing job raised {error!r}")

    def _process_image(self, item: MediaItem, aggregator: DetectionAggregator) -> None:
        with open(item.file_path, "rb") as f:
            image_bytes = f.read()
        if not image_bytes:
            raise IngestFailure(f"Image file is empty: {item.file_path}")
        aggregator.post(self.analyzer.analyze_frame(image_bytes, 0, 0.0))

    def _process_video(self, item: MediaItem, aggregator: DetectionAggregator) -> None:
        source = VideoFileSource(item.file_path)
        frames_read = 0
        for frame_index, frame in sample_file_frames(source.frames(), self.sampling_interval):
            try:
                image_bytes = encode_jpeg(frame)
            except ValueError as e:
                logger.warning(f"Media item {item.id}: frame {frame_index} skipped: {e}")
                continue
            timestamp = frame_index / source.frame_rate
            aggregator.post(self.analyzer.analyze_frame(image_bytes, frame_index, timestamp))
            frames_read = frame_index + 1

        total_frames = source.total_frames or frames_read
        self.store.update_media_item(
            item.id,
            frame_rate=source.frame_rate,
            duration=total_frames / source.frame_rate if total_frames else 0.0,
        )
