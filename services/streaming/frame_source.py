"""Frame sources using OpenCV.

OpenCVStreamSource wraps a live ingest URL (RTMP/RTSP/HTTP) and exposes a
small synchronous API: open(), read() -> frame or None, release().
VideoFileSource iterates a finite file once, front to back.

Both use bounded open/read timeouts so that a stuck network read cannot
hold a stop request forever.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterator, Optional

import cv2
import numpy as np

from config.pipeline_config import PipelineConfig
from services.exceptions import IngestFailure

logger = logging.getLogger(__name__)

NETWORK_PREFIXES = ("rtsp://", "rtmp://", "http://", "https://", "udp://")


def encode_jpeg(frame: np.ndarray, quality: Optional[int] = None) -> bytes:
    """Encode a BGR frame as JPEG bytes.

    Raises:
        ValueError: encoding failed
    """
    if quality is None:
        quality = PipelineConfig.JPEG_QUALITY
    success, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not success:
        raise ValueError("Failed to encode image as JPEG")
    return buffer.tobytes()


def _open_capture(source: str, open_timeout_ms: int, read_timeout_ms: int) -> cv2.VideoCapture:
    """Create a VideoCapture with open/read deadlines."""
    params = [
        cv2.CAP_PROP_OPEN_TIMEOUT_MSEC, open_timeout_ms,
        cv2.CAP_PROP_READ_TIMEOUT_MSEC, read_timeout_ms,
    ]
    cap = cv2.VideoCapture(source, cv2.CAP_FFMPEG, params)
    if source.startswith(NETWORK_PREFIXES):
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # Minimize buffer lag
    return cap


def _capture_fps(cap: cv2.VideoCapture) -> float:
    fps = cap.get(cv2.CAP_PROP_FPS)
    if not fps or fps <= 0 or np.isnan(fps):
        return PipelineConfig.DEFAULT_FRAME_RATE
    return float(fps)


class FrameSource(ABC):
    """Live ingest source consumed by a StreamFrameProcessor."""

    @abstractmethod
    def open(self) -> None:
        """Connect to the source.

        Raises:
            IngestFailure: the source could not be opened
        """
        pass

    @abstractmethod
    def read(self) -> Optional[np.ndarray]:
        """Return the next frame, or None if none is available yet.

        A single None is not an error: the processor waits IDLE_WAIT_SECONDS
        and reads again. After MAX_IDLE_READS consecutive None reads the
        stream is moved to ERROR, so a broadcaster that pauses for longer
        than MAX_IDLE_READS * IDLE_WAIT_SECONDS ends the stream.

        Raises:
            IngestFailure: the source failed unrecoverably
        """
        pass

    @property
    @abstractmethod
    def frame_rate(self) -> float:
        pass

    @abstractmethod
    def release(self) -> None:
        pass


class OpenCVStreamSource(FrameSource):
    def __init__(
        self,
        url: str,
        open_timeout_ms: Optional[int] = None,
        read_timeout_ms: Optional[int] = None,
    ):
        self.url = url
        self.open_timeout_ms = open_timeout_ms or PipelineConfig.INGEST_OPEN_TIMEOUT_MS
        self.read_timeout_ms = read_timeout_ms or PipelineConfig.INGEST_READ_TIMEOUT_MS
        self.cap: Optional[cv2.VideoCapture] = None
        self._fps = PipelineConfig.DEFAULT_FRAME_RATE

    def open(self) -> None:
        self.cap = _open_capture(self.url, self.open_timeout_ms, self.read_timeout_ms)
        if not self.cap.isOpened():
            self.release()
            raise IngestFailure(f"Failed to open ingest source: {self.url}")
        self._fps = _capture_fps(self.cap)
        logger.info(f"Opened ingest source {self.url} ({self._fps:.1f} fps)")

    def read(self) -> Optional[np.ndarray]:
        if self.cap is None:
            raise IngestFailure("Ingest source is not open")
        if not self.cap.isOpened():
            raise IngestFailure(f"Ingest source closed: {self.url}")

        ok, frame = self.cap.read()
        if not ok or frame is None or frame.size == 0:
            return None
        return frame

    @property
    def frame_rate(self) -> float:
        return self._fps

    def release(self) -> None:
        if self.cap is not None:
            try:
                self.cap.release()
            except cv2.error as e:
                logger.warning(f"Error releasing ingest source {self.url}: {e}")
            self.cap = None


class VideoFileSource:
    """Finite video file read once from start to end."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self.frame_rate = PipelineConfig.DEFAULT_FRAME_RATE
        self.total_frames = 0

    def frames(self) -> Iterator[np.ndarray]:
        """Yield every frame in capture order.

        Raises:
            IngestFailure: the file cannot be opened
        """
        cap = cv2.VideoCapture(self.file_path)
        if not cap.isOpened():
            raise IngestFailure(f"Failed to open video file: {self.file_path}")
        try:
            self.frame_rate = _capture_fps(cap)
            self.total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
            logger.info(
                f"Processing video: {self.total_frames} frames at {self.frame_rate:.2f} fps"
            )
            while True:
                ok, frame = cap.read()
                if not ok or frame is None:
                    break
                yield frame
        finally:
            cap.release()
