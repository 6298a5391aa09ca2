"""Live stream ingest: frame sources, per-stream processors and lifecycle."""

from services.streaming.frame_processor import FrameSampler, StreamFrameProcessor
from services.streaming.frame_source import FrameSource, OpenCVStreamSource, VideoFileSource
from services.streaming.manager import StreamLifecycleManager

__all__ = [
    "FrameSampler",
    "FrameSource",
    "OpenCVStreamSource",
    "StreamFrameProcessor",
    "StreamLifecycleManager",
    "VideoFileSource",
]
