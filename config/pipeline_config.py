"""Global pipeline configuration as class-level attributes.

This module defines PipelineConfig as a singleton-like configuration class
that holds all global settings for stream ingest, frame sampling, analysis
and enrichment. Environment variables are read once at import time and
stored here, making them accessible throughout the codebase without
repeating env lookups.

Usage:
    from config.pipeline_config import PipelineConfig

    # Access settings
    interval = PipelineConfig.FRAME_SAMPLING_INTERVAL

    # Override if needed (before creating the service)
    PipelineConfig.FRAME_SAMPLING_INTERVAL = 10
"""

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class PipelineConfig:
    """Global pipeline configuration class.

    All settings are class attributes initialized from environment variables
    at module load time.
    """

    # ========================================================================
    # FRAME SAMPLING
    # ========================================================================

    # Only every Nth grabbed frame is sent for analysis
    # Override via env: FRAME_SAMPLING_INTERVAL=15
    FRAME_SAMPLING_INTERVAL: int = int(os.getenv("FRAME_SAMPLING_INTERVAL", "30"))

    # Frame rate assumed when the source does not report one
    DEFAULT_FRAME_RATE: float = float(os.getenv("DEFAULT_FRAME_RATE", "30.0"))

    # JPEG quality used when encoding sampled frames (0-100)
    JPEG_QUALITY: int = int(os.getenv("JPEG_QUALITY", "85"))

    # ========================================================================
    # INGEST
    # ========================================================================

    # Ingest and playback URL templates, formatted with {stream_key}
    INGEST_URL_TEMPLATE: str = os.getenv(
        "INGEST_URL_TEMPLATE", "rtmp://localhost:1935/live/{stream_key}"
    )
    PLAYBACK_URL_TEMPLATE: str = os.getenv(
        "PLAYBACK_URL_TEMPLATE", "/hls/{stream_key}/playlist.m3u8"
    )

    # Deadlines for opening the ingest source and for each frame read
    INGEST_OPEN_TIMEOUT_MS: int = int(os.getenv("INGEST_OPEN_TIMEOUT_MS", "10000"))
    INGEST_READ_TIMEOUT_MS: int = int(os.getenv("INGEST_READ_TIMEOUT_MS", "5000"))

    # Sleep between empty reads, and how many empty reads mean the source died
    IDLE_WAIT_SECONDS: float = float(os.getenv("IDLE_WAIT_SECONDS", "0.1"))
    MAX_IDLE_READS: int = int(os.getenv("MAX_IDLE_READS", "600"))

    # How long stop() waits for a processor thread to exit
    STOP_JOIN_TIMEOUT: float = float(os.getenv("STOP_JOIN_TIMEOUT", "5.0"))

    # ========================================================================
    # WORKER POOLS
    # ========================================================================

    STREAM_POOL_SIZE: int = int(os.getenv("STREAM_POOL_SIZE", "16"))
    ANALYSIS_POOL_SIZE: int = int(os.getenv("ANALYSIS_POOL_SIZE", "4"))
    UPLOAD_POOL_SIZE: int = int(os.getenv("UPLOAD_POOL_SIZE", "2"))

    # ========================================================================
    # DETECTION NORMALIZATION
    # ========================================================================

    # Label annotations above this score become GENERAL/LABEL objects
    LABEL_SCORE_THRESHOLD: float = float(os.getenv("LABEL_SCORE_THRESHOLD", "0.75"))

    # ========================================================================
    # GEMINI (vision + text enrichment)
    # ========================================================================

    GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY", None)
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

    # Minimum seconds between two Gemini requests from one client
    GEMINI_MIN_REQUEST_INTERVAL: float = float(
        os.getenv("GEMINI_MIN_REQUEST_INTERVAL", "1.0")
    )

    # Ask the text model for a summary of every detected book
    ENABLE_BOOK_SUMMARIES: bool = _env_bool("ENABLE_BOOK_SUMMARIES")

    # ========================================================================
    # LOGGING
    # ========================================================================

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info")

    @classmethod
    def get_summary(cls) -> dict:
        """Return a dictionary of all configuration settings.

        The API key is masked.
        """
        return {
            "FRAME_SAMPLING_INTERVAL": cls.FRAME_SAMPLING_INTERVAL,
            "DEFAULT_FRAME_RATE": cls.DEFAULT_FRAME_RATE,
            "JPEG_QUALITY": cls.JPEG_QUALITY,
            "INGEST_URL_TEMPLATE": cls.INGEST_URL_TEMPLATE,
            "PLAYBACK_URL_TEMPLATE": cls.PLAYBACK_URL_TEMPLATE,
            "INGEST_OPEN_TIMEOUT_MS": cls.INGEST_OPEN_TIMEOUT_MS,
            "INGEST_READ_TIMEOUT_MS": cls.INGEST_READ_TIMEOUT_MS,
            "IDLE_WAIT_SECONDS": cls.IDLE_WAIT_SECONDS,
            "MAX_IDLE_READS": cls.MAX_IDLE_READS,
            "STOP_JOIN_TIMEOUT": cls.STOP_JOIN_TIMEOUT,
            "STREAM_POOL_SIZE": cls.STREAM_POOL_SIZE,
            "ANALYSIS_POOL_SIZE": cls.ANALYSIS_POOL_SIZE,
            "UPLOAD_POOL_SIZE": cls.UPLOAD_POOL_SIZE,
            "LABEL_SCORE_THRESHOLD": cls.LABEL_SCORE_THRESHOLD,
            "GEMINI_API_KEY": "***" if cls.GEMINI_API_KEY else None,
            "GEMINI_MODEL": cls.GEMINI_MODEL,
            "GEMINI_MIN_REQUEST_INTERVAL": cls.GEMINI_MIN_REQUEST_INTERVAL,
            "ENABLE_BOOK_SUMMARIES": cls.ENABLE_BOOK_SUMMARIES,
            "LOG_LEVEL": cls.LOG_LEVEL,
        }

    @classmethod
    def log_summary(cls) -> None:
        """Log configuration summary at INFO level."""
        logger.info("=" * 60)
        logger.info("PIPELINE CONFIGURATION")
        logger.info("=" * 60)
        for key, value in cls.get_summary().items():
            logger.info(f"  {key:28s} = {value}")
        logger.info("=" * 60)
