"""Logging configuration for the ingest and analysis workers.

Provides a dictConfig setup plus a filter that compresses the repetitive
per-frame log lines emitted by busy streams.
"""

import logging
import logging.config
import time
from typing import Dict


class RepeatedMessageFilter(logging.Filter):
    """Filter to compress repetitive per-frame logs.

    Instead of logging every "Frame N analyzed" line (which can be several
    per second per stream), this filter:
    - Logs the first occurrence immediately
    - Suppresses subsequent occurrences from the same logger and call site
    - Logs a summary line every N seconds
    - Never touches WARNING or higher
    """

    def __init__(self, name: str = "", interval: float = 10.0):
        super().__init__(name)
        self.interval = interval
        self.counters: Dict[str, Dict] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter log records.

        Returns:
            True to allow the log, False to suppress it
        """
        if record.levelno >= logging.WARNING:
            return True

        key = f"{record.name}:{record.pathname}:{record.lineno}"
        now = time.time()

        counter = self.counters.get(key)
        if counter is None:
            self.counters[key] = {"count": 0, "window_start": now}
            return True

        counter["count"] += 1
        elapsed = now - counter["window_start"]
        if elapsed < self.interval:
            return False

        # Rewrite this record into a summary of the suppressed window
        suppressed = counter["count"]
        counter["count"] = 0
        counter["window_start"] = now
        record.msg = f"{record.getMessage()} (+{suppressed - 1} similar in {elapsed:.1f}s)"
        record.args = None
        return True


def build_logging_config(log_level: str = "info") -> dict:
    """Build the logging configuration dict.

    Args:
        log_level: Logging level (info, debug, warning, error)

    Returns:
        Logging configuration dict for logging.config.dictConfig
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "repeated_message_filter": {
                "()": "config.logging_config.RepeatedMessageFilter",
                "interval": 10,
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
            "frames": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
                "filters": ["repeated_message_filter"],
            },
        },
        "loggers": {
            "services": {
                "handlers": ["default"],
                "level": log_level.upper(),
                "propagate": False,
            },
            # Per-frame chatter goes through the compressing handler
            "services.vision.analyzer": {
                "handlers": ["frames"],
                "level": log_level.upper(),
                "propagate": False,
            },
            "services.pipeline.aggregator": {
                "handlers": ["frames"],
                "level": log_level.upper(),
                "propagate": False,
            },
            "config": {
                "handlers": ["default"],
                "level": log_level.upper(),
                "propagate": False,
            },
        },
    }


def configure_logging(log_level: str = "info") -> None:
    """Apply the logging configuration."""
    logging.config.dictConfig(build_logging_config(log_level))
