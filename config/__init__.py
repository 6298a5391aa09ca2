"""Configuration package. Loads a local .env file before settings are read."""

from dotenv import load_dotenv

load_dotenv()

from config.pipeline_config import PipelineConfig  # noqa: E402
from config.logging_config import configure_logging  # noqa: E402

__all__ = ["PipelineConfig", "configure_logging"]
