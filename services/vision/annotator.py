"""Vision capability: image bytes -> raw annotations.

The rest of the pipeline only depends on VisionCapability. The Gemini-backed
implementation asks the model to answer in the same dict layout the
normalizer consumes (faces, localized_objects, labels, text).
"""

import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import google.generativeai as genai

from config.pipeline_config import PipelineConfig
from services.exceptions import ConfigurationError, DetectorFailure

logger = logging.getLogger(__name__)


class VisionCapability(ABC):
    """Abstract interface for a per-frame vision annotator."""

    @abstractmethod
    def annotate(self, image_bytes: bytes) -> Dict[str, Any]:
        """
        Annotate one encoded image.

        Args:
            image_bytes: JPEG/PNG encoded image

        Returns:
            Dict with keys faces, localized_objects, labels, text

        Raises:
            DetectorFailure: the call failed or the answer was unusable
        """
        pass


def parse_json_response(response_text: str) -> Dict[str, Any]:
    """Parse a JSON answer, tolerating markdown code fences.

    Raises:
        ValueError: text is not a JSON object
    """
    text = response_text.strip()
    text = re.sub(r"```json\s*", "", text)
    text = re.sub(r"```\s*", "", text)
    text = text.strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON response: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("JSON response is not an object")
    return parsed


class RateLimiter:
    """Enforces a minimum interval between calls across threads."""

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._last_request_time = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self.min_interval:
                sleep_time = self.min_interval - elapsed
                logger.debug(f"Rate limiting: sleeping {sleep_time:.2f}s")
                time.sleep(sleep_time)
            self._last_request_time = time.time()


class GeminiVisionAnnotator(VisionCapability):
    """Gemini-backed vision annotator."""

    ANNOTATION_PROMPT = """
Analyze the image and answer with JSON in exactly this layout:
{
  "faces": [
    {
      "detection_confidence": 0.0-1.0,
      "joy_likelihood": "VERY_UNLIKELY|UNLIKELY|POSSIBLE|LIKELY|VERY_LIKELY",
      "sorrow_likelihood": "...same scale...",
      "anger_likelihood": "...same scale...",
      "surprise_likelihood": "...same scale...",
      "bounding_poly": {"vertices": [{"x": int, "y": int}, ...]}
    }
  ],
  "localized_objects": [
    {"name": "object name", "score": 0.0-1.0,
     "bounding_poly": {"vertices": [{"x": int, "y": int}, ...]}}
  ],
  "labels": [{"description": "scene label", "score": 0.0-1.0}],
  "text": "all readable text in the image, line breaks preserved, or empty"
}

Use pixel coordinates. Answer only with JSON, no additional text.
"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        min_request_interval: Optional[float] = None,
    ):
        """Initialize annotator.

        Args:
            api_key: Gemini API key (defaults to PipelineConfig.GEMINI_API_KEY)
            model_name: Model to use (defaults to PipelineConfig.GEMINI_MODEL)
            min_request_interval: Minimum seconds between requests

        Raises:
            ConfigurationError: no API key available
        """
        self.api_key = api_key or PipelineConfig.GEMINI_API_KEY
        if not self.api_key:
            raise ConfigurationError(
                "Gemini API key not provided. Set GEMINI_API_KEY env var or pass api_key parameter."
            )

        genai.configure(api_key=self.api_key)
        self.model_name = model_name or PipelineConfig.GEMINI_MODEL
        self.model = genai.GenerativeModel(model_name=self.model_name)
        self._rate_limiter = RateLimiter(
            PipelineConfig.GEMINI_MIN_REQUEST_INTERVAL
            if min_request_interval is None
            else min_request_interval
        )
        logger.info(f"GeminiVisionAnnotator initialized with model: {self.model_name}")

    def annotate(self, image_bytes: bytes) -> Dict[str, Any]:
        self._rate_limiter.wait()
        try:
            response = self.model.generate_content(
                [self.ANNOTATION_PROMPT, {"mime_type": "image/jpeg", "data": image_bytes}]
            )
            logger.debug(f"Gemini annotation response: {response}")
            return parse_json_response(response.text)
        except Exception as e:
            raise DetectorFailure(f"Gemini annotation failed: {e}") from e
