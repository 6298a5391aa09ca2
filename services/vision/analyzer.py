"""Frame analyzer: vision capability + normalizer for one frame.

A failing capability call never escapes: the frame is logged and treated as
having no detections so the surrounding stream or file run continues.
"""

import logging
from dataclasses import replace
from typing import Optional

from services.exceptions import DetectorFailure, EnrichmentFailure
from services.media.models import FrameAnalysisResult
from services.vision.annotator import VisionCapability
from services.vision.normalizer import DetectionNormalizer

logger = logging.getLogger(__name__)


class FrameAnalyzer:
    """Runs one encoded frame through the vision capability and normalizer."""

    def __init__(
        self,
        vision: VisionCapability,
        normalizer: Optional[DetectionNormalizer] = None,
        text_generator=None,
        summarize_books: bool = False,
    ):
        """Initialize analyzer.

        Args:
            vision: Vision capability used for annotation
            normalizer: Normalizer (a default one is created if omitted)
            text_generator: Optional TextGenerator for book summaries
            summarize_books: Ask the text generator to summarize each book
        """
        self.vision = vision
        self.normalizer = normalizer or DetectionNormalizer()
        self.text_generator = text_generator
        self.summarize_books = summarize_books and text_generator is not None

    def analyze_frame(
        self, image_bytes: bytes, frame_number: int, timestamp: float
    ) -> FrameAnalysisResult:
        """Analyze one frame.

        Returns:
            FrameAnalysisResult (empty when the capability failed)
        """
        try:
            raw = self.vision.annotate(image_bytes)
        except DetectorFailure as e:
            logger.error(f"Frame {frame_number} analysis failed: {e}")
            return FrameAnalysisResult.empty(frame_number, timestamp)
        except Exception:
            logger.exception(f"Frame {frame_number} analysis raised unexpectedly")
            return FrameAnalysisResult.empty(frame_number, timestamp)

        result = self.normalizer.normalize(raw, frame_number, timestamp)
        if self.summarize_books and result.books:
            result.books = [self._with_summary(book) for book in result.books]

        logger.info(
            f"Frame {frame_number} analyzed: {len(result.people)} people, "
            f"{len(result.objects)} objects, {len(result.books)} books"
        )
        return result

    def _with_summary(self, book):
        try:
            summary = self.text_generator.summarize_book(
                book.title, book.author, book.extracted_text, book.isbn
            )
        except EnrichmentFailure as e:
            logger.warning(f"Book summary unavailable: {e}")
            return book
        return replace(book, ai_summary=summary)
