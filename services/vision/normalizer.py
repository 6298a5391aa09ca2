"""Detection normalizer: raw per-frame annotations -> typed detections.

The raw response is a plain dict produced by a VisionCapability:

    {
        "faces": [{"detection_confidence": 0.93,
                   "joy_likelihood": "VERY_LIKELY",
                   "sorrow_likelihood": "UNLIKELY",
                   "anger_likelihood": "VERY_UNLIKELY",
                   "surprise_likelihood": "UNLIKELY",
                   "bounding_poly": {"vertices": [{"x": 10, "y": 20}, ...]}}],
        "localized_objects": [{"name": "Cup", "score": 0.81,
                               "bounding_poly": {...}}],
        "labels": [{"description": "Library", "score": 0.92}],
        "text": "full OCR text of the frame",
        "error": None,
    }

Age bracket and emotion are derived from the face likelihood signals with a
deliberately approximate rule set (a strong joy signal biases towards CHILD).
This is a heuristic, not a model; keep it that way unless the detector starts
providing real age estimates.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config.pipeline_config import PipelineConfig
from services.media.models import (
    AgeBracket,
    BookInfo,
    BoundingBox,
    Emotion,
    FrameAnalysisResult,
    ObjectInfo,
    PersonInfo,
)

logger = logging.getLogger(__name__)

STRONG_LIKELIHOODS = frozenset({"LIKELY", "VERY_LIKELY"})

# Checked in order; first strong signal wins
EMOTION_SIGNALS: Tuple[Tuple[Emotion, str], ...] = (
    (Emotion.HAPPY, "joy_likelihood"),
    (Emotion.SAD, "sorrow_likelihood"),
    (Emotion.ANGRY, "anger_likelihood"),
    (Emotion.SURPRISED, "surprise_likelihood"),
)

# Checked in order; first category with a matching keyword wins
OBJECT_CATEGORIES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("BOOK", ("book", "magazine", "journal")),
    ("FURNITURE", ("chair", "table", "desk", "shelf")),
    ("BEVERAGE", ("cup", "coffee", "mug", "bottle")),
    ("ELECTRONICS", ("laptop", "computer", "phone", "tablet")),
)
DEFAULT_OBJECT_CATEGORY = "GENERAL"
LABEL_CATEGORY = "LABEL"

BOOK_KEYWORDS = ("isbn", "author", "publisher", "edition", "copyright")
PUBLISHER_KEYWORDS = ("press", "publishing", "publisher")
BOOK_CONFIDENCE = 0.80

_YEAR_PATTERN = re.compile(r"(19|20)\d\d")
_NON_DIGITS = re.compile(r"[^0-9]")


# ============================================================================
# Heuristic classifiers
# ============================================================================


def _is_strong(likelihood: Any) -> bool:
    return str(likelihood or "").upper() in STRONG_LIKELIHOODS


def estimate_age_bracket(face: Dict[str, Any]) -> AgeBracket:
    """Joy likelihood as a proxy for age: children smile more."""
    if _is_strong(face.get("joy_likelihood")):
        return AgeBracket.CHILD
    return AgeBracket.ADULT


def detect_emotion(face: Dict[str, Any]) -> Emotion:
    for emotion, signal in EMOTION_SIGNALS:
        if _is_strong(face.get(signal)):
            return emotion
    return Emotion.NEUTRAL


def categorize_object(name: str) -> str:
    lower = name.lower()
    for category, keywords in OBJECT_CATEGORIES:
        if any(keyword in lower for keyword in keywords):
            return category
    return DEFAULT_OBJECT_CATEGORY


def convert_bounding_box(poly: Optional[Dict[str, Any]]) -> Optional[BoundingBox]:
    """Axis-aligned box around the polygon vertices (missing coords count as 0)."""
    vertices = (poly or {}).get("vertices") or []
    if not vertices:
        return None

    xs = [float(v.get("x", 0) or 0) for v in vertices]
    ys = [float(v.get("y", 0) or 0) for v in vertices]
    return BoundingBox(
        x=min(xs),
        y=min(ys),
        width=max(xs) - min(xs),
        height=max(ys) - min(ys),
    )


# ============================================================================
# Book metadata extraction from OCR text
# ============================================================================


def contains_book_keywords(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in BOOK_KEYWORDS)


def extract_title(text: str) -> Optional[str]:
    """First non-empty line longer than 3 characters."""
    for line in text.split("\n"):
        if line.strip() and len(line) > 3:
            return line.strip()
    return None


def extract_author(text: str) -> Optional[str]:
    """Text after the first case-insensitive "by " up to the line break."""
    index = text.lower().find("by ")
    if index == -1:
        return None
    author = text[index + 3 :].split("\n", 1)[0].strip()
    return author or None


def extract_isbn(text: str) -> Optional[str]:
    for token in text.split():
        digits = _NON_DIGITS.sub("", token)
        if len(digits) in (10, 13):
            return digits
    return None


def extract_publisher(text: str) -> Optional[str]:
    for line in text.split("\n"):
        lower = line.lower()
        if any(keyword in lower for keyword in PUBLISHER_KEYWORDS):
            return line.strip()
    return None


def extract_year(text: str) -> Optional[str]:
    for token in text.split():
        if _YEAR_PATTERN.fullmatch(token):
            return token
    return None


# ============================================================================
# Normalizer
# ============================================================================


class DetectionNormalizer:
    """Maps one frame's raw vision response into people, objects and books."""

    def __init__(self, label_threshold: Optional[float] = None):
        """Initialize normalizer.

        Args:
            label_threshold: Minimum score for a label annotation to become
                an object (defaults to PipelineConfig.LABEL_SCORE_THRESHOLD)
        """
        if label_threshold is None:
            label_threshold = PipelineConfig.LABEL_SCORE_THRESHOLD
        self.label_threshold = label_threshold

    def normalize(
        self,
        raw: Optional[Dict[str, Any]],
        frame_number: int,
        timestamp: float,
    ) -> FrameAnalysisResult:
        """Normalize a raw response.

        Never raises: an empty, malformed or error-carrying response yields an
        empty result for this frame.
        """
        if not isinstance(raw, dict) or not raw:
            return FrameAnalysisResult.empty(frame_number, timestamp)

        if raw.get("error"):
            logger.warning(f"Frame {frame_number}: vision error payload: {raw['error']}")
            return FrameAnalysisResult.empty(frame_number, timestamp)

        try:
            return FrameAnalysisResult(
                frame_number=frame_number,
                timestamp=timestamp,
                people=self._people(raw.get("faces"), frame_number, timestamp),
                objects=self._objects(raw, frame_number, timestamp),
                books=self._books(raw.get("text"), frame_number, timestamp),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Frame {frame_number}: malformed vision response: {e}")
            return FrameAnalysisResult.empty(frame_number, timestamp)

    def _people(
        self, faces: Optional[Iterable[Dict[str, Any]]], frame_number: int, timestamp: float
    ) -> List[PersonInfo]:
        people = []
        for face in faces or []:
            people.append(
                PersonInfo(
                    frame_number=frame_number,
                    timestamp=timestamp,
                    confidence=float(face.get("detection_confidence", 0.0)),
                    age_bracket=estimate_age_bracket(face),
                    emotion=detect_emotion(face),
                    bounding_box=convert_bounding_box(face.get("bounding_poly")),
                )
            )
        return people

    def _objects(
        self, raw: Dict[str, Any], frame_number: int, timestamp: float
    ) -> List[ObjectInfo]:
        objects = []
        for obj in raw.get("localized_objects") or []:
            name = str(obj["name"])
            objects.append(
                ObjectInfo(
                    frame_number=frame_number,
                    timestamp=timestamp,
                    confidence=float(obj.get("score", 0.0)),
                    name=name,
                    category=categorize_object(name),
                    bounding_box=convert_bounding_box(obj.get("bounding_poly")),
                )
            )

        for label in raw.get("labels") or []:
            score = float(label.get("score", 0.0))
            if score > self.label_threshold:
                objects.append(
                    ObjectInfo(
                        frame_number=frame_number,
                        timestamp=timestamp,
                        confidence=score,
                        name=str(label["description"]),
                        category=LABEL_CATEGORY,
                    )
                )
        return objects

    def _books(
        self, text: Optional[str], frame_number: int, timestamp: float
    ) -> List[BookInfo]:
        if not text or not contains_book_keywords(text):
            return []

        return [
            BookInfo(
                frame_number=frame_number,
                timestamp=timestamp,
                confidence=BOOK_CONFIDENCE,
                extracted_text=text,
                title=extract_title(text),
                author=extract_author(text),
                isbn=extract_isbn(text),
                publisher=extract_publisher(text),
                year=extract_year(text),
            )
        ]
