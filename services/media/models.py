"""Shared data model: media items, stream sessions, detections and queries.

Internal records are dataclasses. Inbound requests (stream start, query)
are pydantic models so they can be validated at the service boundary.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class MediaKind(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    LIVE_STREAM = "LIVE_STREAM"


class ProcessingState(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StreamStatus(str, Enum):
    """Stream lifecycle: WAITING -> ACTIVE -> {ENDED | ERROR}.

    PAUSED may sit between ACTIVE and ACTIVE but is only entered on request.
    """

    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.ENDED, StreamStatus.ERROR)


# Allowed transitions; ENDED and ERROR are terminal
STREAM_TRANSITIONS: Dict[StreamStatus, frozenset] = {
    StreamStatus.WAITING: frozenset(
        {StreamStatus.ACTIVE, StreamStatus.ENDED, StreamStatus.ERROR}
    ),
    StreamStatus.ACTIVE: frozenset(
        {StreamStatus.PAUSED, StreamStatus.ENDED, StreamStatus.ERROR}
    ),
    StreamStatus.PAUSED: frozenset(
        {StreamStatus.ACTIVE, StreamStatus.ENDED, StreamStatus.ERROR}
    ),
    StreamStatus.ENDED: frozenset(),
    StreamStatus.ERROR: frozenset(),
}


class AgeBracket(str, Enum):
    CHILD = "CHILD"
    TEEN = "TEEN"
    ADULT = "ADULT"
    SENIOR = "SENIOR"

    @property
    def estimated_age(self) -> int:
        return {"CHILD": 10, "TEEN": 16, "ADULT": 35, "SENIOR": 65}[self.value]


class Emotion(str, Enum):
    HAPPY = "HAPPY"
    SAD = "SAD"
    ANGRY = "ANGRY"
    SURPRISED = "SURPRISED"
    NEUTRAL = "NEUTRAL"


class MatchType(str, Enum):
    PERSON = "PERSON"
    OBJECT = "OBJECT"
    BOOK = "BOOK"


class QueryType(str, Enum):
    PERSON = "PERSON"
    OBJECT = "OBJECT"
    BOOK = "BOOK"
    GENERAL = "GENERAL"


# ============================================================================
# Normalized per-frame detections
# ============================================================================


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class PersonInfo:
    frame_number: int
    timestamp: float
    confidence: float
    age_bracket: AgeBracket
    emotion: Emotion
    bounding_box: Optional[BoundingBox] = None
    gender: str = "UNKNOWN"

    @property
    def estimated_age(self) -> int:
        return self.age_bracket.estimated_age


@dataclass(frozen=True)
class ObjectInfo:
    frame_number: int
    timestamp: float
    confidence: float
    name: str
    category: str
    bounding_box: Optional[BoundingBox] = None


@dataclass(frozen=True)
class BookInfo:
    frame_number: int
    timestamp: float
    confidence: float
    extracted_text: str
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    year: Optional[str] = None
    ai_summary: Optional[str] = None


@dataclass
class FrameAnalysisResult:
    """Everything the normalizer produced for one frame."""

    frame_number: int
    timestamp: float
    people: List[PersonInfo] = field(default_factory=list)
    objects: List[ObjectInfo] = field(default_factory=list)
    books: List[BookInfo] = field(default_factory=list)

    @classmethod
    def empty(cls, frame_number: int, timestamp: float) -> "FrameAnalysisResult":
        return cls(frame_number=frame_number, timestamp=timestamp)

    def is_empty(self) -> bool:
        return not (self.people or self.objects or self.books)


# ============================================================================
# Persisted detections
# ============================================================================


@dataclass(frozen=True)
class DetectedPerson:
    media_item_id: str
    info: PersonInfo
    detected_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DetectedObject:
    media_item_id: str
    info: ObjectInfo
    detected_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class DetectedBook:
    media_item_id: str
    info: BookInfo
    detected_at: float = field(default_factory=time.time)


@dataclass
class DetectionSet:
    """All persisted detections of one media item."""

    people: List[DetectedPerson] = field(default_factory=list)
    objects: List[DetectedObject] = field(default_factory=list)
    books: List[DetectedBook] = field(default_factory=list)


@dataclass(frozen=True)
class DetectionCounts:
    people: int = 0
    objects: int = 0
    books: int = 0


# ============================================================================
# Media items and stream sessions
# ============================================================================


@dataclass
class MediaItem:
    id: str
    name: str
    kind: MediaKind
    state: ProcessingState = ProcessingState.PENDING
    file_path: Optional[str] = None
    stream_url: Optional[str] = None
    playback_url: Optional[str] = None
    is_live: bool = False
    people_count: int = 0
    objects_count: int = 0
    books_count: int = 0
    frames_processed: int = 0
    duration: Optional[float] = None
    frame_rate: Optional[float] = None
    ai_summary: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StreamSession:
    stream_key: str
    media_item_id: str
    ingest_url: str
    playback_url: str
    status: StreamStatus = StreamStatus.WAITING
    viewer_count: int = 0
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None

    def snapshot(self) -> "StreamSession":
        """Detached copy safe to hand to readers."""
        return StreamSession(**asdict(self))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MediaAnalysisResult:
    """A media item with everything detected in it."""

    media_item: MediaItem
    people: List[PersonInfo] = field(default_factory=list)
    objects: List[ObjectInfo] = field(default_factory=list)
    books: List[BookInfo] = field(default_factory=list)

    def statistics(self) -> Dict[str, Any]:
        ages: Dict[str, int] = {}
        emotions: Dict[str, int] = {}
        for person in self.people:
            ages[person.age_bracket.value] = ages.get(person.age_bracket.value, 0) + 1
            emotions[person.emotion.value] = emotions.get(person.emotion.value, 0) + 1
        categories: Dict[str, int] = {}
        for obj in self.objects:
            categories[obj.category] = categories.get(obj.category, 0) + 1
        return {
            "total_people": len(self.people),
            "total_objects": len(self.objects),
            "total_books": len(self.books),
            "age_distribution": ages,
            "emotion_distribution": emotions,
            "object_categories": categories,
        }


# ============================================================================
# Queries
# ============================================================================


@dataclass(frozen=True)
class QueryMatch:
    type: MatchType
    description: str
    frame_number: int
    timestamp: float
    confidence: float

    @property
    def dedup_key(self) -> tuple:
        return (self.type, self.description, self.frame_number)


@dataclass
class MatchResult:
    matches: List[QueryMatch]
    answer: str


@dataclass
class QueryResponse:
    query: str
    found: bool
    answer: str
    enhanced_answer: str
    matches: List[QueryMatch]
    total_matches: int
    confidence: float
    response_time: float
    suggestions: List[str] = field(default_factory=list)
    query_type: QueryType = QueryType.GENERAL


@dataclass(frozen=True)
class QueryRecord:
    media_item_id: str
    query: str
    answer: str
    enhanced_answer: str
    match_count: int
    response_time: float
    query_type: QueryType = QueryType.GENERAL
    created_at: float = field(default_factory=time.time)


# ============================================================================
# Dashboard
# ============================================================================


@dataclass(frozen=True)
class RecentActivity:
    kind: str  # media kind value, or "QUERY"
    description: str
    timestamp: float
    media_item_id: str


@dataclass(frozen=True)
class TopQuery:
    query: str
    count: int
    avg_response_time: float


@dataclass
class DashboardStats:
    """Library-wide totals plus recent activity."""

    total_media_items: int
    total_people: int
    total_objects: int
    total_books: int
    total_queries: int
    active_streams: int
    total_viewers: int
    total_stream_duration: float
    avg_viewers_per_stream: float
    object_categories: Dict[str, int] = field(default_factory=dict)
    top_queries: List[TopQuery] = field(default_factory=list)
    recent_activity: List[RecentActivity] = field(default_factory=list)


# ============================================================================
# Inbound requests
# ============================================================================


class StreamConfig(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = Field(default=None, gt=0)
    bitrate: Optional[int] = None
    enable_analysis: bool = True
    analysis_interval: Optional[int] = Field(default=None, ge=1)


class StreamRequest(BaseModel):
    stream_name: str = Field(min_length=1)
    description: Optional[str] = None
    config: Optional[StreamConfig] = None


class TimeRange(BaseModel):
    start: float = Field(ge=0)
    end: float = Field(ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.end < self.start:
            raise ValueError("time range end must not precede start")
        return self

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp <= self.end


class QueryRequest(BaseModel):
    media_item_id: str
    query: str = Field(min_length=1)
    time_range: Optional[TimeRange] = None
