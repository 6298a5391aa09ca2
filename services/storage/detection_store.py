"""Persistence collaborator for media items, sessions, detections and queries.

The pipeline only talks to the DetectionStore interface. The in-memory
implementation is thread-safe and is what the service uses unless a real
database-backed store is plugged in.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from typing import Dict, List, Optional, Union

from services.exceptions import NotFoundError
from services.media.models import (
    DetectedBook,
    DetectedObject,
    DetectedPerson,
    DetectionCounts,
    DetectionSet,
    MediaItem,
    MediaKind,
    ProcessingState,
    QueryRecord,
    StreamSession,
    StreamStatus,
)

logger = logging.getLogger(__name__)

Detection = Union[DetectedPerson, DetectedObject, DetectedBook]


class DetectionStore(ABC):
    """Narrow persistence interface used by the pipeline."""

    # ---- detections --------------------------------------------------------

    @abstractmethod
    def save(self, detection: Detection) -> None:
        """Persist one detection.

        Raises:
            NotFoundError: the media item does not exist (or was deleted)
        """
        pass

    @abstractmethod
    def find_by_media_item(self, media_item_id: str) -> DetectionSet:
        pass

    @abstractmethod
    def update_counts(
        self, media_item_id: str, counts: DetectionCounts, frames: int = 1
    ) -> MediaItem:
        """Add counts and processed frames to a media item's counters."""
        pass

    # ---- media items -------------------------------------------------------

    @abstractmethod
    def add_media_item(self, item: MediaItem) -> MediaItem:
        pass

    @abstractmethod
    def get_media_item(self, media_item_id: str) -> MediaItem:
        """Raises NotFoundError for unknown ids."""
        pass

    @abstractmethod
    def update_media_item(self, media_item_id: str, **changes) -> MediaItem:
        pass

    @abstractmethod
    def delete_media_item(self, media_item_id: str) -> None:
        """Delete the item and everything attached to it."""
        pass

    @abstractmethod
    def list_media_items(
        self, kind: Optional[MediaKind] = None, state: Optional[ProcessingState] = None
    ) -> List[MediaItem]:
        """Items matching every given filter, newest first."""
        pass

    # ---- stream sessions ---------------------------------------------------

    @abstractmethod
    def save_session(self, session: StreamSession) -> None:
        pass

    @abstractmethod
    def get_session(self, stream_key: str) -> StreamSession:
        """Raises NotFoundError for unknown keys."""
        pass

    @abstractmethod
    def find_sessions_by_status(self, status: Optional[StreamStatus] = None) -> List[StreamSession]:
        """Sessions in one status, or every session when status is None."""
        pass

    # ---- query audit log ---------------------------------------------------

    @abstractmethod
    def add_query_record(self, record: QueryRecord) -> None:
        pass

    @abstractmethod
    def find_query_records(self, media_item_id: Optional[str] = None) -> List[QueryRecord]:
        """Records of one media item (or all items), oldest first."""
        pass


class InMemoryDetectionStore(DetectionStore):
    """Thread-safe in-memory store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._items: Dict[str, MediaItem] = {}
        self._detections: Dict[str, DetectionSet] = defaultdict(DetectionSet)
        self._sessions: Dict[str, StreamSession] = {}
        self._queries: Dict[str, List[QueryRecord]] = defaultdict(list)

    def save(self, detection: Detection) -> None:
        with self._lock:
            self._require_item(detection.media_item_id)
            detections = self._detections[detection.media_item_id]
            if isinstance(detection, DetectedPerson):
                detections.people.append(detection)
            elif isinstance(detection, DetectedObject):
                detections.objects.append(detection)
            elif isinstance(detection, DetectedBook):
                detections.books.append(detection)
            else:
                raise TypeError(f"Unsupported detection type: {type(detection).__name__}")

    def find_by_media_item(self, media_item_id: str) -> DetectionSet:
        with self._lock:
            detections = self._detections.get(media_item_id)
            if detections is None:
                return DetectionSet()
            return DetectionSet(
                people=list(detections.people),
                objects=list(detections.objects),
                books=list(detections.books),
            )

    def update_counts(
        self, media_item_id: str, counts: DetectionCounts, frames: int = 1
    ) -> MediaItem:
        with self._lock:
            item = self._require_item(media_item_id)
            item.people_count += counts.people
            item.objects_count += counts.objects
            item.books_count += counts.books
            item.frames_processed += frames
            return replace(item)

    def add_media_item(self, item: MediaItem) -> MediaItem:
        with self._lock:
            self._items[item.id] = item
            return replace(item)

    def get_media_item(self, media_item_id: str) -> MediaItem:
        with self._lock:
            return replace(self._require_item(media_item_id))

    def update_media_item(self, media_item_id: str, **changes) -> MediaItem:
        with self._lock:
            item = self._require_item(media_item_id)
            for name, value in changes.items():
                if not hasattr(item, name):
                    raise AttributeError(f"MediaItem has no field '{name}'")
                setattr(item, name, value)
            return replace(item)

    def delete_media_item(self, media_item_id: str) -> None:
        with self._lock:
            self._require_item(media_item_id)
            del self._items[media_item_id]
            self._detections.pop(media_item_id, None)
            self._queries.pop(media_item_id, None)
            for key in [k for k, s in self._sessions.items() if s.media_item_id == media_item_id]:
                del self._sessions[key]
        logger.info(f"Deleted media item {media_item_id} and its detections")

    def list_media_items(
        self, kind: Optional[MediaKind] = None, state: Optional[ProcessingState] = None
    ) -> List[MediaItem]:
        with self._lock:
            items = [
                replace(item)
                for item in self._items.values()
                if (kind is None or item.kind == kind) and (state is None or item.state == state)
            ]
        return sorted(items, key=lambda item: item.created_at, reverse=True)

    def save_session(self, session: StreamSession) -> None:
        with self._lock:
            self._sessions[session.stream_key] = session.snapshot()

    def get_session(self, stream_key: str) -> StreamSession:
        with self._lock:
            session = self._sessions.get(stream_key)
            if session is None:
                raise NotFoundError(f"Stream not found: {stream_key}")
            return session.snapshot()

    def find_sessions_by_status(self, status: Optional[StreamStatus] = None) -> List[StreamSession]:
        with self._lock:
            return [
                s.snapshot() for s in self._sessions.values() if status is None or s.status == status
            ]

    def add_query_record(self, record: QueryRecord) -> None:
        with self._lock:
            self._queries[record.media_item_id].append(record)

    def find_query_records(self, media_item_id: Optional[str] = None) -> List[QueryRecord]:
        with self._lock:
            if media_item_id is not None:
                return list(self._queries.get(media_item_id, []))
            records = [r for item_records in self._queries.values() for r in item_records]
        return sorted(records, key=lambda r: r.created_at)

    def _require_item(self, media_item_id: str) -> MediaItem:
        item: Optional[MediaItem] = self._items.get(media_item_id)
        if item is None:
            raise NotFoundError(f"Media item not found: {media_item_id}")
        return item
