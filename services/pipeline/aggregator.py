"""Detection aggregator: the single writer of one media item's detections.

Frame processors and the upload pipeline post FrameAnalysisResult events
onto the aggregator's queue. One thread per media item drains the queue,
persists detections and bumps the item's counters, so counters are never
written concurrently. Analysis completions may arrive out of frame order;
nothing here depends on ordering.
"""

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Optional

from services.exceptions import NotFoundError
from services.media.models import (
    DetectedBook,
    DetectedObject,
    DetectedPerson,
    DetectionCounts,
    FrameAnalysisResult,
)
from services.storage.detection_store import DetectionStore

logger = logging.getLogger(__name__)

_STOP = object()


class DetectionAggregator:
    """Owns all detection writes for one media item."""

    def __init__(self, media_item_id: str, store: DetectionStore):
        self.media_item_id = media_item_id
        self.store = store
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = False
        self._close_lock = threading.Lock()
        self._stats = {"frames": 0, "people": 0, "objects": 0, "books": 0, "errors": 0, "dropped": 0}
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"agg-{media_item_id[:8]}"
        )
        self._thread.start()

    def post(self, result: FrameAnalysisResult) -> None:
        """Queue one frame's detections for persistence."""
        if self._closed:
            logger.warning(
                f"Aggregator {self.media_item_id}: dropping frame {result.frame_number} after close"
            )
            return
        self._queue.put(result)

    def post_future(self, future: "Future[FrameAnalysisResult]") -> None:
        """Done-callback for analysis futures."""
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Aggregator {self.media_item_id}: analysis task failed: {error}")
            self._stats["errors"] += 1
            return
        self.post(future.result())

    def wait_idle(self) -> None:
        """Block until every posted event has been persisted."""
        self._queue.join()

    def close(self, timeout: Optional[float] = None) -> None:
        """Persist what is queued, then stop the worker thread."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._thread.join(timeout=timeout)

    def get_stats(self) -> dict:
        return {**self._stats, "media_item_id": self.media_item_id, "pending": self._queue.qsize()}

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._persist(event)
            except NotFoundError:
                # Media item deleted while frames were still in flight
                self._stats["dropped"] += 1
                logger.warning(
                    f"Aggregator {self.media_item_id}: dropping frame {event.frame_number}, media item is gone"
                )
            except Exception:
                # One frame failing to persist must not stop the run
                self._stats["errors"] += 1
                logger.exception(
                    f"Aggregator {self.media_item_id}: failed to persist frame {event.frame_number}"
                )
            finally:
                self._queue.task_done()

    def _persist(self, result: FrameAnalysisResult) -> None:
        for person in result.people:
            self.store.save(DetectedPerson(media_item_id=self.media_item_id, info=person))
        for obj in result.objects:
            self.store.save(DetectedObject(media_item_id=self.media_item_id, info=obj))
        for book in result.books:
            self.store.save(DetectedBook(media_item_id=self.media_item_id, info=book))

        counts = DetectionCounts(
            people=len(result.people), objects=len(result.objects), books=len(result.books)
        )
        self.store.update_counts(self.media_item_id, counts, frames=1)

        self._stats["frames"] += 1
        self._stats["people"] += counts.people
        self._stats["objects"] += counts.objects
        self._stats["books"] += counts.books
        logger.debug(
            f"Aggregator {self.media_item_id}: persisted frame {result.frame_number} "
            f"({counts.people}/{counts.objects}/{counts.books})"
        )
