"""Library-wide statistics for the dashboard view."""

import logging
import time
from collections import Counter, defaultdict
from typing import Dict, List

from services.media.models import DashboardStats, RecentActivity, StreamStatus, TopQuery
from services.storage.detection_store import DetectionStore

logger = logging.getLogger(__name__)

RECENT_MEDIA_LIMIT = 10
RECENT_QUERY_LIMIT = 10
RECENT_QUERY_WINDOW = 24 * 3600
RECENT_ACTIVITY_LIMIT = 20
TOP_QUERY_LIMIT = 10


def build_dashboard_stats(store: DetectionStore) -> DashboardStats:
    items = store.list_media_items()
    records = store.find_query_records()
    sessions = store.find_sessions_by_status()

    categories: Counter = Counter()
    totals = {"people": 0, "objects": 0, "books": 0}
    for item in items:
        detections = store.find_by_media_item(item.id)
        totals["people"] += len(detections.people)
        totals["objects"] += len(detections.objects)
        totals["books"] += len(detections.books)
        categories.update(d.info.category for d in detections.objects)

    active = [s for s in sessions if s.status == StreamStatus.ACTIVE]
    viewers = sum(s.viewer_count for s in active)

    stats = DashboardStats(
        total_media_items=len(items),
        total_people=totals["people"],
        total_objects=totals["objects"],
        total_books=totals["books"],
        total_queries=len(records),
        active_streams=len(active),
        total_viewers=viewers,
        total_stream_duration=sum(s.duration_seconds or 0.0 for s in sessions),
        avg_viewers_per_stream=viewers / len(active) if active else 0.0,
        object_categories=dict(categories),
        top_queries=top_queries(records),
        recent_activity=recent_activity(items, records),
    )
    logger.info(
        f"Dashboard: {stats.total_media_items} media items, {stats.total_queries} queries, "
        f"{stats.active_streams} active streams"
    )
    return stats


def top_queries(records, limit: int = TOP_QUERY_LIMIT) -> List[TopQuery]:
    """Most frequent query texts; ties broken alphabetically."""
    times: Dict[str, List[float]] = defaultdict(list)
    for record in records:
        times[record.query].append(record.response_time)
    ranked = sorted(times.items(), key=lambda kv: (-len(kv[1]), kv[0]))
    return [
        TopQuery(query=query, count=len(samples), avg_response_time=sum(samples) / len(samples))
        for query, samples in ranked[:limit]
    ]


def recent_activity(items, records, now=None) -> List[RecentActivity]:
    """Latest uploads and last-day queries, newest first."""
    now = time.time() if now is None else now
    activities = [
        RecentActivity(
            kind=item.kind.value,
            description=f"Uploaded: {item.name}",
            timestamp=item.created_at,
            media_item_id=item.id,
        )
        for item in sorted(items, key=lambda i: i.created_at, reverse=True)[:RECENT_MEDIA_LIMIT]
    ]
    recent = [r for r in records if now - r.created_at <= RECENT_QUERY_WINDOW]
    activities.extend(
        RecentActivity(
            kind="QUERY",
            description=f"Query: {record.query}",
            timestamp=record.created_at,
            media_item_id=record.media_item_id,
        )
        for record in sorted(recent, key=lambda r: r.created_at, reverse=True)[:RECENT_QUERY_LIMIT]
    )
    activities.sort(key=lambda a: a.timestamp, reverse=True)
    return activities[:RECENT_ACTIVITY_LIMIT]
