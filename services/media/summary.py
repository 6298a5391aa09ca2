"""Best-effort AI summary for a finished media item."""

import logging
from typing import Any, Dict, Optional

from services.exceptions import EnrichmentFailure
from services.gemini.text_generator import TextGenerator
from services.media.models import MediaItem
from services.storage.detection_store import DetectionStore

logger = logging.getLogger(__name__)


def summary_context(item: MediaItem) -> Dict[str, Any]:
    return {
        "name": item.name,
        "kind": item.kind.value,
        "people": item.people_count,
        "objects": item.objects_count,
        "books": item.books_count,
        "duration": item.duration,
    }


def fallback_summary(item: MediaItem) -> str:
    return (
        f"Detected {item.people_count} people, {item.objects_count} objects, "
        f"and {item.books_count} books in {item.name}."
    )


def attach_summary(
    store: DetectionStore, text_generator: TextGenerator, media_item_id: str
) -> Optional[str]:
    """Generate and store a summary; on failure store the counts-only text."""
    item = store.get_media_item(media_item_id)
    try:
        summary = text_generator.summarize(summary_context(item))
    except EnrichmentFailure as e:
        logger.warning(f"Summary unavailable for {media_item_id}: {e}")
        summary = fallback_summary(item)
    store.update_media_item(media_item_id, ai_summary=summary)
    return summary
