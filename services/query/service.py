"""Query service: matcher plus enrichment, scoring and history."""

import logging
import time
from typing import List, Optional

from services.exceptions import EnrichmentFailure
from services.gemini.text_generator import (
    FALLBACK_SUGGESTIONS,
    TextGenerator,
    classify_by_keywords,
)
from services.media.models import MediaItem, QueryRecord, QueryResponse, QueryType, TimeRange
from services.media.summary import summary_context
from services.query.matcher import QueryMatcher
from services.storage.detection_store import DetectionStore

logger = logging.getLogger(__name__)


class QueryService:
    def __init__(
        self,
        store: DetectionStore,
        text_generator: TextGenerator,
        matcher: Optional[QueryMatcher] = None,
    ):
        self.store = store
        self.text_generator = text_generator
        self.matcher = matcher or QueryMatcher(store)

    def query(
        self, media_item_id: str, query: str, time_range: Optional[TimeRange] = None
    ) -> QueryResponse:
        """Answer a query and record it in the item's history.

        Raises:
            NotFoundError: unknown media item
        """
        started = time.perf_counter()
        item = self.store.get_media_item(media_item_id)
        query_type = self.classify(query)
        result = self.matcher.match(media_item_id, query, time_range)

        enhanced = result.answer
        if result.matches:
            try:
                enhanced = self.text_generator.enhance_answer(
                    query, result.matches[:10], summary_context(item)
                )
            except EnrichmentFailure as e:
                logger.warning(f"Answer enhancement unavailable: {e}")

        confidence = 0.0
        if result.matches:
            confidence = sum(m.confidence for m in result.matches) / len(result.matches)
        elapsed = time.perf_counter() - started

        response = QueryResponse(
            query=query,
            found=bool(result.matches),
            answer=result.answer,
            enhanced_answer=enhanced,
            matches=result.matches,
            total_matches=len(result.matches),
            confidence=confidence,
            response_time=elapsed,
            suggestions=self._suggest(item),
            query_type=query_type,
        )
        self.store.add_query_record(
            QueryRecord(
                media_item_id=media_item_id,
                query=query,
                answer=response.answer,
                enhanced_answer=response.enhanced_answer,
                match_count=response.total_matches,
                response_time=elapsed,
                query_type=query_type,
            )
        )
        logger.info(
            f"Query '{query}' ({query_type.value}) on {media_item_id}: {response.total_matches} matches "
            f"in {elapsed * 1000:.1f}ms"
        )
        return response

    def query_history(self, media_item_id: str, limit: int = 10) -> List[QueryRecord]:
        """Most recent queries first."""
        self.store.get_media_item(media_item_id)
        records = self.store.find_query_records(media_item_id)
        return list(reversed(records))[:limit]

    def suggestions(self, media_item_id: str) -> List[str]:
        return self._suggest(self.store.get_media_item(media_item_id))

    def _suggest(self, item: MediaItem) -> List[str]:
        try:
            suggestions = self.text_generator.suggest(summary_context(item))
        except EnrichmentFailure as e:
            logger.warning(f"Suggestions unavailable: {e}")
            return list(FALLBACK_SUGGESTIONS)
        return suggestions or list(FALLBACK_SUGGESTIONS)

    def classify(self, query: str) -> QueryType:
        try:
            return self.text_generator.classify(query)
        except EnrichmentFailure as e:
            logger.debug(f"Classification fallback for '{query}': {e}")
            return classify_by_keywords(query)
