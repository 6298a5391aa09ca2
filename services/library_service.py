"""LibraryVisionService: the single entry point used by an outer web layer.

Wires the store, vision capability, text generator, stream manager, upload
pipeline and query service together. Components can be injected for tests;
otherwise they are built from PipelineConfig.
"""

import logging
import threading
from typing import List, Optional

from config.logging_config import configure_logging
from config.pipeline_config import PipelineConfig
from services.gemini.text_generator import TextGenerator, create_text_generator
from services.media.dashboard import build_dashboard_stats
from services.media.models import (
    DashboardStats,
    MediaAnalysisResult,
    MediaItem,
    MediaKind,
    ProcessingState,
    QueryRecord,
    QueryRequest,
    QueryResponse,
    StreamRequest,
    StreamSession,
    TimeRange,
)
from services.media.upload_pipeline import MediaUploadPipeline
from services.query.service import QueryService
from services.storage.detection_store import DetectionStore, InMemoryDetectionStore
from services.streaming.manager import SourceFactory, StreamLifecycleManager
from services.vision.analyzer import FrameAnalyzer
from services.vision.annotator import GeminiVisionAnnotator, VisionCapability

logger = logging.getLogger(__name__)


class LibraryVisionService:
    def __init__(
        self,
        store: Optional[DetectionStore] = None,
        vision: Optional[VisionCapability] = None,
        text_generator: Optional[TextGenerator] = None,
        source_factory: Optional[SourceFactory] = None,
        sampling_interval: Optional[int] = None,
    ):
        """Initialize service.

        Args:
            store: Detection store (in-memory if omitted)
            vision: Vision capability (Gemini annotator if omitted)
            text_generator: Text generator (Gemini or null, from config)
            source_factory: Builds live ingest sources
            sampling_interval: Every-Nth-frame interval for streams and videos

        Raises:
            ConfigurationError: no vision capability given and no Gemini key configured
        """
        self.store = store or InMemoryDetectionStore()
        self.text_generator = text_generator or create_text_generator()
        self.analyzer = FrameAnalyzer(
            vision or GeminiVisionAnnotator(),
            text_generator=self.text_generator,
            summarize_books=PipelineConfig.ENABLE_BOOK_SUMMARIES,
        )
        self.streams = StreamLifecycleManager(
            self.store,
            self.analyzer,
            self.text_generator,
            source_factory=source_factory,
            sampling_interval=sampling_interval,
        )
        self.uploads = MediaUploadPipeline(
            self.store,
            self.analyzer,
            self.text_generator,
            sampling_interval=sampling_interval,
        )
        self.queries = QueryService(self.store, self.text_generator)

    # ---- live streams ------------------------------------------------------

    def start_stream(self, request: StreamRequest) -> StreamSession:
        return self.streams.start(request)

    def stop_stream(self, stream_key: str) -> StreamSession:
        return self.streams.stop(stream_key)

    def stream_status(self, stream_key: str) -> StreamSession:
        return self.streams.status(stream_key)

    def list_active_streams(self) -> List[StreamSession]:
        return self.streams.list_active()

    def process_stream_url(self, stream_url: str, media_item_id: str) -> StreamSession:
        return self.streams.process_stream_url(stream_url, media_item_id)

    # ---- files -------------------------------------------------------------

    def upload_and_process(
        self, file_path: str, name: Optional[str] = None, content_type: Optional[str] = None
    ) -> str:
        return self.uploads.upload_and_process(file_path, name=name, content_type=content_type)

    def analysis_result(self, media_item_id: str) -> MediaAnalysisResult:
        """Media item plus every detection recorded for it."""
        item = self.store.get_media_item(media_item_id)
        detections = self.store.find_by_media_item(media_item_id)
        return MediaAnalysisResult(
            media_item=item,
            people=[d.info for d in detections.people],
            objects=[d.info for d in detections.objects],
            books=[d.info for d in detections.books],
        )

    def list_media_items(
        self, kind: Optional[MediaKind] = None, state: Optional[ProcessingState] = None
    ) -> List[MediaItem]:
        return self.store.list_media_items(kind=kind, state=state)

    def dashboard_stats(self) -> DashboardStats:
        return build_dashboard_stats(self.store)

    def delete_media_item(self, media_item_id: str) -> None:
        self.streams.stop_media_item(media_item_id)
        self.store.delete_media_item(media_item_id)

    # ---- queries -----------------------------------------------------------

    def query(
        self, media_item_id: str, query: str, time_range: Optional[TimeRange] = None
    ) -> QueryResponse:
        return self.queries.query(media_item_id, query, time_range)

    def handle_query(self, request: QueryRequest) -> QueryResponse:
        """Answer a validated query request."""
        return self.queries.query(request.media_item_id, request.query, request.time_range)

    def query_history(self, media_item_id: str, limit: int = 10) -> List[QueryRecord]:
        return self.queries.query_history(media_item_id, limit)

    def query_suggestions(self, media_item_id: str) -> List[str]:
        return self.queries.suggestions(media_item_id)

    def shutdown(self) -> None:
        self.streams.shutdown()
        self.uploads.shutdown()
        logger.info("Library vision service shut down")


_service: Optional[LibraryVisionService] = None
_service_lock = threading.Lock()


def get_library_service() -> LibraryVisionService:
    """Process-wide service built from PipelineConfig."""
    global _service
    with _service_lock:
        if _service is None:
            configure_logging(PipelineConfig.LOG_LEVEL)
            PipelineConfig.log_summary()
            _service = LibraryVisionService()
        return _service
