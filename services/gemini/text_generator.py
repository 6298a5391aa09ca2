"""Gemini text generation for summaries, query classification and suggestions.

Every call here is a best-effort enrichment. Implementations raise
EnrichmentFailure; callers log it and fall back to deterministic text.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

import google.generativeai as genai

from config.pipeline_config import PipelineConfig
from services.exceptions import ConfigurationError, EnrichmentFailure
from services.media.models import QueryMatch, QueryType
from services.vision.annotator import RateLimiter

logger = logging.getLogger(__name__)

BOOK_SUMMARY_CACHE_SIZE = 256

FALLBACK_SUGGESTIONS = [
    "How many people are in the library?",
    "What books are visible?",
    "Are there any children present?",
]

# Keyword fallback for classify(); checked in order
QUERY_TYPE_KEYWORDS = (
    (QueryType.BOOK, ("book", "reading", "author", "isbn")),
    (QueryType.PERSON, ("person", "people", "child", "kid", "adult", "senior", "happy", "sad", "angry", "how many")),
    (QueryType.OBJECT, ("object", "cup", "coffee", "laptop", "chair", "table", "drinking")),
)


def classify_by_keywords(query: str) -> QueryType:
    lower = query.lower()
    for query_type, keywords in QUERY_TYPE_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return query_type
    return QueryType.GENERAL


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "N/A"
    total = int(seconds)
    return f"{total // 60}:{total % 60:02d}"


class TextGenerator(ABC):
    """Abstract interface for text enrichment."""

    @abstractmethod
    def summarize(self, context: Dict[str, Any]) -> str:
        """Summarize a media item's analysis (name, kind, counts, duration)."""
        pass

    @abstractmethod
    def classify(self, query: str) -> QueryType:
        pass

    @abstractmethod
    def suggest(self, context: Dict[str, Any]) -> List[str]:
        pass

    @abstractmethod
    def enhance_answer(
        self, query: str, matches: Sequence[QueryMatch], context: Dict[str, Any]
    ) -> str:
        pass

    @abstractmethod
    def summarize_book(
        self,
        title: Optional[str],
        author: Optional[str],
        extracted_text: str,
        isbn: Optional[str],
    ) -> str:
        pass


class NullTextGenerator(TextGenerator):
    """Used when no text model is configured; every call falls back."""

    def _unavailable(self, *args, **kwargs):
        raise EnrichmentFailure("No text generator configured")

    summarize = _unavailable
    classify = _unavailable
    suggest = _unavailable
    enhance_answer = _unavailable
    summarize_book = _unavailable


class GeminiTextGenerator(TextGenerator):
    """Gemini-backed text generator."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        min_request_interval: Optional[float] = None,
        book_cache_size: int = BOOK_SUMMARY_CACHE_SIZE,
    ):
        """Initialize text generator.

        Args:
            api_key: Gemini API key (defaults to PipelineConfig.GEMINI_API_KEY)
            model_name: Model to use (defaults to PipelineConfig.GEMINI_MODEL)
            min_request_interval: Minimum seconds between requests
            book_cache_size: Book summaries kept, keyed by ISBN

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
        # isbn -> summary, least recently used first
        self._book_summaries: "OrderedDict[str, str]" = OrderedDict()
        self._book_summaries_lock = threading.Lock()
        self.book_cache_size = book_cache_size
        logger.info(f"GeminiTextGenerator initialized with model: {self.model_name}")

    def _generate(self, prompt: str, role: str) -> str:
        self._rate_limiter.wait()
        try:
            response = self.model.generate_content(f"{role}\n\n{prompt}")
            text = response.text.strip()
        except Exception as e:
            raise EnrichmentFailure(f"Gemini text generation failed: {e}") from e
        if not text:
            raise EnrichmentFailure("Gemini returned an empty answer")
        return text

    def summarize(self, context: Dict[str, Any]) -> str:
        prompt = (
            "Generate a comprehensive summary of this library media analysis:\n"
            f"- File: {context.get('name')} ({context.get('kind')})\n"
            f"- People detected: {context.get('people', 0)}\n"
            f"- Objects detected: {context.get('objects', 0)}\n"
            f"- Books detected: {context.get('books', 0)}\n"
            f"- Duration: {format_duration(context.get('duration'))}\n\n"
            "Provide insights about the library activity, notable observations, and key highlights."
        )
        return self._generate(prompt, "You are an expert media analyst.")

    def classify(self, query: str) -> QueryType:
        prompt = (
            "Classify this query about library footage as exactly one word out of "
            f"PERSON, OBJECT, BOOK, GENERAL.\nQuery: {query}"
        )
        answer = self._generate(prompt, "You are a query classifier.").upper()
        for query_type in QueryType:
            if query_type.value in answer:
                return query_type
        raise EnrichmentFailure(f"Unrecognized classification: {answer!r}")

    def suggest(self, context: Dict[str, Any]) -> List[str]:
        prompt = (
            "Based on this media analysis, suggest 5 relevant questions a user might ask:\n"
            f"- {context.get('people', 0)} people detected\n"
            f"- {context.get('objects', 0)} objects detected\n"
            f"- {context.get('books', 0)} books detected\n"
            "Format each suggestion as a numbered list."
        )
        response = self._generate(prompt, "You are a helpful assistant suggesting relevant questions.")
        suggestions = [
            re.sub(r"^[0-9]+\.\s*", "", line.strip())
            for line in response.split("\n")
            if line.strip()
        ]
        return suggestions[:5]

    def enhance_answer(
        self, query: str, matches: Sequence[QueryMatch], context: Dict[str, Any]
    ) -> str:
        lines = [f"User query: {query}", "", "Search results:"]
        for match in matches:
            lines.append(
                f"- {match.type.value}: {match.description} "
                f"({match.confidence * 100:.0f}% confidence) at {match.timestamp:.2f}s"
            )
        lines.append("")
        lines.append(
            f"Media context: Total people: {context.get('people', 0)}, "
            f"Total objects: {context.get('objects', 0)}, Total books: {context.get('books', 0)}"
        )
        lines.append(
            "Provide a natural, conversational answer to the user's query "
            "based on the search results and context."
        )
        return self._generate(
            "\n".join(lines),
            "You are an intelligent library assistant helping users understand their media content.",
        )

    def summarize_book(
        self,
        title: Optional[str],
        author: Optional[str],
        extracted_text: str,
        isbn: Optional[str],
    ) -> str:
        if isbn:
            with self._book_summaries_lock:
                if isbn in self._book_summaries:
                    self._book_summaries.move_to_end(isbn)
                    return self._book_summaries[isbn]

        excerpt = extracted_text if len(extracted_text) <= 1000 else extracted_text[:1000] + "..."
        prompt = (
            f"Provide a concise summary of the book '{title or 'Unknown Title'}' "
            f"by {author or 'Unknown Author'}. Extracted text: {excerpt}"
        )
        summary = self._generate(prompt, "You are a knowledgeable librarian.")
        if isbn:
            with self._book_summaries_lock:
                self._book_summaries[isbn] = summary
                self._book_summaries.move_to_end(isbn)
                while len(self._book_summaries) > self.book_cache_size:
                    self._book_summaries.popitem(last=False)
        return summary


def create_text_generator(api_key: Optional[str] = None) -> TextGenerator:
    """Gemini generator when a key is configured, otherwise the null one."""
    key = api_key or PipelineConfig.GEMINI_API_KEY
    if not key:
        logger.warning("GEMINI_API_KEY not set, text enrichment disabled")
        return NullTextGenerator()
    return GeminiTextGenerator(api_key=key)
