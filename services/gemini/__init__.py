"""Gemini text enrichment services."""

from services.gemini.text_generator import (
    FALLBACK_SUGGESTIONS,
    GeminiTextGenerator,
    NullTextGenerator,
    TextGenerator,
    classify_by_keywords,
    create_text_generator,
)

__all__ = [
    "FALLBACK_SUGGESTIONS",
    "GeminiTextGenerator",
    "NullTextGenerator",
    "TextGenerator",
    "classify_by_keywords",
    "create_text_generator",
]
