"""Keyword query matcher over persisted detections.

Rules are substring tests against the lower-cased query. Each rule that
fires contributes matches; the union is time-filtered, deduplicated on
(type, description, frame) and ranked by confidence, then by frame.
The answer text is fully determined by the ranked matches.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Set

from services.media.models import (
    AgeBracket,
    BookInfo,
    DetectionSet,
    Emotion,
    MatchResult,
    MatchType,
    ObjectInfo,
    PersonInfo,
    QueryMatch,
    TimeRange,
)
from services.storage.detection_store import DetectionStore

logger = logging.getLogger(__name__)

AGE_KEYWORDS: Dict[str, AgeBracket] = {
    "child": AgeBracket.CHILD,
    "kid": AgeBracket.CHILD,
    "adult": AgeBracket.ADULT,
    "senior": AgeBracket.SENIOR,
}

EMOTION_KEYWORDS: Dict[str, Emotion] = {
    "happy": Emotion.HAPPY,
    "smiling": Emotion.HAPPY,
    "sad": Emotion.SAD,
    "angry": Emotion.ANGRY,
}

PERSON_KEYWORDS = ("person", "people", "how many")
BOOK_KEYWORDS = ("book", "reading")
DRINKING_KEYWORDS = ("drinking", "coffee", "cup", "beverage")
BEVERAGE_OBJECT_KEYWORDS = ("cup", "coffee", "mug", "bottle", "beverage", "drink")

STOP_WORDS = frozenset(
    {
        "is", "are", "the", "a", "an", "in", "on", "at", "any", "anyone", "there",
        "what", "when", "where", "how", "many", "who", "which", "with", "and", "or",
        "of", "for", "to", "show", "me", "find", "all", "was", "were", "does", "do",
        "did", "see", "visible", "present", "some", "this", "that", "have", "has",
    }
)

RULE_WORDS = frozenset(
    word
    for phrase in (
        *AGE_KEYWORDS,
        *EMOTION_KEYWORDS,
        *PERSON_KEYWORDS,
        *BOOK_KEYWORDS,
        *DRINKING_KEYWORDS,
    )
    for word in phrase.split()
)

_TOKEN_PATTERN = re.compile(r"[^\w'-]+")


def extract_keywords(query: str) -> List[str]:
    """Residual search tokens: stop words and rule keywords removed, length > 2."""
    tokens = []
    for raw in query.lower().split():
        token = _TOKEN_PATTERN.sub("", raw)
        if len(token) > 2 and token not in STOP_WORDS and token not in RULE_WORDS:
            tokens.append(token)
    return tokens


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def build_answer(matches: List[QueryMatch]) -> str:
    """Deterministic answer text for a ranked match list."""
    if not matches:
        return "No matches found for your query."

    counts = {match_type: 0 for match_type in MatchType}
    for match in matches:
        counts[match.type] += 1

    parts = []
    if counts[MatchType.PERSON]:
        parts.append(f"{counts[MatchType.PERSON]} person(s)")
    if counts[MatchType.OBJECT]:
        parts.append(f"{counts[MatchType.OBJECT]} object(s)")
    if counts[MatchType.BOOK]:
        parts.append(f"{counts[MatchType.BOOK]} book(s)")

    return (
        f"Found {len(matches)} match(es). {', '.join(parts)}. "
        f"First occurrence at {matches[0].timestamp:.2f} seconds."
    )


def rank_matches(matches: Iterable[QueryMatch]) -> List[QueryMatch]:
    """Deduplicate on (type, description, frame) keeping the most confident, then rank."""
    best: Dict[tuple, QueryMatch] = {}
    for match in matches:
        current = best.get(match.dedup_key)
        if current is None or match.confidence > current.confidence:
            best[match.dedup_key] = match
    return sorted(best.values(), key=lambda m: (-m.confidence, m.frame_number, m.type.value, m.description))


class QueryMatcher:
    """Answers keyword queries against one media item's detections."""

    def __init__(self, store: DetectionStore):
        self.store = store

    def match(
        self, media_item_id: str, query: str, time_range: Optional[TimeRange] = None
    ) -> MatchResult:
        detections = self.store.find_by_media_item(media_item_id)
        result = self.match_detections(detections, query, time_range)
        logger.debug(f"Query '{query}' on {media_item_id}: {len(result.matches)} matches")
        return result

    def match_detections(
        self, detections: DetectionSet, query: str, time_range: Optional[TimeRange] = None
    ) -> MatchResult:
        text = query.lower()
        keywords = extract_keywords(query)

        people = [d.info for d in detections.people]
        objects = [d.info for d in detections.objects]
        books = [d.info for d in detections.books]
        if time_range is not None:
            people = [p for p in people if time_range.contains(p.timestamp)]
            objects = [o for o in objects if time_range.contains(o.timestamp)]
            books = [b for b in books if time_range.contains(b.timestamp)]

        matches: List[QueryMatch] = []
        matches.extend(self._match_people(people, text))
        matches.extend(self._match_objects(objects, text, keywords))
        matches.extend(self._match_books(books, text, keywords))

        ranked = rank_matches(matches)
        return MatchResult(matches=ranked, answer=build_answer(ranked))

    # ---- rules -------------------------------------------------------------

    def _match_people(self, people: List[PersonInfo], text: str) -> List[QueryMatch]:
        ages: Set[AgeBracket] = {b for k, b in AGE_KEYWORDS.items() if k in text}
        emotions: Set[Emotion] = {e for k, e in EMOTION_KEYWORDS.items() if k in text}
        wants_all = _contains_any(text, PERSON_KEYWORDS)
        filtered = bool(ages or emotions)
        if not (filtered or wants_all):
            return []

        matches = []
        for person in people:
            fits = (
                filtered
                and (not ages or person.age_bracket in ages)
                and (not emotions or person.emotion in emotions)
            )
            if fits:
                description = self._filtered_description(person, bool(ages), bool(emotions))
            elif wants_all:
                description = (
                    f"{person.emotion.value.capitalize()} "
                    f"{person.age_bracket.value.lower()} person"
                )
            else:
                continue
            matches.append(self._to_match(MatchType.PERSON, description, person))
        return matches

    @staticmethod
    def _filtered_description(person: PersonInfo, by_age: bool, by_emotion: bool) -> str:
        age = person.age_bracket.value.lower()
        emotion = person.emotion.value.capitalize()
        if by_age and by_emotion:
            return f"{emotion} {age} detected"
        if by_age:
            return f"{age.capitalize()} detected"
        return f"{emotion} person detected"

    def _match_objects(
        self, objects: List[ObjectInfo], text: str, keywords: List[str]
    ) -> List[QueryMatch]:
        drinking = _contains_any(text, DRINKING_KEYWORDS)
        matches = []
        for obj in objects:
            name = obj.name.lower()
            category = obj.category.lower()
            if keywords and any(k in name or k in category for k in keywords):
                matches.append(self._to_match(MatchType.OBJECT, f"Found {obj.name}", obj))
            if drinking and _contains_any(f"{name} {category}", BEVERAGE_OBJECT_KEYWORDS):
                matches.append(
                    self._to_match(
                        MatchType.OBJECT, f"Person may be drinking - {obj.name} detected", obj
                    )
                )
        return matches

    def _match_books(
        self, books: List[BookInfo], text: str, keywords: List[str]
    ) -> List[QueryMatch]:
        wants_all = _contains_any(text, BOOK_KEYWORDS)
        matches = []
        for book in books:
            title = (book.title or "").lower()
            author = (book.author or "").lower()
            named = keywords and any(k in title or k in author for k in keywords)
            if wants_all or named:
                description = f"Book: {book.title or 'Unknown title'}"
                if book.author:
                    description += f" by {book.author}"
                matches.append(self._to_match(MatchType.BOOK, description, book))
        return matches

    @staticmethod
    def _to_match(match_type: MatchType, description: str, info) -> QueryMatch:
        return QueryMatch(
            type=match_type,
            description=description,
            frame_number=info.frame_number,
            timestamp=info.timestamp,
            confidence=info.confidence,
        )
