from services.media.models import (
    AgeBracket,
    BookInfo,
    DetectedBook,
    DetectedObject,
    DetectedPerson,
    DetectionSet,
    Emotion,
    MatchType,
    MediaItem,
    MediaKind,
    ObjectInfo,
    PersonInfo,
    TimeRange,
)
from services.query.matcher import QueryMatcher, build_answer, extract_keywords
from services.storage.detection_store import InMemoryDetectionStore

ITEM = "item-1"


def person(frame, timestamp, age=AgeBracket.ADULT, emotion=Emotion.NEUTRAL, confidence=0.8):
    return DetectedPerson(
        media_item_id=ITEM,
        info=PersonInfo(
            frame_number=frame,
            timestamp=timestamp,
            confidence=confidence,
            age_bracket=age,
            emotion=emotion,
        ),
    )


def obj(frame, timestamp, name, category="GENERAL", confidence=0.7):
    return DetectedObject(
        media_item_id=ITEM,
        info=ObjectInfo(
            frame_number=frame, timestamp=timestamp, confidence=confidence, name=name, category=category
        ),
    )


def book(frame, timestamp, title="Deep Work", author="Cal Newport"):
    return DetectedBook(
        media_item_id=ITEM,
        info=BookInfo(
            frame_number=frame,
            timestamp=timestamp,
            confidence=0.8,
            extracted_text=title,
            title=title,
            author=author,
        ),
    )


def matcher_with(people=(), objects=(), books=()):
    store = InMemoryDetectionStore()
    store.add_media_item(MediaItem(id=ITEM, name="reading room", kind=MediaKind.VIDEO))
    for detection in (*people, *objects, *books):
        store.save(detection)
    return QueryMatcher(store)


def test_happy_child_scenario():
    matcher = matcher_with(
        people=[person(5, 1.2, AgeBracket.CHILD, Emotion.HAPPY, 0.9)],
        objects=[obj(5, 1.2, "Chair", "FURNITURE")],
    )

    result = matcher.match(ITEM, "happy child")

    assert len(result.matches) == 1
    match = result.matches[0]
    assert match.type == MatchType.PERSON
    assert match.description == "Happy child detected"
    assert result.answer == "Found 1 match(es). 1 person(s). First occurrence at 1.20 seconds."


def test_age_and_emotion_filters_must_all_hold():
    matcher = matcher_with(
        people=[
            person(1, 0.1, AgeBracket.CHILD, Emotion.HAPPY),
            person(2, 0.2, AgeBracket.CHILD, Emotion.SAD),
            person(3, 0.3, AgeBracket.ADULT, Emotion.HAPPY),
        ]
    )

    assert [m.frame_number for m in matcher.match(ITEM, "happy kid").matches] == [1]
    assert sorted(m.frame_number for m in matcher.match(ITEM, "any child?").matches) == [1, 2]
    assert sorted(m.frame_number for m in matcher.match(ITEM, "smiling adult").matches) == [3]


def test_person_rule_adds_everyone_alongside_filters():
    matcher = matcher_with(
        people=[
            person(1, 0.1, AgeBracket.CHILD, Emotion.HAPPY, 0.9),
            person(2, 0.2, AgeBracket.ADULT, Emotion.NEUTRAL, 0.7),
        ]
    )

    result = matcher.match(ITEM, "how many happy people")

    assert [(m.frame_number, m.description) for m in result.matches] == [
        (1, "Happy person detected"),
        (2, "Neutral adult person"),
    ]
    assert result.answer == "Found 2 match(es). 2 person(s). First occurrence at 0.10 seconds."


def test_person_rule_matches_everyone():
    matcher = matcher_with(people=[person(1, 0.1), person(2, 0.2, AgeBracket.SENIOR, Emotion.SAD)])

    result = matcher.match(ITEM, "How many people are there?")

    assert len(result.matches) == 2
    assert {m.description for m in result.matches} == {"Neutral adult person", "Sad senior person"}


def test_duplicates_collapse():
    duplicate = obj(4, 0.4, "Chair", "FURNITURE")
    matcher = matcher_with(objects=[duplicate, duplicate])

    result = matcher.match(ITEM, "chair")

    assert [m.description for m in result.matches] == ["Found Chair"]


def test_drinking_rule_and_residual_tokens():
    matcher = matcher_with(objects=[obj(4, 0.4, "Mug", "BEVERAGE", 0.6), obj(8, 0.8, "Laptop", "ELECTRONICS")])

    drinking = matcher.match(ITEM, "is anyone drinking coffee")
    assert [m.description for m in drinking.matches] == ["Person may be drinking - Mug detected"]

    laptop = matcher.match(ITEM, "where is the laptop")
    assert [m.description for m in laptop.matches] == ["Found Laptop"]

    electronics = matcher.match(ITEM, "electronics")
    assert [m.frame_number for m in electronics.matches] == [8]


def test_books_by_keyword_or_title():
    matcher = matcher_with(books=[book(10, 2.0), book(20, 4.0, title="Dune", author=None)])

    all_books = matcher.match(ITEM, "what books are visible")
    assert {m.description for m in all_books.matches} == {"Book: Deep Work by Cal Newport", "Book: Dune"}

    by_author = matcher.match(ITEM, "newport")
    assert [m.frame_number for m in by_author.matches] == [10]


def test_time_range_excludes_before_matching():
    matcher = matcher_with(people=[person(1, 0.5), person(2, 3.0), person(3, 6.0)])

    result = matcher.match(ITEM, "people", TimeRange(start=1.0, end=6.0))

    assert sorted(m.frame_number for m in result.matches) == [2, 3]


def test_ranking_by_confidence_then_frame():
    matcher = matcher_with(
        people=[
            person(9, 0.9, confidence=0.5),
            person(7, 0.7, confidence=0.9),
            person(3, 0.3, confidence=0.5),
        ]
    )

    result = matcher.match(ITEM, "person")

    assert [m.frame_number for m in result.matches] == [7, 3, 9]
    assert result.answer == "Found 3 match(es). 3 person(s). First occurrence at 0.70 seconds."


def test_match_is_idempotent():
    matcher = matcher_with(
        people=[person(1, 0.1, AgeBracket.CHILD, Emotion.HAPPY)],
        objects=[obj(2, 0.2, "Cup", "BEVERAGE")],
        books=[book(3, 0.3)],
    )

    first = matcher.match(ITEM, "happy child reading with a cup")
    second = matcher.match(ITEM, "happy child reading with a cup")

    assert first.matches == second.matches
    assert first.answer == second.answer


def test_mixed_answer_and_no_matches():
    matcher = matcher_with(
        people=[person(1, 0.1)],
        objects=[obj(2, 0.25, "Cup", "BEVERAGE", 0.95)],
        books=[book(3, 0.3)],
    )

    result = matcher.match(ITEM, "people reading coffee")
    assert result.answer == (
        "Found 3 match(es). 1 person(s), 1 object(s), 1 book(s). First occurrence at 0.25 seconds."
    )

    assert matcher.match(ITEM, "umbrella").answer == "No matches found for your query."
    assert build_answer([]) == "No matches found for your query."


def test_match_detections_on_unknown_item_is_empty():
    matcher = QueryMatcher(InMemoryDetectionStore())
    assert matcher.match_detections(DetectionSet(), "people").matches == []


def test_extract_keywords_drops_stop_words_and_rule_keywords():
    assert extract_keywords("Is there a red Umbrella near the child?") == ["red", "umbrella", "near"]
