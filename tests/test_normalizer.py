from services.media.models import AgeBracket, Emotion
from services.vision.normalizer import (
    DetectionNormalizer,
    categorize_object,
    convert_bounding_box,
    extract_isbn,
    extract_year,
)

from tests.conftest import HAPPY_CHILD_FACE, NEUTRAL_ADULT_FACE


def test_book_metadata_from_ocr_text():
    text = "ISBN 9780134190440\nby Jane Doe\nActa Press 2019"
    result = DetectionNormalizer().normalize({"text": text}, frame_number=30, timestamp=1.0)

    assert len(result.books) == 1
    book = result.books[0]
    assert book.isbn == "9780134190440"
    assert book.author == "Jane Doe"
    assert "Press" in book.publisher
    assert book.year == "2019"
    assert book.title == "ISBN 9780134190440"
    assert book.confidence == 0.80
    assert book.extracted_text == text


def test_text_without_book_keywords_is_not_a_book():
    result = DetectionNormalizer().normalize({"text": "Quiet please"}, 0, 0.0)
    assert result.books == []


def test_faces_become_people_with_heuristic_age_and_emotion():
    raw = {"faces": [HAPPY_CHILD_FACE, NEUTRAL_ADULT_FACE]}
    result = DetectionNormalizer().normalize(raw, frame_number=5, timestamp=1.2)

    child, adult = result.people
    assert child.age_bracket == AgeBracket.CHILD
    assert child.emotion == Emotion.HAPPY
    assert child.estimated_age == 10
    assert child.confidence == 0.9
    assert child.frame_number == 5
    assert child.timestamp == 1.2
    assert child.bounding_box.width == 40
    assert child.bounding_box.height == 60

    assert adult.age_bracket == AgeBracket.ADULT
    assert adult.emotion == Emotion.NEUTRAL
    assert adult.bounding_box is None


def test_objects_and_labels_above_threshold():
    raw = {
        "localized_objects": [{"name": "Coffee cup", "score": 0.81}, {"name": "Lamp", "score": 0.6}],
        "labels": [{"description": "Library", "score": 0.92}, {"description": "Room", "score": 0.75}],
    }
    result = DetectionNormalizer().normalize(raw, 0, 0.0)

    names = [(o.name, o.category) for o in result.objects]
    assert ("Coffee cup", "BEVERAGE") in names
    assert ("Lamp", "GENERAL") in names
    assert ("Library", "LABEL") in names
    # Threshold is strict
    assert all(o.name != "Room" for o in result.objects)


def test_error_payload_and_malformed_input_yield_empty_results():
    normalizer = DetectionNormalizer()

    assert normalizer.normalize({"error": "quota exceeded", "faces": [HAPPY_CHILD_FACE]}, 1, 0.1).is_empty()
    assert normalizer.normalize({}, 1, 0.1).is_empty()
    assert normalizer.normalize(None, 1, 0.1).is_empty()
    assert normalizer.normalize({"localized_objects": [{"score": 0.9}]}, 1, 0.1).is_empty()
    assert normalizer.normalize({"faces": "not-a-list"}, 1, 0.1).is_empty()


def test_helpers():
    assert categorize_object("Office Chair") == "FURNITURE"
    assert categorize_object("Laptop") == "ELECTRONICS"
    assert categorize_object("Plant") == "GENERAL"
    assert convert_bounding_box(None) is None
    assert convert_bounding_box({"vertices": [{"x": 5}, {"x": 15, "y": 10}]}).height == 10
    assert extract_isbn("ISBN: 0-13-419044-0") == "0134190440"
    assert extract_year("Printed 1999 reprinted 2005") == "1999"
    assert extract_year("No year here") is None
