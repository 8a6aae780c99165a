"""Tests for the answer extraction cascade."""

import json

import pytest

from exam_ensemble.extraction import (
    extract_answer,
    map_to_option_labels,
    match_answer,
    normalize_labels,
)
from exam_ensemble.models import QuestionOption


def answer_json(answer, confidence=90):
    return f"Reasoning: compared every option.\nJSON: {json.dumps({'answer': answer, 'confidence': confidence})}"


class TestStructuredJson:
    def test_bare_json(self):
        parsed = extract_answer('{"answer": "b", "confidence": 92}')

        assert parsed.labels == ("B",)
        assert parsed.confidence == 92
        assert parsed.strategy == "structured_json"

    def test_fenced_json(self):
        raw = 'Reasoning: ...\n```json\n{"answer": "C", "confidence": 77}\n```'

        parsed = extract_answer(raw)

        assert parsed.labels == ("C",)
        assert parsed.confidence == 77

    def test_json_wins_over_stray_letters(self):
        raw = (
            "Reasoning: Option A is wrong, B is a trap, answer: D looks tempting.\n"
            'JSON: {"answer": "C", "confidence": 88}'
        )

        parsed = extract_answer(raw)

        assert parsed.labels == ("C",)
        assert parsed.strategy == "structured_json"

    def test_last_json_object_wins(self):
        raw = 'Example format {"answer": "A", "confidence": 10}\nJSON: {"answer": "B", "confidence": 90}'

        assert extract_answer(raw).labels == ("B",)

    def test_multi_select_is_sorted_and_deduplicated(self):
        parsed = extract_answer('{"answer": "d, a, D", "confidence": 80}')

        assert parsed.labels == ("A", "D")
        assert parsed.answer == "A, D"

    def test_answer_as_list(self):
        assert extract_answer('{"answer": ["c", "a"], "confidence": 60}').labels == ("A", "C")

    def test_true_false_answer(self):
        assert extract_answer('{"answer": "True", "confidence": 70}').labels == ("true",)

    @pytest.mark.parametrize(
        "confidence, expected",
        [(150, 100), (-5, 0), ("85%", 85), ("high", 50), (None, 50), (87.9, 87)],
    )
    def test_confidence_is_clamped_with_default(self, confidence, expected):
        block = {"answer": "A"}
        if confidence is not None:
            block["confidence"] = confidence

        assert extract_answer(json.dumps(block)).confidence == expected

    def test_answer_with_option_text(self):
        assert extract_answer('{"answer": "A. 192.168.88.1", "confidence": 90}').labels == ("A",)

    @pytest.mark.parametrize(
        "answer, labels",
        [
            ("B (I am sure)", ("B",)),
            ("B (I think)", ("B",)),
            ("True.", ("true",)),
            ("false!", ("false",)),
            ("**C**", ("C",)),
            ("A and D, I believe", ("A", "D")),
        ],
    )
    def test_realistic_answer_strings(self, answer, labels):
        raw = answer_json(answer)

        assert extract_answer(raw).labels == labels

    def test_letter_outside_options_is_not_a_label(self):
        parsed = extract_answer(answer_json("G"))

        assert parsed.labels == ()
        assert parsed.answer_text == "G"

    def test_free_text_answer_is_kept(self):
        parsed = extract_answer(answer_json("Paris"))

        assert parsed.labels == ()
        assert parsed.answer_text == "Paris"
        assert parsed.confidence == 90
        assert parsed.strategy == "structured_json"
        assert not parsed.is_empty

    def test_empty_answer_falls_through(self):
        raw = '{"answer": "", "confidence": 90}\nAnswer: B'

        assert extract_answer(raw).strategy == "labeled_phrase"


class TestFallbackStrategies:
    def test_boolean_literal(self):
        parsed = extract_answer("  FALSE ")

        assert parsed.labels == ("false",)
        assert parsed.confidence == 85
        assert parsed.strategy == "boolean_literal"

    def test_strict_letters(self):
        parsed = extract_answer("c, a")

        assert parsed.labels == ("A", "C")
        assert parsed.confidence == 70
        assert parsed.strategy == "strict_letters"

    def test_strict_letters_rejects_more_than_six(self):
        assert match_answer("A B C D E F A") is None

    def test_labeled_phrase(self):
        raw = "After checking the routing table carefully, Jawaban: A, C\nThat is all."

        parsed = extract_answer(raw)

        assert parsed.labels == ("A", "C")
        assert parsed.confidence == 65
        assert parsed.strategy == "labeled_phrase"

    def test_labeled_phrase_with_markdown(self):
        assert extract_answer("The winner is clear. Answer: **B**").labels == ("B",)

    def test_short_text_scan(self):
        parsed = extract_answer("B)")

        assert parsed.labels == ("B",)
        assert parsed.confidence == 60
        assert parsed.strategy == "short_text_scan"

    @pytest.mark.parametrize("raw", ["", "   ", None, "I am not sure about this one."])
    def test_no_match_is_empty(self, raw):
        parsed = extract_answer(raw)

        assert parsed.labels == ()
        assert parsed.confidence == 0
        assert parsed.is_empty

    def test_many_letters_is_not_a_failure(self):
        assert extract_answer('{"answer": "A, B, C, D", "confidence": 90}').labels == ("A", "B", "C", "D")


def test_extraction_is_deterministic():
    raw = 'Reasoning: long text mentioning A and B.\nJSON: {"answer": "B", "confidence": 81}'

    assert extract_answer(raw) == extract_answer(raw)


class TestNormalizeLabels:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("b", ("B",)),
            ("A, c", ("A", "C")),
            ("B and D", ("B", "D")),
            ("TRUE", ("true",)),
            (False, ("false",)),
            ("", ()),
            (None, ()),
            ("192.168.1.1", ()),
            ("G", ()),
            ("B (I think)", ("B",)),
            (" True. ", ("true",)),
        ],
    )
    def test_values(self, value, expected):
        assert normalize_labels(value) == expected


class TestMapToOptionLabels:
    def test_letter_maps_to_true_false_literal(self):
        options = [QuestionOption(label="A", text="True"), QuestionOption(label="B", text="False")]

        assert map_to_option_labels(("A",), options) == ("true",)
        assert map_to_option_labels(("B",), options) == ("false",)

    def test_regular_options_unchanged(self):
        options = [QuestionOption(label="A", text="Bridge"), QuestionOption(label="B", text="Router")]

        assert map_to_option_labels(("A",), options) == ("A",)

    def test_no_options_unchanged(self):
        assert map_to_option_labels(("true",), []) == ("true",)

    def test_free_text_maps_to_option_label(self):
        options = [
            QuestionOption(label="A", text="Paris"),
            QuestionOption(label="B", text="Rome"),
            QuestionOption(label="C", text="Oslo"),
        ]
        parsed = extract_answer(answer_json("Paris"))

        assert map_to_option_labels(parsed.labels, options, parsed.answer_text) == ("A",)

    def test_option_text_match_ignores_case_spacing_and_dots(self):
        options = [QuestionOption(label="A", text="Use a VLAN"), QuestionOption(label="B", text="Use a bridge")]

        assert map_to_option_labels(("A",), options, "  use a  BRIDGE.") == ("B",)

    def test_free_text_true_false(self):
        options = [QuestionOption(label="A", text="True"), QuestionOption(label="B", text="False")]

        assert map_to_option_labels((), options, "False") == ("false",)

    def test_unknown_free_text_gives_no_labels(self):
        options = [QuestionOption(label="A", text="Paris"), QuestionOption(label="B", text="Rome")]

        assert map_to_option_labels((), options, "Madrid") == ()
