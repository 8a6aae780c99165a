"""Tests for question payload parsing and result models."""

import base64
import logging

import pytest
from pydantic import ValidationError

from exam_ensemble.config import EnsembleConfig, load_config
from exam_ensemble.models import Question, QuestionKind, VoteEntry, round_half_up


class TestQuestionPayload:
    def test_string_payload(self):
        question = Question.from_payload("  What does ARP resolve?  ")

        assert question.text == "What does ARP resolve?"
        assert question.options == ()
        assert question.kind == QuestionKind.SINGLE

    def test_dict_payload(self):
        question = Question.from_payload({
            "question": "Select the routing protocols",
            "options": [{"label": "A", "text": "OSPF"}, {"label": "B", "text": "HTTP"}],
            "type": "checkbox",
            "number": 12,
        })

        assert question.kind == QuestionKind.MULTI
        assert [o.text for o in question.options] == ["OSPF", "HTTP"]
        assert question.number == 12

    @pytest.mark.parametrize(
        "value, kind",
        [
            ("select", QuestionKind.TRUE_FALSE),
            ("true_false", QuestionKind.TRUE_FALSE),
            ("radio", QuestionKind.SINGLE),
            ("unknown", QuestionKind.SINGLE),
            ("MULTI-SELECT", QuestionKind.MULTI),
        ],
    )
    def test_kind_aliases(self, value, kind):
        assert Question.from_payload({"question": "q", "type": value}).kind == kind

    def test_unrecognized_kind_is_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="exam_ensemble.models"):
            question = Question.from_payload({"question": "q", "type": "essay"})

        assert question.kind == QuestionKind.SINGLE
        assert "essay" in caplog.text

    def test_known_alias_is_not_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="exam_ensemble.models"):
            Question.from_payload({"question": "q", "type": "radio"})

        assert caplog.records == []

    def test_data_url_image(self):
        raw = b"\x89PNG\r\n\x1a\nimage-bytes"
        encoded = "data:image/png;base64," + base64.b64encode(raw).decode("ascii")

        question = Question.from_payload({"question": "What is shown?", "image": encoded})

        assert question.image == raw

    def test_empty_text_rejected(self):
        with pytest.raises(ValidationError):
            Question.from_payload({"question": "   "})


def test_round_half_up():
    assert round_half_up(84.5) == 85
    assert round_half_up(84.49) == 84
    assert round_half_up(0.5) == 1


def test_vote_entry_average():
    entry = VoteEntry(answer="A", count=2, total_confidence=171)

    assert entry.avg_confidence == 86
    assert VoteEntry(answer="B").avg_confidence == 0


class TestConfig:
    def test_defaults(self):
        config = EnsembleConfig()

        assert config.judge == "gemini-2.5-pro"
        assert len(config.workers) == 3
        assert config.cache_ttl_s == 120
        assert config.max_attempts == 3

    def test_single_provider_has_no_judge(self):
        config = EnsembleConfig(roster=["solo"])

        assert config.workers == ["solo"]
        assert config.judge is None

    def test_primary_must_be_worker(self):
        with pytest.raises(ValidationError):
            EnsembleConfig(roster=["w1", "w2", "judge"], primary_provider="judge")

    def test_empty_roster_rejected(self):
        with pytest.raises(ValidationError):
            EnsembleConfig(roster=[])

    def test_load_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text('{"roster": ["a", "b", "c"], "mode": "failover", "cache_ttl_s": 30}')

        config = load_config(path)

        assert config.mode == "failover"
        assert config.judge == "c"
        assert config.cache_ttl_s == 30
