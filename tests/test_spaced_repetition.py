"""Tests for spaced_repetition.py — the SM-2 variant."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from spaced_repetition import (
    QuestionProgress,
    apply_score,
    classify_status,
    is_due,
    new_progress,
    next_ease_factor,
    summarize,
)

NOW = datetime(2026, 3, 11, 10, 0, 0)


def _fresh(score: float = 85) -> QuestionProgress:
    return new_progress("u1", "q1", NOW, score)


class TestApplyScore:
    def test_three_passing_scores_build_intervals(self):
        record = _fresh()
        intervals = []
        for _ in range(3):
            apply_score(record, 85, NOW)
            intervals.append(record.interval)

        assert record.repetitions == 3
        # round(6 * 2.5575) = round(15.345)
        assert intervals == [1, 6, 15]
        # 85 is below the mastery score, so three reps alone do not master it
        assert record.status == "reviewing"
        assert record.mastered is False

    def test_three_high_scores_master(self):
        record = _fresh(95)
        for _ in range(3):
            apply_score(record, 95, NOW)
        assert record.repetitions == 3
        assert record.interval == 16
        assert record.status == "mastered"
        assert record.mastered is True

    def test_again_resets_and_lowers_ease(self):
        record = _fresh()
        record.interval, record.repetitions, record.ease_factor = 6, 3, 2.5
        apply_score(record, 0, NOW)
        assert record.repetitions == 0
        assert record.interval == 1
        assert record.ease_factor == pytest.approx(1.7)
        assert record.status == "new"

    def test_ease_floor(self):
        record = _fresh()
        record.ease_factor = 1.4
        apply_score(record, 0, NOW)
        assert record.ease_factor == 1.3

    def test_ease_recomputed_on_fail(self):
        record = _fresh()
        apply_score(record, 60, NOW)
        assert record.ease_factor == pytest.approx(2.36)
        assert record.repetitions == 0

    def test_next_review_is_interval_days_out(self):
        record = _fresh()
        apply_score(record, 85, NOW)
        apply_score(record, 85, NOW)
        assert datetime.fromisoformat(record.next_review) == NOW + timedelta(days=6)

    def test_attempt_statistics_update_on_every_attempt(self):
        record = _fresh(50)
        apply_score(record, 50, NOW)
        apply_score(record, 90, NOW)
        apply_score(record, 70, NOW)
        assert record.attempts == 3
        assert record.best_score == 90
        assert record.last_score == 70
        assert record.average_score == pytest.approx(70.0)

    def test_score_is_clamped(self):
        record = _fresh()
        apply_score(record, 140, NOW)
        assert record.best_score == 100

    def test_low_first_score_flags_voice_practice(self):
        assert new_progress("u1", "q1", NOW, 40).needs_voice_practice is True
        assert new_progress("u1", "q1", NOW, 70).needs_voice_practice is False


class TestStatus:
    @pytest.mark.parametrize("reps,score,expected", [
        (0, 100, "new"),
        (1, 85, "learning"),
        (2, 85, "reviewing"),
        (3, 89, "reviewing"),
        (3, 90, "mastered"),
    ])
    def test_classify(self, reps, score, expected):
        assert classify_status(reps, score) == expected

    def test_ease_factor_formula_at_perfect_score(self):
        assert next_ease_factor(2.5, 100) == pytest.approx(2.6)


class TestDue:
    def test_due_when_review_time_passed(self):
        record = _fresh()
        apply_score(record, 85, NOW)
        assert not is_due(record, NOW)
        assert is_due(record, NOW + timedelta(days=1))

    def test_mastered_never_due(self):
        record = _fresh()
        record.mastered = True
        record.next_review = (NOW - timedelta(days=5)).isoformat()
        assert not is_due(record, NOW)


class TestSummarize:
    def test_empty_has_zero_mastery(self):
        stats = summarize([])
        assert stats["total"] == 0
        assert stats["mastery_rate"] == 0

    def test_counts(self):
        a, b, c, d = (_fresh() for _ in range(4))
        a.status, a.mastered = "mastered", True
        b.status = "learning"
        c.status = "reviewing"
        stats = summarize([a, b, c, d])
        assert stats["mastered"] == 1
        assert stats["learning"] == 1
        assert stats["reviewing"] == 1
        assert stats["new"] == 1
        assert stats["mastery_rate"] == 25.0

    def test_composite_id(self):
        assert _fresh().id == "u1-q1"


class TestFromDict:
    def test_exported_record_parses(self):
        from dataclasses import asdict
        record = apply_score(_fresh(), 90, NOW)
        parsed = QuestionProgress.from_dict(asdict(record), "u1", "q1")
        assert parsed == record

    def test_missing_fields_take_defaults(self):
        parsed = QuestionProgress.from_dict({}, "u2", "q7")
        assert parsed.question_id == "q7"
        assert parsed.user_id == "u2"
        assert parsed.ease_factor == 2.5
        assert parsed.status == "new"

    @pytest.mark.parametrize("entry", [
        {"ease_factor": "high"},
        {"ease_factor": 1.0},
        {"ease_factor": float("nan")},
        {"attempts": 2.5},
        {"attempts": -1},
        {"repetitions": True},
        {"interval": 0},
        {"best_score": 140},
        {"mastered": "yes"},
        {"status": "bogus"},
        {"weak_key_points": [1, 2]},
        {"next_review": "tomorrow"},
        {"next_review": "2026-01-01T00:00:00+00:00"},
        {"last_attempt": 5},
        {"question_id": ""},
        [],
    ])
    def test_bad_record_rejected(self, entry):
        with pytest.raises(ValueError):
            QuestionProgress.from_dict(entry, "u1", "q1")
