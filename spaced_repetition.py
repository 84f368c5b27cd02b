"""Per-question spaced repetition (SM-2 variant).

Scores are on a 0-100 scale. A score of 80 or more is a pass; anything lower
resets the card to a one-day interval. The ease factor is recomputed on every
attempt from score/20 as the SM-2 quality.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta

from reward_config import (
    SRS_FIRST_INTERVAL,
    SRS_INITIAL_EASE,
    SRS_MASTERY_REPETITIONS,
    SRS_MASTERY_SCORE,
    SRS_MIN_EASE,
    SRS_PASS_SCORE,
    SRS_SECOND_INTERVAL,
    VOICE_PRACTICE_SCORE,
    round_half_up,
)

STATUSES = ("new", "learning", "reviewing", "mastered")
_INT_FIELDS = ("attempts", "interval", "repetitions")


@dataclass
class QuestionProgress:
    user_id: str
    question_id: str
    attempts: int = 0
    best_score: float = 0
    average_score: float = 0
    last_score: float = 0
    last_attempt: str = ""
    next_review: str = ""
    interval: int = SRS_FIRST_INTERVAL
    ease_factor: float = SRS_INITIAL_EASE
    repetitions: int = 0
    status: str = "new"
    mastered: bool = False
    needs_voice_practice: bool = False
    weak_key_points: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return progress_id(self.user_id, self.question_id)

    @staticmethod
    def from_dict(data: dict, user_id: str, question_id: str) -> QuestionProgress:
        """Build a record from persisted/imported JSON, checking every field's type.

        Raises ValueError on the first bad field. Timestamps must be naive
        local ISO strings, matching the engine clock.
        """
        if not isinstance(data, dict):
            raise ValueError(f"{question_id}: record must be a JSON object")

        record = QuestionProgress(user_id=user_id, question_id=question_id)
        for f in fields(QuestionProgress):
            if f.name not in data or f.name == "user_id":
                continue
            value = data[f.name]
            default = getattr(record, f.name)
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ValueError(f"{question_id}: {f.name} must be a boolean")
            elif f.name in _INT_FIELDS:
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValueError(f"{question_id}: {f.name} must be an integer, got {value!r}")
            elif isinstance(default, (int, float)):
                if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                    raise ValueError(f"{question_id}: {f.name} must be a number, got {value!r}")
            elif isinstance(default, list):
                if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                    raise ValueError(f"{question_id}: {f.name} must be a list of strings")
            elif not isinstance(value, str):
                raise ValueError(f"{question_id}: {f.name} must be a string")
            setattr(record, f.name, value)

        if not record.question_id:
            raise ValueError("question_id cannot be empty")
        if record.attempts < 0 or record.repetitions < 0:
            raise ValueError(f"{question_id}: attempts and repetitions cannot be negative")
        if record.interval < 1:
            raise ValueError(f"{question_id}: interval must be at least 1 day")
        if record.ease_factor < SRS_MIN_EASE:
            raise ValueError(f"{question_id}: ease_factor below {SRS_MIN_EASE}")
        for name in ("best_score", "average_score", "last_score"):
            if not 0 <= getattr(record, name) <= 100:
                raise ValueError(f"{question_id}: {name} must be within 0-100")
        if record.status not in STATUSES:
            raise ValueError(f"{question_id}: unknown status {record.status!r}")
        for name in ("last_attempt", "next_review"):
            stamp = getattr(record, name)
            if stamp and datetime.fromisoformat(stamp).tzinfo is not None:
                raise ValueError(f"{question_id}: {name} must not carry a UTC offset")
        return record


def progress_id(user_id: str, question_id: str) -> str:
    return f"{user_id}-{question_id}"


def new_progress(user_id: str, question_id: str, now: datetime, first_score: float) -> QuestionProgress:
    return QuestionProgress(
        user_id=user_id,
        question_id=question_id,
        last_attempt=now.isoformat(),
        next_review=now.isoformat(),
        needs_voice_practice=first_score < VOICE_PRACTICE_SCORE,
    )


def classify_status(repetitions: int, score: float) -> str:
    if repetitions >= SRS_MASTERY_REPETITIONS and score >= SRS_MASTERY_SCORE:
        return "mastered"
    if repetitions >= 2:
        return "reviewing"
    if repetitions >= 1:
        return "learning"
    return "new"


def next_ease_factor(ease_factor: float, score: float) -> float:
    q_gap = 5 - score / 20
    return max(SRS_MIN_EASE, ease_factor + (0.1 - q_gap * (0.08 + q_gap * 0.02)))


def apply_score(record: QuestionProgress, score: float, now: datetime) -> QuestionProgress:
    """Record one attempt on `record` in place and return it."""
    score = max(0.0, min(100.0, float(score)))

    # Attempt statistics update on every attempt, pass or fail
    attempts = record.attempts + 1
    record.average_score = (record.average_score * record.attempts + score) / attempts
    record.attempts = attempts
    record.best_score = max(record.best_score, score)
    record.last_score = score
    record.last_attempt = now.isoformat()

    if score >= SRS_PASS_SCORE:
        record.repetitions += 1
        if record.repetitions == 1:
            record.interval = SRS_FIRST_INTERVAL
        elif record.repetitions == 2:
            record.interval = SRS_SECOND_INTERVAL
        else:
            record.interval = round_half_up(record.interval * record.ease_factor)
    else:
        record.repetitions = 0
        record.interval = SRS_FIRST_INTERVAL

    record.ease_factor = next_ease_factor(record.ease_factor, score)
    record.next_review = (now + timedelta(days=record.interval)).isoformat()
    record.status = classify_status(record.repetitions, score)
    record.mastered = record.status == "mastered"
    return record


def is_due(record: QuestionProgress, now: datetime) -> bool:
    if record.mastered:
        return False
    if not record.next_review:
        return True
    return datetime.fromisoformat(record.next_review) <= now


def summarize(records: list[QuestionProgress]) -> dict:
    """Counts per status plus mastery rate (percent, 0 when there are no records)."""
    total = len(records)
    counts = {status: 0 for status in STATUSES}
    for r in records:
        counts[r.status] = counts.get(r.status, 0) + 1
    mastered = sum(1 for r in records if r.mastered)
    return {
        "total": total,
        "mastered": mastered,
        "learning": counts["learning"],
        "reviewing": counts["reviewing"],
        "new": counts["new"],
        "mastery_rate": (mastered / total) * 100 if total > 0 else 0,
    }
