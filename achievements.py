"""Achievement Engine — threshold checks over ledger counters.

Each achievement unlocks at most once. Evaluation reads the ledger, updates
progress on every tracked achievement, and returns the ones that unlocked on
this pass so the caller can pay out their rewards.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Protocol

from kv_store import KeyValueStore, write_with_cleanup

if TYPE_CHECKING:
    from progress_store import ProgressLedger

logger = logging.getLogger(__name__)

ACHIEVEMENTS_KEY = "achievements"


@dataclass(frozen=True)
class AchievementDefinition:
    name: str
    description: str
    tier: str
    icon: str
    threshold: float
    xp: int
    credits: int


ACHIEVEMENT_DEFINITIONS: dict[str, AchievementDefinition] = {
    "first-question": AchievementDefinition(
        "First Conversation", "Complete your first interview question", "bronze", "star", 1, 100, 20),
    "first-quiz-answer": AchievementDefinition(
        "Quiz Taker", "Answer your first quiz question", "bronze", "help-circle", 1, 100, 20),
    "first-srs-review": AchievementDefinition(
        "Memory Lane", "Rate your first review card", "bronze", "brain", 1, 100, 20),
    "streak-3": AchievementDefinition(
        "3 Day Streak", "Maintain a 3 day streak", "bronze", "flame", 3, 100, 20),
    "streak-7": AchievementDefinition(
        "7 Day Streak", "Maintain a 7 day streak", "silver", "flame", 7, 150, 50),
    "streak-14": AchievementDefinition(
        "14 Day Streak", "Maintain a 14 day streak", "gold", "flame", 14, 250, 100),
    "streak-30": AchievementDefinition(
        "30 Day Streak", "Maintain a 30 day streak", "platinum", "flame", 30, 500, 200),
    "streak-60": AchievementDefinition(
        "60 Day Streak", "Maintain a 60 day streak", "platinum", "flame", 60, 750, 300),
    "streak-100": AchievementDefinition(
        "100 Day Streak", "Maintain a 100 day streak", "diamond", "flame", 100, 1000, 500),
    "master-10": AchievementDefinition(
        "Novice Master", "Master 10% of questions", "bronze", "target", 10, 100, 20),
    "master-25": AchievementDefinition(
        "Apprentice Master", "Master 25% of questions", "silver", "target", 25, 150, 50),
    "master-50": AchievementDefinition(
        "Journeyman Master", "Master 50% of questions", "gold", "target", 50, 250, 100),
    "master-75": AchievementDefinition(
        "Expert Master", "Master 75% of questions", "platinum", "target", 75, 500, 200),
    "weekly-goal": AchievementDefinition(
        "Weekly Champion", "Meet your weekly practice goal", "silver", "calendar-check", 1, 150, 50),
    "voice-1": AchievementDefinition(
        "Voice Master 1", "Complete 1 voice practice session", "bronze", "mic", 1, 100, 20),
    "voice-5": AchievementDefinition(
        "Voice Master 5", "Complete 5 voice practice sessions", "bronze", "mic", 5, 100, 20),
    "voice-10": AchievementDefinition(
        "Voice Master 10", "Complete 10 voice practice sessions", "silver", "mic", 10, 150, 50),
    "voice-25": AchievementDefinition(
        "Voice Master 25", "Complete 25 voice practice sessions", "gold", "mic", 25, 250, 100),
    "voice-50": AchievementDefinition(
        "Voice Master 50", "Complete 50 voice practice sessions", "platinum", "mic", 50, 500, 200),
    "voice-100": AchievementDefinition(
        "Voice Master 100", "Complete 100 voice practice sessions", "diamond", "mic", 100, 1000, 500),
    "questions-10": AchievementDefinition(
        "Warming Up", "Complete 10 questions", "bronze", "check-circle", 10, 100, 20),
    "questions-50": AchievementDefinition(
        "Half Century", "Complete 50 questions", "silver", "check-circle", 50, 150, 50),
    "questions-100": AchievementDefinition(
        "Century", "Complete 100 questions", "gold", "check-circle", 100, 250, 100),
    "questions-500": AchievementDefinition(
        "Interview Ready", "Complete 500 questions", "platinum", "check-circle", 500, 500, 200),
}

STREAK_MILESTONES = [3, 7, 14, 30, 60, 100]
MASTERY_MILESTONES = [10, 25, 50, 75]
VOICE_MILESTONES = [1, 5, 10, 25, 50, 100]
QUESTION_MILESTONES = [10, 50, 100, 500]


@dataclass
class Achievement:
    achievement_id: str
    name: str
    description: str
    tier: str = "bronze"
    icon: str = "trophy"
    threshold: float = 1
    current_value: float = 0
    progress: float = 0
    unlocked: bool = False
    unlocked_at: str | None = None
    seen: bool = False
    xp_reward: int = 100
    credits_reward: int = 20


@dataclass
class UnlockedAchievement:
    id: str
    name: str
    description: str
    tier: str
    icon: str
    xp: int
    credits: int
    title: str | None = None


class AchievementRuleEvaluator(Protocol):
    """External rule engine fed with normalised {type, timestamp, data} events."""

    def evaluate_event(self, event: dict) -> list[UnlockedAchievement]: ...


class AchievementEngine:
    """Owns one user's achievement records."""

    def __init__(
        self,
        store: KeyValueStore,
        user_id: str = "local",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.user_id = str(user_id)
        self.clock = clock or datetime.now
        self.persistence_degraded = False
        self.records: dict[str, Achievement] = {}
        self._load()

    # ── Persistence ──────────────────────────────────────

    def _key(self) -> str:
        return f"{self.user_id}:{ACHIEVEMENTS_KEY}"

    def _load(self) -> None:
        raw = self.store.get(self._key())
        if raw is None:
            return
        try:
            data = json.loads(raw)
            self.records = {a["achievement_id"]: Achievement(**a) for a in data}
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error("Corrupt achievement records for user %s, discarding: %s", self.user_id, e)
            self.records = {}

    def _save(self) -> None:
        payload = json.dumps([asdict(a) for a in self.records.values()])
        if not write_with_cleanup(self.store, self._key(), payload) and not self.persistence_degraded:
            self.persistence_degraded = True
            logger.warning("Achievement records for user %s are no longer durable", self.user_id)

    # ── Records ──────────────────────────────────────

    def _get_or_create(self, achievement_id: str) -> Achievement:
        record = self.records.get(achievement_id)
        if record is None:
            d = ACHIEVEMENT_DEFINITIONS.get(achievement_id)
            if d is None:
                record = Achievement(achievement_id=achievement_id, name=achievement_id, description="")
            else:
                record = Achievement(
                    achievement_id=achievement_id,
                    name=d.name,
                    description=d.description,
                    tier=d.tier,
                    icon=d.icon,
                    threshold=d.threshold,
                    xp_reward=d.xp,
                    credits_reward=d.credits,
                )
            self.records[achievement_id] = record
        return record

    def _track(self, achievement_id: str, current_value: float) -> Achievement:
        record = self._get_or_create(achievement_id)
        if not record.unlocked:
            record.current_value = current_value
            record.progress = min(100.0, current_value / record.threshold * 100) if record.threshold else 0
        return record

    def unlock(self, achievement_id: str) -> UnlockedAchievement | None:
        """Unlock once. Returns the descriptor, or None if it was already unlocked."""
        record = self._get_or_create(achievement_id)
        if record.unlocked:
            return None
        record.unlocked = True
        record.unlocked_at = self.clock().isoformat()
        record.progress = 100
        record.current_value = max(record.current_value, record.threshold)
        logger.info("Achievement unlocked for user %s: %s", self.user_id, achievement_id)
        return UnlockedAchievement(
            id=record.achievement_id,
            name=record.name,
            description=record.description,
            tier=record.tier,
            icon=record.icon,
            xp=record.xp_reward,
            credits=record.credits_reward,
        )

    def register(self, descriptor: UnlockedAchievement) -> UnlockedAchievement | None:
        """Record an unlock reported by an external rule evaluator, at most once."""
        if descriptor.id not in self.records:
            self.records[descriptor.id] = Achievement(
                achievement_id=descriptor.id,
                name=descriptor.name,
                description=descriptor.description,
                tier=descriptor.tier,
                icon=descriptor.icon,
                xp_reward=descriptor.xp,
                credits_reward=descriptor.credits,
            )
        if self.unlock(descriptor.id) is None:
            return None
        self._save()
        return descriptor

    # ── Evaluation ──────────────────────────────────────

    def evaluate(self, ledger: ProgressLedger) -> list[UnlockedAchievement]:
        """Check every rule against the ledger's current counters."""
        state = ledger.get_progress()
        mastery_rate = ledger.mastery_rate()
        weekly_seconds = ledger.weekly_practice_seconds()
        quiz_answers = state.quiz_answers_correct + state.quiz_answers_wrong

        checks: list[tuple[str, float, bool]] = [
            ("first-question", state.questions_completed, state.questions_completed == 1),
            ("first-quiz-answer", quiz_answers, quiz_answers == 1),
            ("first-srs-review", state.srs_reviews, state.srs_reviews == 1),
        ]
        # A streak can move past a milestone between evaluations, so compare with >=
        for m in STREAK_MILESTONES:
            checks.append((f"streak-{m}", state.current_streak, state.current_streak >= m))
        for m in MASTERY_MILESTONES:
            checks.append((f"master-{m}", mastery_rate, mastery_rate >= m))

        goal_seconds = state.weekly_goal_minutes * 60
        if goal_seconds > 0:
            checks.append((
                "weekly-goal",
                weekly_seconds / goal_seconds,
                weekly_seconds >= goal_seconds,
            ))

        # These counters only ever step by one, so every value is observed
        for m in VOICE_MILESTONES:
            checks.append((f"voice-{m}", state.voice_interviews, state.voice_interviews == m))
        for m in QUESTION_MILESTONES:
            checks.append((f"questions-{m}", state.questions_completed, state.questions_completed == m))

        unlocked = []
        for achievement_id, current_value, condition in checks:
            self._track(achievement_id, current_value)
            if condition:
                result = self.unlock(achievement_id)
                if result is not None:
                    unlocked.append(result)

        self._save()
        return unlocked

    # ── Queries ──────────────────────────────────────

    def get(self, achievement_id: str) -> Achievement | None:
        return self.records.get(achievement_id)

    def get_all(self) -> list[Achievement]:
        return list(self.records.values())

    def get_unlocked(self) -> list[Achievement]:
        return [a for a in self.records.values() if a.unlocked]

    def get_locked(self) -> list[Achievement]:
        return [a for a in self.records.values() if not a.unlocked]

    def get_unseen(self) -> list[Achievement]:
        return [a for a in self.records.values() if a.unlocked and not a.seen]

    def mark_seen(self, achievement_id: str) -> None:
        record = self.records.get(achievement_id)
        if record is not None and not record.seen:
            record.seen = True
            self._save()

    def stats(self) -> dict:
        total = len(ACHIEVEMENT_DEFINITIONS.keys() | self.records.keys())
        unlocked = len(self.get_unlocked())
        return {
            "total": total,
            "unlocked": unlocked,
            "locked": total - unlocked,
            "unseen": len(self.get_unseen()),
            "completion_rate": (unlocked / total) * 100 if total > 0 else 0,
        }

    def reset(self) -> None:
        self.records = {}
        self._save()
