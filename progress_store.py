"""
Progress Ledger — XP, levels, credits, streaks, counters and question progress.

The ledger is the only writer of a user's progression state. Every mutation
is a read-modify-write on the in-memory copy followed by a write-through to
the key-value store, so the next call always reads its own writes.

State is persisted as JSON under per-user keys. Missing or corrupt values
fall back to the default state; failed writes trim the notification history
and retry once, after which the ledger keeps running in memory and reports
`persistence_degraded`.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, asdict, field, fields
from datetime import date, datetime
from typing import Callable

from kv_store import KeyValueStore, write_with_cleanup
from notifications import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_TRIM_LIMIT,
    NotificationLog,
    RewardNotification,
)
from reward_config import CREDIT_CONFIG, LEVEL_THRESHOLDS, level_for_xp, xp_for_level
from spaced_repetition import (
    QuestionProgress,
    apply_score,
    is_due,
    new_progress,
    summarize,
)
from streaks import StreakUpdate, compute_streak, day_key

logger = logging.getLogger(__name__)

PROGRESS_KEY = "unified-progress"
NOTIFICATIONS_KEY = "reward-notifications"
VERSION_KEY = "reward-system-version"
QUESTIONS_KEY = "question-progress"

SCHEMA_VERSION = "2.0.0"
DEFAULT_WEEKLY_GOAL_MINUTES = 300


class ValidationError(ValueError):
    """Input that cannot be turned into a well-formed progress state."""
    pass


class CorruptStateError(ValueError):
    """Persisted state that could not be parsed at boot."""
    pass


@dataclass
class SpendResult:
    success: bool
    balance: int


@dataclass
class XPResult:
    new_xp: int
    old_level: int
    new_level: int
    leveled_up: bool


def _week_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


@dataclass
class UserProgressState:
    user_id: str = "local"

    # XP & level
    total_xp: int = 0
    level: int = 1

    # Credits
    credit_balance: int = 0
    total_credits_earned: int = 0
    total_credits_spent: int = 0

    # Streaks
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: str | None = None

    # Activity counts
    questions_completed: int = 0
    quiz_answers_correct: int = 0
    quiz_answers_wrong: int = 0
    voice_interviews: int = 0
    voice_successes: int = 0
    srs_reviews: int = 0

    # Difficulty breakdown
    beginner_completed: int = 0
    intermediate_completed: int = 0
    advanced_completed: int = 0

    # Channel exploration
    channels_explored: list[str] = field(default_factory=list)
    channel_progress: dict[str, int] = field(default_factory=dict)

    # Session / daily / weekly tracking
    current_session_questions: int = 0
    today_questions: int = 0
    this_week_questions: int = 0
    counter_day: str = ""
    counter_week: str = ""
    weekly_practice_seconds: int = 0
    weekly_goal_minutes: int = DEFAULT_WEEKLY_GOAL_MINUTES

    # Timestamps
    created_at: str = ""
    last_updated: str = ""

    @staticmethod
    def default(
        user_id: str, now: datetime, starting_credits: int,
        weekly_goal_minutes: int = DEFAULT_WEEKLY_GOAL_MINUTES,
    ) -> UserProgressState:
        today = now.date()
        return UserProgressState(
            user_id=user_id,
            credit_balance=starting_credits,
            total_credits_earned=starting_credits,
            weekly_goal_minutes=weekly_goal_minutes,
            counter_day=today.isoformat(),
            counter_week=_week_key(today),
            created_at=now.isoformat(),
            last_updated=now.isoformat(),
        )

    @staticmethod
    def from_dict(data: dict, user_id: str, now: datetime, starting_credits: int) -> UserProgressState:
        """Build a state from persisted/imported JSON, checking every field's type.

        Unknown keys are ignored; missing keys take their defaults. `level` is
        always recomputed from `total_xp`.
        """
        if not isinstance(data, dict):
            raise ValidationError("progress must be a JSON object")

        state = UserProgressState.default(user_id, now, starting_credits)
        for f in fields(UserProgressState):
            if f.name not in data or f.name == "user_id":
                continue
            value = data[f.name]
            default = getattr(state, f.name)
            if isinstance(default, int):
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValidationError(f"{f.name} must be an integer, got {value!r}")
            elif isinstance(default, list):
                if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                    raise ValidationError(f"{f.name} must be a list of strings")
            elif isinstance(default, dict):
                if not isinstance(value, dict) or not all(
                    isinstance(v, int) and not isinstance(v, bool) for v in value.values()
                ):
                    raise ValidationError(f"{f.name} must map channels to integers")
            elif f.name == "last_activity_date":
                if value is not None:
                    if not isinstance(value, str):
                        raise ValidationError("last_activity_date must be an ISO date or null")
                    try:
                        value = day_key(value).isoformat()
                    except ValueError as e:
                        raise ValidationError(f"last_activity_date: {e}") from e
            elif not isinstance(value, str):
                raise ValidationError(f"{f.name} must be a string")
            setattr(state, f.name, value)

        for name in ("total_xp", "credit_balance", "total_credits_earned", "total_credits_spent",
                     "current_streak", "longest_streak"):
            if getattr(state, name) < 0:
                raise ValidationError(f"{name} cannot be negative")

        state.longest_streak = max(state.longest_streak, state.current_streak)
        state.level = level_for_xp(state.total_xp)
        return state

    # --- Derived level progress ---

    @property
    def xp_for_current_level(self) -> int:
        return xp_for_level(self.level)

    @property
    def xp_for_next_level(self) -> int:
        idx = LEVEL_THRESHOLDS.index(self.xp_for_current_level)
        if idx + 1 >= len(LEVEL_THRESHOLDS):
            return LEVEL_THRESHOLDS[idx]
        return LEVEL_THRESHOLDS[idx + 1]

    @property
    def xp_progress_pct(self) -> int:
        level_start = self.xp_for_current_level
        level_range = self.xp_for_next_level - level_start
        if level_range <= 0:
            return 100
        return min(100, int((self.total_xp - level_start) / level_range * 100))


class ProgressLedger:
    """Owns one user's UserProgressState, QuestionProgress records and notifications."""

    def __init__(
        self,
        store: KeyValueStore,
        user_id: str = "local",
        clock: Callable[[], datetime] | None = None,
        starting_credits: int = CREDIT_CONFIG["new_user_bonus"],
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        trim_limit: int = DEFAULT_TRIM_LIMIT,
        weekly_goal_minutes: int = DEFAULT_WEEKLY_GOAL_MINUTES,
    ) -> None:
        self.store = store
        self.user_id = str(user_id)
        self.clock = clock or datetime.now
        self.starting_credits = starting_credits
        self.weekly_goal_minutes = weekly_goal_minutes
        self.trim_limit = trim_limit
        self.persistence_degraded = False
        self.recovered_from_corruption = False

        self._progress: UserProgressState | None = None
        self._questions: dict[str, QuestionProgress] = {}
        self.notifications = NotificationLog(limit=history_limit)

        self._initialize()

    # ── Keys & persistence ─────────────────────────────────

    def key(self, name: str) -> str:
        return f"{self.user_id}:{name}"

    def _write(self, name: str, payload) -> None:
        ok = write_with_cleanup(
            self.store, self.key(name), json.dumps(payload), cleanup=self._free_space,
        )
        if not ok and not self.persistence_degraded:
            self.persistence_degraded = True
            logger.warning(
                "Persistence degraded for user %s: continuing in memory, durability not guaranteed",
                self.user_id,
            )

    def _free_space(self) -> None:
        """Trim cached notification history to make room for a retry."""
        removed = self.notifications.trim(self.trim_limit)
        logger.info("Trimmed %d notifications for user %s", removed, self.user_id)
        write_with_cleanup(self.store, self.key(NOTIFICATIONS_KEY), json.dumps(self.notifications.to_list()))

    def _save_progress(self) -> None:
        if self._progress is None:
            return
        self._progress.last_updated = self.clock().isoformat()
        self._write(PROGRESS_KEY, asdict(self._progress))

    def _save_notifications(self) -> None:
        self._write(NOTIFICATIONS_KEY, self.notifications.to_list())

    def _save_questions(self) -> None:
        self._write(QUESTIONS_KEY, {qid: asdict(r) for qid, r in self._questions.items()})

    def _read_raw(self, name: str) -> str | None:
        try:
            return self.store.get(self.key(name))
        except UnicodeDecodeError as e:
            raise CorruptStateError(f"{name}: {e}") from e

    def _read_json(self, name: str):
        raw = self._read_raw(name)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise CorruptStateError(f"{name}: {e}") from e

    # ── Boot ───────────────────────────────────────────────

    def _initialize(self) -> None:
        try:
            version = self._read_raw(VERSION_KEY)
        except CorruptStateError as e:
            logger.error("Unreadable version marker for user %s: %s", self.user_id, e)
            version = None
        if version != SCHEMA_VERSION:
            logger.info(
                "Migrating reward state for user %s from %s to %s",
                self.user_id, version or "none", SCHEMA_VERSION,
            )
            write_with_cleanup(self.store, self.key(VERSION_KEY), SCHEMA_VERSION)

        now = self.clock()
        try:
            data = self._read_json(PROGRESS_KEY)
            if data is not None:
                self._progress = UserProgressState.from_dict(
                    data, self.user_id, now, self.starting_credits,
                )
        except (CorruptStateError, ValidationError) as e:
            logger.error("Corrupt progress state for user %s, resetting to default: %s", self.user_id, e)
            self.recovered_from_corruption = True
            self._progress = None

        try:
            data = self._read_json(NOTIFICATIONS_KEY)
            if data is not None:
                self.notifications = NotificationLog.from_list(data, limit=self.notifications.limit)
        except (CorruptStateError, KeyError, TypeError) as e:
            logger.error("Corrupt notification history for user %s, discarding: %s", self.user_id, e)
            self.recovered_from_corruption = True

        try:
            data = self._read_json(QUESTIONS_KEY)
            if data is not None:
                self._questions = self._parse_questions(data)
        except (CorruptStateError, ValidationError) as e:
            logger.error("Corrupt question progress for user %s, discarding: %s", self.user_id, e)
            self.recovered_from_corruption = True

    def _parse_questions(self, data) -> dict[str, QuestionProgress]:
        if not isinstance(data, dict):
            raise ValidationError("question progress must be a JSON object")
        parsed = {}
        try:
            for qid, entry in data.items():
                parsed[str(qid)] = QuestionProgress.from_dict(entry, self.user_id, str(qid))
        except ValueError as e:
            raise ValidationError(f"question progress: {e}") from e
        return parsed

    def _state(self) -> UserProgressState:
        """The live state, bootstrapping the default on first use."""
        if self._progress is None:
            self._progress = UserProgressState.default(
                self.user_id, self.clock(), self.starting_credits, self.weekly_goal_minutes,
            )
            logger.info("Created default progress for user %s", self.user_id)
            self._save_progress()
        return self._progress

    # ── Progress ───────────────────────────────────────────

    def get_progress(self) -> UserProgressState:
        return copy.deepcopy(self._state())

    def update_progress(self, **updates) -> UserProgressState:
        """Overwrite fields of the state. `level` is derived and cannot be set.

        Numeric fields only take non-negative integers; nothing is written
        unless every update is valid.
        """
        state = self._state()
        known = {f.name for f in fields(UserProgressState)}
        for name, value in updates.items():
            if name not in known:
                raise AttributeError(f"Unknown progress field: {name}")
            if name == "level":
                raise ValueError("level is derived from total_xp")
            if isinstance(getattr(state, name), int) and (
                isinstance(value, bool) or not isinstance(value, int) or value < 0
            ):
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
        for name, value in updates.items():
            setattr(state, name, value)
        state.level = level_for_xp(state.total_xp)
        state.longest_streak = max(state.longest_streak, state.current_streak)
        self._save_progress()
        return copy.deepcopy(state)

    def increment_progress(self, key: str, amount: int = 1) -> UserProgressState:
        """Add `amount` to a numeric counter; non-numeric keys are left alone.

        A result below zero raises ValueError like update_progress.
        """
        state = self._state()
        current = getattr(state, key, None)
        if key in ("level", "total_xp") or isinstance(current, bool) or not isinstance(current, int):
            return copy.deepcopy(state)
        return self.update_progress(**{key: current + amount})

    # ── XP ─────────────────────────────────────────────────

    def get_total_xp(self) -> int:
        return self._state().total_xp

    def get_level(self) -> int:
        return self._state().level

    def add_xp(self, amount: int) -> XPResult:
        if amount < 0:
            raise ValueError("XP cannot be removed")
        state = self._state()
        old_level = state.level
        state.total_xp += amount
        state.level = level_for_xp(state.total_xp)
        self._save_progress()
        return XPResult(
            new_xp=state.total_xp,
            old_level=old_level,
            new_level=state.level,
            leveled_up=state.level > old_level,
        )

    # ── Credits ────────────────────────────────────────────

    def get_credit_balance(self) -> int:
        return self._state().credit_balance

    def can_afford(self, amount: int) -> bool:
        return self.get_credit_balance() >= amount

    def add_credits(self, amount: int) -> int:
        """Add credits; a negative amount is a penalty clamped at the current balance."""
        state = self._state()
        if amount >= 0:
            state.credit_balance += amount
            state.total_credits_earned += amount
        else:
            debit = min(-amount, state.credit_balance)
            state.credit_balance -= debit
            state.total_credits_spent += debit
        self._save_progress()
        return state.credit_balance

    def spend_credits(self, amount: int) -> SpendResult:
        state = self._state()
        if amount < 0 or amount > state.credit_balance:
            return SpendResult(success=False, balance=state.credit_balance)
        state.credit_balance -= amount
        state.total_credits_spent += amount
        self._save_progress()
        return SpendResult(success=True, balance=state.credit_balance)

    # ── Streaks ────────────────────────────────────────────

    def get_current_streak(self) -> int:
        return self._state().current_streak

    def update_streak(self) -> StreakUpdate:
        """Count today as an active day. Repeated calls on the same day are no-ops."""
        state = self._state()
        result = compute_streak(
            state.last_activity_date,
            self.clock().date(),
            state.current_streak,
            state.longest_streak,
        )
        if result.is_new_day:
            state.current_streak = result.current_streak
            state.longest_streak = result.longest_streak
            state.last_activity_date = result.activity_date
            self._save_progress()
            if result.streak_broken:
                logger.info("Streak broken for user %s", self.user_id)
        return result

    # ── Channels ───────────────────────────────────────────

    def track_channel_explored(self, channel: str) -> bool:
        """Record a channel as explored. Returns True the first time."""
        state = self._state()
        if channel in state.channels_explored:
            return False
        state.channels_explored.append(channel)
        self._save_progress()
        return True

    def update_channel_progress(self, channel: str, questions_completed: int) -> None:
        state = self._state()
        state.channel_progress[channel] = state.channel_progress.get(channel, 0) + questions_completed
        self._save_progress()

    # ── Session / daily / weekly ───────────────────────────

    def _roll_counters(self, state: UserProgressState) -> None:
        today = self.clock().date()
        if state.counter_day != today.isoformat():
            state.today_questions = 0
            state.counter_day = today.isoformat()
        week = _week_key(today)
        if state.counter_week != week:
            state.this_week_questions = 0
            state.weekly_practice_seconds = 0
            state.counter_week = week

    def start_session(self) -> None:
        self.update_progress(current_session_questions=0)

    def increment_session_questions(self) -> int:
        state = self._state()
        state.current_session_questions += 1
        self._save_progress()
        return state.current_session_questions

    def increment_today_questions(self) -> int:
        state = self._state()
        self._roll_counters(state)
        state.today_questions += 1
        self._save_progress()
        return state.today_questions

    def increment_this_week_questions(self) -> int:
        state = self._state()
        self._roll_counters(state)
        state.this_week_questions += 1
        self._save_progress()
        return state.this_week_questions

    def add_practice_time(self, seconds: int) -> int:
        state = self._state()
        self._roll_counters(state)
        state.weekly_practice_seconds += max(0, int(seconds))
        self._save_progress()
        return state.weekly_practice_seconds

    def weekly_practice_seconds(self) -> int:
        """Practice time for the current ISO week (0 if the stored week is stale)."""
        state = self._state()
        if state.counter_week != _week_key(self.clock().date()):
            return 0
        return state.weekly_practice_seconds

    # ── Question progress (spaced repetition) ──────────────

    def get_question_progress(self, question_id: str) -> QuestionProgress | None:
        record = self._questions.get(str(question_id))
        return copy.deepcopy(record) if record else None

    def all_question_progress(self) -> list[QuestionProgress]:
        return [copy.deepcopy(r) for r in self._questions.values()]

    def record_attempt(self, question_id: str, score: float) -> QuestionProgress:
        """Score one attempt at a question and reschedule its next review."""
        now = self.clock()
        question_id = str(question_id)
        record = self._questions.get(question_id)
        if record is None:
            record = new_progress(self.user_id, question_id, now, score)
            self._questions[question_id] = record
        apply_score(record, score, now)
        self._save_questions()
        return copy.deepcopy(record)

    def due_for_review(self) -> list[QuestionProgress]:
        now = self.clock()
        return [copy.deepcopy(r) for r in self._questions.values() if is_due(r, now)]

    def question_stats(self) -> dict:
        return summarize(list(self._questions.values()))

    def mastery_rate(self) -> float:
        return self.question_stats()["mastery_rate"]

    # ── Notifications ──────────────────────────────────────

    def add_notification(
        self, notif_type: str, title: str, message: str,
        icon: str = "", color: str = "", amount: int | None = None,
    ) -> RewardNotification:
        notif = self.notifications.add(
            notif_type, title, message, self.clock(), icon=icon, color=color, amount=amount,
        )
        self._save_notifications()
        return notif

    def get_notifications(self) -> list[RewardNotification]:
        return copy.deepcopy(self.notifications.items)

    def dismiss_notification(self, notif_id: str) -> None:
        if self.notifications.dismiss(notif_id):
            self._save_notifications()

    def clear_notifications(self) -> None:
        self.notifications.clear()
        self._save_notifications()

    # ── Export / import ────────────────────────────────────

    def export_data(self) -> str:
        return json.dumps({
            "progress": asdict(self._state()),
            "notifications": self.notifications.to_list(),
            "questions": {qid: asdict(r) for qid, r in self._questions.items()},
            "version": SCHEMA_VERSION,
            "exported_at": self.clock().isoformat(),
        }, indent=2)

    def import_data(self, blob: str) -> bool:
        """Replace all state with an exported blob.

        The whole blob is parsed and validated before anything is replaced; a
        malformed blob returns False and leaves the current state untouched.
        """
        try:
            data = json.loads(blob)
            if not isinstance(data, dict) or not isinstance(data.get("progress"), dict):
                raise ValidationError("blob must be an object with a progress object")
            progress = UserProgressState.from_dict(
                data["progress"], self.user_id, self.clock(), self.starting_credits,
            )
            notifications = NotificationLog.from_list(
                data.get("notifications") or [], limit=self.notifications.limit,
            )
            questions = self._parse_questions(data.get("questions") or {})
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Rejected progress import for user %s: %s", self.user_id, e)
            return False

        self._progress = progress
        self.notifications = notifications
        self._questions = questions
        self._save_progress()
        self._save_notifications()
        self._save_questions()
        logger.info("Imported progress for user %s (version %s)", self.user_id, data.get("version"))
        return True

    def reset_all(self) -> None:
        """Back to a brand-new account: default progress, no history, no question records."""
        self._progress = UserProgressState.default(
            self.user_id, self.clock(), self.starting_credits, self.weekly_goal_minutes,
        )
        self.notifications.clear()
        self._questions = {}
        self._save_progress()
        self._save_notifications()
        self._save_questions()
