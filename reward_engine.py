"""
Reward Engine — turns activity events into XP, credits, streaks and unlocks.

The engine is constructed once with a ProgressLedger and an AchievementEngine
and every activity goes through `process_activity`. All state changes go
through the ledger; listeners are told about the result only after the
ledger has persisted it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from achievements import AchievementEngine, AchievementRuleEvaluator, UnlockedAchievement
from config import get_config
from kv_store import KeyValueStore, init_store
from progress_store import ProgressLedger
from reward_config import (
    ACTIVITY_REWARDS,
    CREDIT_CONFIG,
    SRS_RATING_SCORES,
    STREAK_ACTIVITIES,
    STREAK_MULTIPLIERS,
    SUCCESS_VERDICTS,
    TIER_COLORS,
    XP_CONFIG,
    ActivityRewardConfig,
    calculate_level_up_credits,
    get_activity_config,
    get_difficulty_multiplier,
    get_streak_multiplier,
    round_half_up,
)

logger = logging.getLogger(__name__)

# Activity type -> achievement rule event type. Unmapped activities skip
# achievement evaluation entirely.
ACHIEVEMENT_EVENT_TYPES = {
    "question_completed": "question_completed",
    "quiz_answered": "quiz_answered",
    "voice_interview_completed": "voice_interview_completed",
    "srs_card_rated": "srs_review",
    "session_started": "session_started",
    "session_ended": "session_ended",
    "daily_login": "daily_login",
    "streak_updated": "streak_updated",
}

DIFFICULTY_XP = {
    "beginner": XP_CONFIG["question_beginner"],
    "intermediate": XP_CONFIG["question_intermediate"],
    "advanced": XP_CONFIG["question_advanced"],
}

DIFFICULTY_COUNTERS = {
    "beginner": "beginner_completed",
    "intermediate": "intermediate_completed",
    "advanced": "advanced_completed",
}


@dataclass(frozen=True)
class ActivityEvent:
    type: str
    timestamp: str
    data: dict = field(default_factory=dict)

    @classmethod
    def now(cls, activity_type: str, clock: Callable[[], datetime] | None = None, **data) -> ActivityEvent:
        stamp = (clock or datetime.now)().isoformat()
        return cls(activity_type, stamp, {k: v for k, v in data.items() if v is not None})


@dataclass
class RewardSummary:
    has_rewards: bool
    message: str
    details: list[str] = field(default_factory=list)


@dataclass
class RewardResult:
    xp_earned: int = 0
    activity_xp: int = 0
    xp_multiplier: float = 1.0
    new_total_xp: int = 0

    credits_earned: int = 0
    activity_credits: int = 0
    credits_spent: int = 0
    net_credits: int = 0
    new_balance: int = 0

    leveled_up: bool = False
    old_level: int = 1
    new_level: int = 1
    level_rewards: list[dict] = field(default_factory=list)

    achievements_unlocked: list[UnlockedAchievement] = field(default_factory=list)

    streak_bonus: int = 0
    current_streak: int = 0
    streak_broken: bool = False

    summary: RewardSummary = field(default_factory=lambda: RewardSummary(False, ""))
    persistence_degraded: bool = False


def build_summary(
    xp: int, credits_earned: int, credits_spent: int, leveled_up: bool,
    achievements: list[UnlockedAchievement],
) -> RewardSummary:
    details = []
    if xp > 0:
        details.append(f"+{xp} XP")
    if credits_earned > 0:
        details.append(f"+{credits_earned} credits")
    if credits_spent > 0:
        details.append(f"-{credits_spent} credits")
    if leveled_up:
        details.append("Level up!")
    if achievements:
        plural = "s" if len(achievements) > 1 else ""
        details.append(f"{len(achievements)} achievement{plural} unlocked")

    has_rewards = xp > 0 or credits_earned > 0 or leveled_up or bool(achievements)
    return RewardSummary(
        has_rewards=has_rewards,
        message=" • ".join(details) if has_rewards else "",
        details=details,
    )


def _as_number(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric value %r", value)
        return None


class RewardEngine:
    """Processes activities for one user against an explicit ledger."""

    def __init__(
        self,
        ledger: ProgressLedger,
        achievements: AchievementEngine,
        evaluators: Iterable[AchievementRuleEvaluator] = (),
        reward_table: dict[str, ActivityRewardConfig] | None = None,
    ) -> None:
        self.ledger = ledger
        self.achievements = achievements
        self.evaluators = list(evaluators)
        self.reward_table = reward_table or ACTIVITY_REWARDS
        self._listeners: list[Callable[[RewardResult], None]] = []
        self._lock = threading.Lock()

    # ── Main processing ─────────────────────────────────────────

    def process_activity(self, event: ActivityEvent) -> RewardResult:
        with self._lock:
            result = self._process(event)
        self._notify_listeners(result)
        return result

    def _process(self, event: ActivityEvent) -> RewardResult:
        data = event.data or {}
        if event.type not in self.reward_table:
            logger.warning("Unknown activity type %r, no reward applied", event.type)
        config = get_activity_config(event.type, self.reward_table)

        progress = self.ledger.get_progress()
        old_level = progress.level

        # Streak is touched at most once per call
        if event.type in STREAK_ACTIVITIES:
            streak = self.ledger.update_streak()
            current_streak, streak_broken = streak.current_streak, streak.streak_broken
            if streak.is_new_day and current_streak in STREAK_MULTIPLIERS:
                bonus = round_half_up((STREAK_MULTIPLIERS[current_streak] - 1) * 100)
                self.ledger.add_notification(
                    "streak", f"{current_streak} Day Streak!",
                    f"You now earn {bonus}% bonus XP", amount=current_streak,
                )
        else:
            current_streak, streak_broken = progress.current_streak, False

        # XP
        xp = self._calculate_xp(event, config)
        xp_multiplier = 1.0
        if xp > 0:
            if config.streak_multiplier:
                xp_multiplier = get_streak_multiplier(current_streak)
                xp = round_half_up(xp * xp_multiplier)
            if config.difficulty_multiplier and data.get("difficulty"):
                xp = round_half_up(xp * get_difficulty_multiplier(data["difficulty"]))

        # Credits
        credits = self._calculate_credits(event, config) if config.base_credits != 0 else 0

        credits_spent = 0
        if config.credit_cost > 0:
            if self.ledger.spend_credits(config.credit_cost).success:
                credits_spent = config.credit_cost
            else:
                logger.info(
                    "User %s cannot afford %s (%d credits)",
                    self.ledger.user_id, event.type, config.credit_cost,
                )

        level_rewards: list[dict] = []
        leveled_up = self._award_xp(xp, level_rewards)
        credits_earned = 0

        if credits > 0:
            self.ledger.add_credits(credits)
            credits_earned += credits
        elif credits < 0:
            before = self.ledger.get_credit_balance()
            credits_spent += before - self.ledger.add_credits(credits)

        self._update_activity_metrics(event)
        self._record_question_attempt(event)

        unlocked = self._process_achievements(event)
        xp_earned = xp
        for achievement in unlocked:
            xp_earned += achievement.xp
            if self._award_xp(achievement.xp, level_rewards):
                leveled_up = True
            if achievement.credits > 0:
                self.ledger.add_credits(achievement.credits)
                credits_earned += achievement.credits
            self.ledger.add_notification(
                "achievement", "Achievement Unlocked!", achievement.name,
                icon=achievement.icon, color=TIER_COLORS.get(achievement.tier, "#888"),
            )
        credits_earned += sum(r["amount"] for r in level_rewards)

        final = self.ledger.get_progress()
        return RewardResult(
            xp_earned=xp_earned,
            activity_xp=xp,
            xp_multiplier=xp_multiplier,
            new_total_xp=final.total_xp,
            credits_earned=credits_earned,
            activity_credits=credits,
            credits_spent=credits_spent,
            net_credits=credits_earned - credits_spent,
            new_balance=final.credit_balance,
            leveled_up=leveled_up,
            old_level=old_level,
            new_level=final.level,
            level_rewards=level_rewards,
            achievements_unlocked=unlocked,
            streak_bonus=round_half_up((xp_multiplier - 1) * 100) if xp_multiplier > 1 else 0,
            current_streak=current_streak,
            streak_broken=streak_broken,
            summary=build_summary(xp_earned, credits_earned, credits_spent, leveled_up, unlocked),
            persistence_degraded=self.persistence_degraded,
        )

    @property
    def persistence_degraded(self) -> bool:
        return self.ledger.persistence_degraded or self.achievements.persistence_degraded

    def _award_xp(self, amount: int, level_rewards: list[dict]) -> bool:
        """Add XP and pay out a level-up bonus. Returns True on level-up."""
        if amount <= 0:
            return False
        result = self.ledger.add_xp(amount)
        if not result.leveled_up:
            return False

        level_credits = calculate_level_up_credits(result.new_level)
        self.ledger.add_credits(level_credits)
        level_rewards.append({"type": "credits", "amount": level_credits, "level": result.new_level})
        self.ledger.add_notification(
            "level_up", "Level Up!", f"You reached level {result.new_level}!",
            amount=result.new_level,
        )
        logger.info(
            "User %s levelled up %d -> %d (+%d credits)",
            self.ledger.user_id, result.old_level, result.new_level, level_credits,
        )
        return True

    # ── XP & credit calculation ─────────────────────────────────

    def _calculate_xp(self, event: ActivityEvent, config: ActivityRewardConfig) -> int:
        data = event.data or {}
        if event.type == "question_completed":
            return DIFFICULTY_XP.get(data.get("difficulty"), config.base_xp)
        if event.type == "quiz_answered":
            return XP_CONFIG["quiz_correct"] if data.get("is_correct") else XP_CONFIG["quiz_wrong"]
        if event.type == "srs_card_rated" and data.get("rating") in SRS_RATING_SCORES:
            return XP_CONFIG[f"srs_{data['rating']}"]
        if event.type == "voice_interview_completed":
            xp = XP_CONFIG["voice_attempt"]
            if data.get("verdict") in SUCCESS_VERDICTS:
                xp += XP_CONFIG["voice_success"]
            return xp
        return config.base_xp

    def _calculate_credits(self, event: ActivityEvent, config: ActivityRewardConfig) -> int:
        data = event.data or {}
        credits = config.base_credits
        if event.type == "quiz_answered":
            credits = CREDIT_CONFIG["quiz_correct"] if data.get("is_correct") else CREDIT_CONFIG["quiz_wrong"]
        elif event.type == "srs_card_rated" and data.get("rating") in SRS_RATING_SCORES:
            credits = CREDIT_CONFIG[f"srs_{data['rating']}"]
        elif event.type == "voice_interview_completed":
            credits = CREDIT_CONFIG["voice_attempt"]
            if data.get("verdict") in SUCCESS_VERDICTS:
                credits += CREDIT_CONFIG["voice_success_bonus"]

        if credits < 0:
            credits = max(credits, -self.ledger.get_credit_balance())
        return credits

    # ── Counters ────────────────────────────────────────────────

    def _update_activity_metrics(self, event: ActivityEvent) -> None:
        data = event.data or {}
        ledger = self.ledger

        if event.type == "question_completed":
            ledger.increment_progress("questions_completed")
            ledger.increment_session_questions()
            ledger.increment_today_questions()
            ledger.increment_this_week_questions()
            counter = DIFFICULTY_COUNTERS.get(data.get("difficulty"))
            if counter:
                ledger.increment_progress(counter)
            channel = data.get("channel")
            if channel:
                ledger.track_channel_explored(channel)
                ledger.update_channel_progress(channel, 1)

        elif event.type == "quiz_answered":
            if data.get("is_correct"):
                ledger.increment_progress("quiz_answers_correct")
            else:
                ledger.increment_progress("quiz_answers_wrong")

        elif event.type == "voice_interview_completed":
            ledger.increment_progress("voice_interviews")
            if data.get("verdict") in SUCCESS_VERDICTS:
                ledger.increment_progress("voice_successes")

        elif event.type == "srs_card_rated":
            ledger.increment_progress("srs_reviews")

        elif event.type == "session_started":
            ledger.start_session()

        elif event.type == "session_ended":
            duration = _as_number(data.get("duration"))
            if duration:
                ledger.add_practice_time(int(duration))

    def _record_question_attempt(self, event: ActivityEvent) -> None:
        """Feed a graded outcome for a known question into its review schedule."""
        data = event.data or {}
        question_id = data.get("question_id")
        if not question_id:
            return

        score = _as_number(data.get("score"))
        if score is None:
            score = _as_number(data.get("interview_score"))
        if score is None and data.get("rating") in SRS_RATING_SCORES:
            score = SRS_RATING_SCORES[data["rating"]]
        if score is None and isinstance(data.get("is_correct"), bool):
            score = 100 if data["is_correct"] else 0
        if score is None:
            return

        self.ledger.record_attempt(str(question_id), score)

    # ── Achievements ────────────────────────────────────────────

    def _process_achievements(self, event: ActivityEvent) -> list[UnlockedAchievement]:
        rule_type = ACHIEVEMENT_EVENT_TYPES.get(event.type)
        if rule_type is None:
            return []

        unlocked = self.achievements.evaluate(self.ledger)
        rule_event = {"type": rule_type, "timestamp": event.timestamp, "data": dict(event.data or {})}
        for evaluator in self.evaluators:
            for descriptor in evaluator.evaluate_event(rule_event):
                # Same gate as local rules so an external unlock pays out once
                if self.achievements.register(descriptor) is not None:
                    unlocked.append(descriptor)
        return unlocked

    # ── Listeners ───────────────────────────────────────────────

    def add_listener(self, callback: Callable[[RewardResult], None]) -> Callable[[], None]:
        """Register a callback for every RewardResult. Returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify_listeners(self, result: RewardResult) -> None:
        for callback in list(self._listeners):
            try:
                callback(result)
            except Exception:
                logger.exception("Reward listener %r failed", callback)

    # ── Queries ─────────────────────────────────────────────────

    def get_progress_summary(self) -> dict:
        progress = self.ledger.get_progress()
        return {
            "level": progress.level,
            "total_xp": progress.total_xp,
            "xp_progress_pct": progress.xp_progress_pct,
            "credit_balance": progress.credit_balance,
            "current_streak": progress.current_streak,
            "longest_streak": progress.longest_streak,
            "questions_completed": progress.questions_completed,
            "channels_explored": len(progress.channels_explored),
            "persistence_degraded": self.persistence_degraded,
        }

    def can_afford(self, amount: int) -> bool:
        return self.ledger.can_afford(amount)

    def get_streak_multiplier(self) -> float:
        return get_streak_multiplier(self.ledger.get_current_streak())

    # ── Convenience trackers ────────────────────────────────────

    def _track(self, activity_type: str, **data) -> RewardResult:
        return self.process_activity(ActivityEvent.now(activity_type, clock=self.ledger.clock, **data))

    def track_question_completed(
        self, difficulty: str, channel: str, question_id: str | None = None, score: float | None = None,
    ) -> RewardResult:
        return self._track(
            "question_completed",
            difficulty=difficulty, channel=channel, question_id=question_id, score=score,
        )

    def track_quiz_answer(self, is_correct: bool, question_id: str | None = None) -> RewardResult:
        return self._track("quiz_answered", is_correct=is_correct, question_id=question_id)

    def track_voice_interview(
        self, verdict: str, score: float | None = None, question_id: str | None = None,
    ) -> RewardResult:
        return self._track(
            "voice_interview_completed",
            verdict=verdict, interview_score=score, question_id=question_id,
        )

    def track_srs_review(self, rating: str, question_id: str | None = None) -> RewardResult:
        return self._track("srs_card_rated", rating=rating, question_id=question_id)

    def track_daily_login(self) -> RewardResult:
        return self._track("daily_login")

    def track_session_start(self) -> RewardResult:
        return self._track("session_started")

    def track_session_end(self, questions_completed: int, duration: int) -> RewardResult:
        return self._track("session_ended", questions_completed=questions_completed, duration=duration)

    def track_certification_completed(self, certification_id: str, passed: bool) -> RewardResult:
        activity_type = "certification_passed" if passed else "certification_completed"
        return self._track(activity_type, certification_id=certification_id, passed=passed)

    def track_coding_challenge(
        self, challenge_id: str, passed: bool, language: str | None = None,
    ) -> RewardResult:
        activity_type = "coding_challenge_passed" if passed else "coding_challenge_completed"
        return self._track(activity_type, challenge_id=challenge_id, passed=passed, language=language)

    def track_training_session(self, questions_completed: int) -> RewardResult:
        return self._track("training_session_completed", questions_completed=questions_completed)

    def deduct_question_view_credits(self) -> dict:
        """Charge for opening a question outside process_activity."""
        cost = CREDIT_CONFIG["question_view_cost"]
        result = self.ledger.spend_credits(cost)
        return {"success": result.success, "cost": cost, "balance": result.balance}


# ── Factory ─────────────────────────────────────────────────────

def create_engine(
    config=None,
    user_id: str = "local",
    clock: Callable[[], datetime] | None = None,
    store: KeyValueStore | None = None,
    evaluators: Iterable[AchievementRuleEvaluator] = (),
) -> RewardEngine:
    """Wire logging, a store, a ledger and an achievement engine for one user from config."""
    config = config or get_config()

    # Structured logging
    from logging_config import init_logging
    init_logging(config)

    store = store if store is not None else init_store(config)
    ledger = ProgressLedger(
        store,
        user_id=user_id,
        clock=clock,
        starting_credits=config.STARTING_CREDITS,
        history_limit=config.NOTIFICATION_HISTORY_LIMIT,
        trim_limit=config.NOTIFICATION_TRIM_LIMIT,
        weekly_goal_minutes=config.WEEKLY_GOAL_MINUTES,
    )
    achievements = AchievementEngine(store, user_id=user_id, clock=clock)
    return RewardEngine(ledger, achievements, evaluators=evaluators)
