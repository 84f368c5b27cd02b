"""Reward Configuration — XP, credit, multiplier, level and SM-2 tables.

Static lookup tables only. Everything here is read by the ledger, the
scheduler, the achievement engine and the reward engine; nothing mutates it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


# ── XP values ─────────────────────────────────────────────────

XP_CONFIG = {
    "question_beginner": 10,
    "question_intermediate": 20,
    "question_advanced": 30,
    "quiz_correct": 5,
    "quiz_wrong": 0,
    "quiz_perfect": 50,
    "voice_attempt": 50,
    "voice_success": 100,  # bonus for hire / strong-hire
    "srs_again": 0,
    "srs_hard": 5,
    "srs_good": 10,
    "srs_easy": 15,
    "daily_login": 10,
    "session_complete": 25,
    "daily_challenge": 100,
    "weekly_challenge": 500,
    "certification_attempt": 100,
    "certification_pass": 500,
    "coding_attempt": 50,
    "coding_pass": 200,
    "training_complete": 75,
}


# ── Credit values ─────────────────────────────────────────────

CREDIT_CONFIG = {
    "new_user_bonus": 500,
    "voice_attempt": 10,
    "voice_success_bonus": 25,
    "quiz_correct": 1,
    "quiz_wrong": -1,
    "srs_again": -2,
    "srs_hard": 0,
    "srs_good": 2,
    "srs_easy": 3,
    "question_view_cost": 2,
    "level_up_base": 50,
    "level_up_multiplier": 1.2,
}

ACHIEVEMENT_TIER_CREDITS = {
    "bronze": 50,
    "silver": 100,
    "gold": 200,
    "platinum": 500,
    "diamond": 1000,
}

TIER_COLORS = {
    "bronze": "#cd7f32",
    "silver": "#c0c0c0",
    "gold": "#ffd700",
    "platinum": "#e5e4e2",
    "diamond": "#b9f2ff",
}


# ── Multipliers ───────────────────────────────────────────────

# Minimum streak (days) -> XP multiplier
STREAK_MULTIPLIERS = {
    3: 1.05,
    7: 1.1,
    14: 1.2,
    30: 1.5,
    60: 1.75,
    100: 2.0,
    365: 3.0,
}

DIFFICULTY_MULTIPLIERS = {
    "beginner": 1.0,
    "intermediate": 1.5,
    "advanced": 2.0,
}


# ── Levels ────────────────────────────────────────────────────

# Index i of the dense range (0-19) is level i + 1; the tail is sparse.
LEVEL_THRESHOLDS = [
    0, 100, 250, 500, 800, 1200, 1700, 2300, 3000, 3800,
    4800, 6000, 7400, 9000, 10800, 12800, 15300, 18300, 21800, 25800,
    45800, 85800, 145800, 225800, 325800, 450800,
]
DENSE_LEVEL_COUNT = 20
SPARSE_LEVELS = [25, 30, 35, 40, 45, 50]
MAX_LEVEL = SPARSE_LEVELS[-1]


# ── Spaced repetition (SM-2 variant) ──────────────────────────

SRS_PASS_SCORE = 80
SRS_MASTERY_SCORE = 90
SRS_MASTERY_REPETITIONS = 3
SRS_INITIAL_EASE = 2.5
SRS_MIN_EASE = 1.3
SRS_FIRST_INTERVAL = 1
SRS_SECOND_INTERVAL = 6

# Card ratings are graded on the same 0-100 scale as answer scores.
SRS_RATING_SCORES = {
    "again": 0,
    "hard": 60,
    "good": 85,
    "easy": 100,
}

VOICE_PRACTICE_SCORE = 70


# ── Activity rewards ──────────────────────────────────────────

@dataclass(frozen=True)
class ActivityRewardConfig:
    base_xp: int = 0
    base_credits: int = 0
    credit_cost: int = 0
    streak_multiplier: bool = False
    difficulty_multiplier: bool = False


ZERO_REWARD = ActivityRewardConfig()

# question_completed picks its XP from the difficulty table, so it does not
# also carry the difficulty multiplier flag.
ACTIVITY_REWARDS: dict[str, ActivityRewardConfig] = {
    "question_viewed": ActivityRewardConfig(credit_cost=CREDIT_CONFIG["question_view_cost"]),
    "question_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["question_beginner"], streak_multiplier=True,
    ),
    "question_bookmarked": ActivityRewardConfig(base_xp=2),
    "question_shared": ActivityRewardConfig(base_xp=5, base_credits=5),
    "quiz_started": ActivityRewardConfig(),
    "quiz_answered": ActivityRewardConfig(
        base_xp=XP_CONFIG["quiz_correct"], base_credits=CREDIT_CONFIG["quiz_correct"],
    ),
    "quiz_completed": ActivityRewardConfig(base_xp=10, base_credits=5),
    "quiz_perfect_score": ActivityRewardConfig(base_xp=XP_CONFIG["quiz_perfect"], base_credits=25),
    "voice_interview_started": ActivityRewardConfig(),
    "voice_interview_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["voice_attempt"],
        base_credits=CREDIT_CONFIG["voice_attempt"],
        streak_multiplier=True,
    ),
    "voice_interview_success": ActivityRewardConfig(
        base_xp=XP_CONFIG["voice_success"], base_credits=CREDIT_CONFIG["voice_success_bonus"],
    ),
    "srs_review_started": ActivityRewardConfig(),
    "srs_review_completed": ActivityRewardConfig(base_xp=5),
    "srs_card_rated": ActivityRewardConfig(
        base_xp=XP_CONFIG["srs_good"],
        base_credits=CREDIT_CONFIG["srs_good"],
        streak_multiplier=True,
    ),
    "session_started": ActivityRewardConfig(),
    "session_ended": ActivityRewardConfig(base_xp=XP_CONFIG["session_complete"]),
    "daily_login": ActivityRewardConfig(base_xp=XP_CONFIG["daily_login"], streak_multiplier=True),
    "streak_updated": ActivityRewardConfig(),
    "daily_challenge_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["daily_challenge"], base_credits=50,
    ),
    "weekly_challenge_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["weekly_challenge"], base_credits=200,
    ),
    "certification_started": ActivityRewardConfig(),
    "certification_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["certification_attempt"], base_credits=50,
    ),
    "certification_passed": ActivityRewardConfig(
        base_xp=XP_CONFIG["certification_pass"], base_credits=200,
    ),
    "coding_challenge_started": ActivityRewardConfig(),
    "coding_challenge_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["coding_attempt"], base_credits=25,
    ),
    "coding_challenge_passed": ActivityRewardConfig(
        base_xp=XP_CONFIG["coding_pass"], base_credits=100,
    ),
    "training_session_started": ActivityRewardConfig(),
    "training_session_completed": ActivityRewardConfig(
        base_xp=XP_CONFIG["training_complete"], base_credits=25, streak_multiplier=True,
    ),
    "profile_updated": ActivityRewardConfig(base_xp=5),
    "achievement_shared": ActivityRewardConfig(base_xp=10, base_credits=10),
}

STREAK_ACTIVITIES = frozenset({
    "question_completed",
    "quiz_answered",
    "voice_interview_completed",
    "srs_card_rated",
    "daily_login",
})

SUCCESS_VERDICTS = frozenset({"hire", "strong-hire"})


# ── Helpers ───────────────────────────────────────────────────

def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (2.5 -> 3), unlike round()."""
    return int(math.floor(value + 0.5))


def get_activity_config(
    activity_type: str,
    table: dict[str, ActivityRewardConfig] | None = None,
) -> ActivityRewardConfig:
    """Reward config for an activity; unknown types get a zero-reward default."""
    return (table or ACTIVITY_REWARDS).get(activity_type, ZERO_REWARD)


def get_streak_multiplier(streak: int) -> float:
    """Largest multiplier whose threshold the streak has reached, else 1.0."""
    for threshold in sorted(STREAK_MULTIPLIERS, reverse=True):
        if streak >= threshold:
            return STREAK_MULTIPLIERS[threshold]
    return 1.0


def get_difficulty_multiplier(difficulty: str | None) -> float:
    if not difficulty:
        return 1.0
    return DIFFICULTY_MULTIPLIERS.get(difficulty, 1.0)


def level_for_xp(xp: int) -> int:
    """Map total XP to a level using LEVEL_THRESHOLDS.

    Levels 1-20 are dense; beyond that the table jumps through 25, 30 ... 50.
    """
    for i in range(len(LEVEL_THRESHOLDS) - 1, -1, -1):
        if xp >= LEVEL_THRESHOLDS[i]:
            if i < DENSE_LEVEL_COUNT:
                return i + 1
            return SPARSE_LEVELS[i - DENSE_LEVEL_COUNT]
    return 1


def xp_for_level(level: int) -> int:
    """Minimum XP needed to sit at `level` (inverse of level_for_xp)."""
    if level <= DENSE_LEVEL_COUNT:
        return LEVEL_THRESHOLDS[max(level, 1) - 1]
    for i, sparse in enumerate(SPARSE_LEVELS):
        if level <= sparse:
            return LEVEL_THRESHOLDS[DENSE_LEVEL_COUNT + i]
    return LEVEL_THRESHOLDS[-1]


def calculate_level_up_credits(level: int) -> int:
    return round_half_up(
        CREDIT_CONFIG["level_up_base"] * CREDIT_CONFIG["level_up_multiplier"] ** (level - 1)
    )
