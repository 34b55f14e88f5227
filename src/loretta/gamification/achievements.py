"""Declarative achievement table.

Each rule is a threshold on one metric of the user's progress. Rules are
evaluated after every ledger mutation; an unlocked achievement stays
unlocked even when the metric later drops.
"""

from __future__ import annotations

from dataclasses import dataclass

from loretta.db.models import UserProgress


@dataclass(frozen=True)
class AchievementRule:
    id: str
    title: str
    metric: str
    threshold: int
    xp_reward: int
    rarity: str


ACHIEVEMENT_RULES: list[AchievementRule] = [
    AchievementRule("daily-dedication", "Daily Dedication", "longest_streak", 1, 50, "common"),
    AchievementRule("week_warrior", "Week Warrior", "current_streak", 7, 200, "rare"),
    AchievementRule("streak-legend", "Streak Legend", "current_streak", 30, 1000, "legendary"),
    AchievementRule("medication-adherence", "Medication Adherence", "medication_streak", 14, 400, "epic"),
    AchievementRule("wellness-warrior", "Wellness Warrior", "xp", 5000, 750, "legendary"),
    AchievementRule("health_champion", "Health Champion", "level", 15, 1000, "legendary"),
]

ACHIEVEMENTS_BY_ID: dict[str, AchievementRule] = {rule.id: rule for rule in ACHIEVEMENT_RULES}


def progress_metrics(progress: UserProgress) -> dict[str, int]:
    return {
        "xp": progress.xp,
        "level": progress.level,
        "current_streak": progress.current_streak,
        "longest_streak": progress.longest_streak,
        "medication_streak": progress.medication_streak,
    }


def newly_satisfied(metrics: dict[str, int], unlocked: set[str]) -> list[AchievementRule]:
    """Rules whose threshold is met and that are not unlocked yet, in table order."""
    return [
        rule
        for rule in ACHIEVEMENT_RULES
        if rule.id not in unlocked and metrics[rule.metric] >= rule.threshold
    ]
