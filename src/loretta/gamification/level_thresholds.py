"""Level thresholds and computation.

Reaching level L+1 from level L costs ``L * 100 + 200`` XP, so the
cumulative requirement is 0 for level 1, 300 for level 2, 700 for level 3.
"""

from __future__ import annotations

BASE_XP_PER_LEVEL = 100
LEVEL_OFFSET = 200


def xp_for_next_level(level: int) -> int:
    """XP needed to go from ``level`` to ``level + 1``."""
    return level * BASE_XP_PER_LEVEL + LEVEL_OFFSET


def cumulative_xp_for_level(level: int) -> int:
    """Total XP at which ``level`` is reached."""
    steps = level - 1
    return BASE_XP_PER_LEVEL * steps * (steps + 1) // 2 + LEVEL_OFFSET * steps


def level_for_xp(total_xp: int) -> int:
    """Largest level whose cumulative requirement is <= total_xp."""
    level = 1
    while cumulative_xp_for_level(level + 1) <= max(total_xp, 0):
        level += 1
    return level


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP."""
    total_xp = max(total_xp, 0)
    level = level_for_xp(total_xp)
    floor = cumulative_xp_for_level(level)
    return {
        "level": level,
        "xp_into_level": total_xp - floor,
        "xp_for_level": xp_for_next_level(level),
        "next_level": level + 1,
        "next_level_at": floor + xp_for_next_level(level),
    }
