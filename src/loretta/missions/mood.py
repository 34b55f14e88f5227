"""Mood classification for the alternative-mission gate."""

from __future__ import annotations

LOW_MOOD_EMOTIONS: frozenset[str] = frozenset({
    "sick",
    "stressed",
    "anxious",
    "tired",
    "sad",
    "overwhelmed",
    "frustrated",
    "angry",
    "lonely",
})


def normalize_emotion(emotion: str) -> str:
    return emotion.strip().lower()


def is_low_mood(emotion: str | None) -> bool:
    """True when the emotion counts as low mood. No check-in is not low."""
    if not emotion:
        return False
    return normalize_emotion(emotion) in LOW_MOOD_EMOTIONS
