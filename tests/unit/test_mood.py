"""Low-mood classification for the alternative-mission gate."""

import pytest

from loretta.missions.mood import LOW_MOOD_EMOTIONS, is_low_mood


class TestLowMood:
    @pytest.mark.parametrize("emotion", sorted(LOW_MOOD_EMOTIONS))
    def test_low_emotions(self, emotion):
        assert is_low_mood(emotion) is True

    @pytest.mark.parametrize("emotion", ["happy", "calm", "energized", "grateful"])
    def test_other_emotions(self, emotion):
        assert is_low_mood(emotion) is False

    def test_case_and_whitespace_insensitive(self):
        assert is_low_mood("  Tired ") is True

    def test_no_checkin_is_not_low(self):
        assert is_low_mood(None) is False
        assert is_low_mood("") is False
