"""Mission catalog: static, validated once at load, read-only afterwards."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import lru_cache

from loretta.errors import NotFoundError, ValidationError


class MissionFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class MissionKind(str, enum.Enum):
    STANDARD = "standard"
    ALTERNATIVE = "alternative"


@dataclass(frozen=True)
class MissionDefinition:
    id: str
    title: str
    category: str
    frequency: MissionFrequency
    xp_reward: int
    total_steps: int


@dataclass(frozen=True)
class AlternativeMissionDefinition:
    key: str
    replaces_id: str
    title: str
    total_steps: int
    xp_reward: int
    step_label: str
    mood_gate_required: bool


STANDARD_MISSION_DATA: list[dict] = [
    {
        "id": "water-glasses",
        "title": "Drink a cup of water",
        "category": "hydration",
        "frequency": "daily",
        "xp_reward": 30,
        "total_steps": 8,
    },
    {
        "id": "jumping-jacks",
        "title": "Complete 10 jumping jacks",
        "category": "movement",
        "frequency": "daily",
        "xp_reward": 50,
        "total_steps": 4,
    },
    {
        "id": "outdoor-walk",
        "title": "5 minute outdoor walk",
        "category": "movement",
        "frequency": "daily",
        "xp_reward": 40,
        "total_steps": 2,
    },
    {
        "id": "wind-down",
        "title": "Wind down routine",
        "category": "sleep",
        "frequency": "daily",
        "xp_reward": 25,
        "total_steps": 1,
    },
    {
        "id": "deep-breathing",
        "title": "Deep breathing exercise",
        "category": "mindfulness",
        "frequency": "daily",
        "xp_reward": 20,
        "total_steps": 3,
    },
    {
        "id": "active-break",
        "title": "Active break",
        "category": "movement",
        "frequency": "daily",
        "xp_reward": 20,
        "total_steps": 4,
    },
    {
        "id": "weekly-reflection",
        "title": "Weekly health reflection",
        "category": "mindfulness",
        "frequency": "weekly",
        "xp_reward": 100,
        "total_steps": 1,
    },
]

ALTERNATIVE_MISSION_DATA: list[dict] = [
    {"key": "herbal-tea", "replaces_id": "water-glasses", "title": "Drink herbal tea",
     "total_steps": 6, "xp_reward": 25, "step_label": "Cup", "mood_gate_required": False},
    {"key": "water-rich-fruits", "replaces_id": "water-glasses", "title": "Eat water-rich fruits",
     "total_steps": 4, "xp_reward": 20, "step_label": "Serving", "mood_gate_required": False},
    {"key": "squats", "replaces_id": "jumping-jacks", "title": "Do 20 squats",
     "total_steps": 4, "xp_reward": 45, "step_label": "Set of 5", "mood_gate_required": False},
    {"key": "short-walk", "replaces_id": "jumping-jacks", "title": "Take a 5-min walk",
     "total_steps": 4, "xp_reward": 35, "step_label": "Walk", "mood_gate_required": True},
    {"key": "march-in-place", "replaces_id": "outdoor-walk", "title": "March in place for 5 mins",
     "total_steps": 2, "xp_reward": 25, "step_label": "Session", "mood_gate_required": True},
    {"key": "stair-climb", "replaces_id": "outdoor-walk", "title": "Climb stairs for 3 mins",
     "total_steps": 2, "xp_reward": 30, "step_label": "Session", "mood_gate_required": False},
    {"key": "bedtime-reading", "replaces_id": "wind-down", "title": "Read a book before bed",
     "total_steps": 1, "xp_reward": 20, "step_label": "Night", "mood_gate_required": False},
    {"key": "meditation", "replaces_id": "wind-down", "title": "Practice meditation",
     "total_steps": 1, "xp_reward": 25, "step_label": "Night", "mood_gate_required": True},
    {"key": "box-breathing", "replaces_id": "deep-breathing", "title": "Try box breathing",
     "total_steps": 3, "xp_reward": 20, "step_label": "Session", "mood_gate_required": True},
    {"key": "gentle-stretching", "replaces_id": "deep-breathing", "title": "Do gentle stretching",
     "total_steps": 3, "xp_reward": 15, "step_label": "Session", "mood_gate_required": True},
    {"key": "desk-exercises", "replaces_id": "active-break", "title": "Do desk exercises",
     "total_steps": 4, "xp_reward": 15, "step_label": "Break", "mood_gate_required": False},
    {"key": "take-the-stairs", "replaces_id": "active-break", "title": "Take the stairs",
     "total_steps": 4, "xp_reward": 20, "step_label": "Trip", "mood_gate_required": False},
]


class MissionCatalog:
    """Registry of mission and alternative-mission definitions.

    Lookups never fall back to a default: an unknown id is a NotFoundError.
    """

    def __init__(
        self,
        missions: list[MissionDefinition],
        alternatives: list[AlternativeMissionDefinition],
    ) -> None:
        self._missions: dict[str, MissionDefinition] = {}
        for mission in missions:
            if mission.id in self._missions:
                raise ValidationError(f"Duplicate mission id in catalog: {mission.id}")
            self._missions[mission.id] = mission

        self._alternatives: dict[str, AlternativeMissionDefinition] = {}
        for alt in alternatives:
            if alt.key in self._alternatives or alt.key in self._missions:
                raise ValidationError(f"Duplicate mission key in catalog: {alt.key}")
            original = self._missions.get(alt.replaces_id)
            if original is None:
                raise ValidationError(
                    f"Alternative {alt.key} replaces unknown mission {alt.replaces_id}"
                )
            if original.frequency is not MissionFrequency.DAILY:
                raise ValidationError(
                    f"Alternative {alt.key} replaces non-daily mission {alt.replaces_id}"
                )
            self._alternatives[alt.key] = alt

    @classmethod
    def from_records(cls, missions: list[dict], alternatives: list[dict]) -> MissionCatalog:
        """Build a catalog from raw records, validating required fields."""
        return cls(
            [_parse_mission(record) for record in missions],
            [_parse_alternative(record) for record in alternatives],
        )

    def definition_for(self, mission_id: str) -> MissionDefinition:
        try:
            return self._missions[mission_id]
        except KeyError:
            raise NotFoundError(f"Unknown mission: {mission_id}") from None

    def alternative_for(self, key: str) -> AlternativeMissionDefinition:
        try:
            return self._alternatives[key]
        except KeyError:
            raise NotFoundError(f"Unknown alternative mission: {key}") from None

    def alternatives_for(self, mission_id: str) -> list[AlternativeMissionDefinition]:
        self.definition_for(mission_id)
        return [alt for alt in self._alternatives.values() if alt.replaces_id == mission_id]

    def standard_missions(self) -> list[MissionDefinition]:
        return list(self._missions.values())

    def title_for(self, mission_id: str, kind: MissionKind) -> str:
        if kind is MissionKind.ALTERNATIVE:
            return self.alternative_for(mission_id).title
        return self.definition_for(mission_id).title


def _require(record: dict, field: str, expected: type) -> object:
    if field not in record:
        raise ValidationError(f"Catalog record missing {field!r}: {record}")
    value = record[field]
    # bool is an int subclass; reject it where a count is expected
    if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
        raise ValidationError(f"Catalog field {field!r} must be {expected.__name__}: {record}")
    return value


def _positive(record: dict, field: str) -> int:
    value = _require(record, field, int)
    if value <= 0:  # type: ignore[operator]
        raise ValidationError(f"Catalog field {field!r} must be positive: {record}")
    return value  # type: ignore[return-value]


def _parse_mission(record: dict) -> MissionDefinition:
    frequency = _require(record, "frequency", str)
    try:
        parsed_frequency = MissionFrequency(frequency)
    except ValueError:
        raise ValidationError(f"Unknown mission frequency {frequency!r}") from None
    return MissionDefinition(
        id=_require(record, "id", str),  # type: ignore[arg-type]
        title=_require(record, "title", str),  # type: ignore[arg-type]
        category=_require(record, "category", str),  # type: ignore[arg-type]
        frequency=parsed_frequency,
        xp_reward=_positive(record, "xp_reward"),
        total_steps=_positive(record, "total_steps"),
    )


def _parse_alternative(record: dict) -> AlternativeMissionDefinition:
    return AlternativeMissionDefinition(
        key=_require(record, "key", str),  # type: ignore[arg-type]
        replaces_id=_require(record, "replaces_id", str),  # type: ignore[arg-type]
        title=_require(record, "title", str),  # type: ignore[arg-type]
        total_steps=_positive(record, "total_steps"),
        xp_reward=_positive(record, "xp_reward"),
        step_label=_require(record, "step_label", str),  # type: ignore[arg-type]
        mood_gate_required=_require(record, "mood_gate_required", bool),  # type: ignore[arg-type]
    )


@lru_cache
def get_catalog() -> MissionCatalog:
    """The process-wide catalog, built once from the static tables."""
    return MissionCatalog.from_records(STANDARD_MISSION_DATA, ALTERNATIVE_MISSION_DATA)
