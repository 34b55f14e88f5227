"""Pydantic models returned by the progress facade and the HTTP router."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


# --- Catalog ---


class AlternativeDefinitionResponse(BaseModel):
    key: str
    replaces_id: str
    title: str
    total_steps: int
    xp_reward: int
    step_label: str
    mood_gate_required: bool


class MissionDefinitionResponse(BaseModel):
    id: str
    title: str
    category: str
    frequency: str
    xp_reward: int
    total_steps: int
    alternatives: list[AlternativeDefinitionResponse] = []


class CatalogResponse(BaseModel):
    missions: list[MissionDefinitionResponse]


# --- Gamification ---


class AchievementResponse(BaseModel):
    id: str
    title: str
    rarity: str
    xp_reward: int
    unlocked_at: datetime


class GamificationStateResponse(BaseModel):
    user_id: str
    timezone: str
    xp: int
    level: int
    xp_into_level: int
    xp_for_level: int
    next_level_at: int
    current_streak: int
    longest_streak: int
    last_check_in_date: date | None = None
    lives: int
    medication_streak: int
    achievements: list[AchievementResponse] = []
    newly_unlocked: list[str] = []


class CheckInResponse(BaseModel):
    counted: bool
    day: date
    gamification: GamificationStateResponse


class XPHistoryEntry(BaseModel):
    amount: int
    source: str
    source_id: str | None = None
    description: str | None = None
    created_at: datetime | None = None


class XPHistoryResponse(BaseModel):
    entries: list[XPHistoryEntry]
    total_xp: int


# --- Missions ---


class MissionInstanceResponse(BaseModel):
    id: str
    mission_id: str
    slot_id: str
    kind: str
    state: str
    title: str
    progress: int
    max_progress: int
    xp_reward: int
    day: date
    step_label: str | None = None
    completed_at: datetime | None = None


class MissionListResponse(BaseModel):
    day: date
    missions: list[MissionInstanceResponse]


class MissionMutationResponse(BaseModel):
    mission: MissionInstanceResponse
    changed: bool
    xp_delta: int = 0
    gamification: GamificationStateResponse


# --- Medications ---


class DoseResponse(BaseModel):
    ordinal: int
    scheduled_time: str
    taken: bool
    missed: bool
    logged_at: datetime | None = None
    source: str | None = None


class MedicationResponse(BaseModel):
    id: str
    name: str
    dosage: str
    frequency: str
    scheduled_times: list[str]
    xp_per_dose: int
    start_date: date
    doses_today: list[DoseResponse] = []
    adherence_today: int
    adherence_week: int


class MedicationListResponse(BaseModel):
    day: date
    medications: list[MedicationResponse]


class DoseMutationResponse(BaseModel):
    medication_id: str
    day: date
    dose: DoseResponse
    changed: bool
    xp_awarded: int = 0
    gamification: GamificationStateResponse


class MedicationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    dosage: str = Field("", max_length=64)
    frequency: str
    scheduled_times: list[str] = []
    xp_per_dose: int | None = Field(None, ge=0)
    start_date: date | None = None


class ScheduleUpdateRequest(BaseModel):
    frequency: str
    scheduled_times: list[str] = []


class TimezoneRequest(BaseModel):
    timezone: str = Field(..., min_length=1, max_length=64)


# --- Mood ---


class MoodRequest(BaseModel):
    emotion: str = Field(..., min_length=1, max_length=32)


class MoodResponse(BaseModel):
    emotion: str
    day: date
    low_mood: bool
    checked_in_at: datetime
