"""Progress API endpoints: missions, medications, gamification and mood."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request, Response

from loretta.progress.facade import MAX_HISTORY_LIMIT, ProgressFacade
from loretta.progress.schemas import (
    CatalogResponse,
    CheckInResponse,
    DoseMutationResponse,
    GamificationStateResponse,
    MedicationCreateRequest,
    MedicationListResponse,
    MedicationResponse,
    MissionListResponse,
    MissionMutationResponse,
    MoodRequest,
    MoodResponse,
    ScheduleUpdateRequest,
    TimezoneRequest,
    XPHistoryResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Progress"])


def get_facade(request: Request) -> ProgressFacade:
    """The facade built at startup (FastAPI dependency)."""
    return request.app.state.facade


# ── Catalog ──


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    """All standard missions with their alternatives."""
    return facade.list_catalog()


# ── Missions ──


@router.get("/users/{user_id}/missions", response_model=MissionListResponse)
async def list_missions(
    user_id: str,
    day: date | None = Query(None),
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    """Mission instances for today, or for a past day when ``day`` is given."""
    return await facade.list_missions(user_id, day)


@router.post(
    "/users/{user_id}/missions/{mission_id}/alternatives/{alternative_key}",
    response_model=MissionMutationResponse,
)
async def activate_alternative(
    user_id: str,
    mission_id: str,
    alternative_key: str,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.activate_alternative(user_id, mission_id, alternative_key)


@router.post("/missions/{instance_id}/steps", response_model=MissionMutationResponse)
async def log_mission_step(instance_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    return await facade.log_mission_step(instance_id)


@router.delete("/missions/{instance_id}/steps", response_model=MissionMutationResponse)
async def undo_mission_step(instance_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    return await facade.undo_mission_step(instance_id)


@router.post("/missions/{instance_id}/complete", response_model=MissionMutationResponse)
async def complete_mission(instance_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    return await facade.complete_mission(instance_id)


@router.post("/missions/{instance_id}/deactivate", response_model=MissionMutationResponse)
async def deactivate_mission(instance_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    """Drop an alternative and hand the slot back to the original mission."""
    return await facade.deactivate_mission(instance_id)


# ── Medications ──


@router.get("/users/{user_id}/medications", response_model=MedicationListResponse)
async def list_medications(user_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    """Active medications with today's doses and adherence."""
    return await facade.list_medications(user_id)


@router.post("/users/{user_id}/medications", response_model=MedicationResponse, status_code=201)
async def add_medication(
    user_id: str,
    body: MedicationCreateRequest,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.add_medication(
        user_id,
        body.name,
        body.frequency,
        body.scheduled_times,
        dosage=body.dosage,
        xp_per_dose=body.xp_per_dose,
        start_date=body.start_date,
    )


@router.put("/medications/{medication_id}/schedule", response_model=MedicationResponse)
async def update_medication_schedule(
    medication_id: str,
    body: ScheduleUpdateRequest,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    """Replace the schedule. Takes effect from the next day."""
    return await facade.update_medication_schedule(medication_id, body.frequency, body.scheduled_times)


@router.delete("/medications/{medication_id}", status_code=204)
async def remove_medication(medication_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    await facade.remove_medication(medication_id)
    return Response(status_code=204)


@router.post("/medications/{medication_id}/doses/{ordinal}/taken", response_model=DoseMutationResponse)
async def log_dose(
    medication_id: str,
    ordinal: int,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.log_dose(medication_id, ordinal)


@router.post("/medications/{medication_id}/doses/{ordinal}/missed", response_model=DoseMutationResponse)
async def log_missed_dose(
    medication_id: str,
    ordinal: int,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.log_missed_dose(medication_id, ordinal)


# ── Gamification ──


@router.get("/users/{user_id}/gamification", response_model=GamificationStateResponse)
async def get_gamification_state(user_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    """XP, level, streaks, lives and unlocked achievements."""
    return await facade.get_gamification_state(user_id)


@router.post("/users/{user_id}/check-in", response_model=CheckInResponse)
async def check_in(user_id: str, facade: ProgressFacade = Depends(get_facade)):  # noqa: B008
    return await facade.check_in(user_id)


@router.get("/users/{user_id}/xp/history", response_model=XPHistoryResponse)
async def xp_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=MAX_HISTORY_LIMIT),
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.xp_history(user_id, limit)


# ── Profile ──


@router.post("/users/{user_id}/mood", response_model=MoodResponse, status_code=201)
async def record_mood(
    user_id: str,
    body: MoodRequest,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.record_mood(user_id, body.emotion)


@router.put("/users/{user_id}/timezone", response_model=GamificationStateResponse)
async def set_timezone(
    user_id: str,
    body: TimezoneRequest,
    facade: ProgressFacade = Depends(get_facade),  # noqa: B008
):
    return await facade.set_timezone(user_id, body.timezone)
