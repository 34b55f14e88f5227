"""Progress facade: units of work, lazy rollover, atomicity and serialization."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from loretta.db.models import MedicationDose, MissionInstance, UserProgress
from loretta.errors import NotFoundError, PreconditionError, StateError, ValidationError
from loretta.missions.catalog import STANDARD_MISSION_DATA
from loretta.progress.facade import ProgressFacade

MONDAY = date(2026, 3, 2)
USER = "user-1"


def _mission(listing, mission_id):
    return next(m for m in listing.missions if m.mission_id == mission_id)


class TestFirstAccess:
    @pytest.mark.asyncio
    async def test_new_user_defaults(self, facade):
        state = await facade.get_gamification_state(USER)
        assert state.xp == 0
        assert state.level == 1
        assert state.lives == 5
        assert state.current_streak == 0
        assert state.timezone == "UTC"
        assert state.achievements == []

    @pytest.mark.asyncio
    async def test_missions_created_for_today(self, facade):
        listing = await facade.list_missions(USER)
        assert listing.day == MONDAY
        assert len(listing.missions) == len(STANDARD_MISSION_DATA)
        assert {m.state for m in listing.missions} == {"active"}

    @pytest.mark.asyncio
    async def test_listing_twice_does_not_duplicate(self, facade, session_factory):
        await facade.list_missions(USER)
        await facade.list_missions(USER)
        async with session_factory() as db:
            count = await db.scalar(select(func.count()).select_from(MissionInstance))
        assert count == len(STANDARD_MISSION_DATA)

    @pytest.mark.asyncio
    async def test_invalid_user_id(self, facade):
        with pytest.raises(ValidationError):
            await facade.get_gamification_state("")

    def test_catalog(self, facade):
        catalog = facade.list_catalog()
        walk = next(m for m in catalog.missions if m.id == "outdoor-walk")
        assert {a.key for a in walk.alternatives} == {"march-in-place", "stair-climb"}


class TestRollover:
    @pytest.mark.asyncio
    async def test_next_day_supersedes_instances(self, facade, clock):
        monday = await facade.list_missions(USER)
        walk = _mission(monday, "outdoor-walk")
        await facade.log_mission_step(walk.id)

        clock.advance(days=1)
        tuesday = await facade.list_missions(USER)
        fresh = _mission(tuesday, "outdoor-walk")
        assert tuesday.day == MONDAY + timedelta(days=1)
        assert fresh.id != walk.id
        assert fresh.progress == 0

        with pytest.raises(StateError):
            await facade.log_mission_step(walk.id)

    @pytest.mark.asyncio
    async def test_weekly_mission_carries_across_days(self, facade, clock):
        monday = await facade.list_missions(USER)
        reflection = _mission(monday, "weekly-reflection")
        await facade.complete_mission(reflection.id)

        clock.advance(days=3)
        thursday = await facade.list_missions(USER)
        same = _mission(thursday, "weekly-reflection")
        assert same.id == reflection.id
        assert same.state == "completed"

        clock.advance(days=4)
        next_week = await facade.list_missions(USER)
        assert _mission(next_week, "weekly-reflection").state == "active"

    @pytest.mark.asyncio
    async def test_history_for_past_day(self, facade, clock):
        monday = await facade.list_missions(USER)
        clock.advance(days=1)
        await facade.list_missions(USER)
        past = await facade.list_missions(USER, MONDAY)
        assert {m.id for m in past.missions} == {m.id for m in monday.missions}

    @pytest.mark.asyncio
    async def test_timezone_moves_the_day(self, facade, clock):
        clock.advance(hours=3)  # 12:00 UTC, 01:00 next day in Auckland
        await facade.set_timezone(USER, "Pacific/Auckland")
        listing = await facade.list_missions(USER)
        assert listing.day == MONDAY + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_westward_timezone_move_keeps_the_day(self, facade, clock):
        clock.advance(hours=2)  # 11:00 UTC: 01:00 Tuesday in Kiritimati, 00:00 Monday in Pago Pago
        await facade.set_timezone(USER, "Pacific/Kiritimati")
        first = await facade.check_in(USER)
        assert first.counted is True
        assert first.day == MONDAY + timedelta(days=1)

        await facade.set_timezone(USER, "Pacific/Pago_Pago")
        again = await facade.check_in(USER)
        assert again.counted is False
        assert again.day == MONDAY + timedelta(days=1)
        assert again.gamification.current_streak == 1
        assert (await facade.list_missions(USER)).day == MONDAY + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, facade):
        with pytest.raises(ValidationError):
            await facade.set_timezone(USER, "Nowhere/Special")


class TestMissionsThroughFacade:
    @pytest.mark.asyncio
    async def test_complete_by_steps(self, facade):
        walk = _mission(await facade.list_missions(USER), "outdoor-walk")
        first = await facade.log_mission_step(walk.id)
        assert first.mission.progress == 1
        second = await facade.log_mission_step(walk.id)
        assert second.mission.state == "completed"
        assert second.xp_delta == 40
        assert second.gamification.xp == 40

        third = await facade.log_mission_step(walk.id)
        assert third.changed is False
        assert third.gamification.xp == 40

    @pytest.mark.asyncio
    async def test_undo_retracts(self, facade):
        wind_down = _mission(await facade.list_missions(USER), "wind-down")
        await facade.log_mission_step(wind_down.id)
        result = await facade.undo_mission_step(wind_down.id)
        assert result.mission.state == "active"
        assert result.gamification.xp == 0

    @pytest.mark.asyncio
    async def test_mood_gate_uses_latest_checkin(self, facade):
        await facade.list_missions(USER)
        with pytest.raises(PreconditionError, match="low mood required"):
            await facade.activate_alternative(USER, "wind-down", "meditation")

        await facade.record_mood(USER, "happy")
        with pytest.raises(PreconditionError):
            await facade.activate_alternative(USER, "wind-down", "meditation")

        mood = await facade.record_mood(USER, "Stressed")
        assert mood.low_mood is True
        result = await facade.activate_alternative(USER, "wind-down", "meditation")
        assert result.mission.kind == "alternative"
        assert result.mission.step_label == "Night"

        listing = await facade.list_missions(USER)
        assert _mission(listing, "wind-down").state == "replaced"

    @pytest.mark.asyncio
    async def test_yesterdays_mood_does_not_count(self, facade, clock):
        await facade.record_mood(USER, "tired")
        clock.advance(days=1)
        with pytest.raises(PreconditionError):
            await facade.activate_alternative(USER, "wind-down", "meditation")

    @pytest.mark.asyncio
    async def test_deactivate_through_facade(self, facade):
        await facade.list_missions(USER)
        alt = await facade.activate_alternative(USER, "jumping-jacks", "squats")
        result = await facade.deactivate_mission(alt.mission.id)
        assert result.mission.mission_id == "jumping-jacks"
        assert result.mission.state == "active"

    @pytest.mark.asyncio
    async def test_unknown_instance(self, facade):
        with pytest.raises(NotFoundError):
            await facade.log_mission_step("no-such-instance")


class TestMedicationsThroughFacade:
    @pytest.mark.asyncio
    async def test_add_and_log(self, facade):
        medication = await facade.add_medication(USER, "Vitamin D", "daily", ["08:00", "20:00"])
        assert [d.ordinal for d in medication.doses_today] == [0, 1]
        assert medication.xp_per_dose == 10
        assert medication.adherence_today == 0

        result = await facade.log_dose(medication.id, 0)
        assert result.changed is True
        assert result.xp_awarded == 10
        assert result.gamification.medication_streak == 1

        listing = await facade.list_medications(USER)
        assert listing.medications[0].adherence_today == 50

    @pytest.mark.asyncio
    async def test_relog_is_noop(self, facade):
        medication = await facade.add_medication(USER, "Vitamin D", "daily", ["08:00"])
        await facade.log_dose(medication.id, 0)
        again = await facade.log_dose(medication.id, 0)
        assert again.changed is False
        assert again.gamification.xp == 10

    @pytest.mark.asyncio
    async def test_as_needed_adherence(self, facade):
        medication = await facade.add_medication(USER, "Ibuprofen", "as-needed", [])
        assert medication.doses_today == []
        assert medication.adherence_today == 100
        assert medication.adherence_week == 100

    @pytest.mark.asyncio
    async def test_unlogged_doses_auto_missed_at_rollover(self, facade, clock, session_factory):
        medication = await facade.add_medication(USER, "Vitamin D", "daily", ["08:00", "20:00"])
        await facade.log_dose(medication.id, 0)

        clock.advance(days=2)
        listing = await facade.list_medications(USER)
        assert listing.medications[0].doses_today[0].missed is False

        async with session_factory() as db:
            rows = (await db.execute(
                select(MedicationDose).where(MedicationDose.day < listing.day).order_by(
                    MedicationDose.day, MedicationDose.ordinal
                )
            )).scalars().all()
        assert [(r.day, r.ordinal, r.taken, r.missed, r.source) for r in rows] == [
            (MONDAY, 0, True, False, "manual"),
            (MONDAY, 1, False, True, "auto"),
            (MONDAY + timedelta(days=1), 0, False, True, "auto"),
            (MONDAY + timedelta(days=1), 1, False, True, "auto"),
        ]
        # 1 taken of 6 scheduled over the trailing week
        assert listing.medications[0].adherence_week == 17

    @pytest.mark.asyncio
    async def test_log_missed(self, facade):
        medication = await facade.add_medication(USER, "Vitamin D", "daily", ["08:00"])
        result = await facade.log_missed_dose(medication.id, 0)
        assert result.dose.missed is True
        with pytest.raises(StateError):
            await facade.log_dose(medication.id, 0)

    @pytest.mark.asyncio
    async def test_schedule_update(self, facade, clock):
        medication = await facade.add_medication(USER, "Vitamin D", "daily", ["08:00"])
        updated = await facade.update_medication_schedule(medication.id, "daily", ["07:00", "19:00"])
        assert [d.scheduled_time for d in updated.doses_today] == ["08:00"]

        clock.advance(days=1)
        listing = await facade.list_medications(USER)
        assert [d.scheduled_time for d in listing.medications[0].doses_today] == ["07:00", "19:00"]

    @pytest.mark.asyncio
    async def test_schedule_update_on_day_without_slots(self, facade, clock, session_factory):
        medication = await facade.add_medication(USER, "Methotrexate", "weekly", ["thursday:08:00"])
        assert medication.doses_today == []

        updated = await facade.update_medication_schedule(medication.id, "weekly", ["monday:08:00"])
        assert updated.doses_today == []
        assert updated.adherence_today == medication.adherence_today
        with pytest.raises(ValidationError):
            await facade.log_dose(medication.id, 0)

        clock.advance(days=1)
        await facade.list_medications(USER)
        async with session_factory() as db:
            monday_doses = (await db.execute(
                select(MedicationDose).where(MedicationDose.day == MONDAY)
            )).scalars().all()
        assert monday_doses == []

        clock.advance(days=6)
        listing = await facade.list_medications(USER)
        assert [d.scheduled_time for d in listing.medications[0].doses_today] == ["monday:08:00"]

    @pytest.mark.asyncio
    async def test_as_needed_to_daily_starts_tomorrow(self, facade, clock):
        medication = await facade.add_medication(USER, "Ibuprofen", "as-needed", [])
        updated = await facade.update_medication_schedule(medication.id, "daily", ["08:00"])
        assert updated.frequency == "daily"
        assert updated.doses_today == []

        clock.advance(days=1)
        listing = await facade.list_medications(USER)
        assert [d.scheduled_time for d in listing.medications[0].doses_today] == ["08:00"]

    @pytest.mark.asyncio
    async def test_remove(self, facade):
        medication = await facade.add_medication(USER, "Vitamin D", "daily", ["08:00"])
        await facade.remove_medication(medication.id)
        assert (await facade.list_medications(USER)).medications == []
        with pytest.raises(NotFoundError):
            await facade.log_dose(medication.id, 0)

    @pytest.mark.asyncio
    async def test_bad_schedule(self, facade):
        with pytest.raises(ValidationError):
            await facade.add_medication(USER, "Vitamin D", "weekly", ["someday:08:00"])


class TestGamificationThroughFacade:
    @pytest.mark.asyncio
    async def test_check_in(self, facade):
        first = await facade.check_in(USER)
        assert first.counted is True
        assert first.gamification.current_streak == 1
        assert first.gamification.xp == 60
        assert first.gamification.newly_unlocked == ["daily-dedication"]

        again = await facade.check_in(USER)
        assert again.counted is False
        assert again.gamification.xp == 60
        assert again.gamification.newly_unlocked == []

    @pytest.mark.asyncio
    async def test_streak_over_days(self, facade, clock):
        for _ in range(3):
            await facade.check_in(USER)
            clock.advance(days=1)
        clock.advance(days=1)
        result = await facade.check_in(USER)
        assert result.gamification.current_streak == 1
        assert result.gamification.longest_streak == 3

    @pytest.mark.asyncio
    async def test_xp_history(self, facade):
        await facade.check_in(USER)
        history = await facade.xp_history(USER)
        assert history.total_xp == 60
        assert {e.source for e in history.entries} == {"checkin", "achievement"}

    @pytest.mark.asyncio
    async def test_xp_history_limit(self, facade):
        with pytest.raises(ValidationError):
            await facade.xp_history(USER, limit=0)


class TestAtomicity:
    @pytest.mark.asyncio
    async def test_failed_operation_leaves_no_trace(self, session_factory, settings, clock):
        async def broken_mood(db, user_id, day):
            raise RuntimeError("mood service down")

        facade = ProgressFacade(session_factory, settings=settings, clock=clock, mood_provider=broken_mood)
        with pytest.raises(RuntimeError):
            await facade.activate_alternative(USER, "wind-down", "meditation")

        async with session_factory() as db:
            assert await db.scalar(select(func.count()).select_from(UserProgress)) == 0
            assert await db.scalar(select(func.count()).select_from(MissionInstance)) == 0

    @pytest.mark.asyncio
    async def test_rejected_mutation_keeps_prior_state(self, facade):
        walk = _mission(await facade.list_missions(USER), "outdoor-walk")
        await facade.log_mission_step(walk.id)
        with pytest.raises(PreconditionError):
            await facade.activate_alternative(USER, "outdoor-walk", "march-in-place")
        listing = await facade.list_missions(USER)
        assert _mission(listing, "outdoor-walk").state == "active"
        assert _mission(listing, "outdoor-walk").progress == 1


class TestSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_check_ins_count_once(self, facade):
        results = await asyncio.gather(*(facade.check_in(USER) for _ in range(5)))
        assert sum(r.counted for r in results) == 1
        state = await facade.get_gamification_state(USER)
        assert state.current_streak == 1
        assert state.xp == 60

    @pytest.mark.asyncio
    async def test_row_version_bumps_per_write(self, facade, session_factory):
        await facade.check_in(USER)
        async with session_factory() as db:
            first = await db.scalar(select(UserProgress.version))
        await facade.record_mood(USER, "calm")
        async with session_factory() as db:
            second = await db.scalar(select(UserProgress.version))
        assert second > first
