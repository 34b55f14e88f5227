"""Progress facade: the operations the transport layer calls.

Each operation is one unit of work for one user:

1. take the user's lock
2. open a transaction and load (or create) the user's ``user_progress`` row
3. run the lazy day rollover if the user's local date moved on
4. mutate through the mission store, the medication engine or the ledger
5. touch the progress row so its version bumps, then commit

Any error rolls the whole transaction back. A version mismatch at commit
means another process wrote the same user concurrently and surfaces as a
StateError the client can retry.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from loretta.config import Settings, get_settings
from loretta.day_resolver import (
    days_between,
    local_today,
    previous_day,
    resolve_timezone,
    trailing_days,
    utc_now,
)
from loretta.db.models import Medication, MedicationDose, MissionInstance, MoodCheckin, UserProgress
from loretta.errors import NotFoundError, StateError, ValidationError
from loretta.gamification.achievements import ACHIEVEMENT_RULES
from loretta.gamification.ledger import GamificationLedger
from loretta.gamification.level_thresholds import compute_level
from loretta.medications.adherence import DoseRecord, adherence_percent
from loretta.medications.schedule import DoseLogResult, MedicationScheduleEngine, dose_slots_for_day
from loretta.missions.catalog import MissionCatalog, MissionKind, get_catalog
from loretta.missions.mood import is_low_mood, normalize_emotion
from loretta.missions.state_store import MissionResult, MissionStateStore
from loretta.progress.locks import LocalLockRegistry
from loretta.progress.schemas import (
    AchievementResponse,
    AlternativeDefinitionResponse,
    CatalogResponse,
    CheckInResponse,
    DoseMutationResponse,
    DoseResponse,
    GamificationStateResponse,
    MedicationListResponse,
    MedicationResponse,
    MissionDefinitionResponse,
    MissionInstanceResponse,
    MissionListResponse,
    MissionMutationResponse,
    MoodResponse,
    XPHistoryEntry,
    XPHistoryResponse,
)

logger = structlog.get_logger()

MAX_USER_ID_LENGTH = 64
ADHERENCE_WEEK_DAYS = 7
MAX_HISTORY_LIMIT = 200

MoodProvider = Callable[[AsyncSession, str, date], Awaitable[str | None]]


async def latest_mood(db: AsyncSession, user_id: str, day: date) -> str | None:
    """The emotion of the user's most recent check-in on ``day``, if any."""
    result = await db.execute(
        select(MoodCheckin.emotion)
        .where(MoodCheckin.user_id == user_id, MoodCheckin.day == day)
        .order_by(MoodCheckin.checked_in_at.desc(), MoodCheckin.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


@dataclass
class UserContext:
    """Everything one unit of work needs, bound to one user and one session."""

    db: AsyncSession
    progress: UserProgress
    today: date
    ledger: GamificationLedger
    missions: MissionStateStore
    medications: MedicationScheduleEngine

    @property
    def user_id(self) -> str:
        return self.progress.user_id


class ProgressFacade:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        catalog: MissionCatalog | None = None,
        locks: LocalLockRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
        mood_provider: MoodProvider = latest_mood,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.catalog = catalog or get_catalog()
        self.locks = locks or LocalLockRegistry(self.settings.lock_timeout_seconds)
        self.clock = clock
        self.mood_provider = mood_provider

    # ── Unit of work ──

    @asynccontextmanager
    async def unit_of_work(self, user_id: str, *, write: bool = True) -> AsyncIterator[UserContext]:
        """Locked, transactional access to one user's aggregate."""
        if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
            raise ValidationError(f"Invalid user id: {user_id!r}")

        async with self.locks.hold(user_id):
            async with self.session_factory() as db:
                try:
                    async with db.begin():
                        ctx = await self._open(db, user_id)
                        await self._rollover(ctx)
                        yield ctx
                        if write:
                            ctx.progress.updated_at = self.clock()
                except (StaleDataError, IntegrityError) as exc:
                    logger.warning("progress_write_conflict", user_id=user_id, error=str(exc))
                    raise StateError("Progress was changed by a concurrent update, retry") from exc

    async def _open(self, db: AsyncSession, user_id: str) -> UserContext:
        result = await db.execute(
            select(UserProgress).where(UserProgress.user_id == user_id).with_for_update()
        )
        progress = result.scalar_one_or_none()
        if progress is None:
            progress = UserProgress(
                user_id=user_id,
                timezone=self.settings.default_timezone,
                xp=0,
                level=1,
                current_streak=0,
                longest_streak=0,
                lives=self.settings.starting_lives,
                medication_streak=0,
                updated_at=self.clock(),
            )
            db.add(progress)
            await db.flush()
            logger.info("progress_created", user_id=user_id, timezone=progress.timezone)

        today = local_today(progress.timezone, self.clock())
        last = progress.last_rollover_date
        if last is not None and today < last:
            # The local day never moves backward.
            logger.info("local_day_held", user_id=user_id, local_day=today.isoformat(), held_day=last.isoformat())
            today = last
        ledger = GamificationLedger(db, progress, checkin_xp=self.settings.checkin_xp, clock=self.clock)
        return UserContext(
            db=db,
            progress=progress,
            today=today,
            ledger=ledger,
            missions=MissionStateStore(db, user_id, self.catalog, ledger, today, clock=self.clock),
            medications=MedicationScheduleEngine(db, ledger, clock=self.clock),
        )

    async def _rollover(self, ctx: UserContext) -> None:
        """First access on a new local day: fresh missions, sweep past doses, pin today's doses."""
        last = ctx.progress.last_rollover_date
        if last == ctx.today:
            return

        await ctx.missions.ensure_day()

        backfill_floor = ctx.today - timedelta(days=self.settings.missed_dose_backfill_days)
        yesterday = previous_day(ctx.today)
        swept = 0
        for medication in await ctx.medications.list_medications():
            start = max(medication.start_date, backfill_floor)
            if last is not None:
                start = max(start, last)
            for day in days_between(start, yesterday):
                swept += await ctx.medications.sweep_missed(medication, day)
            await ctx.medications.doses_for_day(medication, ctx.today)

        ctx.progress.last_rollover_date = ctx.today
        logger.info(
            "day_rollover",
            user_id=ctx.user_id,
            day=ctx.today.isoformat(),
            previous=last.isoformat() if last else None,
            doses_auto_missed=swept,
        )

    async def _owner(self, model: type[MissionInstance] | type[Medication], entity_id: str) -> str:
        """Resolve the user an instance or medication belongs to, before locking."""
        async with self.session_factory() as db:
            result = await db.execute(select(model.user_id).where(model.id == entity_id))
            owner = result.scalar_one_or_none()
        if owner is None:
            label = "Mission instance" if model is MissionInstance else "Medication"
            raise NotFoundError(f"{label} {entity_id} not found")
        return owner

    # ── Snapshots ──

    async def _gamification(self, ctx: UserContext) -> GamificationStateResponse:
        progress = ctx.progress
        level_info = compute_level(progress.xp)
        unlocked = await ctx.ledger.unlocked_achievements()
        achievements = []
        for rule in ACHIEVEMENT_RULES:
            if rule.id not in unlocked:
                continue
            achievements.append(AchievementResponse(
                id=rule.id,
                title=rule.title,
                rarity=rule.rarity,
                xp_reward=rule.xp_reward,
                unlocked_at=unlocked[rule.id],
            ))
        return GamificationStateResponse(
            user_id=progress.user_id,
            timezone=progress.timezone,
            xp=progress.xp,
            level=progress.level,
            xp_into_level=level_info["xp_into_level"],
            xp_for_level=level_info["xp_for_level"],
            next_level_at=level_info["next_level_at"],
            current_streak=progress.current_streak,
            longest_streak=progress.longest_streak,
            last_check_in_date=progress.last_check_in_date,
            lives=progress.lives,
            medication_streak=progress.medication_streak,
            achievements=achievements,
            newly_unlocked=list(ctx.ledger.unlocked_now),
        )

    def _mission_view(self, instance: MissionInstance) -> MissionInstanceResponse:
        kind = MissionKind(instance.kind)
        step_label = None
        if kind is MissionKind.ALTERNATIVE:
            step_label = self.catalog.alternative_for(instance.mission_id).step_label
        return MissionInstanceResponse(
            id=instance.id,
            mission_id=instance.mission_id,
            slot_id=instance.slot_id,
            kind=instance.kind,
            state=instance.state,
            title=self.catalog.title_for(instance.mission_id, kind),
            progress=instance.progress,
            max_progress=instance.max_progress,
            xp_reward=instance.xp_reward,
            day=instance.day,
            step_label=step_label,
            completed_at=instance.completed_at,
        )

    async def _mission_mutation(self, ctx: UserContext, result: MissionResult) -> MissionMutationResponse:
        return MissionMutationResponse(
            mission=self._mission_view(result.instance),
            changed=result.changed,
            xp_delta=result.xp_delta,
            gamification=await self._gamification(ctx),
        )

    @staticmethod
    def _dose_view(dose: MedicationDose) -> DoseResponse:
        return DoseResponse(
            ordinal=dose.ordinal,
            scheduled_time=dose.scheduled_time,
            taken=dose.taken,
            missed=dose.missed,
            logged_at=dose.logged_at,
            source=dose.source,
        )

    async def _dose_records(self, ctx: UserContext, medication: Medication, days: list[date]) -> list[DoseRecord]:
        """Records for ``days``: stored doses where the day was pinned, else the current schedule's slots as untaken."""
        result = await ctx.db.execute(
            select(MedicationDose).where(
                MedicationDose.medication_id == medication.id,
                MedicationDose.day >= days[0],
                MedicationDose.day <= days[-1],
            )
        )
        stored: dict[date, list[MedicationDose]] = {}
        for dose in result.scalars():
            stored.setdefault(dose.day, []).append(dose)
        pinned = await ctx.medications.materialized_days(medication, days[0], days[-1])

        records: list[DoseRecord] = []
        for day in days:
            if day < medication.start_date:
                continue
            if day in pinned or day in stored:
                records.extend(DoseRecord(day=day, taken=dose.taken) for dose in stored.get(day, []))
            else:
                records.extend(DoseRecord(day=day, taken=False) for _ in dose_slots_for_day(medication, day))
        return records

    async def _medication_view(self, ctx: UserContext, medication: Medication) -> MedicationResponse:
        doses = await ctx.medications.doses_for_day(medication, ctx.today)
        records = await self._dose_records(
            ctx, medication, trailing_days(ctx.today, ADHERENCE_WEEK_DAYS)
        )
        return MedicationResponse(
            id=medication.id,
            name=medication.name,
            dosage=medication.dosage,
            frequency=medication.frequency,
            scheduled_times=list(medication.scheduled_times),
            xp_per_dose=medication.xp_per_dose,
            start_date=medication.start_date,
            doses_today=[self._dose_view(dose) for dose in doses],
            adherence_today=adherence_percent(medication.frequency, records, ctx.today),
            adherence_week=adherence_percent(
                medication.frequency, records, ctx.today, window_days=ADHERENCE_WEEK_DAYS
            ),
        )

    async def _dose_mutation(
        self, ctx: UserContext, medication: Medication, result: DoseLogResult
    ) -> DoseMutationResponse:
        return DoseMutationResponse(
            medication_id=medication.id,
            day=result.dose.day,
            dose=self._dose_view(result.dose),
            changed=result.changed,
            xp_awarded=result.xp_awarded,
            gamification=await self._gamification(ctx),
        )

    # ── Catalog ──

    def list_catalog(self) -> CatalogResponse:
        missions = []
        for mission in self.catalog.standard_missions():
            missions.append(MissionDefinitionResponse(
                id=mission.id,
                title=mission.title,
                category=mission.category,
                frequency=mission.frequency.value,
                xp_reward=mission.xp_reward,
                total_steps=mission.total_steps,
                alternatives=[
                    AlternativeDefinitionResponse(
                        key=alt.key,
                        replaces_id=alt.replaces_id,
                        title=alt.title,
                        total_steps=alt.total_steps,
                        xp_reward=alt.xp_reward,
                        step_label=alt.step_label,
                        mood_gate_required=alt.mood_gate_required,
                    )
                    for alt in self.catalog.alternatives_for(mission.id)
                ],
            ))
        return CatalogResponse(missions=missions)

    # ── Missions ──

    async def list_missions(self, user_id: str, day: date | None = None) -> MissionListResponse:
        async with self.unit_of_work(user_id, write=False) as ctx:
            day = day or ctx.today
            instances = await ctx.missions.list_for_day(day)
            return MissionListResponse(day=day, missions=[self._mission_view(i) for i in instances])

    async def activate_alternative(
        self, user_id: str, original_mission_id: str, alternative_key: str
    ) -> MissionMutationResponse:
        async with self.unit_of_work(user_id) as ctx:
            mood = await self.mood_provider(ctx.db, user_id, ctx.today)
            result = await ctx.missions.activate_alternative(original_mission_id, alternative_key, mood)
            return await self._mission_mutation(ctx, result)

    async def log_mission_step(self, instance_id: str) -> MissionMutationResponse:
        owner = await self._owner(MissionInstance, instance_id)
        async with self.unit_of_work(owner) as ctx:
            instance = await ctx.missions.get_instance(instance_id)
            result = await ctx.missions.log_step(instance)
            return await self._mission_mutation(ctx, result)

    async def undo_mission_step(self, instance_id: str) -> MissionMutationResponse:
        owner = await self._owner(MissionInstance, instance_id)
        async with self.unit_of_work(owner) as ctx:
            instance = await ctx.missions.get_instance(instance_id)
            result = await ctx.missions.undo_step(instance)
            return await self._mission_mutation(ctx, result)

    async def complete_mission(self, instance_id: str) -> MissionMutationResponse:
        owner = await self._owner(MissionInstance, instance_id)
        async with self.unit_of_work(owner) as ctx:
            instance = await ctx.missions.get_instance(instance_id)
            result = await ctx.missions.complete_mission(instance)
            return await self._mission_mutation(ctx, result)

    async def deactivate_mission(self, instance_id: str) -> MissionMutationResponse:
        owner = await self._owner(MissionInstance, instance_id)
        async with self.unit_of_work(owner) as ctx:
            instance = await ctx.missions.get_instance(instance_id)
            result = await ctx.missions.deactivate(instance)
            return await self._mission_mutation(ctx, result)

    # ── Medications ──

    async def list_medications(self, user_id: str) -> MedicationListResponse:
        async with self.unit_of_work(user_id, write=False) as ctx:
            medications = [
                await self._medication_view(ctx, medication)
                for medication in await ctx.medications.list_medications()
            ]
            return MedicationListResponse(day=ctx.today, medications=medications)

    async def add_medication(
        self,
        user_id: str,
        name: str,
        frequency: str,
        scheduled_times: Sequence[str],
        *,
        dosage: str = "",
        xp_per_dose: int | None = None,
        start_date: date | None = None,
    ) -> MedicationResponse:
        async with self.unit_of_work(user_id) as ctx:
            medication = await ctx.medications.create_medication(
                name=name,
                dosage=dosage,
                frequency=frequency,
                scheduled_times=scheduled_times,
                start_date=start_date or ctx.today,
                xp_per_dose=self.settings.default_xp_per_dose if xp_per_dose is None else xp_per_dose,
            )
            return await self._medication_view(ctx, medication)

    async def update_medication_schedule(
        self, medication_id: str, frequency: str, scheduled_times: Sequence[str]
    ) -> MedicationResponse:
        """New schedule applies from tomorrow; today's dose slots stay as they were."""
        owner = await self._owner(Medication, medication_id)
        async with self.unit_of_work(owner) as ctx:
            medication = await ctx.medications.get_medication(medication_id)
            await ctx.medications.update_schedule(medication, frequency, scheduled_times, ctx.today)
            return await self._medication_view(ctx, medication)

    async def remove_medication(self, medication_id: str) -> None:
        owner = await self._owner(Medication, medication_id)
        async with self.unit_of_work(owner) as ctx:
            medication = await ctx.medications.get_medication(medication_id)
            await ctx.medications.remove_medication(medication)

    async def log_dose(self, medication_id: str, ordinal: int) -> DoseMutationResponse:
        owner = await self._owner(Medication, medication_id)
        async with self.unit_of_work(owner) as ctx:
            medication = await ctx.medications.get_medication(medication_id)
            result = await ctx.medications.log_dose(medication, ordinal, ctx.today)
            return await self._dose_mutation(ctx, medication, result)

    async def log_missed_dose(self, medication_id: str, ordinal: int) -> DoseMutationResponse:
        owner = await self._owner(Medication, medication_id)
        async with self.unit_of_work(owner) as ctx:
            medication = await ctx.medications.get_medication(medication_id)
            result = await ctx.medications.log_missed_dose(medication, ordinal, ctx.today)
            return await self._dose_mutation(ctx, medication, result)

    # ── Gamification ──

    async def get_gamification_state(self, user_id: str) -> GamificationStateResponse:
        async with self.unit_of_work(user_id, write=False) as ctx:
            return await self._gamification(ctx)

    async def check_in(self, user_id: str) -> CheckInResponse:
        async with self.unit_of_work(user_id) as ctx:
            counted = await ctx.ledger.check_in(ctx.today)
            return CheckInResponse(counted=counted, day=ctx.today, gamification=await self._gamification(ctx))

    async def xp_history(self, user_id: str, limit: int = 50) -> XPHistoryResponse:
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        async with self.unit_of_work(user_id, write=False) as ctx:
            entries = [
                XPHistoryEntry(
                    amount=entry.amount,
                    source=entry.source,
                    source_id=entry.source_id,
                    description=entry.description,
                    created_at=entry.created_at,
                )
                for entry in await ctx.ledger.history(limit)
            ]
            return XPHistoryResponse(entries=entries, total_xp=ctx.progress.xp)

    # ── Profile ──

    async def record_mood(self, user_id: str, emotion: str) -> MoodResponse:
        if not emotion or not emotion.strip():
            raise ValidationError("Emotion is required")
        async with self.unit_of_work(user_id) as ctx:
            checkin = MoodCheckin(
                user_id=user_id,
                emotion=normalize_emotion(emotion),
                day=ctx.today,
                checked_in_at=self.clock(),
            )
            ctx.db.add(checkin)
            await ctx.db.flush()
            logger.info("mood_recorded", user_id=user_id, emotion=checkin.emotion)
            return MoodResponse(
                emotion=checkin.emotion,
                day=checkin.day,
                low_mood=is_low_mood(checkin.emotion),
                checked_in_at=checkin.checked_in_at,
            )

    async def set_timezone(self, user_id: str, tz_name: str) -> GamificationStateResponse:
        """Change the user's timezone; the new local day applies from the next call."""
        resolve_timezone(tz_name)
        async with self.unit_of_work(user_id) as ctx:
            ctx.progress.timezone = tz_name
            logger.info("timezone_changed", user_id=user_id, timezone=tz_name)
            return await self._gamification(ctx)
