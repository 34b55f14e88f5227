"""Medication schedules: dose slots per day and the dose log.

Slot generation is pure. The engine materializes a day's slots into
``medication_doses`` on first access and records the day in
``medication_days`` even when it has no slots, so a schedule edit only
affects days that were not materialized yet.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loretta.day_resolver import WEEKDAY_TOKENS, utc_now, weekday_token
from loretta.db.models import Medication, MedicationDay, MedicationDose
from loretta.errors import NotFoundError, StateError, ValidationError
from loretta.gamification.events import AwardXP
from loretta.gamification.ledger import GamificationLedger

logger = structlog.get_logger()

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class DoseFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    AS_NEEDED = "as-needed"


class ScheduleLike(Protocol):
    """Frequency plus ordered time tokens; weekly tokens are ``day:HH:MM``."""

    frequency: str
    scheduled_times: list


@dataclass(frozen=True)
class DoseSlot:
    ordinal: int
    token: str
    time: str


def parse_frequency(value: str) -> DoseFrequency:
    try:
        return DoseFrequency(value)
    except ValueError:
        raise ValidationError(f"Unknown medication frequency: {value!r}") from None


def _split_weekly(token: str) -> tuple[str, str]:
    day, sep, time = token.partition(":")
    if not sep:
        raise ValidationError(f"Weekly schedule token must be 'day:HH:MM': {token!r}")
    return day.strip().lower(), time.strip()


def normalize_schedule(frequency: str, scheduled_times: Sequence[str]) -> tuple[DoseFrequency, list[str]]:
    """Validate schedule tokens at the boundary and return them normalized."""
    parsed = parse_frequency(frequency)
    if not isinstance(scheduled_times, (list, tuple)):
        raise ValidationError("scheduled_times must be a list")

    if parsed is DoseFrequency.AS_NEEDED:
        return parsed, [str(token) for token in scheduled_times]

    if not scheduled_times:
        raise ValidationError(f"A {parsed.value} medication needs at least one scheduled time")

    normalized: list[str] = []
    for token in scheduled_times:
        if not isinstance(token, str):
            raise ValidationError(f"Schedule token must be a string: {token!r}")
        if parsed is DoseFrequency.DAILY:
            time = token.strip()
            if not _TIME_RE.match(time):
                raise ValidationError(f"Daily schedule token must be HH:MM: {token!r}")
            normalized.append(time)
        elif parsed is DoseFrequency.WEEKLY:
            day, time = _split_weekly(token)
            if day not in WEEKDAY_TOKENS:
                raise ValidationError(f"Unknown weekday in schedule token: {token!r}")
            if not _TIME_RE.match(time):
                raise ValidationError(f"Weekly schedule time must be HH:MM: {token!r}")
            normalized.append(f"{day}:{time}")
    return parsed, normalized


def dose_slots_for_day(medication: ScheduleLike, day: date) -> list[DoseSlot]:
    """Dose slots the schedule obliges on ``day``.

    Weekly ordinals are positions in the full token list, so a given weekday
    slot keeps the same ordinal every week.
    """
    frequency = parse_frequency(medication.frequency)
    tokens = list(medication.scheduled_times or [])

    if frequency is DoseFrequency.AS_NEEDED:
        return []
    if frequency is DoseFrequency.DAILY:
        return [DoseSlot(ordinal=i, token=token, time=token) for i, token in enumerate(tokens)]
    if frequency is DoseFrequency.WEEKLY:
        today = weekday_token(day)
        slots = []
        for i, token in enumerate(tokens):
            token_day, time = _split_weekly(token)
            if token_day == today:
                slots.append(DoseSlot(ordinal=i, token=token, time=time))
        return slots
    raise AssertionError(f"Unhandled frequency {frequency}")


@dataclass
class DoseLogResult:
    dose: MedicationDose
    changed: bool
    xp_awarded: int = 0


class MedicationScheduleEngine:
    """Dose obligations and dose logging for one user's medications."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: GamificationLedger,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.clock = clock

    @property
    def user_id(self) -> str:
        return self.ledger.user_id

    # ── Medications ──

    async def get_medication(self, medication_id: str) -> Medication:
        result = await self.db.execute(
            select(Medication).where(
                Medication.id == medication_id,
                Medication.user_id == self.user_id,
            )
        )
        medication = result.scalar_one_or_none()
        if medication is None or not medication.is_active:
            raise NotFoundError(f"Medication {medication_id} not found")
        return medication

    async def list_medications(self) -> list[Medication]:
        result = await self.db.execute(
            select(Medication)
            .where(Medication.user_id == self.user_id, Medication.is_active.is_(True))
            .order_by(Medication.created_at, Medication.id)
        )
        return list(result.scalars())

    async def create_medication(
        self,
        name: str,
        dosage: str,
        frequency: str,
        scheduled_times: Sequence[str],
        start_date: date,
        xp_per_dose: int,
    ) -> Medication:
        if not name or not name.strip():
            raise ValidationError("Medication name is required")
        if xp_per_dose < 0:
            raise ValidationError("xp_per_dose must not be negative")
        parsed, tokens = normalize_schedule(frequency, scheduled_times)
        now = self.clock()
        medication = Medication(
            user_id=self.user_id,
            name=name.strip(),
            dosage=dosage,
            frequency=parsed.value,
            scheduled_times=tokens,
            xp_per_dose=xp_per_dose,
            start_date=start_date,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.db.add(medication)
        await self.db.flush()
        logger.info("medication_added", user_id=self.user_id, medication_id=medication.id, frequency=parsed.value)
        return medication

    async def update_schedule(
        self,
        medication: Medication,
        frequency: str,
        scheduled_times: Sequence[str],
        today: date,
    ) -> Medication:
        """Replace the schedule; today's slots are pinned first so the edit starts tomorrow."""
        parsed, tokens = normalize_schedule(frequency, scheduled_times)
        await self.doses_for_day(medication, today)
        medication.frequency = parsed.value
        medication.scheduled_times = tokens
        medication.updated_at = self.clock()
        await self.db.flush()
        logger.info("medication_schedule_updated", user_id=self.user_id, medication_id=medication.id)
        return medication

    async def remove_medication(self, medication: Medication) -> None:
        medication.is_active = False
        medication.updated_at = self.clock()
        await self.db.flush()
        logger.info("medication_removed", user_id=self.user_id, medication_id=medication.id)

    # ── Doses ──

    async def stored_doses(self, medication: Medication, day: date) -> list[MedicationDose]:
        result = await self.db.execute(
            select(MedicationDose)
            .where(MedicationDose.medication_id == medication.id, MedicationDose.day == day)
            .order_by(MedicationDose.ordinal)
        )
        return list(result.scalars())

    async def materialized_days(self, medication: Medication, start: date, end: date) -> set[date]:
        """Days in ``start..end`` whose slots were already pinned, empty ones included."""
        result = await self.db.execute(
            select(MedicationDay.day).where(
                MedicationDay.medication_id == medication.id,
                MedicationDay.day >= start,
                MedicationDay.day <= end,
            )
        )
        return set(result.scalars())

    async def doses_for_day(self, medication: Medication, day: date) -> list[MedicationDose]:
        """The day's doses, materialized from the schedule on first access.

        A day with no slots is pinned too, so a later schedule edit cannot
        add obligations to it.
        """
        if day < medication.start_date:
            return []
        if day in await self.materialized_days(medication, day, day):
            return await self.stored_doses(medication, day)

        slots = dose_slots_for_day(medication, day)
        self.db.add(MedicationDay(
            medication_id=medication.id,
            day=day,
            slot_count=len(slots),
            materialized_at=self.clock(),
        ))
        doses = []
        for slot in slots:
            dose = MedicationDose(
                medication_id=medication.id,
                user_id=self.user_id,
                day=day,
                ordinal=slot.ordinal,
                scheduled_time=slot.token,
                taken=False,
                missed=False,
            )
            self.db.add(dose)
            doses.append(dose)
        await self.db.flush()
        return doses

    async def _dose_for(self, medication: Medication, ordinal: int, day: date) -> MedicationDose:
        if isinstance(ordinal, bool) or not isinstance(ordinal, int) or ordinal < 0:
            raise ValidationError(f"Invalid dose ordinal: {ordinal!r}")
        for dose in await self.doses_for_day(medication, day):
            if dose.ordinal == ordinal:
                return dose
        raise ValidationError(f"No dose {ordinal} scheduled for {medication.name} on {day.isoformat()}")

    async def log_dose(self, medication: Medication, ordinal: int, day: date) -> DoseLogResult:
        """Mark a slot taken. Re-logging a taken dose is a no-op."""
        dose = await self._dose_for(medication, ordinal, day)
        if dose.taken:
            return DoseLogResult(dose=dose, changed=False)
        if dose.missed:
            raise StateError(f"Dose {ordinal} on {day.isoformat()} is already marked missed")

        dose.taken = True
        dose.logged_at = self.clock()
        dose.source = "manual"
        await self.db.flush()

        xp = await self.ledger.apply(AwardXP(
            amount=medication.xp_per_dose,
            source="medication_dose",
            source_id=f"{medication.id}:{day.isoformat()}:{ordinal}",
            description=f"Took {medication.name}",
        ))
        await self.ledger.record_dose_day(day)

        logger.info(
            "dose_logged",
            user_id=self.user_id,
            medication_id=medication.id,
            ordinal=ordinal,
            day=day.isoformat(),
        )
        return DoseLogResult(dose=dose, changed=True, xp_awarded=xp)

    async def log_missed_dose(self, medication: Medication, ordinal: int, day: date) -> DoseLogResult:
        """Mark a slot missed. Re-marking a missed dose is a no-op."""
        dose = await self._dose_for(medication, ordinal, day)
        if dose.missed:
            return DoseLogResult(dose=dose, changed=False)
        if dose.taken:
            raise StateError(f"Dose {ordinal} on {day.isoformat()} is already marked taken")

        self._mark_missed(dose, "manual")
        await self.db.flush()
        logger.info(
            "dose_missed",
            user_id=self.user_id,
            medication_id=medication.id,
            ordinal=ordinal,
            day=day.isoformat(),
        )
        return DoseLogResult(dose=dose, changed=True)

    def _mark_missed(self, dose: MedicationDose, source: str) -> None:
        dose.missed = True
        dose.logged_at = self.clock()
        dose.source = source

    async def sweep_missed(self, medication: Medication, day: date) -> int:
        """Mark every open slot of a past day as missed. Returns how many were marked."""
        marked = 0
        for dose in await self.doses_for_day(medication, day):
            if not dose.taken and not dose.missed:
                self._mark_missed(dose, "auto")
                marked += 1
        if marked:
            await self.db.flush()
            logger.info(
                "doses_auto_missed",
                user_id=self.user_id,
                medication_id=medication.id,
                day=day.isoformat(),
                count=marked,
            )
        return marked
