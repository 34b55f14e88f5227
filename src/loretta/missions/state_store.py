"""Mission state machine: per-user, per-day mission instances.

States: ACTIVE, REPLACED, COMPLETED.
ACTIVE -> COMPLETED (last step logged) -> ACTIVE (undo)
ACTIVE -> REPLACED (an alternative took the slot) -> ACTIVE (alternative deactivated)

For any slot at most one instance is ACTIVE on a given day.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loretta.day_resolver import period_start, utc_now
from loretta.db.models import MissionInstance
from loretta.errors import NotFoundError, PreconditionError, StateError, ValidationError
from loretta.gamification.events import AwardXP, LedgerSink, RetractXP
from loretta.missions.catalog import MissionCatalog, MissionFrequency, MissionKind
from loretta.missions.mood import is_low_mood

logger = structlog.get_logger()


class MissionState(str, enum.Enum):
    ACTIVE = "active"
    REPLACED = "replaced"
    COMPLETED = "completed"


VALID_TRANSITIONS: dict[MissionState, list[MissionState]] = {
    MissionState.ACTIVE: [MissionState.COMPLETED, MissionState.REPLACED],
    MissionState.COMPLETED: [MissionState.ACTIVE],
    MissionState.REPLACED: [MissionState.ACTIVE],
}


def validate_transition(current: MissionState, target: MissionState) -> None:
    """Validate a state transition. Raises StateError if invalid."""
    valid = VALID_TRANSITIONS.get(current, [])
    if target not in valid:
        raise StateError(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Valid transitions: {[state.value for state in valid]}"
        )


def _transition(instance: MissionInstance, target: MissionState) -> None:
    validate_transition(MissionState(instance.state), target)
    instance.state = target.value


@dataclass
class MissionResult:
    """Outcome of a mutation: the instance, whether anything changed and the XP delta."""

    instance: MissionInstance
    changed: bool
    xp_delta: int = 0


class MissionStateStore:
    """Mission instances of one user, scoped to the user's current local day."""

    def __init__(
        self,
        db: AsyncSession,
        user_id: str,
        catalog: MissionCatalog,
        ledger: LedgerSink,
        today: date,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.user_id = user_id
        self.catalog = catalog
        self.ledger = ledger
        self.today = today
        self.clock = clock

    def _slot_day(self, slot_id: str) -> date:
        definition = self.catalog.definition_for(slot_id)
        return period_start(definition.frequency, self.today)

    # ── Reads ──

    async def ensure_day(self) -> list[MissionInstance]:
        """Create today's standard instances. Safe to call repeatedly."""
        periods = {
            mission.id: period_start(mission.frequency, self.today)
            for mission in self.catalog.standard_missions()
        }
        result = await self.db.execute(
            select(MissionInstance.mission_id, MissionInstance.day).where(
                MissionInstance.user_id == self.user_id,
                MissionInstance.kind == MissionKind.STANDARD.value,
                MissionInstance.day.in_(sorted(set(periods.values()))),
            )
        )
        existing = {(mission_id, day) for mission_id, day in result.all()}

        created: list[MissionInstance] = []
        now = self.clock()
        for mission in self.catalog.standard_missions():
            day = periods[mission.id]
            if (mission.id, day) in existing:
                continue
            instance = MissionInstance(
                user_id=self.user_id,
                slot_id=mission.id,
                mission_id=mission.id,
                kind=MissionKind.STANDARD.value,
                state=MissionState.ACTIVE.value,
                progress=0,
                max_progress=mission.total_steps,
                xp_reward=mission.xp_reward,
                day=day,
                created_at=now,
            )
            self.db.add(instance)
            created.append(instance)

        if created:
            await self.db.flush()
            logger.info(
                "missions_created",
                user_id=self.user_id,
                day=self.today.isoformat(),
                count=len(created),
            )
        return created

    async def list_for_day(self, day: date | None = None) -> list[MissionInstance]:
        """Instances visible on ``day``: its daily instances plus that week's weekly ones."""
        day = day or self.today
        days = {period_start(frequency, day) for frequency in MissionFrequency}
        result = await self.db.execute(
            select(MissionInstance)
            .where(MissionInstance.user_id == self.user_id, MissionInstance.day.in_(sorted(days)))
            .order_by(MissionInstance.created_at, MissionInstance.id)
        )
        instances = []
        for instance in result.scalars():
            frequency = self.catalog.definition_for(instance.slot_id).frequency
            if instance.day == period_start(frequency, day):
                instances.append(instance)
        return instances

    async def get_instance(self, instance_id: str) -> MissionInstance:
        result = await self.db.execute(
            select(MissionInstance).where(
                MissionInstance.id == instance_id,
                MissionInstance.user_id == self.user_id,
            )
        )
        instance = result.scalar_one_or_none()
        if instance is None:
            raise NotFoundError(f"Mission instance {instance_id} not found")
        return instance

    async def _slot_instances(self, slot_id: str) -> list[MissionInstance]:
        result = await self.db.execute(
            select(MissionInstance).where(
                MissionInstance.user_id == self.user_id,
                MissionInstance.slot_id == slot_id,
                MissionInstance.day == self._slot_day(slot_id),
            )
        )
        return list(result.scalars())

    async def _standard_for_slot(self, slot_id: str) -> MissionInstance:
        for instance in await self._slot_instances(slot_id):
            if instance.kind == MissionKind.STANDARD.value:
                return instance
        await self.ensure_day()
        for instance in await self._slot_instances(slot_id):
            if instance.kind == MissionKind.STANDARD.value:
                return instance
        raise NotFoundError(f"No {slot_id} mission for {self.today.isoformat()}")

    def _require_current(self, instance: MissionInstance) -> None:
        if instance.day != self._slot_day(instance.slot_id):
            raise StateError(
                f"Mission instance {instance.id} belongs to {instance.day.isoformat()}, "
                "which has been rolled over"
            )

    # ── Mutations ──

    async def activate_alternative(
        self,
        original_id: str,
        alternative_key: str,
        current_mood: str | None,
    ) -> MissionResult:
        """Swap today's standard mission for an alternative.

        Activating the alternative that already holds the slot returns it
        unchanged. A deactivated alternative is reactivated with its progress.
        """
        original = self.catalog.definition_for(original_id)
        alternative = self.catalog.alternative_for(alternative_key)
        if alternative.replaces_id != original.id:
            raise ValidationError(
                f"Alternative {alternative.key} does not replace {original.id}"
            )

        standard = await self._standard_for_slot(original.id)
        alternatives = [
            instance for instance in await self._slot_instances(original.id)
            if instance.kind == MissionKind.ALTERNATIVE.value
        ]
        existing = next((i for i in alternatives if i.mission_id == alternative.key), None)
        if existing is not None and existing.state != MissionState.REPLACED.value:
            return MissionResult(instance=existing, changed=False)

        if alternative.mood_gate_required and not is_low_mood(current_mood):
            raise PreconditionError("low mood required")
        if standard.state == MissionState.COMPLETED.value:
            raise PreconditionError(f"{original.title} is already completed today")
        holder = next((i for i in alternatives if i.state != MissionState.REPLACED.value), None)
        if holder is not None:
            raise PreconditionError(
                f"{original.title} is already replaced by {holder.mission_id} today"
            )

        _transition(standard, MissionState.REPLACED)
        if existing is not None:
            _transition(existing, MissionState.ACTIVE)
            instance = existing
        else:
            instance = MissionInstance(
                user_id=self.user_id,
                slot_id=original.id,
                mission_id=alternative.key,
                kind=MissionKind.ALTERNATIVE.value,
                state=MissionState.ACTIVE.value,
                progress=0,
                max_progress=alternative.total_steps,
                xp_reward=alternative.xp_reward,
                day=standard.day,
                created_at=self.clock(),
            )
            self.db.add(instance)
        await self.db.flush()

        logger.info(
            "alternative_activated",
            user_id=self.user_id,
            slot_id=original.id,
            alternative=alternative.key,
            instance_id=instance.id,
        )
        return MissionResult(instance=instance, changed=True)

    async def _award(self, instance: MissionInstance) -> int:
        title = self.catalog.title_for(instance.mission_id, MissionKind(instance.kind))
        return await self.ledger.apply(AwardXP(
            amount=instance.xp_reward,
            source="mission",
            source_id=instance.id,
            description=f"Completed: {title}",
        ))

    async def _retract(self, instance: MissionInstance) -> int:
        title = self.catalog.title_for(instance.mission_id, MissionKind(instance.kind))
        return await self.ledger.apply(RetractXP(
            amount=instance.xp_reward,
            source="mission_undo",
            source_id=instance.id,
            description=f"Undone: {title}",
        ))

    async def _complete(self, instance: MissionInstance) -> int:
        _transition(instance, MissionState.COMPLETED)
        instance.progress = instance.max_progress
        instance.completed_at = self.clock()
        await self.db.flush()
        xp = await self._award(instance)
        logger.info(
            "mission_completed",
            user_id=self.user_id,
            mission_id=instance.mission_id,
            instance_id=instance.id,
            xp=xp,
        )
        return xp

    async def log_step(self, instance: MissionInstance) -> MissionResult:
        """Advance one step; completing awards XP once. On COMPLETED this is a no-op."""
        self._require_current(instance)
        if instance.state == MissionState.COMPLETED.value:
            return MissionResult(instance=instance, changed=False)
        if instance.state != MissionState.ACTIVE.value:
            raise StateError(f"Cannot log a step on a {instance.state} mission")

        if instance.progress + 1 >= instance.max_progress:
            xp = await self._complete(instance)
            return MissionResult(instance=instance, changed=True, xp_delta=xp)

        instance.progress += 1
        await self.db.flush()
        logger.info(
            "mission_step_logged",
            user_id=self.user_id,
            mission_id=instance.mission_id,
            instance_id=instance.id,
            progress=instance.progress,
            max_progress=instance.max_progress,
        )
        return MissionResult(instance=instance, changed=True)

    async def undo_step(self, instance: MissionInstance) -> MissionResult:
        """Take back one step. Undoing the completing step retracts its XP."""
        self._require_current(instance)
        if instance.state == MissionState.REPLACED.value:
            raise StateError("Cannot undo a step on a replaced mission")
        if instance.progress <= 0:
            raise StateError("Mission has no progress to undo")

        xp_delta = 0
        if instance.state == MissionState.COMPLETED.value:
            _transition(instance, MissionState.ACTIVE)
            instance.completed_at = None
            instance.progress -= 1
            await self.db.flush()
            xp_delta = -await self._retract(instance)
        else:
            instance.progress -= 1
            await self.db.flush()

        logger.info(
            "mission_step_undone",
            user_id=self.user_id,
            mission_id=instance.mission_id,
            instance_id=instance.id,
            progress=instance.progress,
        )
        return MissionResult(instance=instance, changed=True, xp_delta=xp_delta)

    async def complete_mission(self, instance: MissionInstance) -> MissionResult:
        """Jump straight to COMPLETED. No-op when already completed."""
        self._require_current(instance)
        if instance.state == MissionState.COMPLETED.value:
            return MissionResult(instance=instance, changed=False)
        xp = await self._complete(instance)
        return MissionResult(instance=instance, changed=True, xp_delta=xp)

    async def deactivate(self, instance: MissionInstance) -> MissionResult:
        """Hand the slot back to the standard mission, whose progress is kept.

        Returns the reactivated standard instance.
        """
        if instance.kind != MissionKind.ALTERNATIVE.value:
            raise ValidationError("Only alternative missions can be deactivated")
        self._require_current(instance)
        if instance.state == MissionState.COMPLETED.value:
            raise PreconditionError("A completed alternative cannot be deactivated")

        standard = await self._standard_for_slot(instance.slot_id)
        if instance.state == MissionState.REPLACED.value:
            return MissionResult(instance=standard, changed=False)

        _transition(instance, MissionState.REPLACED)
        _transition(standard, MissionState.ACTIVE)
        await self.db.flush()

        logger.info(
            "alternative_deactivated",
            user_id=self.user_id,
            slot_id=instance.slot_id,
            alternative=instance.mission_id,
            instance_id=instance.id,
        )
        return MissionResult(instance=standard, changed=True)
