"""Gamification ledger: XP deltas, level, streaks and achievements for one user."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loretta.day_resolver import previous_day, utc_now
from loretta.db.models import UserAchievement, UserProgress, XPLedger
from loretta.errors import ValidationError
from loretta.gamification.achievements import (
    ACHIEVEMENTS_BY_ID,
    newly_satisfied,
    progress_metrics,
)
from loretta.gamification.events import AwardXP, LedgerEvent, RetractXP
from loretta.gamification.level_thresholds import level_for_xp

logger = structlog.get_logger()


class GamificationLedger:
    """Bookkeeping over a loaded ``UserProgress`` row.

    Every mutator re-derives the level from XP and re-evaluates the
    achievement table before returning. Nothing is committed here; the
    caller owns the transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        progress: UserProgress,
        *,
        checkin_xp: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.progress = progress
        self.checkin_xp = checkin_xp
        self.clock = clock
        self.unlocked_now: list[str] = []
        self._unlocked: set[str] | None = None

    @property
    def user_id(self) -> str:
        return self.progress.user_id

    # ── XP ──

    async def apply(self, event: LedgerEvent) -> int:
        """Absorb an event from a mission or medication component."""
        if isinstance(event, AwardXP):
            return await self.award_xp(event.amount, event.source, event.source_id, event.description)
        if isinstance(event, RetractXP):
            return await self.retract_xp(event.amount, event.source, event.source_id, event.description)
        raise TypeError(f"Unsupported ledger event: {event!r}")

    async def award_xp(
        self,
        amount: int,
        source: str,
        source_id: str | None = None,
        description: str | None = None,
    ) -> int:
        """Append a positive delta. Returns the amount actually credited."""
        if amount < 0:
            raise ValidationError("XP award must not be negative")
        credited = await self._append(amount, source, source_id, description)
        await self.evaluate_achievements()
        return credited

    async def retract_xp(
        self,
        amount: int,
        source: str,
        source_id: str | None = None,
        description: str | None = None,
    ) -> int:
        """Append a negative delta, clamped so XP never drops below zero.

        Returns the amount actually removed.
        """
        if amount < 0:
            raise ValidationError("XP retraction must not be negative")
        removed = min(amount, self.progress.xp)
        await self._append(-removed, source, source_id, description)
        await self.evaluate_achievements()
        return removed

    async def _append(
        self,
        delta: int,
        source: str,
        source_id: str | None,
        description: str | None,
    ) -> int:
        if delta == 0:
            return 0

        self.db.add(XPLedger(
            user_id=self.user_id,
            amount=delta,
            source=source,
            source_id=source_id,
            description=description,
            created_at=self.clock(),
        ))

        old_level = self.progress.level
        self.progress.xp = max(0, self.progress.xp + delta)
        self.progress.level = level_for_xp(self.progress.xp)

        logger.info(
            "xp_awarded" if delta > 0 else "xp_retracted",
            user_id=self.user_id,
            amount=delta,
            source=source,
            source_id=source_id,
            total_xp=self.progress.xp,
        )
        if self.progress.level > old_level:
            logger.info("level_up", user_id=self.user_id, old_level=old_level, new_level=self.progress.level)
        return abs(delta)

    async def ledger_total(self) -> int:
        """Sum of all persisted deltas, floored at zero."""
        await self.db.flush()
        result = await self.db.execute(
            select(func.coalesce(func.sum(XPLedger.amount), 0)).where(XPLedger.user_id == self.user_id)
        )
        return max(0, int(result.scalar_one()))

    async def history(self, limit: int = 50) -> list[XPLedger]:
        """Most recent ledger entries, newest first."""
        await self.db.flush()
        result = await self.db.execute(
            select(XPLedger)
            .where(XPLedger.user_id == self.user_id)
            .order_by(XPLedger.id.desc())
            .limit(limit)
        )
        return list(result.scalars())

    # ── Streaks ──

    async def check_in(self, day: date) -> bool:
        """Daily check-in. Returns False when ``day`` is already covered (no-op)."""
        last = self.progress.last_check_in_date
        if last is not None and day <= last:
            return False

        if last is not None and last == previous_day(day):
            self.progress.current_streak += 1
        else:
            self.progress.current_streak = 1
        self.progress.longest_streak = max(self.progress.longest_streak, self.progress.current_streak)
        self.progress.last_check_in_date = day

        logger.info(
            "checked_in",
            user_id=self.user_id,
            day=day.isoformat(),
            current_streak=self.progress.current_streak,
        )

        if self.checkin_xp:
            await self._append(self.checkin_xp, "checkin", day.isoformat(), f"Daily check-in, streak {self.progress.current_streak}")
        await self.evaluate_achievements()
        return True

    async def record_dose_day(self, day: date) -> None:
        """Advance the medication streak for a day on which a dose was taken."""
        last = self.progress.last_dose_date
        if last is not None and day <= last:
            return
        if last is not None and last == previous_day(day):
            self.progress.medication_streak += 1
        else:
            self.progress.medication_streak = 1
        self.progress.last_dose_date = day
        await self.evaluate_achievements()

    # ── Achievements ──

    async def unlocked_achievements(self) -> dict[str, datetime]:
        await self.db.flush()
        result = await self.db.execute(
            select(UserAchievement).where(UserAchievement.user_id == self.user_id)
        )
        return {row.achievement_id: row.unlocked_at for row in result.scalars()}

    async def _load_unlocked(self) -> set[str]:
        if self._unlocked is None:
            self._unlocked = set(await self.unlocked_achievements())
        return self._unlocked

    async def evaluate_achievements(self) -> list[str]:
        """Unlock every rule whose threshold now holds.

        Reward XP may push another metric over its threshold, so evaluation
        repeats until a pass unlocks nothing.
        """
        unlocked = await self._load_unlocked()
        awarded: list[str] = []
        while True:
            rules = newly_satisfied(progress_metrics(self.progress), unlocked)
            if not rules:
                break
            for rule in rules:
                unlocked.add(rule.id)
                self.db.add(UserAchievement(
                    user_id=self.user_id,
                    achievement_id=rule.id,
                    unlocked_at=self.clock(),
                ))
                logger.info("achievement_unlocked", user_id=self.user_id, achievement=rule.id)
                awarded.append(rule.id)
                await self._append(
                    rule.xp_reward,
                    "achievement",
                    rule.id,
                    f'Unlocked achievement: "{ACHIEVEMENTS_BY_ID[rule.id].title}"',
                )
        self.unlocked_now.extend(awarded)
        return awarded
