"""ORM models for the per-user progress aggregate.

One ``user_progress`` row per user carries the denormalized gamification
summary and a version counter; every mutation of the aggregate bumps it, so
two writers that raced past the in-process lock cannot both commit.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from loretta.db.base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Gamification
# ---------------------------------------------------------------------------


class UserProgress(Base):
    """Denormalized gamification summary, single row per user, O(1) reads."""

    __tablename__ = "user_progress"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, server_default="UTC")
    xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_check_in_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    lives: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default="5")
    medication_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_dose_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_rollover_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}  # noqa: RUF012


class XPLedger(Base):
    """Append-only XP transaction log; amounts are signed effective deltas."""

    __tablename__ = "xp_ledger"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class UserAchievement(Base):
    """One row per unlocked achievement; rows are never deleted."""

    __tablename__ = "user_achievements"
    __table_args__ = (UniqueConstraint("user_id", "achievement_id", name="user_achievements_user_id_achievement_id_key"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False
    )
    achievement_id: Mapped[str] = mapped_column(String(64), nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MoodCheckin(Base):
    """Emotional check-ins; the latest one of the day drives the mood gate."""

    __tablename__ = "mood_checkins"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    emotion: Mapped[str] = mapped_column(String(32), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    checked_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------


class MissionInstance(Base):
    """A mission as it exists for one user on one calendar day (or ISO week)."""

    __tablename__ = "mission_instances"
    __table_args__ = (
        UniqueConstraint("user_id", "mission_id", "day", name="mission_instances_user_mission_day_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    slot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    mission_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_progress: Mapped[int] = mapped_column(Integer, nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------


class Medication(Base):
    """A medication and its schedule. Soft-deleted via is_active."""

    __tablename__ = "medications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_progress.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    dosage: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_times: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    xp_per_dose: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MedicationDay(Base):
    """Marks a (medication, day) as materialized, including days with zero slots."""

    __tablename__ = "medication_days"
    __table_args__ = (
        UniqueConstraint("medication_id", "day", name="medication_days_med_day_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    medication_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day: Mapped[date] = mapped_column(Date, nullable=False)
    slot_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    materialized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MedicationDose(Base):
    """One materialized dose slot for one day; generated once, never regenerated."""

    __tablename__ = "medication_doses"
    __table_args__ = (
        UniqueConstraint("medication_id", "day", "ordinal", name="medication_doses_med_day_ordinal_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    medication_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_time: Mapped[str] = mapped_column(String(32), nullable=False)
    taken: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    missed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    logged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source: Mapped[str | None] = mapped_column(String(16), nullable=True)
