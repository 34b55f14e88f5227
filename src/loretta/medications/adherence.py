"""Adherence percentages from dose records.

Pure functions over records; they do not care whether a record came from
a materialized dose row or was derived from the schedule.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from loretta.day_resolver import trailing_days
from loretta.medications.schedule import DoseFrequency, parse_frequency

WEEKLY_MIN_WINDOW_DAYS = 7


@dataclass(frozen=True)
class DoseRecord:
    day: date
    taken: bool


@dataclass(frozen=True)
class AdherenceRecord:
    medication_id: str
    window_days: int
    taken_count: int
    scheduled_count: int
    percent: int


def percent_half_up(taken: int, scheduled: int) -> int:
    """round(taken / scheduled * 100) with halves rounded up; 100 when nothing was due."""
    if scheduled <= 0:
        return 100
    return (taken * 200 + scheduled) // (2 * scheduled)


def effective_window(frequency: DoseFrequency, window_days: int) -> int:
    if frequency is DoseFrequency.WEEKLY:
        return max(window_days, WEEKLY_MIN_WINDOW_DAYS)
    return window_days


def _count(records: Iterable[DoseRecord], as_of: date, window: int) -> tuple[int, int]:
    days = set(trailing_days(as_of, window))
    taken = scheduled = 0
    for record in records:
        if record.day not in days:
            continue
        scheduled += 1
        if record.taken:
            taken += 1
    return taken, scheduled


def adherence_percent(
    frequency: str,
    records: Iterable[DoseRecord],
    as_of: date,
    window_days: int = 1,
) -> int:
    """Share of scheduled doses in the trailing window that were taken.

    As-needed medications have no obligations and always report 100.
    """
    parsed = parse_frequency(frequency)
    if parsed is DoseFrequency.AS_NEEDED:
        return 100
    taken, scheduled = _count(records, as_of, effective_window(parsed, window_days))
    return percent_half_up(taken, scheduled)


def adherence_record(
    medication_id: str,
    frequency: str,
    records: Iterable[DoseRecord],
    as_of: date,
    window_days: int = 1,
) -> AdherenceRecord:
    parsed = parse_frequency(frequency)
    window = effective_window(parsed, window_days)
    if parsed is DoseFrequency.AS_NEEDED:
        # validates the window even though nothing is counted
        trailing_days(as_of, window)
        return AdherenceRecord(medication_id, window, 0, 0, 100)
    taken, scheduled = _count(records, as_of, window)
    return AdherenceRecord(
        medication_id=medication_id,
        window_days=window,
        taken_count=taken,
        scheduled_count=scheduled,
        percent=percent_half_up(taken, scheduled),
    )
