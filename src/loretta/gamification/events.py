"""Events mission and medication components emit towards the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class AwardXP:
    amount: int
    source: str
    source_id: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class RetractXP:
    amount: int
    source: str
    source_id: str | None = None
    description: str | None = None


LedgerEvent = AwardXP | RetractXP


class LedgerSink(Protocol):
    """Anything that can absorb ledger events (the GamificationLedger in practice)."""

    async def apply(self, event: LedgerEvent) -> int: ...
