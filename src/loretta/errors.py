"""Error taxonomy shared by every progress component.

Idempotent no-ops (re-logging a taken dose, re-checking-in the same day)
are successful results and never raise.
"""

from __future__ import annotations


class ProgressError(Exception):
    """Base class for business errors surfaced to callers."""

    kind = "progress_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ProgressError):
    """Malformed input: bad id, ordinal, schedule token or timezone."""

    kind = "validation_error"


class NotFoundError(ProgressError):
    """Unknown mission, medication, instance or catalog entry."""

    kind = "not_found"


class PreconditionError(ProgressError):
    """A business precondition is not met (mood gate, finished slot)."""

    kind = "precondition_failed"


class StateError(ProgressError):
    """Illegal state transition or conflicting write."""

    kind = "state_error"
