"""Base error type shared by the comment collector and winner selector.

Every core failure carries an :class:`ErrorKind` so the API layer can report
it as a structured ``{"kind", "message"}`` payload.
"""

from enum import StrEnum
from typing import ClassVar


class ErrorKind(StrEnum):
    """Machine-readable category for a core failure."""

    MISSING_TARGET = "missing_target"
    ALREADY_IN_PROGRESS = "already_in_progress"
    FETCH_FAILED = "fetch_failed"
    NO_ELIGIBLE_COMMENTS = "no_eligible_comments"
    NO_REMAINING_ELIGIBLE = "no_remaining_eligible"
    WINNER_NOT_FOUND = "winner_not_found"
    UNAUTHENTICATED = "unauthenticated"


class PickerError(Exception):
    """Base exception for collection and selection failures.

    Subclasses set ``kind`` to identify the failure category.
    """

    kind: ClassVar[ErrorKind]

    def to_detail(self) -> dict[str, str]:
        """Return the structured payload used in HTTP error responses."""
        return {"kind": self.kind.value, "message": str(self)}
