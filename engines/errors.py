"""Error kinds raised by the quiz progress engines."""

from __future__ import annotations

from typing import Optional


class ProgressError(Exception):
    """Base class for failures reported back to the caller."""

    status_code = 400

    def __init__(self, message: str, *, quiz_id: Optional[str] = None, student_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.quiz_id = quiz_id
        self.student_id = student_id


class NotFound(ProgressError):
    """Unknown quiz, record or assistance definition."""

    status_code = 404


class PreconditionFailed(ProgressError):
    """Transition not allowed in the record's current state."""

    status_code = 409


class Unauthorized(ProgressError):
    """Caller role may not perform the operation."""

    status_code = 403
