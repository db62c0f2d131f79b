"""Read-only status projection for a (quiz, student) pair."""

from __future__ import annotations

from typing import Optional, Tuple

from engines.attempts import AttemptRecorder
from engines.availability import AssistanceAvailability, AssistanceAvailabilityResolver
from engines.base import ProgressStore
from engines.store import SQLiteProgressStore
from schemas import (
    AssistanceRequirement,
    AttemptStatus,
    LevelStatus,
    NextStep,
    ProgressRecord,
    ProgressSnapshot,
    StatusView,
)

_ASSISTANCE_STEPS = {
    NextStep.COMPLETE_ASSISTANCE_LEVEL1,
    NextStep.COMPLETE_ASSISTANCE_LEVEL2,
    NextStep.VIEW_ASSISTANCE_LEVEL3,
}


def effective_assistance(
    record: ProgressRecord,
    availability: Optional[AssistanceAvailability] = None,
) -> Tuple[AssistanceRequirement, NextStep]:
    """Resolve what the student must do next, giving a teacher override precedence.

    An override only ever demands the level it names, and only while that level
    is incomplete. Stages that are no longer configured never block.
    """

    if record.is_terminal:
        return AssistanceRequirement.NONE, record.next_step

    def _blocking(requirement: Optional[AssistanceRequirement]) -> bool:
        if requirement is None or requirement is AssistanceRequirement.NONE:
            return False
        if availability is not None and not availability.is_configured(requirement.level):
            return False
        return not record.level_completed(requirement.level)

    if record.override_system_flow:
        target = record.manually_assigned_level
        if _blocking(target):
            return target, NextStep.for_level(target.level)
        return AssistanceRequirement.NONE, NextStep.TRY_MAIN_QUIZ_AGAIN

    required = record.assistance_required
    if _blocking(required):
        return required, NextStep.for_level(required.level)
    if record.next_step in _ASSISTANCE_STEPS or record.next_step is NextStep.AWAIT_GRADING:
        return AssistanceRequirement.NONE, NextStep.TAKE_MAIN_QUIZ_NOW
    return AssistanceRequirement.NONE, record.next_step


class StatusProjector:
    """Combines progress, availability and history into a ``StatusView``."""

    def __init__(
        self,
        store: Optional[ProgressStore] = None,
        *,
        resolver: Optional[AssistanceAvailabilityResolver] = None,
        recorder: Optional[AttemptRecorder] = None,
    ) -> None:
        self.store = store or SQLiteProgressStore()
        self.resolver = resolver or AssistanceAvailabilityResolver(self.store)
        self.recorder = recorder or AttemptRecorder(self.store)

    def get_status(self, quiz_id: str, student_id: str) -> StatusView:
        availability = self.resolver.resolve(quiz_id)
        record = self.store.get_or_create_progress(quiz_id, student_id)
        history = self.recorder.history(quiz_id, student_id)
        max_attempts = availability.quiz.max_attempts

        required, next_step = effective_assistance(record, availability)
        last_main = self.recorder.latest(quiz_id, student_id)
        pending = (
            not record.is_terminal
            and last_main is not None
            and last_main.status is AttemptStatus.PENDING
        )
        if pending:
            next_step = NextStep.AWAIT_GRADING

        levels = []
        for stage in availability.stages(record):
            is_required = required.level == stage.level
            unlocked = (
                record.failed_attempts >= stage.level
                or is_required
                or (stage.level == 3 and record.level3_access_granted)
            )
            levels.append(
                LevelStatus(
                    level=stage.level,
                    available=stage.is_configured,
                    completed=stage.is_completed,
                    unlocked=stage.is_configured and unlocked,
                    required=is_required,
                    assistance_id=stage.assistance_id,
                )
            )

        return StatusView(
            quiz_id=quiz_id,
            student_id=student_id,
            progress=ProgressSnapshot.of(record),
            max_attempts=max_attempts,
            attempts_remaining=max(0, max_attempts - record.failed_attempts),
            assistance_required=required,
            next_step=next_step,
            override_active=record.override_system_flow,
            pending_grading=pending,
            can_take_quiz=(
                not record.is_terminal
                and not pending
                and required is AssistanceRequirement.NONE
                and record.failed_attempts < max_attempts
            ),
            levels=levels,
            history=history,
        )
