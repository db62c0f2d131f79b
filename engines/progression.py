"""Quiz progress state machine.

This module decides, after every graded main-quiz attempt or completed
assistance stage, what a student is allowed or required to do next. A failed
attempt routes the student through the configured assistance levels in order
(yes/no quiz, teacher-graded essay, reference material) before the main quiz
may be retried; reaching the quiz's failure limit fails the student. Teachers
can bypass the automatic flow with overrides, a final-status toggle and a
separate level 3 grant.

Every transition is a single read-modify-write through
``ProgressStore.update_progress``: a precondition failure raised inside the
mutation leaves the stored record untouched. Operations that also record an
attempt use ``update_progress_with_attempt`` so the history entry and the
transition commit together.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import xapi
from engines.attempts import AssistanceGrade, AttemptRecorder, grade_level1
from engines.availability import AssistanceAvailability, AssistanceAvailabilityResolver
from engines.base import ProgressStore
from engines.errors import NotFound, PreconditionFailed
from engines.status import effective_assistance
from engines.store import SQLiteProgressStore
from schemas import (
    ASSISTANCE_LEVELS,
    AssistanceRequirement,
    AttemptRecord,
    AttemptStatus,
    FinalStatus,
    NextStep,
    ProgressRecord,
)

_LOGGER = logging.getLogger(__name__)

# Failures beyond this ordinal never unlock further assistance.
_LAST_ASSISTANCE_FAILURE = len(ASSISTANCE_LEVELS)

_LOGGED_FIELDS = {
    "current_attempt",
    "failed_attempts",
    "last_attempt_passed",
    "final_status",
    "level1_completed",
    "level2_completed",
    "level3_completed",
    "assistance_required",
    "next_step",
    "override_system_flow",
    "manually_assigned_level",
    "level3_access_granted",
}


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    """Emit one structured JSON log line per progress transition."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    _LOGGER.info(message)


def _snapshot(record: ProgressRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json", include=_LOGGED_FIELDS)


def _coerce_level(level: Any) -> AssistanceRequirement:
    if level is None:
        return AssistanceRequirement.NONE
    if isinstance(level, AssistanceRequirement):
        return level
    if isinstance(level, int):
        return AssistanceRequirement.for_level(level)
    try:
        return AssistanceRequirement(str(level).upper())
    except ValueError as exc:
        raise ValueError(f"unknown assistance level: {level!r}") from exc


def _require_level(level: int) -> int:
    if level not in ASSISTANCE_LEVELS:
        raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
    return level


def _answer_count(raw_answers: Any) -> Optional[int]:
    """Number of answers in a stored essay, or None when its shape is free-form."""
    if isinstance(raw_answers, (list, tuple, dict)) and raw_answers:
        return len(raw_answers)
    return None


def _reopen(record: ProgressRecord) -> None:
    record.final_status = None
    record.last_attempt_passed = None


def _resume_automatic_flow(record: ProgressRecord) -> None:
    """Point ``next_step`` back at the automatic requirement after an override ends."""
    required = record.assistance_required
    if required is not AssistanceRequirement.NONE and not record.level_completed(required.level):
        record.next_step = NextStep.for_level(required.level)
    else:
        record.assistance_required = AssistanceRequirement.NONE
        record.next_step = NextStep.TAKE_MAIN_QUIZ_NOW


class ProgressionEngine:
    """Remediation state machine for one quiz per (quiz, student) record.

    Parameters
    ----------
    store:
        Persistence boundary. Defaults to the SQLite-backed store.
    resolver, recorder:
        Collaborators built on ``store`` when omitted.
    emit_statements:
        Whether grading and completion events produce xAPI statements.
        Defaults to on for the SQLite store, where the statements table lives.
    """

    def __init__(
        self,
        store: Optional[ProgressStore] = None,
        *,
        resolver: Optional[AssistanceAvailabilityResolver] = None,
        recorder: Optional[AttemptRecorder] = None,
        emit_statements: Optional[bool] = None,
    ) -> None:
        self.store = store or SQLiteProgressStore()
        self.resolver = resolver or AssistanceAvailabilityResolver(self.store)
        self.recorder = recorder or AttemptRecorder(self.store)
        if emit_statements is None:
            emit_statements = isinstance(self.store, SQLiteProgressStore)
        self.emit_statements = bool(emit_statements)

    # ----- internals ---------------------------------------------------
    def _run_transition(
        self,
        event: str,
        quiz_id: str,
        student_id: str,
        mutate: Callable[[ProgressRecord], None],
        attempt: Optional[Dict[str, Any]],
        details: Dict[str, Any],
    ) -> Tuple[ProgressRecord, Optional[AttemptRecord]]:
        before: Dict[str, Any] = {}

        def _apply(record: ProgressRecord) -> ProgressRecord:
            before.clear()
            before.update(_snapshot(record))
            mutate(record)
            return record

        entry = None
        if attempt is None:
            updated = self.store.update_progress(quiz_id, student_id, _apply)
        else:
            updated, entry = self.store.update_progress_with_attempt(quiz_id, student_id, _apply, attempt)
            details = {**details, "attempt_id": entry.id, "attempt_status": entry.status.value}
        _log_json(
            event,
            {
                "quiz_id": quiz_id,
                "student_id": student_id,
                "before": before,
                "after": _snapshot(updated),
                **details,
            },
        )
        return updated, entry

    def _transition(
        self,
        event: str,
        quiz_id: str,
        student_id: str,
        mutate: Callable[[ProgressRecord], None],
        **details: Any,
    ) -> ProgressRecord:
        updated, _ = self._run_transition(event, quiz_id, student_id, mutate, None, details)
        return updated

    def _recorded_transition(
        self,
        event: str,
        quiz_id: str,
        student_id: str,
        mutate: Callable[[ProgressRecord], None],
        attempt: Dict[str, Any],
        **details: Any,
    ) -> Tuple[ProgressRecord, AttemptRecord]:
        """Like ``_transition`` but appends ``attempt`` to the history in the same write."""
        return self._run_transition(event, quiz_id, student_id, mutate, attempt, details)

    def _emit(self, student_id: str, verb: str, quiz_id: str, **kwargs: Any) -> None:
        if self.emit_statements:
            xapi.emit_quiz_event(student_id, verb, quiz_id, **kwargs)

    def _emit_final_status(self, record: ProgressRecord) -> None:
        if record.final_status is FinalStatus.PASSED:
            self._emit(record.student_id, xapi.VERB_MASTERED, record.quiz_id, success=True)
        elif record.final_status is FinalStatus.FAILED:
            self._emit(
                record.student_id,
                xapi.VERB_TERMINATED,
                record.quiz_id,
                success=False,
                context={"failed_attempts": record.failed_attempts, "next_step": record.next_step.value},
            )

    @staticmethod
    def _assert_open(record: ProgressRecord) -> None:
        if record.is_terminal:
            raise PreconditionFailed(
                f"quiz already finished with status {record.final_status.value}",
                quiz_id=record.quiz_id,
                student_id=record.student_id,
            )

    @staticmethod
    def _assert_attempt_started(record: ProgressRecord) -> None:
        if record.current_attempt <= record.failed_attempts:
            raise PreconditionFailed(
                "no started main-quiz attempt is awaiting grading",
                quiz_id=record.quiz_id,
                student_id=record.student_id,
            )

    @staticmethod
    def _assert_stage_open(record: ProgressRecord, availability: AssistanceAvailability, level: int) -> None:
        required, _ = effective_assistance(record, availability)
        earlier_done = all(
            stage.is_completed or not stage.is_configured
            for stage in availability.stages(record)
            if stage.level < level
        )
        unlocked = (
            required.level == level
            or (record.failed_attempts >= level and earlier_done)
            or (level == 3 and record.level3_access_granted)
        )
        if not unlocked:
            raise PreconditionFailed(
                f"assistance level {level} is not unlocked",
                quiz_id=record.quiz_id,
                student_id=record.student_id,
            )

    def _configured_availability(self, quiz_id: str, level: int) -> AssistanceAvailability:
        availability = self.resolver.resolve(quiz_id)
        if not availability.is_configured(level):
            raise NotFound(f"assistance level {level} is not configured for quiz {quiz_id}", quiz_id=quiz_id)
        return availability

    def _grading_mutation(
        self, availability: AssistanceAvailability, passed: bool, limit: int
    ) -> Callable[[ProgressRecord], None]:
        def _mutate(record: ProgressRecord) -> None:
            self._assert_open(record)
            self._assert_attempt_started(record)
            record.clear_override()
            if passed:
                record.last_attempt_passed = True
                record.final_status = FinalStatus.PASSED
                record.assistance_required = AssistanceRequirement.NONE
                record.next_step = NextStep.QUIZ_PASSED
                return

            record.last_attempt_passed = False
            record.failed_attempts += 1
            failures = record.failed_attempts
            if failures >= limit:
                record.final_status = FinalStatus.FAILED
                record.assistance_required = AssistanceRequirement.NONE
                record.next_step = NextStep.QUIZ_FAILED_MAX_ATTEMPTS
                return

            stage = None
            if failures <= _LAST_ASSISTANCE_FAILURE:
                stage = availability.first_open_stage(record, failures)
            if stage is None:
                record.assistance_required = AssistanceRequirement.NONE
                record.next_step = NextStep.TAKE_MAIN_QUIZ_NOW
            else:
                record.assistance_required = stage.requirement
                record.next_step = stage.next_step

        return _mutate

    def _completion_mutation(
        self, availability: AssistanceAvailability, level: int
    ) -> Callable[[ProgressRecord], None]:
        requirement = AssistanceRequirement.for_level(level)

        def _mutate(record: ProgressRecord) -> None:
            self._assert_open(record)
            if record.level_completed(level):
                return
            self._assert_stage_open(record, availability, level)
            override_driven = (
                record.override_system_flow and record.manually_assigned_level is requirement
            )
            record.mark_level_completed(level)
            if override_driven:
                record.clear_override()
            if record.assistance_required is requirement:
                record.assistance_required = AssistanceRequirement.NONE
            if record.override_system_flow:
                _, record.next_step = effective_assistance(record, availability)
            elif record.assistance_required is not AssistanceRequirement.NONE:
                _resume_automatic_flow(record)
            elif override_driven:
                record.next_step = NextStep.TRY_MAIN_QUIZ_AGAIN
            else:
                record.next_step = NextStep.TAKE_MAIN_QUIZ_NOW

        return _mutate

    @staticmethod
    def _grading_limit(availability: AssistanceAvailability, max_attempts: Optional[int]) -> int:
        limit = availability.quiz.max_attempts if max_attempts is None else int(max_attempts)
        if limit < 1:
            raise ValueError("max_attempts must be at least 1")
        return limit

    # ----- public API --------------------------------------------------
    def get_or_create_progress(self, quiz_id: str, student_id: str) -> ProgressRecord:
        self.resolver.quiz(quiz_id)
        return self.store.get_or_create_progress(quiz_id, student_id)

    def increment_attempt(self, quiz_id: str, student_id: str) -> ProgressRecord:
        """Start a new main-quiz attempt."""

        availability = self.resolver.resolve(quiz_id)
        max_attempts = availability.quiz.max_attempts

        def _mutate(record: ProgressRecord) -> None:
            self._assert_open(record)
            if record.failed_attempts >= max_attempts:
                raise PreconditionFailed(
                    "no main-quiz attempts remaining", quiz_id=quiz_id, student_id=student_id
                )
            if record.override_system_flow:
                target = record.manually_assigned_level or AssistanceRequirement.NONE
                if target is not AssistanceRequirement.NONE:
                    if not record.level_completed(target.level):
                        raise PreconditionFailed(
                            "assistance stage not completed", quiz_id=quiz_id, student_id=student_id
                        )
                    # The assigned stage is already done; the override has nothing left to gate.
                    record.clear_override()
            else:
                required, _ = effective_assistance(record, availability)
                if required is not AssistanceRequirement.NONE:
                    raise PreconditionFailed(
                        "assistance stage not completed", quiz_id=quiz_id, student_id=student_id
                    )
            record.current_attempt += 1

        return self._transition("quiz_attempt_started", quiz_id, student_id, _mutate)

    def apply_main_quiz_grading(
        self,
        quiz_id: str,
        student_id: str,
        passed: bool,
        max_attempts: Optional[int] = None,
    ) -> ProgressRecord:
        """Apply the outcome of a graded main-quiz attempt."""

        availability = self.resolver.resolve(quiz_id)
        limit = self._grading_limit(availability, max_attempts)
        updated = self._transition(
            "main_quiz_graded",
            quiz_id,
            student_id,
            self._grading_mutation(availability, bool(passed), limit),
            passed=bool(passed),
            max_attempts=limit,
        )
        self._emit_final_status(updated)
        return updated

    def complete_assistance(self, level: int, quiz_id: str, student_id: str) -> ProgressRecord:
        """Mark an assistance stage as passed and release the main quiz."""

        _require_level(level)
        availability = self._configured_availability(quiz_id, level)
        return self._transition(
            "assistance_completed", quiz_id, student_id, self._completion_mutation(availability, level), level=level
        )

    def submit_assistance(
        self,
        level: int,
        quiz_id: str,
        student_id: str,
        grade: Optional[AssistanceGrade],
        raw_answers: Any = None,
        *,
        feedback: Optional[str] = None,
    ) -> AttemptRecord:
        """Record a level 1 or 2 submission; a passing grade completes the stage.

        ``grade=None`` stores an essay as pending teacher review. A level 2 grade
        always applies to the latest pending essay, whose answers it keeps.
        Failed submissions leave the progress record as it is and may be
        retried freely. The history entry and any completion are written
        together or not at all.
        """

        if _require_level(level) == 3:
            raise ValueError("level 3 is completed by acknowledging the reference material")
        availability = self._configured_availability(quiz_id, level)
        attempt: Dict[str, Any] = {"assistance_level": level, "raw_answers": raw_answers}

        if grade is None:
            if level == 1:
                raise ValueError("level 1 submissions are graded on receipt")
            attempt["status"] = AttemptStatus.PENDING.value
        else:
            if level == 2:
                essay = self.recorder.latest(quiz_id, student_id, 2)
                if essay is None or essay.status is not AttemptStatus.PENDING:
                    raise PreconditionFailed(
                        "no level 2 submission is awaiting grading", quiz_id=quiz_id, student_id=student_id
                    )
                expected = _answer_count(essay.raw_answers)
                if expected is not None and grade.total_questions != expected:
                    raise ValueError(f"expected {expected} marks for the submitted essay, got {grade.total_questions}")
                attempt["raw_answers"] = essay.raw_answers
                attempt["expected_latest_id"] = essay.id
            attempt.update(
                status=grade.status.value,
                score=grade.score,
                correct_answers=grade.correct_answers,
                total_questions=grade.total_questions,
                feedback=feedback,
            )

        complete = self._completion_mutation(availability, level)

        def _mutate(record: ProgressRecord) -> None:
            if grade is not None and grade.passed:
                complete(record)
                return
            self._assert_open(record)
            if not record.level_completed(level):
                self._assert_stage_open(record, availability, level)

        _, entry = self._recorded_transition(
            "assistance_submitted", quiz_id, student_id, _mutate, attempt, level=level
        )
        if grade is None:
            self._emit(student_id, xapi.VERB_ANSWERED, quiz_id, assistance_level=level)
        else:
            self._emit(
                student_id,
                xapi.VERB_EVALUATED,
                quiz_id,
                assistance_level=level,
                score=grade.score,
                success=grade.passed,
            )
        return entry

    def submit_level1_answers(self, quiz_id: str, student_id: str, answers: Mapping[str, Any]) -> AttemptRecord:
        """Grade a yes/no submission against the quiz's stored answer key."""

        if not isinstance(answers, Mapping) or not answers:
            raise ValueError("level 1 answers must map question ids to yes/no values")
        config = self.resolver.quiz(quiz_id)
        if not config.level1_answer_key:
            raise NotFound(f"no level 1 answer key is configured for quiz {quiz_id}", quiz_id=quiz_id)
        grade = grade_level1(answers, config.level1_answer_key)
        return self.submit_assistance(1, quiz_id, student_id, grade, dict(answers))

    def acknowledge_reference_material(self, quiz_id: str, student_id: str) -> ProgressRecord:
        """Level 3 needs no grading; viewing the material completes it."""

        availability = self._configured_availability(quiz_id, 3)
        record = self.store.get_or_create_progress(quiz_id, student_id)
        self._assert_open(record)
        if record.level3_completed:
            return record
        updated, _ = self._recorded_transition(
            "assistance_completed",
            quiz_id,
            student_id,
            self._completion_mutation(availability, 3),
            {"status": AttemptStatus.PASSED.value, "assistance_level": 3},
            level=3,
        )
        self._emit(student_id, xapi.VERB_EXPERIENCED, quiz_id, assistance_level=3, success=True)
        return updated

    def submit_main_attempt_for_grading(
        self,
        quiz_id: str,
        student_id: str,
        raw_answers: Any = None,
        *,
        total_questions: Optional[int] = None,
    ) -> AttemptRecord:
        """Store a started attempt's answers until a teacher grades it."""

        self.resolver.quiz(quiz_id)
        latest = self.recorder.latest(quiz_id, student_id)
        if latest is not None and latest.status is AttemptStatus.PENDING:
            raise PreconditionFailed(
                "the current attempt is already awaiting grading", quiz_id=quiz_id, student_id=student_id
            )
        attempt: Dict[str, Any] = {
            "status": AttemptStatus.PENDING.value,
            "total_questions": total_questions,
            "raw_answers": raw_answers,
            "expected_latest_id": latest.id if latest else 0,
        }

        def _mutate(record: ProgressRecord) -> None:
            self._assert_open(record)
            self._assert_attempt_started(record)
            attempt["attempt_number"] = record.current_attempt

        _, entry = self._recorded_transition("main_attempt_submitted", quiz_id, student_id, _mutate, attempt)
        self._emit(
            student_id,
            xapi.VERB_ANSWERED,
            quiz_id,
            context={"attempt_number": entry.attempt_number},
        )
        return entry

    def grade_main_attempt(
        self,
        quiz_id: str,
        student_id: str,
        passed: Optional[bool] = None,
        *,
        score: Optional[float] = None,
        correct_answers: Optional[int] = None,
        total_questions: Optional[int] = None,
        raw_answers: Any = None,
        max_attempts: Optional[int] = None,
    ) -> ProgressRecord:
        """Record a graded main-quiz attempt and apply the transition in one write.

        When ``passed`` is omitted it is derived from ``score`` and the quiz's
        passing score. Answers held by a pending submission for the same
        attempt are carried over unless ``raw_answers`` is given.
        """

        availability = self.resolver.resolve(quiz_id)
        limit = self._grading_limit(availability, max_attempts)
        if passed is None:
            if score is None:
                raise ValueError("either passed or score is required")
            passed = float(score) >= availability.quiz.passing_score
        passed = bool(passed)

        latest = self.recorder.latest(quiz_id, student_id)
        attempt: Dict[str, Any] = {
            "status": (AttemptStatus.PASSED if passed else AttemptStatus.FAILED).value,
            "score": score,
            "correct_answers": correct_answers,
            "total_questions": total_questions,
            "raw_answers": raw_answers,
            "expected_latest_id": latest.id if latest else 0,
        }
        grade = self._grading_mutation(availability, passed, limit)

        def _mutate(record: ProgressRecord) -> None:
            attempt["attempt_number"] = record.current_attempt
            if (
                raw_answers is None
                and latest is not None
                and latest.status is AttemptStatus.PENDING
                and latest.attempt_number == record.current_attempt
            ):
                attempt["raw_answers"] = latest.raw_answers
            grade(record)

        updated, entry = self._recorded_transition(
            "main_quiz_graded", quiz_id, student_id, _mutate, attempt, passed=passed, max_attempts=limit
        )
        self._emit(
            student_id,
            xapi.VERB_EVALUATED,
            quiz_id,
            score=score,
            success=passed,
            context={"attempt_number": entry.attempt_number},
        )
        self._emit_final_status(updated)
        return updated

    # ----- teacher and admin operations --------------------------------
    def set_override(
        self,
        quiz_id: str,
        student_id: str,
        enabled: bool,
        level: AssistanceRequirement | str | int | None = None,
    ) -> ProgressRecord:
        """Force a student into a stage, or hand gating back to the automatic flow."""

        target = _coerce_level(level)
        availability = self.resolver.resolve(quiz_id)
        if enabled and target is not AssistanceRequirement.NONE and not availability.is_configured(target.level):
            raise NotFound(
                f"assistance level {target.level} is not configured for quiz {quiz_id}", quiz_id=quiz_id
            )

        def _mutate(record: ProgressRecord) -> None:
            if not enabled:
                if record.override_system_flow:
                    record.clear_override()
                    if not record.is_terminal:
                        _resume_automatic_flow(record)
                return
            if record.is_terminal:
                _reopen(record)
            record.override_system_flow = True
            record.manually_assigned_level = target
            if target is AssistanceRequirement.ASSISTANCE_LEVEL3:
                record.level3_access_granted = True
            _, record.next_step = effective_assistance(record, availability)

        return self._transition(
            "override_set",
            quiz_id,
            student_id,
            _mutate,
            enabled=bool(enabled),
            level=target.value if enabled else None,
        )

    def toggle_final_status(self, quiz_id: str, student_id: str, is_passed: Optional[bool]) -> ProgressRecord:
        """Teacher escape hatch: pass, fail, or reopen regardless of attempt counts."""

        self.resolver.quiz(quiz_id)

        def _mutate(record: ProgressRecord) -> None:
            record.clear_override()
            if is_passed is None:
                _reopen(record)
                _resume_automatic_flow(record)
                return
            record.last_attempt_passed = bool(is_passed)
            record.assistance_required = AssistanceRequirement.NONE
            if is_passed:
                record.final_status = FinalStatus.PASSED
                record.next_step = NextStep.QUIZ_PASSED
            else:
                record.final_status = FinalStatus.FAILED
                record.next_step = NextStep.QUIZ_FAILED

        updated = self._transition("final_status_toggled", quiz_id, student_id, _mutate, is_passed=is_passed)
        if is_passed is True:
            self._emit(student_id, xapi.VERB_MASTERED, quiz_id, success=True, context={"actor_role": "teacher"})
        elif is_passed is False:
            self._emit(
                student_id, xapi.VERB_TERMINATED, quiz_id, success=False, context={"actor_role": "teacher"}
            )
        return updated

    def grant_level3_access(self, quiz_id: str, student_id: str, granted: bool) -> ProgressRecord:
        """Open level 3 independently of the failure count, or revoke that grant."""

        level3 = AssistanceRequirement.ASSISTANCE_LEVEL3
        availability = self.resolver.resolve(quiz_id)
        if granted and not availability.is_configured(3):
            raise NotFound(f"assistance level 3 is not configured for quiz {quiz_id}", quiz_id=quiz_id)

        def _mutate(record: ProgressRecord) -> None:
            record.level3_access_granted = bool(granted)
            if granted:
                if record.is_terminal:
                    _reopen(record)
                record.override_system_flow = True
                record.manually_assigned_level = level3
                _, record.next_step = effective_assistance(record, availability)
                return
            if record.override_system_flow and record.manually_assigned_level is level3:
                record.clear_override()
                if not record.is_terminal:
                    _resume_automatic_flow(record)

        return self._transition("level3_access_changed", quiz_id, student_id, _mutate, granted=bool(granted))

    def reset_attempts(self, quiz_id: str, student_id: str) -> ProgressRecord:
        """Administrative reset of counters, stage flags, overrides and final status.

        Attempt history is kept.
        """

        self.resolver.quiz(quiz_id)

        def _mutate(record: ProgressRecord) -> None:
            fresh = ProgressRecord(quiz_id=quiz_id, student_id=student_id)
            for field in _LOGGED_FIELDS:
                setattr(record, field, getattr(fresh, field))

        return self._transition("progress_reset", quiz_id, student_id, _mutate)
