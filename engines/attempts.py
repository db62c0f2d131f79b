"""Append-only recording of main-quiz attempts and assistance submissions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

from engines.base import ProgressStore
from schemas import ASSISTANCE_LEVELS, AttemptRecord, AttemptStatus

ALL_LEVELS = "all"


@dataclass(frozen=True)
class AssistanceGrade:
    """Outcome of grading one assistance submission."""

    passed: bool
    correct_answers: int
    total_questions: int

    @property
    def score(self) -> float:
        if self.total_questions == 0:
            return 0.0
        return round(100.0 * self.correct_answers / self.total_questions, 2)

    @property
    def status(self) -> AttemptStatus:
        return AttemptStatus.PASSED if self.passed else AttemptStatus.FAILED


def grade_level1(answers: Mapping[str, bool], answer_key: Mapping[str, bool]) -> AssistanceGrade:
    """Grade a yes/no remediation quiz. Only a fully correct submission passes."""
    if not answer_key:
        raise ValueError("answer_key must contain at least one question")
    correct = sum(
        1
        for question_id, expected in answer_key.items()
        if question_id in answers and bool(answers[question_id]) == bool(expected)
    )
    total = len(answer_key)
    return AssistanceGrade(passed=correct == total, correct_answers=correct, total_questions=total)


def grade_level2(marks: Sequence[bool]) -> AssistanceGrade:
    """Aggregate per-answer teacher marks for an essay. Every answer must be marked correct."""
    if not marks:
        raise ValueError("marks must contain at least one answer")
    correct = sum(1 for mark in marks if mark)
    total = len(marks)
    return AssistanceGrade(passed=correct == total, correct_answers=correct, total_questions=total)


class AttemptRecorder:
    """Writes immutable history entries. Never touches progress records."""

    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    def record_main_attempt_outcome(
        self,
        quiz_id: str,
        student_id: str,
        status: AttemptStatus | str,
        score: Optional[float],
        correct_answers: Optional[int],
        total_questions: Optional[int],
        raw_answers: Any = None,
        *,
        attempt_number: Optional[int] = None,
    ) -> AttemptRecord:
        return self.store.append_attempt(
            quiz_id,
            student_id,
            AttemptStatus(status).value,
            assistance_level=None,
            score=score,
            correct_answers=correct_answers,
            total_questions=total_questions,
            raw_answers=raw_answers,
            attempt_number=attempt_number,
        )

    def record_assistance_outcome(
        self,
        quiz_id: str,
        student_id: str,
        level: int,
        status: AttemptStatus | str,
        raw_answers: Any = None,
        *,
        score: Optional[float] = None,
        correct_answers: Optional[int] = None,
        total_questions: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> AttemptRecord:
        if level not in ASSISTANCE_LEVELS:
            raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
        return self.store.append_attempt(
            quiz_id,
            student_id,
            AttemptStatus(status).value,
            assistance_level=level,
            score=score,
            correct_answers=correct_answers,
            total_questions=total_questions,
            raw_answers=raw_answers,
            feedback=feedback,
        )

    def latest(self, quiz_id: str, student_id: str, level: Optional[int] = None) -> Optional[AttemptRecord]:
        """Most recent entry of one kind. ``level=None`` is the main quiz."""
        if level is not None and level not in ASSISTANCE_LEVELS:
            raise ValueError(f"assistance level must be one of {ASSISTANCE_LEVELS}, got {level!r}")
        return self.store.latest_attempt(quiz_id, student_id, level)

    def history(self, quiz_id: str, student_id: str, level: int | str | None = ALL_LEVELS) -> List[AttemptRecord]:
        """Ordered history. ``level=None`` selects main-quiz attempts only."""
        entries = self.store.list_attempts(quiz_id, student_id)
        if level == ALL_LEVELS:
            return entries
        return [entry for entry in entries if entry.assistance_level == level]
