"""Progress store implementations: SQLite-backed and in-memory."""

from __future__ import annotations

import copy
import sqlite3
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import db
from engines.base import ProgressMutation, ProgressStore
from schemas import AttemptRecord, ProgressRecord, QuizConfig

_Key = Tuple[str, str]


def _record_to_row(record: ProgressRecord) -> Dict[str, Any]:
    return {
        "current_attempt": int(record.current_attempt),
        "failed_attempts": int(record.failed_attempts),
        "last_attempt_passed": None if record.last_attempt_passed is None else int(record.last_attempt_passed),
        "final_status": record.final_status.value if record.final_status else None,
        "level1_completed": int(record.level1_completed),
        "level2_completed": int(record.level2_completed),
        "level3_completed": int(record.level3_completed),
        "assistance_required": record.assistance_required.value,
        "next_step": record.next_step.value,
        "override_system_flow": int(record.override_system_flow),
        "manually_assigned_level": (
            record.manually_assigned_level.value if record.manually_assigned_level else None
        ),
        "level3_access_granted": int(record.level3_access_granted),
    }


def _check_counters(record: ProgressRecord) -> None:
    if record.failed_attempts > record.current_attempt:
        raise ValueError("failed_attempts cannot exceed current_attempt")


def _attempt_kind(assistance_level: Optional[int]) -> str:
    return "main" if assistance_level is None else f"level{assistance_level}"


class SQLiteProgressStore(ProgressStore):
    """Store backed by the ``db`` module's pooled SQLite connection."""

    def get_quiz(self, quiz_id: str) -> Optional[QuizConfig]:
        row = db.get_quiz(quiz_id)
        if row is None:
            return None
        return QuizConfig.model_validate(row)

    def save_quiz(self, config: QuizConfig) -> QuizConfig:
        db.upsert_quiz(
            config.quiz_id,
            title=config.title,
            max_attempts=config.max_attempts,
            passing_score=config.passing_score,
            assistance_level1_id=config.assistance_level1_id,
            assistance_level2_id=config.assistance_level2_id,
            assistance_level3_id=config.assistance_level3_id,
            level1_answer_key=config.level1_answer_key,
        )
        return config

    def list_quizzes(self) -> List[QuizConfig]:
        return [QuizConfig.model_validate(row) for row in db.list_quizzes()]

    def get_or_create_progress(self, quiz_id: str, student_id: str) -> ProgressRecord:
        return ProgressRecord.model_validate(db.ensure_quiz_progress(quiz_id, student_id))

    @staticmethod
    def _row_mutation(mutate: ProgressMutation):
        def _apply(row: Dict[str, Any]) -> Dict[str, Any]:
            updated = mutate(ProgressRecord.model_validate(row))
            _check_counters(updated)
            return _record_to_row(updated)

        return _apply

    def update_progress(self, quiz_id: str, student_id: str, mutate: ProgressMutation) -> ProgressRecord:
        try:
            row = db.update_quiz_progress(quiz_id, student_id, self._row_mutation(mutate))
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"progress update rejected by storage constraints: {exc}") from exc
        return ProgressRecord.model_validate(row)

    def update_progress_with_attempt(
        self,
        quiz_id: str,
        student_id: str,
        mutate: ProgressMutation,
        attempt: Mapping[str, Any],
    ) -> Tuple[ProgressRecord, AttemptRecord]:
        try:
            row, entry = db.update_quiz_progress_with_attempt(
                quiz_id, student_id, self._row_mutation(mutate), attempt
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"progress update rejected by storage constraints: {exc}") from exc
        return ProgressRecord.model_validate(row), AttemptRecord.model_validate(entry)

    def append_attempt(
        self,
        quiz_id: str,
        student_id: str,
        status: str,
        *,
        assistance_level: Optional[int] = None,
        score: Optional[float] = None,
        correct_answers: Optional[int] = None,
        total_questions: Optional[int] = None,
        raw_answers: Any = None,
        attempt_number: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> AttemptRecord:
        entry = db.record_quiz_attempt(
            quiz_id,
            student_id,
            status,
            assistance_level=assistance_level,
            score=score,
            correct_answers=correct_answers,
            total_questions=total_questions,
            raw_answers=raw_answers,
            attempt_number=attempt_number,
            feedback=feedback,
        )
        return AttemptRecord.model_validate(entry)

    def latest_attempt(
        self, quiz_id: str, student_id: str, assistance_level: Optional[int] = None
    ) -> Optional[AttemptRecord]:
        entry = db.latest_quiz_attempt(quiz_id, student_id, _attempt_kind(assistance_level))
        return AttemptRecord.model_validate(entry) if entry else None

    def list_attempts(self, quiz_id: str, student_id: str) -> List[AttemptRecord]:
        return [AttemptRecord.model_validate(entry) for entry in db.list_quiz_attempts(quiz_id, student_id)]


class InMemoryProgressStore(ProgressStore):
    """Process-local store with one lock per (quiz, student) key."""

    def __init__(self) -> None:
        self._quizzes: Dict[str, QuizConfig] = {}
        self._progress: Dict[_Key, ProgressRecord] = {}
        self._attempts: Dict[_Key, List[AttemptRecord]] = defaultdict(list)
        self._locks: Dict[_Key, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._next_attempt_id = 1

    def _lock_for(self, key: _Key) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _ensure(self, key: _Key) -> ProgressRecord:
        record = self._progress.get(key)
        if record is None:
            now = datetime.now(timezone.utc)
            record = ProgressRecord(quiz_id=key[0], student_id=key[1], created_at=now, updated_at=now)
            self._progress[key] = record
        return record

    def _mutated(self, key: _Key, mutate: ProgressMutation) -> ProgressRecord:
        """Next version of the record under ``key``; the caller holds the key lock and stores it."""
        current = self._ensure(key)
        updated = mutate(current.model_copy(deep=True))
        # Re-validate so field constraints hold exactly as the SQL CHECKs do.
        stored = ProgressRecord.model_validate(updated.model_dump())
        _check_counters(stored)
        stored.version = current.version + 1
        stored.created_at = current.created_at
        stored.updated_at = datetime.now(timezone.utc)
        return stored

    def _new_attempt(
        self,
        key: _Key,
        status: str,
        *,
        assistance_level: Optional[int] = None,
        score: Optional[float] = None,
        correct_answers: Optional[int] = None,
        total_questions: Optional[int] = None,
        raw_answers: Any = None,
        attempt_number: Optional[int] = None,
        feedback: Optional[str] = None,
        expected_latest_id: Optional[int] = None,
    ) -> AttemptRecord:
        """Validated entry for ``key``; the caller holds the key lock and appends it."""
        if score is not None and not 0.0 <= float(score) <= 100.0:
            raise ValueError("score must be a percentage between 0 and 100")
        if correct_answers is not None and total_questions is not None and correct_answers > total_questions:
            raise ValueError("correct_answers cannot exceed total_questions")
        same_kind = [entry for entry in self._attempts[key] if entry.assistance_level == assistance_level]
        if expected_latest_id is not None:
            latest_id = same_kind[-1].id if same_kind else 0
            if latest_id != expected_latest_id:
                raise db.ConcurrentUpdateError(
                    f"{_attempt_kind(assistance_level)} history for quiz {key[0]} / student {key[1]} "
                    "changed before this entry was written"
                )
        with self._registry_lock:
            attempt_id = self._next_attempt_id
            self._next_attempt_id += 1
        return AttemptRecord(
            id=attempt_id,
            quiz_id=key[0],
            student_id=key[1],
            assistance_level=assistance_level,
            status=str(status).upper(),
            score=score,
            correct_answers=correct_answers,
            total_questions=total_questions,
            raw_answers=copy.deepcopy(raw_answers),
            attempt_index=len(same_kind) + 1,
            attempt_number=attempt_number,
            feedback=feedback,
        )

    def get_quiz(self, quiz_id: str) -> Optional[QuizConfig]:
        config = self._quizzes.get(quiz_id)
        return config.model_copy(deep=True) if config else None

    def save_quiz(self, config: QuizConfig) -> QuizConfig:
        self._quizzes[config.quiz_id] = config.model_copy(deep=True)
        return config

    def list_quizzes(self) -> List[QuizConfig]:
        return [self._quizzes[quiz_id].model_copy(deep=True) for quiz_id in sorted(self._quizzes)]

    def get_or_create_progress(self, quiz_id: str, student_id: str) -> ProgressRecord:
        key = (quiz_id, student_id)
        with self._lock_for(key):
            return self._ensure(key).model_copy(deep=True)

    def update_progress(self, quiz_id: str, student_id: str, mutate: ProgressMutation) -> ProgressRecord:
        key = (quiz_id, student_id)
        with self._lock_for(key):
            stored = self._mutated(key, mutate)
            self._progress[key] = stored
            return stored.model_copy(deep=True)

    def update_progress_with_attempt(
        self,
        quiz_id: str,
        student_id: str,
        mutate: ProgressMutation,
        attempt: Mapping[str, Any],
    ) -> Tuple[ProgressRecord, AttemptRecord]:
        key = (quiz_id, student_id)
        with self._lock_for(key):
            stored = self._mutated(key, mutate)
            fields = dict(attempt)
            status = fields.pop("status")
            entry = self._new_attempt(key, status, **fields)
            self._progress[key] = stored
            self._attempts[key].append(entry)
            return stored.model_copy(deep=True), entry

    def append_attempt(
        self,
        quiz_id: str,
        student_id: str,
        status: str,
        *,
        assistance_level: Optional[int] = None,
        score: Optional[float] = None,
        correct_answers: Optional[int] = None,
        total_questions: Optional[int] = None,
        raw_answers: Any = None,
        attempt_number: Optional[int] = None,
        feedback: Optional[str] = None,
    ) -> AttemptRecord:
        key = (quiz_id, student_id)
        with self._lock_for(key):
            entry = self._new_attempt(
                key,
                status,
                assistance_level=assistance_level,
                score=score,
                correct_answers=correct_answers,
                total_questions=total_questions,
                raw_answers=raw_answers,
                attempt_number=attempt_number,
                feedback=feedback,
            )
            self._attempts[key].append(entry)
            return entry

    def latest_attempt(
        self, quiz_id: str, student_id: str, assistance_level: Optional[int] = None
    ) -> Optional[AttemptRecord]:
        key = (quiz_id, student_id)
        with self._lock_for(key):
            for entry in reversed(self._attempts.get(key, [])):
                if entry.assistance_level == assistance_level:
                    return entry
        return None

    def list_attempts(self, quiz_id: str, student_id: str) -> List[AttemptRecord]:
        key = (quiz_id, student_id)
        with self._lock_for(key):
            return list(self._attempts.get(key, []))
