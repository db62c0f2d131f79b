"""Test cases for db operations."""

import sqlite3
import threading

import pytest

import db
from engines.progression import ProgressionEngine
from engines.status import StatusProjector
from engines.store import SQLiteProgressStore
from schemas import NextStep, QuizConfig


@pytest.mark.usefixtures("temp_db")
def test_quiz_catalogue_upsert_and_lookup():
    db.upsert_quiz("q1", title="Algebra", max_attempts=3, assistance_level1_id="l1")
    db.upsert_quiz(
        "q1", title="Algebra II", max_attempts=5, assistance_level1_id="l1", level1_answer_key={"x": 1, "y": 0}
    )

    row = db.get_quiz("q1")
    assert row["title"] == "Algebra II"
    assert row["max_attempts"] == 5
    assert row["assistance_level2_id"] is None
    assert row["level1_answer_key"] == {"x": True, "y": False}
    assert [r["quiz_id"] for r in db.list_quizzes()] == ["q1"]
    assert db.get_quiz("missing") is None

    with pytest.raises(ValueError):
        db.upsert_quiz("q2", max_attempts=0)


@pytest.mark.usefixtures("temp_db")
def test_progress_row_created_lazily_with_defaults():
    db.upsert_quiz("q1")
    assert db._query("SELECT COUNT(*) AS n FROM quiz_progress")[0]["n"] == 0

    row = db.ensure_quiz_progress("q1", "s1")
    assert row["current_attempt"] == 0
    assert row["failed_attempts"] == 0
    assert row["assistance_required"] == "NONE"
    assert row["next_step"] == "TAKE_MAIN_QUIZ_NOW"
    assert row["version"] == 0

    again = db.ensure_quiz_progress("q1", "s1")
    assert again == row


@pytest.mark.usefixtures("temp_db")
def test_update_is_rolled_back_when_mutation_raises():
    db.upsert_quiz("q1")
    db.ensure_quiz_progress("q1", "s1")

    def _boom(row):
        raise RuntimeError("stop")

    with pytest.raises(RuntimeError):
        db.update_quiz_progress("q1", "s1", _boom)

    def _bad_counters(row):
        row["failed_attempts"] = row["current_attempt"] + 1
        return row

    with pytest.raises(sqlite3.IntegrityError):
        db.update_quiz_progress("q1", "s1", _bad_counters)

    row = db.ensure_quiz_progress("q1", "s1")
    assert row["failed_attempts"] == 0
    assert row["version"] == 0


@pytest.mark.usefixtures("temp_db")
def test_update_bumps_version():
    db.upsert_quiz("q1")

    def _increment(row):
        row["current_attempt"] += 1
        return row

    first = db.update_quiz_progress("q1", "s1", _increment)
    second = db.update_quiz_progress("q1", "s1", _increment)
    assert first["version"] == 1
    assert second["version"] == 2
    assert second["current_attempt"] == 2


@pytest.mark.usefixtures("temp_db")
def test_attempt_index_is_monotonic_per_kind():
    db.upsert_quiz("q1")
    main1 = db.record_quiz_attempt("q1", "s1", "FAILED", score=40.0, correct_answers=4, total_questions=10)
    level1 = db.record_quiz_attempt("q1", "s1", "failed", assistance_level=1, raw_answers={"a": True})
    main2 = db.record_quiz_attempt("q1", "s1", "PASSED", score=90.0, attempt_number=2)
    level1_again = db.record_quiz_attempt("q1", "s1", "PASSED", assistance_level=1)
    other_student = db.record_quiz_attempt("q1", "s2", "PENDING")

    assert (main1["attempt_index"], main2["attempt_index"]) == (1, 2)
    assert (level1["attempt_index"], level1_again["attempt_index"]) == (1, 2)
    assert other_student["attempt_index"] == 1

    history = db.list_quiz_attempts("q1", "s1")
    assert [entry["kind"] for entry in history] == ["main", "level1", "main", "level1"]
    assert history[1]["raw_answers"] == {"a": True}
    assert [entry["id"] for entry in db.list_quiz_attempts("q1", "s1", kind="level1")] == [
        level1["id"],
        level1_again["id"],
    ]


@pytest.mark.usefixtures("temp_db")
def test_attempt_validation():
    db.upsert_quiz("q1")
    with pytest.raises(ValueError):
        db.record_quiz_attempt("q1", "s1", "UNKNOWN")
    with pytest.raises(ValueError):
        db.record_quiz_attempt("q1", "s1", "FAILED", score=120.0)
    with pytest.raises(ValueError):
        db.record_quiz_attempt("q1", "s1", "FAILED", correct_answers=5, total_questions=3)
    with pytest.raises(ValueError):
        db.record_quiz_attempt("q1", "s1", "FAILED", assistance_level=4)
    assert db.list_quiz_attempts("q1", "s1") == []


@pytest.mark.usefixtures("temp_db")
def test_concurrent_increments_are_not_lost():
    store = SQLiteProgressStore()
    store.save_quiz(QuizConfig(quiz_id="q1"))
    engine = ProgressionEngine(store, emit_statements=False)
    errors = []

    def _worker():
        try:
            for _ in range(5):
                engine.increment_attempt("q1", "s1")
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    record = store.get_or_create_progress("q1", "s1")
    assert record.current_attempt == 40
    assert record.version == 40


@pytest.mark.usefixtures("temp_db")
def test_progress_survives_store_instances():
    first = SQLiteProgressStore()
    first.save_quiz(QuizConfig(quiz_id="q1", assistance_level1_id="l1"))
    engine = ProgressionEngine(first, emit_statements=False)
    engine.increment_attempt("q1", "s1")
    engine.apply_main_quiz_grading("q1", "s1", passed=False)

    reloaded = SQLiteProgressStore().get_or_create_progress("q1", "s1")
    assert reloaded.failed_attempts == 1
    assert reloaded.assistance_required.value == "ASSISTANCE_LEVEL1"
    assert reloaded.last_attempt_passed is False


@pytest.mark.usefixtures("temp_db")
def test_history_is_not_truncated_and_latest_main_attempt_wins():
    store = SQLiteProgressStore()
    store.save_quiz(QuizConfig(quiz_id="q1", assistance_level1_id="l1"))
    db.record_quiz_attempt("q1", "s1", "FAILED", score=10.0, attempt_number=1)
    for _ in range(501):
        db.record_quiz_attempt("q1", "s1", "FAILED", assistance_level=1, raw_answers={"a": False})
    pending = db.record_quiz_attempt("q1", "s1", "PENDING", attempt_number=2)

    assert len(db.list_quiz_attempts("q1", "s1")) == 503
    assert db.latest_quiz_attempt("q1", "s1", "main")["id"] == pending["id"]
    assert db.latest_quiz_attempt("q1", "s1", "level2") is None
    recent = db.list_quiz_attempts("q1", "s1", limit=2)
    assert [entry["kind"] for entry in recent] == ["level1", "main"]

    view = StatusProjector(store).get_status("q1", "s1")
    assert len(view.history) == 503
    assert view.pending_grading
    assert view.next_step is NextStep.AWAIT_GRADING
    assert not view.can_take_quiz
