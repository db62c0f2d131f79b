import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_ATTEMPT_STATUSES = {"PENDING", "PASSED", "FAILED"}

PROGRESS_COLUMNS = (
    "quiz_id",
    "student_id",
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
    "version",
    "created_at",
    "updated_at",
)

# Columns a progress mutation may write; keys, version and timestamps are managed here.
_MUTABLE_PROGRESS_COLUMNS = PROGRESS_COLUMNS[2:14]

_ATTEMPT_COLUMNS = (
    "id, quiz_id, student_id, assistance_level, kind, status, score, correct_answers, "
    "total_questions, raw_answers, attempt_index, attempt_number, feedback, created_at"
)

_QUIZ_COLUMNS = (
    "quiz_id, title, max_attempts, passing_score, assistance_level1_id, assistance_level2_id, "
    "assistance_level3_id, level1_answer_key, created_at, updated_at"
)


class ConcurrentUpdateError(RuntimeError):
    """Raised when a progress row changed between read and conditional write."""


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _decode_json_field(value: Optional[str]) -> Any:
    if value in (None, ""):
        return None
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return value


def _attempt_kind(assistance_level: Optional[int]) -> str:
    if assistance_level is None:
        return "main"
    if assistance_level not in (1, 2, 3):
        raise ValueError("assistance_level must be 1, 2, 3 or None")
    return f"level{assistance_level}"


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS quizzes (
              quiz_id              TEXT PRIMARY KEY,
              title                TEXT,
              max_attempts         INTEGER NOT NULL DEFAULT 4 CHECK (max_attempts >= 1),
              passing_score        REAL NOT NULL DEFAULT 70.0,
              assistance_level1_id TEXT,
              assistance_level2_id TEXT,
              assistance_level3_id TEXT,
              level1_answer_key    TEXT,
              created_at           TEXT NOT NULL,
              updated_at           TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS quiz_progress (
              quiz_id                 TEXT NOT NULL,
              student_id              TEXT NOT NULL,
              current_attempt         INTEGER NOT NULL DEFAULT 0 CHECK (current_attempt >= 0),
              failed_attempts         INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
              last_attempt_passed     INTEGER,
              final_status            TEXT CHECK (final_status IN ('PASSED', 'FAILED')),
              level1_completed        INTEGER NOT NULL DEFAULT 0,
              level2_completed        INTEGER NOT NULL DEFAULT 0,
              level3_completed        INTEGER NOT NULL DEFAULT 0,
              assistance_required     TEXT NOT NULL DEFAULT 'NONE',
              next_step               TEXT NOT NULL DEFAULT 'TAKE_MAIN_QUIZ_NOW',
              override_system_flow    INTEGER NOT NULL DEFAULT 0,
              manually_assigned_level TEXT,
              level3_access_granted   INTEGER NOT NULL DEFAULT 0,
              version                 INTEGER NOT NULL DEFAULT 0,
              created_at              TEXT NOT NULL,
              updated_at              TEXT NOT NULL,
              PRIMARY KEY (quiz_id, student_id),
              CHECK (failed_attempts <= current_attempt),
              FOREIGN KEY(quiz_id) REFERENCES quizzes(quiz_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              quiz_id          TEXT NOT NULL,
              student_id       TEXT NOT NULL,
              assistance_level INTEGER CHECK (assistance_level IN (1, 2, 3)),
              kind             TEXT NOT NULL,
              status           TEXT NOT NULL CHECK (status IN ('PENDING', 'PASSED', 'FAILED')),
              score            REAL,
              correct_answers  INTEGER,
              total_questions  INTEGER,
              raw_answers      TEXT,
              attempt_index    INTEGER NOT NULL,
              attempt_number   INTEGER,
              feedback         TEXT,
              created_at       TEXT NOT NULL,
              UNIQUE (quiz_id, student_id, kind, attempt_index),
              FOREIGN KEY(quiz_id) REFERENCES quizzes(quiz_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_attempts_student ON quiz_attempts(quiz_id, student_id, id);

            CREATE TABLE IF NOT EXISTS xapi_statements (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              verb        TEXT NOT NULL,
              object_id   TEXT NOT NULL,
              score       REAL,
              success     INTEGER,
              response    TEXT,
              context     TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_xapi_statements_user ON xapi_statements(user_id, created_at DESC);
            """
        )


# -------------- quiz catalogue --------------
def _quiz_row(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry["level1_answer_key"] = _decode_json_field(entry.get("level1_answer_key"))
    return entry


def upsert_quiz(
    quiz_id: str,
    *,
    title: Optional[str] = None,
    max_attempts: int = 4,
    passing_score: float = 70.0,
    assistance_level1_id: Optional[str] = None,
    assistance_level2_id: Optional[str] = None,
    assistance_level3_id: Optional[str] = None,
    level1_answer_key: Optional[Mapping[str, bool]] = None,
) -> None:
    if not quiz_id:
        raise ValueError("quiz_id is required")
    if int(max_attempts) < 1:
        raise ValueError("max_attempts must be at least 1")
    stored_key = None
    if level1_answer_key:
        stored_key = json_dumps({str(question): bool(expected) for question, expected in level1_answer_key.items()})
    now = _utcnow()
    _exec(
        """
        INSERT INTO quizzes(
          quiz_id, title, max_attempts, passing_score,
          assistance_level1_id, assistance_level2_id, assistance_level3_id,
          level1_answer_key, created_at, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(quiz_id) DO UPDATE SET
          title=excluded.title,
          max_attempts=excluded.max_attempts,
          passing_score=excluded.passing_score,
          assistance_level1_id=excluded.assistance_level1_id,
          assistance_level2_id=excluded.assistance_level2_id,
          assistance_level3_id=excluded.assistance_level3_id,
          level1_answer_key=excluded.level1_answer_key,
          updated_at=excluded.updated_at
        """,
        (
            quiz_id,
            title,
            int(max_attempts),
            float(passing_score),
            assistance_level1_id,
            assistance_level2_id,
            assistance_level3_id,
            stored_key,
            now,
            now,
        ),
    )


def get_quiz(quiz_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_QUIZ_COLUMNS} FROM quizzes WHERE quiz_id = ?", (quiz_id,))
    return _quiz_row(rows[0]) if rows else None


def list_quizzes(limit: int = 100) -> list[Dict[str, Any]]:
    rows = _query(f"SELECT {_QUIZ_COLUMNS} FROM quizzes ORDER BY quiz_id LIMIT ?", (int(limit),))
    return [_quiz_row(row) for row in rows]


# -------------- progress records --------------
def _insert_default_progress(con: sqlite3.Connection, quiz_id: str, student_id: str) -> None:
    now = _utcnow()
    con.execute(
        """
        INSERT OR IGNORE INTO quiz_progress(quiz_id, student_id, created_at, updated_at)
        VALUES (?,?,?,?)
        """,
        (quiz_id, student_id, now, now),
    )


def _select_progress(con: sqlite3.Connection, quiz_id: str, student_id: str) -> Optional[Dict[str, Any]]:
    row = con.execute(
        f"SELECT {', '.join(PROGRESS_COLUMNS)} FROM quiz_progress WHERE quiz_id = ? AND student_id = ?",
        (quiz_id, student_id),
    ).fetchone()
    return dict(row) if row else None


def ensure_quiz_progress(quiz_id: str, student_id: str) -> Dict[str, Any]:
    """Return the progress row, creating it with defaults on first access."""
    with _pool.write_transaction() as con:
        _insert_default_progress(con, quiz_id, student_id)
        row = _select_progress(con, quiz_id, student_id)
    if row is None:
        raise LookupError(f"progress for quiz {quiz_id} / student {student_id} could not be created")
    return row


def _apply_progress_update(
    con: sqlite3.Connection,
    quiz_id: str,
    student_id: str,
    mutate: Callable[[Dict[str, Any]], Mapping[str, Any]],
) -> None:
    _insert_default_progress(con, quiz_id, student_id)
    current = _select_progress(con, quiz_id, student_id)
    if current is None:
        raise LookupError(f"progress for quiz {quiz_id} / student {student_id} could not be created")
    updated = mutate(dict(current))
    assignments = ", ".join(f"{column} = ?" for column in _MUTABLE_PROGRESS_COLUMNS)
    params = [updated[column] for column in _MUTABLE_PROGRESS_COLUMNS]
    cur = con.execute(
        f"""
        UPDATE quiz_progress
        SET {assignments}, version = version + 1, updated_at = ?
        WHERE quiz_id = ? AND student_id = ? AND version = ?
        """,
        (*params, _utcnow(), quiz_id, student_id, current["version"]),
    )
    if cur.rowcount != 1:
        raise ConcurrentUpdateError(
            f"progress for quiz {quiz_id} / student {student_id} changed during update"
        )


def update_quiz_progress(
    quiz_id: str,
    student_id: str,
    mutate: Callable[[Dict[str, Any]], Mapping[str, Any]],
) -> Dict[str, Any]:
    """Atomically read, transform and write one progress row.

    ``mutate`` receives the current row and returns the new column values.
    It runs while the write lock is held; if it raises, nothing is written.
    """
    with _pool.write_transaction() as con:
        _apply_progress_update(con, quiz_id, student_id, mutate)
        row = _select_progress(con, quiz_id, student_id)
    return row or {}


def update_quiz_progress_with_attempt(
    quiz_id: str,
    student_id: str,
    mutate: Callable[[Dict[str, Any]], Mapping[str, Any]],
    attempt: Mapping[str, Any],
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Apply a progress mutation and append its history entry in one transaction.

    ``attempt`` holds the keyword arguments of :func:`record_quiz_attempt` and
    is read after ``mutate`` returns, so the mutation may fill in fields that
    depend on the locked row (``attempt_number`` for instance). Either both
    writes commit or neither does.
    """
    with _pool.write_transaction() as con:
        _apply_progress_update(con, quiz_id, student_id, mutate)
        fields = dict(attempt)
        status = fields.pop("status")
        entry = _insert_attempt(con, quiz_id, student_id, status, **fields)
        row = _select_progress(con, quiz_id, student_id)
    return row or {}, entry


# -------------- attempt history --------------
def _attempt_row(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry["raw_answers"] = _decode_json_field(entry.get("raw_answers"))
    return entry


def _insert_attempt(
    con: sqlite3.Connection,
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
    expected_latest_id: Optional[int] = None,
) -> Dict[str, Any]:
    status_value = str(status).upper()
    if status_value not in _ATTEMPT_STATUSES:
        raise ValueError(f"status must be one of {sorted(_ATTEMPT_STATUSES)}")
    kind = _attempt_kind(assistance_level)

    score_value = None if score is None else float(score)
    if score_value is not None and not 0.0 <= score_value <= 100.0:
        raise ValueError("score must be a percentage between 0 and 100")
    if total_questions is not None and int(total_questions) < 0:
        raise ValueError("total_questions must be greater than or equal to zero")
    if correct_answers is not None:
        if int(correct_answers) < 0:
            raise ValueError("correct_answers must be greater than or equal to zero")
        if total_questions is not None and int(correct_answers) > int(total_questions):
            raise ValueError("correct_answers cannot exceed total_questions")

    row = con.execute(
        """
        SELECT COALESCE(MAX(attempt_index), 0) + 1 AS next_index, COALESCE(MAX(id), 0) AS latest_id
        FROM quiz_attempts
        WHERE quiz_id = ? AND student_id = ? AND kind = ?
        """,
        (quiz_id, student_id, kind),
    ).fetchone()
    if expected_latest_id is not None and int(row["latest_id"]) != int(expected_latest_id):
        raise ConcurrentUpdateError(
            f"{kind} history for quiz {quiz_id} / student {student_id} changed before this entry was written"
        )
    attempt_index = int(row["next_index"])
    created_at = _utcnow()
    cur = con.execute(
        """
        INSERT INTO quiz_attempts(
          quiz_id, student_id, assistance_level, kind, status, score, correct_answers,
          total_questions, raw_answers, attempt_index, attempt_number, feedback, created_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            quiz_id,
            student_id,
            assistance_level,
            kind,
            status_value,
            score_value,
            None if correct_answers is None else int(correct_answers),
            None if total_questions is None else int(total_questions),
            None if raw_answers is None else json_dumps(raw_answers),
            attempt_index,
            attempt_number,
            feedback,
            created_at,
        ),
    )

    return {
        "id": int(cur.lastrowid),
        "quiz_id": quiz_id,
        "student_id": student_id,
        "assistance_level": assistance_level,
        "kind": kind,
        "status": status_value,
        "score": score_value,
        "correct_answers": correct_answers,
        "total_questions": total_questions,
        "raw_answers": raw_answers,
        "attempt_index": attempt_index,
        "attempt_number": attempt_number,
        "feedback": feedback,
        "created_at": created_at,
    }


def record_quiz_attempt(
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
) -> Dict[str, Any]:
    with _pool.write_transaction() as con:
        return _insert_attempt(
            con,
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


def latest_quiz_attempt(quiz_id: str, student_id: str, kind: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_ATTEMPT_COLUMNS} FROM quiz_attempts WHERE quiz_id = ? AND student_id = ? AND kind = ? "
        "ORDER BY id DESC LIMIT 1",
        (quiz_id, student_id, kind),
    )
    return _attempt_row(rows[0]) if rows else None


def list_quiz_attempts(
    quiz_id: str,
    student_id: str,
    *,
    kind: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[Dict[str, Any]]:
    """Ordered history, oldest first. ``limit`` keeps the most recent entries."""
    clauses = ["quiz_id = ?", "student_id = ?"]
    params: list[Any] = [quiz_id, student_id]
    if kind:
        clauses.append("kind = ?")
        params.append(kind)
    sql = f"SELECT {_ATTEMPT_COLUMNS} FROM quiz_attempts WHERE {' AND '.join(clauses)}"
    if limit is None:
        rows = _query(f"{sql} ORDER BY id ASC", params)
    else:
        params.append(int(limit))
        rows = list(reversed(_query(f"{sql} ORDER BY id DESC LIMIT ?", params)))
    return [_attempt_row(row) for row in rows]
