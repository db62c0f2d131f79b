# app.py - QuizGate progress service
# - Quiz remediation flow: main attempts, assistance levels 1-3, teacher overrides
# - Caller identity comes from the upstream auth layer via X-User-Id / X-User-Role

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

import db
from db import ConcurrentUpdateError
from engines.attempts import grade_level2
from engines.errors import ProgressError, Unauthorized
from engines.progression import ProgressionEngine
from engines.status import StatusProjector
from engines.store import SQLiteProgressStore
from env_validation import default_max_attempts, describe_configuration, validate_environment
from schemas import QuizConfig

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        validate_environment()
        db.init()
        logger.info("Quiz progress service configuration: %s", describe_configuration())
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="QuizGate progress service", version="1.0.0", lifespan=_lifespan)

PROGRESS_STORE = SQLiteProgressStore()
PROGRESSION_ENGINE = ProgressionEngine(PROGRESS_STORE)
STATUS_PROJECTOR = StatusProjector(PROGRESS_STORE)

_ROLES = frozenset({"student", "teacher", "admin"})


# ---------- Caller identity ----------
class Caller(BaseModel):
    user_id: str
    role: Literal["student", "teacher", "admin"]


def _caller(request: Request) -> Caller:
    user_id = (request.headers.get("x-user-id") or "").strip()
    role = (request.headers.get("x-user-role") or "").strip().lower()
    if not user_id or role not in _ROLES:
        raise HTTPException(status_code=401, detail="missing or invalid caller identity")
    return Caller(user_id=user_id, role=role)


def _require_role(caller: Caller, *roles: str) -> None:
    if caller.role == "admin" or caller.role in roles:
        return
    raise Unauthorized(f"role '{caller.role}' may not perform this operation")


def _target_student(caller: Caller, student_id: Optional[str]) -> str:
    """Students act on their own record; staff must name the student."""
    if caller.role == "student":
        if student_id and student_id != caller.user_id:
            raise Unauthorized("students may only access their own progress")
        return caller.user_id
    if not student_id:
        raise ValueError("student_id is required")
    return student_id


@contextmanager
def _progress_errors():
    try:
        yield
    except ProgressError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    except ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _status_payload(quiz_id: str, student_id: str) -> Dict[str, Any]:
    return STATUS_PROJECTOR.get_status(quiz_id, student_id).model_dump(mode="json")


# ---------- Request bodies ----------
class QuizConfigBody(BaseModel):
    title: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    passing_score: float = Field(default=70.0, ge=0.0, le=100.0)
    assistance_level1_id: Optional[str] = None
    assistance_level2_id: Optional[str] = None
    assistance_level3_id: Optional[str] = None
    level1_answer_key: Optional[Dict[str, bool]] = None


class StudentBody(BaseModel):
    student_id: Optional[str] = None


class SubmitAttemptBody(StudentBody):
    answers: Optional[Any] = None
    total_questions: Optional[int] = Field(default=None, ge=0)


class GradeAttemptBody(StudentBody):
    passed: Optional[bool] = None
    score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    correct_answers: Optional[int] = Field(default=None, ge=0)
    total_questions: Optional[int] = Field(default=None, ge=0)
    answers: Optional[Any] = None


class AssistanceSubmitBody(StudentBody):
    answers: Optional[Any] = None
    marks: Optional[List[bool]] = None
    feedback: Optional[str] = None


class OverrideBody(StudentBody):
    enabled: bool
    level: Optional[str] = None


class FinalStatusBody(StudentBody):
    is_passed: Optional[bool] = None


class Level3AccessBody(StudentBody):
    granted: bool


# ---------- Routes ----------
@app.get("/health")
def health():
    return {"status": "ok"}


@app.put("/quizzes/{quiz_id}")
def configure_quiz(quiz_id: str, body: QuizConfigBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "teacher")
        config = QuizConfig(
            quiz_id=quiz_id,
            title=body.title,
            max_attempts=body.max_attempts or default_max_attempts(),
            passing_score=body.passing_score,
            assistance_level1_id=body.assistance_level1_id,
            assistance_level2_id=body.assistance_level2_id,
            assistance_level3_id=body.assistance_level3_id,
            level1_answer_key=body.level1_answer_key,
        )
        PROGRESS_STORE.save_quiz(config)
    return config.model_dump(mode="json")


@app.get("/quizzes")
def list_quizzes(request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "teacher")
        return {"quizzes": [config.model_dump(mode="json") for config in PROGRESS_STORE.list_quizzes()]}


@app.get("/quizzes/{quiz_id}/progress/{student_id}")
def get_progress(quiz_id: str, student_id: str, request: Request):
    caller = _caller(request)
    with _progress_errors():
        student_id = _target_student(caller, student_id)
        return _status_payload(quiz_id, student_id)


@app.post("/quizzes/{quiz_id}/attempts/start")
def start_attempt(quiz_id: str, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "student")
        PROGRESSION_ENGINE.increment_attempt(quiz_id, caller.user_id)
        return _status_payload(quiz_id, caller.user_id)


@app.post("/quizzes/{quiz_id}/attempts/submit")
def submit_attempt(quiz_id: str, body: SubmitAttemptBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "student")
        student_id = _target_student(caller, body.student_id)
        PROGRESSION_ENGINE.submit_main_attempt_for_grading(
            quiz_id, student_id, body.answers, total_questions=body.total_questions
        )
        return _status_payload(quiz_id, student_id)


@app.post("/quizzes/{quiz_id}/attempts/grade")
def grade_attempt(quiz_id: str, body: GradeAttemptBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "teacher")
        student_id = _target_student(caller, body.student_id)
        PROGRESSION_ENGINE.grade_main_attempt(
            quiz_id,
            student_id,
            body.passed,
            score=body.score,
            correct_answers=body.correct_answers,
            total_questions=body.total_questions,
            raw_answers=body.answers,
        )
        return _status_payload(quiz_id, student_id)


@app.post("/quizzes/{quiz_id}/assistance/3/acknowledge")
def acknowledge_reference_material(quiz_id: str, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "student")
        PROGRESSION_ENGINE.acknowledge_reference_material(quiz_id, caller.user_id)
        return _status_payload(quiz_id, caller.user_id)


@app.post("/quizzes/{quiz_id}/assistance/{level}/submit")
def submit_assistance(quiz_id: str, level: int, body: AssistanceSubmitBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        student_id = _target_student(caller, body.student_id)
        if level == 1:
            # Graded against the stored answer key only.
            _require_role(caller, "student")
            entry = PROGRESSION_ENGINE.submit_level1_answers(quiz_id, student_id, body.answers)
        elif level == 2 and caller.role == "student":
            # Essays wait for a teacher to mark every answer.
            entry = PROGRESSION_ENGINE.submit_assistance(2, quiz_id, student_id, None, body.answers)
        elif level == 2:
            _require_role(caller, "teacher")
            if not body.marks:
                raise ValueError("level 2 grading needs one mark per answer")
            entry = PROGRESSION_ENGINE.submit_assistance(
                2, quiz_id, student_id, grade_level2(body.marks), feedback=body.feedback
            )
        elif level == 3:
            raise ValueError("level 3 is completed via the acknowledge endpoint")
        else:
            raise ValueError(f"unknown assistance level {level}")
        payload = _status_payload(quiz_id, student_id)
    payload["submission"] = entry.model_dump(mode="json")
    return payload


@app.post("/quizzes/{quiz_id}/override")
def set_override(quiz_id: str, body: OverrideBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "teacher")
        student_id = _target_student(caller, body.student_id)
        PROGRESSION_ENGINE.set_override(quiz_id, student_id, body.enabled, body.level)
        return _status_payload(quiz_id, student_id)


@app.post("/quizzes/{quiz_id}/final-status")
def toggle_final_status(quiz_id: str, body: FinalStatusBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "teacher")
        student_id = _target_student(caller, body.student_id)
        PROGRESSION_ENGINE.toggle_final_status(quiz_id, student_id, body.is_passed)
        return _status_payload(quiz_id, student_id)


@app.post("/quizzes/{quiz_id}/level3-access")
def grant_level3_access(quiz_id: str, body: Level3AccessBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "teacher")
        student_id = _target_student(caller, body.student_id)
        PROGRESSION_ENGINE.grant_level3_access(quiz_id, student_id, body.granted)
        return _status_payload(quiz_id, student_id)


@app.post("/quizzes/{quiz_id}/reset")
def reset_attempts(quiz_id: str, body: StudentBody, request: Request):
    caller = _caller(request)
    with _progress_errors():
        _require_role(caller, "admin")
        student_id = _target_student(caller, body.student_id)
        PROGRESSION_ENGINE.reset_attempts(quiz_id, student_id)
        return _status_payload(quiz_id, student_id)
