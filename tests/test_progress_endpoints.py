import asyncio
import json
from typing import Optional

import pytest

from app import app


def _request(
    method: str,
    path: str,
    payload: Optional[dict] = None,
    *,
    user: Optional[str] = "teacher-1",
    role: Optional[str] = "teacher",
) -> tuple[int, dict]:
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        headers = [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ]
        if user is not None:
            headers.append((b"x-user-id", user.encode()))
        if role is not None:
            headers.append((b"x-user-role", role.encode()))

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": b"",
            "headers": headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    chunks = []
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            chunks.append(message.get("body", b""))
    raw = b"".join(chunks)
    return status, json.loads(raw) if raw else {}


def _as_student(method, path, payload=None, student="s1"):
    return _request(method, path, payload, user=student, role="student")


@pytest.fixture
def quiz(temp_db, monkeypatch):
    monkeypatch.setenv("XAPI_ENABLED", "false")
    status, payload = _request(
        "PUT",
        "/quizzes/q1",
        {
            "title": "Fractions",
            "assistance_level1_id": "yn",
            "assistance_level2_id": "essay",
            "assistance_level3_id": "doc",
            "level1_answer_key": {"a": True, "b": False},
        },
    )
    assert status == 200, payload
    return "q1"


def test_health():
    status, payload = _request("GET", "/health", user=None, role=None)
    assert status == 200
    assert payload == {"status": "ok"}


def test_configure_quiz_uses_default_max_attempts(quiz, monkeypatch):
    monkeypatch.setenv("QUIZ_DEFAULT_MAX_ATTEMPTS", "6")
    status, payload = _request("PUT", "/quizzes/q2", {"title": "Other"})
    assert status == 200
    assert payload["max_attempts"] == 6
    assert payload["passing_score"] == 70.0


def test_students_cannot_configure_quizzes(quiz):
    status, payload = _as_student("PUT", "/quizzes/q1", {"title": "Hacked"})
    assert status == 403


def test_missing_identity_is_rejected(quiz):
    status, _ = _request("GET", "/quizzes/q1/progress/s1", user=None, role=None)
    assert status == 401


def test_student_flow_through_level1(quiz):
    status, payload = _as_student("GET", "/quizzes/q1/progress/s1")
    assert status == 200
    assert payload["can_take_quiz"] is True

    status, payload = _as_student("POST", "/quizzes/q1/attempts/start")
    assert status == 200
    assert payload["progress"]["current_attempt"] == 1

    status, payload = _request("POST", "/quizzes/q1/attempts/grade", {"student_id": "s1", "score": 40.0})
    assert status == 200
    assert payload["assistance_required"] == "ASSISTANCE_LEVEL1"
    assert payload["next_step"] == "COMPLETE_ASSISTANCE_LEVEL1"

    status, payload = _as_student("POST", "/quizzes/q1/attempts/start")
    assert status == 409
    assert payload["detail"] == "assistance stage not completed"

    # A key sent by the student is ignored; the stored key decides.
    status, payload = _as_student(
        "POST",
        "/quizzes/q1/assistance/1/submit",
        {"answers": {"a": True, "b": True}, "answer_key": {"a": True, "b": True}},
    )
    assert status == 200
    assert payload["submission"]["status"] == "FAILED"
    assert payload["progress"]["level1_completed"] is False
    assert payload["can_take_quiz"] is False

    status, payload = _as_student(
        "POST", "/quizzes/q1/assistance/1/submit", {"answers": {"a": True, "b": False}}
    )
    assert status == 200
    assert payload["submission"]["status"] == "PASSED"
    assert payload["progress"]["level1_completed"] is True
    assert payload["can_take_quiz"] is True


def test_level1_submission_needs_answer_map(quiz):
    _as_student("POST", "/quizzes/q1/attempts/start")
    _request("POST", "/quizzes/q1/attempts/grade", {"student_id": "s1", "score": 10.0})

    status, _ = _as_student("POST", "/quizzes/q1/assistance/1/submit", {"answers": ["a"]})
    assert status == 400

    status, _ = _request("POST", "/quizzes/q1/assistance/1/submit", {"student_id": "s1", "answers": {"a": True}})
    assert status == 403


def test_teachers_list_configured_quizzes(quiz):
    _request("PUT", "/quizzes/q0", {"title": "Warm-up"})

    status, payload = _request("GET", "/quizzes")
    assert status == 200
    assert [entry["quiz_id"] for entry in payload["quizzes"]] == ["q0", "q1"]
    assert payload["quizzes"][1]["level1_answer_key"] == {"a": True, "b": False}

    status, _ = _as_student("GET", "/quizzes")
    assert status == 403


def test_students_only_see_their_own_progress(quiz):
    status, payload = _as_student("GET", "/quizzes/q1/progress/s2")
    assert status == 403
    assert payload["detail"] == "students may only access their own progress"


def test_students_cannot_grade(quiz):
    _as_student("POST", "/quizzes/q1/attempts/start")
    status, _ = _as_student("POST", "/quizzes/q1/attempts/grade", {"passed": True})
    assert status == 403


def test_unknown_quiz_returns_404(quiz):
    status, payload = _as_student("POST", "/quizzes/missing/attempts/start")
    assert status == 404


def test_level2_essay_is_graded_by_teacher(quiz):
    _request("POST", "/quizzes/q1/override", {"student_id": "s1", "enabled": True, "level": "ASSISTANCE_LEVEL2"})

    status, payload = _request(
        "POST", "/quizzes/q1/assistance/2/submit", {"student_id": "s1", "marks": [True, True]}
    )
    assert status == 409
    assert payload["detail"] == "no level 2 submission is awaiting grading"

    status, payload = _as_student("POST", "/quizzes/q1/assistance/2/submit", {"answers": ["part one", "part two"]})
    assert status == 200
    assert payload["submission"]["status"] == "PENDING"
    assert payload["assistance_required"] == "ASSISTANCE_LEVEL2"

    status, payload = _request(
        "POST", "/quizzes/q1/assistance/2/submit", {"student_id": "s1", "marks": [True]}
    )
    assert status == 400

    status, payload = _request(
        "POST",
        "/quizzes/q1/assistance/2/submit",
        {"student_id": "s1", "marks": [True, True], "answers": ["replaced"], "feedback": "Well argued"},
    )
    assert status == 200
    assert payload["submission"]["raw_answers"] == ["part one", "part two"]
    assert payload["submission"]["feedback"] == "Well argued"
    assert payload["progress"]["level2_completed"] is True
    assert payload["next_step"] == "TRY_MAIN_QUIZ_AGAIN"
    assert payload["override_active"] is False


def test_level3_grant_and_acknowledge(quiz):
    status, payload = _request("POST", "/quizzes/q1/level3-access", {"student_id": "s1", "granted": True})
    assert status == 200
    assert payload["next_step"] == "VIEW_ASSISTANCE_LEVEL3"

    status, payload = _as_student("POST", "/quizzes/q1/assistance/3/acknowledge")
    assert status == 200
    assert payload["progress"]["level3_completed"] is True
    assert payload["history"][-1]["assistance_level"] == 3


def test_final_status_toggle_and_reset(quiz):
    status, payload = _request("POST", "/quizzes/q1/final-status", {"student_id": "s1", "is_passed": True})
    assert status == 200
    assert payload["progress"]["final_status"] == "PASSED"
    assert payload["can_take_quiz"] is False

    status, _ = _request("POST", "/quizzes/q1/reset", {"student_id": "s1"})
    assert status == 403

    status, payload = _request("POST", "/quizzes/q1/reset", {"student_id": "s1"}, user="root", role="admin")
    assert status == 200
    assert payload["progress"]["final_status"] is None
    assert payload["can_take_quiz"] is True


def test_invalid_override_level_is_bad_request(quiz):
    status, payload = _request("POST", "/quizzes/q1/override", {"student_id": "s1", "enabled": True, "level": "LEVEL9"})
    assert status == 400
