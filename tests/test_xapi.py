import asyncio
import json
import logging
import threading

import pytest

import db
import xapi
from engines.progression import ProgressionEngine
from engines.store import SQLiteProgressStore
from schemas import QuizConfig


@pytest.mark.usefixtures("temp_db")
def test_xapi_emit_persists_and_calls_lrs(monkeypatch):
    event = threading.Event()
    calls = []

    async def fake_forward(statement, *, lrs_url, headers, timeout=5.0, max_attempts=3):
        calls.append((lrs_url, statement, headers, timeout, max_attempts))
        event.set()

    monkeypatch.setattr(xapi, "_forward_statement_with_retry", fake_forward)
    monkeypatch.setenv("LRS_URL", "https://example.com/xapi")
    monkeypatch.setenv("LRS_AUTH", "Token abc")

    xapi.emit(
        user_id="alice",
        verb=xapi.VERB_EVALUATED,
        object_id=xapi.quiz_object_id("q1"),
        score=75.0,
        success=True,
        response={"detail": "ok"},
        context={"quiz_id": "q1", "attempt_number": "2", "unknown": "dropped"},
    )

    rows = db._query(
        "SELECT user_id, verb, object_id, score, success, response, context FROM xapi_statements"
    )
    assert len(rows) == 1
    stored = dict(rows[0])
    assert stored["user_id"] == "alice"
    assert stored["verb"].endswith("evaluated")
    assert stored["object_id"] == "assessment:quiz/q1"
    assert pytest.approx(stored["score"], rel=1e-6) == 75.0
    assert stored["success"] == 1
    assert json.loads(stored["context"]) == {"quiz_id": "q1", "attempt_number": 2}

    event.wait(0.5)
    assert calls
    url, payload, headers, timeout, attempts = calls[0]
    assert url == "https://example.com/xapi"
    assert headers["Authorization"] == "Token abc"
    assert headers["Content-Type"] == "application/json"
    assert timeout == 5.0
    assert attempts == 3
    assert payload["verb"]["id"].endswith("evaluated")


@pytest.mark.usefixtures("temp_db")
def test_validate_statement_rejects_unknown_verb(monkeypatch):
    monkeypatch.setenv("APP_BASE_URL", "https://local")
    statement = {
        "actor": {"account": {"homePage": "https://local", "name": "bob"}},
        "verb": {"id": "https://example.com/verbs/custom"},
        "object": {"id": "activity:xyz"},
        "context": {"extensions": {}},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


def test_validate_statement_rejects_bad_assistance_level():
    statement = {
        "actor": {"account": {"homePage": "https://local", "name": "bob"}},
        "verb": {"id": xapi.VERB_ANSWERED},
        "object": {"id": xapi.quiz_object_id("q1", 2)},
        "context": {"extensions": {"assistance_level": 7}},
    }
    with pytest.raises(ValueError):
        xapi.validate_statement(statement)


def test_quiz_object_ids():
    assert xapi.quiz_object_id("q1") == "assessment:quiz/q1"
    assert xapi.quiz_object_id("q1", 3) == "activity:quiz/q1/assistance/3"


@pytest.mark.usefixtures("temp_db")
def test_emit_quiz_event_respects_feature_flag(monkeypatch):
    monkeypatch.setenv("XAPI_ENABLED", "off")
    assert xapi.emit_quiz_event("s1", xapi.VERB_MASTERED, "q1") is False
    assert db._query("SELECT COUNT(*) AS n FROM xapi_statements")[0]["n"] == 0


@pytest.mark.usefixtures("temp_db")
def test_emit_quiz_event_never_raises(monkeypatch):
    def _broken(*args, **kwargs):
        raise ValueError("profile violation")

    monkeypatch.setattr(xapi, "emit", _broken)
    assert xapi.emit_quiz_event("s1", xapi.VERB_MASTERED, "q1") is False


@pytest.mark.usefixtures("temp_db")
def test_grading_and_remediation_emit_statements():
    store = SQLiteProgressStore()
    store.save_quiz(QuizConfig(quiz_id="q1", max_attempts=2, assistance_level3_id="doc"))
    engine = ProgressionEngine(store)
    assert engine.emit_statements

    engine.increment_attempt("q1", "s1")
    engine.grade_main_attempt("q1", "s1", passed=False, score=10.0)
    engine.grant_level3_access("q1", "s1", True)
    engine.acknowledge_reference_material("q1", "s1")
    engine.increment_attempt("q1", "s1")
    engine.grade_main_attempt("q1", "s1", score=20.0)

    rows = db._query("SELECT verb, object_id FROM xapi_statements ORDER BY id")
    verbs = [row["verb"].rsplit("/", 1)[-1] for row in rows]
    assert verbs == ["evaluated", "experienced", "evaluated", "terminated"]
    assert rows[1]["object_id"] == "activity:quiz/q1/assistance/3"


def test_forward_retries_server_errors(monkeypatch):
    statuses = iter([503, 202])
    calls = []

    class _Response:
        def __init__(self, status_code):
            self.status_code = status_code

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(url)
        return _Response(next(statuses))

    async def no_sleep(_delay):
        return None

    monkeypatch.setattr(xapi.requests, "post", fake_post)
    monkeypatch.setattr(xapi.asyncio, "sleep", no_sleep)

    delivered = asyncio.run(
        xapi._forward_statement_with_retry({"object": {"id": "activity:x"}}, lrs_url="https://lrs", headers={})
    )
    assert delivered is True
    assert calls == ["https://lrs", "https://lrs"]


def test_forward_task_is_tracked_and_its_failure_logged(monkeypatch, caplog):
    async def crashing_forward(statement, *, lrs_url, headers, timeout=5.0, max_attempts=3):
        raise RuntimeError("lrs client bug")

    monkeypatch.setattr(xapi, "_forward_statement_with_retry", crashing_forward)

    async def _run():
        xapi._schedule_forward({"object": {"id": "activity:x"}}, lrs_url="https://lrs", headers={})
        assert len(xapi._FORWARD_TASKS) == 1
        task = next(iter(xapi._FORWARD_TASKS))
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="qg.xapi"):
        asyncio.run(_run())
    assert not xapi._FORWARD_TASKS
    assert "lrs client bug" in caplog.text
