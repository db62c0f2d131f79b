"""Learning-record (xAPI) statements for quiz grading and remediation events.

Statements are validated against a small local profile, stored in the
``xapi_statements`` table and, when ``LRS_URL`` is configured, forwarded to an
external Learning Record Store with retry/backoff. Forwarding never blocks the
caller and emission failures never abort a progress transition.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import requests

import db
from env_validation import get_env_bool

LOGGER = logging.getLogger("qg.xapi")

# ---------------------------------------------------------------------------
# xAPI profile definition
# ---------------------------------------------------------------------------

VERB_ANSWERED = "http://adlnet.gov/expapi/verbs/answered"
VERB_EVALUATED = "http://adlnet.gov/expapi/verbs/evaluated"
VERB_EXPERIENCED = "http://adlnet.gov/expapi/verbs/experienced"
VERB_MASTERED = "http://adlnet.gov/expapi/verbs/mastered"
VERB_TERMINATED = "http://adlnet.gov/expapi/verbs/terminated"

XAPI_PROFILE_VERBS: dict[str, dict[str, str]] = {
    VERB_ANSWERED: {
        "display": "answered",
        "description": "Student submitted a main-quiz attempt or an assistance stage.",
    },
    VERB_EVALUATED: {
        "display": "evaluated",
        "description": "A main-quiz attempt or assistance submission was graded.",
    },
    VERB_EXPERIENCED: {
        "display": "experienced",
        "description": "Student acknowledged the level 3 reference material.",
    },
    VERB_MASTERED: {
        "display": "mastered",
        "description": "Student passed the main quiz.",
    },
    VERB_TERMINATED: {
        "display": "terminated",
        "description": "Student was failed on the quiz after exhausting attempts.",
    },
}

_ALLOWED_OBJECT_PREFIXES: Sequence[str] = (
    "activity:",
    "assessment:",
    "https://",
    "http://",
    "urn:",
)

_ALLOWED_VERB_IDS: tuple[str, ...] = tuple(XAPI_PROFILE_VERBS.keys())
_ALLOWED_OBJECT_PREFIX_TEXT = ", ".join(_ALLOWED_OBJECT_PREFIXES)

_CONTEXT_EXTENSION_SCHEMA: dict[str, type] = {
    "quiz_id": str,
    "assistance_level": int,
    "attempt_number": int,
    "failed_attempts": int,
    "next_step": str,
    "final_status": str,
    "event_type": str,
    "actor_role": str,
    "details": dict,
}

# ---------------------------------------------------------------------------


def quiz_object_id(quiz_id: str, assistance_level: Optional[int] = None) -> str:
    """Activity id for the main quiz or one of its assistance stages."""
    if assistance_level is None:
        return f"assessment:quiz/{quiz_id}"
    return f"activity:quiz/{quiz_id}/assistance/{assistance_level}"


def _to_bool_flag(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if bool(value) else 0


def _normalise_context(context: Optional[Dict[str, Any]]) -> Optional[str]:
    if context is None:
        return None
    try:
        return json.dumps(context, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return None


def _coerce_extension(key: str, value: Any) -> Any:
    expected = _CONTEXT_EXTENSION_SCHEMA.get(key)
    if expected is None:
        raise ValueError(f"Unsupported context extension: {key}")
    if value is None:
        return None
    if expected is int:
        coerced = int(value)
        if key == "assistance_level" and coerced not in (1, 2, 3):
            raise ValueError("assistance_level extension must be 1, 2 or 3")
        return coerced
    if expected is dict:
        if not isinstance(value, dict):
            raise ValueError(f"{key} extension must be an object")
        return value
    return str(value)


def _platform() -> str:
    return os.getenv("XAPI_PLATFORM", "QuizGate")


def _language() -> str:
    return os.getenv("XAPI_LANGUAGE", "en")


def _text(container: Any, key: str, label: str) -> str:
    value = container.get(key) if isinstance(container, dict) else None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} is required")
    return value.strip()


def _validate_result(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict):
        raise ValueError("result must be a dict when provided")
    score = result.get("score")
    if score is not None:
        if not isinstance(score, dict) or "raw" not in score:
            raise ValueError("result.score.raw is required when score is provided")
        raw = float(score["raw"])
        if not 0.0 <= raw <= 100.0:
            raise ValueError("result.score.raw must be a percentage between 0 and 100")
        score["raw"] = raw
    if "success" in result:
        result["success"] = bool(result["success"])
    return result


def _validate_context(context: Any) -> Dict[str, Any]:
    context = context or {}
    if not isinstance(context, dict):
        raise ValueError("context must be a dict")
    extensions = context.get("extensions") or {}
    if not isinstance(extensions, dict):
        raise ValueError("context.extensions must be a dict")

    cleaned: Dict[str, Any] = {}
    for key, value in extensions.items():
        if key not in _CONTEXT_EXTENSION_SCHEMA:
            LOGGER.debug("Dropping xAPI extension outside the quiz profile: %s", key)
            continue
        value = _coerce_extension(key, value)
        if value is not None:
            cleaned[key] = value
    return {
        **context,
        "platform": context.get("platform") or _platform(),
        "language": context.get("language") or _language(),
        "extensions": cleaned,
    }


def validate_statement(statement: Dict[str, Any]) -> Dict[str, Any]:
    """Check a statement against the quiz profile and normalise it in place.

    Context extensions outside the profile are dropped; anything else that
    does not fit raises ``ValueError``.
    """

    if not isinstance(statement, dict):
        raise ValueError("statement must be a dict")
    actor = statement.get("actor")
    if not isinstance(actor, dict):
        raise ValueError("actor must be provided")
    _text(actor.get("account"), "name", "actor.account.name")
    _text(actor.get("account"), "homePage", "actor.account.homePage")

    verb = statement.get("verb")
    verb_id = _text(verb, "id", "verb.id")
    if verb_id not in XAPI_PROFILE_VERBS:
        allowed = ", ".join(sorted(_ALLOWED_VERB_IDS))
        raise ValueError(f"verb {verb_id!r} is not part of the quiz profile; allowed: {allowed}")
    verb["id"] = verb_id

    target = statement.get("object")
    object_id = _text(target, "id", "object.id")
    if not object_id.startswith(tuple(_ALLOWED_OBJECT_PREFIXES)):
        raise ValueError(f"object.id must start with one of: {_ALLOWED_OBJECT_PREFIX_TEXT}")
    target["id"] = object_id

    if statement.get("result") is not None:
        statement["result"] = _validate_result(statement["result"])
    statement["context"] = _validate_context(statement.get("context"))
    return statement


# Background forwarding tasks stay referenced until they finish.
_FORWARD_TASKS: set[asyncio.Task] = set()


async def _forward_statement_with_retry(
    statement: Dict[str, Any],
    *,
    lrs_url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> bool:
    """POST one statement to the LRS, retrying 5xx answers and transport errors.

    Waits 0.5s, then 1s, 2s ... between tries. Returns whether the LRS accepted it.
    """

    object_id = statement.get("object", {}).get("id")
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post, lrs_url, json=statement, headers=headers, timeout=timeout
            )
        except requests.RequestException as exc:
            LOGGER.warning("LRS forward %s/%s for %s failed: %s", attempt, max_attempts, object_id, exc)
        else:
            if response.status_code < 400:
                return True
            if response.status_code < 500:
                LOGGER.warning("LRS rejected statement for %s with status %s", object_id, response.status_code)
                return False
            LOGGER.warning(
                "LRS forward %s/%s for %s returned status %s",
                attempt,
                max_attempts,
                object_id,
                response.status_code,
            )
        if attempt < max_attempts:
            await asyncio.sleep(0.5 * 2 ** (attempt - 1))
    LOGGER.error("Giving up on forwarding statement for %s after %s attempts", object_id, max_attempts)
    return False


def _forward_finished(task: "asyncio.Task") -> None:
    _FORWARD_TASKS.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("xAPI forwarding task crashed: %s", exc, exc_info=exc)


def _forward_in_thread(statement: Dict[str, Any], lrs_url: str, headers: Dict[str, str]) -> None:
    try:
        asyncio.run(_forward_statement_with_retry(statement, lrs_url=lrs_url, headers=headers))
    except Exception as exc:
        LOGGER.error("xAPI forwarding thread crashed: %s", exc, exc_info=True)


def _schedule_forward(statement: Dict[str, Any], *, lrs_url: str, headers: Dict[str, str]) -> None:
    """Forward without blocking: on the running event loop if any, else on a daemon thread."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        threading.Thread(
            target=_forward_in_thread, args=(statement, lrs_url, headers), daemon=True
        ).start()
        return

    task = loop.create_task(_forward_statement_with_retry(statement, lrs_url=lrs_url, headers=headers))
    _FORWARD_TASKS.add(task)
    task.add_done_callback(_forward_finished)


def build_statement(
    user_id: str,
    verb: str,
    object_id: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    response: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    statement: Dict[str, Any] = {
        "actor": {"account": {"homePage": os.getenv("APP_BASE_URL", "https://local.learning"), "name": user_id}},
        "verb": {"id": verb},
        "object": {"id": object_id},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "context": {"platform": _platform(), "language": _language(), "extensions": dict(context or {})},
    }
    result: Dict[str, Any] = {}
    if score is not None:
        result["score"] = {"raw": float(score)}
    if success is not None:
        result["success"] = bool(success)
    if response is not None:
        result["response"] = response
    if result:
        statement["result"] = result
    return statement


def _store_statement(statement: Dict[str, Any]) -> None:
    result = statement.get("result") or {}
    score = result.get("score")
    response = result.get("response")
    if isinstance(response, (dict, list)):
        response = db.json_dumps(response)
    db._exec(
        """
        INSERT INTO xapi_statements(user_id, verb, object_id, score, success, response, context)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            statement["actor"]["account"]["name"],
            statement["verb"]["id"],
            statement["object"]["id"],
            None if score is None else score["raw"],
            _to_bool_flag(result.get("success")),
            response,
            _normalise_context(statement["context"]["extensions"]),
        ),
    )


def _lrs_headers() -> Dict[str, str]:
    headers = {"Content-Type": "application/json", "X-Experience-API-Version": "1.0.3"}
    auth = os.getenv("LRS_AUTH")
    if auth:
        headers["Authorization"] = auth
    return headers


def emit(
    user_id: str,
    verb: str,
    object_id: str,
    *,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    response: Optional[Any] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Validate and store one statement, then forward it when ``LRS_URL`` is set."""

    statement = validate_statement(
        build_statement(
            user_id, verb, object_id, score=score, success=success, response=response, context=context
        )
    )
    _store_statement(statement)
    lrs_url = os.getenv("LRS_URL")
    if lrs_url:
        _schedule_forward(statement, lrs_url=lrs_url, headers=_lrs_headers())


def emit_quiz_event(
    student_id: str,
    verb: str,
    quiz_id: str,
    *,
    assistance_level: Optional[int] = None,
    score: Optional[float] = None,
    success: Optional[bool] = None,
    context: Optional[Dict[str, Any]] = None,
) -> bool:
    """Best-effort statement for a progress event. Returns whether one was stored."""

    if not get_env_bool("XAPI_ENABLED", True):
        return False
    extensions: Dict[str, Any] = {"quiz_id": quiz_id, "assistance_level": assistance_level}
    extensions.update(context or {})
    try:
        emit(
            student_id,
            verb,
            quiz_object_id(quiz_id, assistance_level),
            score=score,
            success=success,
            context=extensions,
        )
    except (sqlite3.Error, ValueError) as exc:
        LOGGER.warning("Could not record xAPI statement for quiz %s / %s: %s", quiz_id, student_id, exc)
        return False
    return True
