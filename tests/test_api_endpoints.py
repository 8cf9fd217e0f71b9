import asyncio
import json
from typing import Optional

import pytest

import app
import db
import xapi
from conftest import FakeResponse, FakeSession
from scorm import ScormService

BASE = "https://fw.example"
AUTH = {"authorization": "Bearer tok-alice"}


def _request(method: str, path: str, payload: Optional[dict] = None, headers: Optional[dict] = None):
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

        route, _, query = path.partition("?")
        raw_headers = [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
        ]
        for name, value in (headers or {}).items():
            raw_headers.append((name.lower().encode(), value.encode()))

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": route,
            "raw_path": route.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": query.encode(),
            "headers": raw_headers,
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    content_type = ""
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            content_type = dict(message.get("headers", [])).get(b"content-type", b"").decode()
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    text = body_bytes.decode("utf-8")
    if content_type.startswith("application/json"):
        return status, json.loads(text or "null")
    return status, text


@pytest.fixture
def api(seeded_catalogue, monkeypatch):
    lrs_session = FakeSession(FakeResponse(200, ["statement-id"]))
    monkeypatch.setitem(app.TOKENS, "tok-alice", "alice")
    monkeypatch.setitem(app.TOKENS, "tok-ghost", "ghost")
    monkeypatch.setattr(app, "_XAPI_SERVICE", xapi.XApiService(None, base_url=BASE, session=lrs_session))
    monkeypatch.setattr(app, "SCORM_SERVICE", ScormService(history_limit=50))
    app.CACHE.clear()
    yield lrs_session
    app.CACHE.clear()


def _statement_payload(**overrides):
    payload = {
        "verb": "completed",
        "object": "Charts",
        "objectType": "module",
        "objectId": 10,
        "result": {"completion": True, "success": True},
        "context": {"frameworkId": 1},
    }
    payload.update(overrides)
    return payload


# ---------- auth ----------
def test_api_requires_token(api):
    status, payload = _request("GET", "/api/xapi/statements")
    assert status == 401
    assert payload["detail"] == "missing or invalid token"


def test_token_accepted_from_query_and_alt_header(api):
    assert _request("GET", "/api/xapi/statements?token=tok-alice")[0] == 200
    assert _request("GET", "/api/xapi/statements", headers={"x-token": "tok-alice"})[0] == 200


def test_register_then_login_issues_token(temp_db):
    status, payload = _request(
        "POST", "/auth/register", {"user_id": "carol", "password": "pw-123456", "email": "carol@example.com"}
    )
    assert status == 200 and payload == {"ok": True}

    status, payload = _request("POST", "/auth/register", {"user_id": "carol", "password": "x"})
    assert status == 400

    status, payload = _request("POST", "/auth/login", {"user_id": "carol", "password": "pw-123456"})
    assert status == 200
    assert app.TOKENS[payload["token"]] == "carol"
    app.TOKENS.pop(payload["token"], None)

    status, _ = _request("POST", "/auth/login", {"user_id": "carol", "password": "wrong"})
    assert status == 401


def test_actor_falls_back_to_platform_email():
    actor = app._actor_for({"user_id": "dave", "email": None, "name": None})
    assert actor == xapi.Actor(name="dave", email="dave@questionpro.ai")


# ---------- xAPI ----------
def test_create_statement_stores_row_and_expands_context(api):
    status, payload = _request("POST", "/api/xapi/statements", _statement_payload(), AUTH)

    assert status == 201
    assert payload["user_id"] == "alice"
    assert payload["verb"] == "completed"
    assert payload["object_type"] == "module"
    assert payload["stored"] is False
    context = json.loads(payload["context"])
    assert context["contextActivities"]["parent"][0]["id"] == f"{BASE}/api/frameworks/1"
    assert json.loads(payload["result"]) == {"completion": True, "success": True}


def test_create_statement_validates_body(api):
    status, payload = _request("POST", "/api/xapi/statements", {"verb": "completed", "object": "Charts"}, AUTH)
    assert status == 400
    assert payload["message"] == "Invalid xAPI statement"
    assert {tuple(err["loc"]) for err in payload["errors"]} >= {("objectType",), ("objectId",)}

    status, _ = _request("POST", "/api/xapi/statements", _statement_payload(objectType="lesson"), AUTH)
    assert status == 400


def test_create_statement_for_unknown_user(api):
    status, payload = _request(
        "POST", "/api/xapi/statements", _statement_payload(), {"authorization": "Bearer tok-ghost"}
    )
    assert status == 404
    assert payload["detail"] == "User not found"


def test_lrs_configuration_enables_forwarding(api):
    status, _ = _request("GET", "/api/lrs/config", headers=AUTH)
    assert status == 404

    status, payload = _request(
        "POST",
        "/api/lrs/config",
        {"endpoint": "https://lrs.example.com/xapi", "username": "key", "password": "secret"},
        AUTH,
    )
    assert status == 201
    assert payload == {
        "endpoint": "https://lrs.example.com/xapi",
        "username": "key",
        "password": "********",
        "isActive": True,
    }
    assert db.get_active_lrs_configuration()["endpoint"] == "https://lrs.example.com/xapi"

    status, payload = _request("POST", "/api/xapi/statements", _statement_payload(), AUTH)
    assert status == 201
    assert payload["stored"] is True

    method, url, kwargs = api.calls[-1]
    assert url == "https://lrs.example.com/xapi/statements"
    statement = kwargs["json"]
    assert statement["actor"]["mbox"] == "mailto:alice@example.com"
    assert statement["object"]["definition"]["name"] == {"en-US": "Charts"}
    assert statement["object"]["definition"]["description"] == {"en-US": "Module in Data Literacy framework"}


def test_lrs_configuration_rejects_bad_endpoint(api):
    status, payload = _request(
        "POST", "/api/lrs/config", {"endpoint": "ftp://lrs", "username": "k", "password": "s"}, AUTH
    )
    assert status == 400
    assert payload["message"] == "Invalid LRS configuration"


def test_list_statements_and_verbs(api):
    _request("POST", "/api/xapi/statements", _statement_payload(), AUTH)
    _request(
        "POST",
        "/api/xapi/statements",
        _statement_payload(verb="attempted", object="Charts Quiz", objectType="quiz", objectId=5),
        AUTH,
    )

    status, payload = _request("GET", "/api/xapi/statements?object_type=quiz", headers=AUTH)
    assert status == 200
    assert [row["verb"] for row in payload] == ["attempted"]

    status, payload = _request("GET", "/api/xapi/statements?object_type=lesson", headers=AUTH)
    assert status == 400

    status, verbs = _request("GET", "/api/xapi/verbs", headers=AUTH)
    assert status == 200
    assert {"id": "http://adlnet.gov/expapi/verbs/failed", "display": {"en-US": "failed"}} in verbs


def test_resend_requires_lrs(api):
    status, _ = _request("POST", "/api/xapi/statements/resend", {}, AUTH)
    assert status == 409


# ---------- SCORM ----------
def test_scorm_data_round_trip_and_status(api):
    status, record = _request(
        "POST",
        "/api/scorm/data",
        {"scoId": "sco-1", "elementName": "cmi.core.lesson_status", "elementValue": "incomplete"},
        AUTH,
    )
    assert status == 201
    assert record["element_value"] == "incomplete"

    status, lms = _request("GET", "/api/scorm/data/sco-1", headers=AUTH)
    assert lms == {"cmi.core.lesson_status": "incomplete"}

    status, outcome = _request(
        "POST",
        "/api/scorm/runtime",
        {
            "action": "commit",
            "scoId": "sco-1",
            "params": {"data": {"cmi.core.lesson_status": "passed", "cmi.core.score.raw": "91"}},
        },
        AUTH,
    )
    assert status == 200
    assert outcome == {"success": True, "stored": 2}

    status, lms = _request("GET", "/api/scorm/data/sco-1", headers=AUTH)
    assert lms == {"cmi.core.lesson_status": "passed", "cmi.core.score.raw": "91"}

    status, summary = _request("GET", "/api/scorm/status/sco-1", headers=AUTH)
    assert summary == {"complete": True, "passed": True, "score": 91}

    status, history = _request("GET", "/api/scorm/data/sco-1/history", headers=AUTH)
    assert len(history["rows"]) == 3
    assert history["lms"] == lms

    status, element = _request("GET", "/api/scorm/data/sco-1/elements/cmi.core.score.raw", headers=AUTH)
    assert status == 200 and element["element_value"] == "91"


def test_scorm_data_requires_fields(api):
    status, payload = _request("POST", "/api/scorm/data", {"scoId": "sco-1"}, AUTH)
    assert status == 400
    assert payload["message"] == "Missing required fields"


def test_scorm_runtime_rejects_unknown_action(api):
    status, _ = _request("POST", "/api/scorm/runtime", {"action": "suspend", "scoId": "sco-1"}, AUTH)
    assert status == 400
    status, _ = _request("POST", "/api/scorm/runtime", {"action": "setValue", "scoId": "sco-1", "params": {}}, AUTH)
    assert status == 400


def test_api_wrapper_script_is_public(api):
    status, script = _request("GET", "/api/scorm/api-wrapper.js?version=scorm1.2&sco_id=sco-7")
    assert status == 200
    assert "window.API = API;" in script
    assert '"http://testserver/api/scorm/runtime"' in script
    assert '"sco-7"' in script

    status, payload = _request("GET", "/api/scorm/api-wrapper.js?version=aicc")
    assert status == 400


# ---------- modules / quizzes ----------
def _statements():
    return db.list_xapi_statements("alice")


def test_completing_every_module_emits_framework_completion(api):
    status, module = _request("PATCH", "/api/modules/10/complete", {"completed": True}, AUTH)
    assert status == 200
    assert module["completed"] is True
    assert module["progress"] == {"status": "in_progress", "completed_modules": 1, "total_modules": 2}
    assert [(s["verb"], s["object_type"]) for s in _statements()] == [("completed", "module")]

    status, module = _request("PATCH", "/api/modules/11/complete-with-tracking", {"completed": True}, AUTH)
    assert status == 200
    assert module["progress"]["status"] == "completed"

    rows = _statements()
    assert [(s["verb"], s["object_type"]) for s in rows] == [
        ("completed", "framework"),
        ("completed", "module"),
        ("completed", "module"),
    ]
    framework_result = json.loads(rows[0]["result"])
    assert framework_result["score"] == {"scaled": 1.0, "raw": 2, "min": 0, "max": 2}

    status, progress = _request("GET", "/api/user/progress", headers=AUTH)
    assert progress[0]["status"] == "completed"


def test_module_completion_validation(api):
    status, payload = _request("PATCH", "/api/modules/10/complete", {}, AUTH)
    assert status == 400
    assert payload["detail"] == "Completed status is required"

    status, _ = _request("PATCH", "/api/modules/999/complete", {"completed": True}, AUTH)
    assert status == 404


def test_plain_module_update_does_not_track(api):
    status, module = _request("PATCH", "/api/modules/10", {"completed": True}, AUTH)
    assert status == 200
    assert module["completed"] is True
    assert _statements() == []

    status, module = _request("GET", "/api/modules/10", headers=AUTH)
    assert module["completed"] is True


def test_tracking_failure_does_not_block_completion(api, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("tracking offline")

    monkeypatch.setattr(app._XAPI_SERVICE, "track_module_completion", boom)
    status, module = _request("PATCH", "/api/modules/10/complete", {"completed": True}, AUTH)
    assert status == 200
    assert db.is_module_completed("alice", 10)


def test_quiz_attempt_emits_failed_statement(api):
    status, attempt = _request(
        "POST",
        "/api/quiz-attempts",
        {"quizId": 5, "score": 7, "maxScore": 10, "timeTaken": 95, "answers": [1, 0, 2]},
        AUTH,
    )
    assert status == 201
    assert attempt["passed"] is False
    assert attempt["answers"] == [1, 0, 2]

    (row,) = _statements()
    assert row["verb"] == "failed"
    result = json.loads(row["result"])
    assert result["score"]["scaled"] == pytest.approx(0.7)
    assert result["duration"] == "PT1M35S"


def test_quiz_attempt_for_unknown_quiz(api):
    status, _ = _request("POST", "/api/quiz-attempts", {"quizId": 77, "score": 1, "maxScore": 2}, AUTH)
    assert status == 404


def test_create_statement_ignores_malformed_context_activities(api):
    status, payload = _request(
        "POST", "/api/xapi/statements", _statement_payload(context={"contextActivities": "x", "platform": "web"}), AUTH
    )
    assert status == 201
    assert json.loads(payload["context"]) == {"platform": "web"}
