import requests

from cache import CacheKeys
from conftest import FakeResponse, FakeSession
from tracking_client import LearningTrackingClient

BASE = "https://fw.example"


def _client(session, sleeps=None):
    return LearningTrackingClient(
        BASE,
        token="tok-1",
        session=session,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def test_quiz_tracking_posts_statement_payload():
    session = FakeSession(FakeResponse(201, {"id": 99, "stored": False}))
    client = _client(session)

    body = client.track_quiz_attempt(5, "Charts Quiz", 1, 7, 10, False, 95)

    assert body == {"id": 99, "stored": False}
    assert session.headers["Authorization"] == "Bearer tok-1"
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", f"{BASE}/api/xapi/statements")
    payload = kwargs["json"]
    assert payload["verb"] == "failed"
    assert payload["objectType"] == "quiz"
    assert payload["result"]["score"]["scaled"] == 0.7
    assert payload["result"]["duration"] == "PT1M35S"
    assert payload["context"] == {"frameworkId": 1}
    assert kwargs["headers"]["X-Request-ID"].startswith("quiz-5-")
    assert kwargs["headers"]["Cache-Control"] == "no-cache, no-store, must-revalidate"
    assert kwargs["timeout"] == 6.0


def test_module_tracking_retries_transient_failures():
    sleeps = []
    session = FakeSession(requests.ConnectionError("reset"), FakeResponse(200, {}), FakeResponse(201, {"id": 1}))
    client = _client(session, sleeps)

    assert client.track_module_completion(10, "Charts", 1) == {"id": 1}
    assert len(session.calls) == 3
    assert sleeps == [0.4, 0.8]


def test_tracking_failure_returns_none():
    session = FakeSession(FakeResponse(500))
    client = _client(session)

    assert client.track_framework_completion(1, "Data Literacy", 2, 2) is None
    assert len(session.calls) == 4


def test_module_lookup_is_cached():
    session = FakeSession(FakeResponse(200, {"id": 10, "framework_id": 1}))
    client = _client(session)

    assert client.get_module(10) == {"id": 10, "framework_id": 1}
    assert client.get_module(10) == {"id": 10, "framework_id": 1}
    assert len(session.calls) == 1
    client.get_module(10, refresh=True)
    assert len(session.calls) == 2


def test_completion_falls_back_to_plain_update():
    session = FakeSession(
        FakeResponse(200, {"id": 10, "framework_id": 1}),
        FakeResponse(500),
        FakeResponse(503),
        FakeResponse(502),
        FakeResponse(200, {"id": 10, "completed": True}),
    )
    client = _client(session)
    client.cache.set(CacheKeys.user_progress("alice"), [{"framework_id": 1}])
    client.cache.set(CacheKeys.framework(1), {"id": 1})

    result = client.complete_module_with_tracking(10)

    assert result == {"id": 10, "completed": True}
    paths = [(method, url[len(BASE):]) for method, url, _ in session.calls]
    assert paths == [
        ("GET", "/api/modules/10"),
        ("PATCH", "/api/modules/10/complete"),
        ("PATCH", "/api/modules/10/complete"),
        ("PATCH", "/api/modules/10/complete"),
        ("PATCH", "/api/modules/10"),
    ]
    primary = session.calls[1][2]
    assert primary["json"]["completed"] is True
    assert primary["json"]["clientId"].startswith("client-module-complete-10-")
    assert primary["headers"]["X-Operation-ID"] == primary["json"]["operationId"]
    assert session.calls[-1][2]["json"] == {"completed": True}
    assert [kwargs["timeout"] for _, _, kwargs in session.calls[1:]] == [10.0, 10.0, 10.0, 8.0]
    assert CacheKeys.user_progress("alice") not in client.cache
    assert CacheKeys.framework(1) not in client.cache
    assert CacheKeys.module(10) not in client.cache


def test_completion_gives_up_after_fallback_fails():
    session = FakeSession(requests.Timeout("slow"))
    client = _client(session)

    assert client.complete_module_with_tracking(10) is None
    # 3 lookups + 3 primary + 3 fallback attempts
    assert len(session.calls) == 9


def test_user_progress_failure_is_not_cached():
    session = FakeSession(requests.ConnectionError("down"), FakeResponse(200, [{"framework_id": 1}]))
    client = _client(session)

    assert client.get_user_progress() is None
    assert client.get_user_progress() == [{"framework_id": 1}]
