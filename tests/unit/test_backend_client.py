from __future__ import annotations

import io
import json
from urllib import error, request

import pytest

from camus.backend import client as backend_client
from camus.backend.client import (
    BackendClient,
    build_create_task_request,
    build_plan_request,
    module_category,
)
from camus.errors import UpstreamError


class _FakeHTTPResponse:
    def __init__(self, payload: object) -> None:
        self._raw_body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._raw_body

    def __enter__(self) -> _FakeHTTPResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


def _http_error(url: str, code: int, body: str) -> error.HTTPError:
    return error.HTTPError(url, code, "error", {}, io.BytesIO(body.encode("utf-8")))


def test_plan_request_field_mapping() -> None:
    params = {
        "topic": "Coffee",
        "persona": "Students",
        "questions": "Q1\nQ2",
        "reportDimensions": "price, taste",
        "basicKnowledge": "Market is growing",
        "ignored": "x",
    }

    assert build_plan_request(params) == {
        "topic_and_objective": "Coffee",
        "target_population": "Students",
        "questionnaire": "Q1\nQ2",
        "report_dimensions": "price, taste",
        "background_info": "Market is growing",
    }


def test_module_category() -> None:
    assert module_category("DR") == "deepresearch"
    assert module_category("SL") == "social_listening"
    assert module_category("SS") == "synthetic_survey"
    assert module_category("custom") == "custom"


def test_create_task_request_shape() -> None:
    body = build_create_task_request(
        user_id="u1",
        task_id="t1",
        params={"sample_size": 50},
        category="synthetic_survey",
        name="Coffee",
        callback_endpoint="https://camus.example/api/task",
    )

    assert body == {
        "flow": {"sample_size": 50, "category": "synthetic_survey", "name": "Coffee"},
        "meta": {
            "agent_user_id": "u1",
            "agent_task_id": "t1",
            "callback_url": "https://camus.example/api/task/t1/callback",
            "third": True,
        },
        "user_id": 0,
    }


def test_create_task_posts_to_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req: request.Request, timeout: float):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeHTTPResponse({"success": True, "task_id": 42})

    monkeypatch.setattr(backend_client.request, "urlopen", fake_urlopen)
    client = BackendClient(
        base_url="http://backend.example/",
        callback_endpoint="https://camus.example/api/task",
        timeout_s=7.5,
    )

    backend_task_id = client.create_task(
        user_id="u1",
        task_id="t1",
        params={},
        category="deepresearch",
        name="Coffee",
    )

    assert backend_task_id == "42"
    assert captured["url"] == "http://backend.example/task/"
    assert captured["method"] == "POST"
    assert captured["timeout"] == 7.5
    assert captured["body"]["meta"]["callback_url"] == "https://camus.example/api/task/t1/callback"


def test_create_task_rejects_unsuccessful_response(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        backend_client.request,
        "urlopen",
        lambda req, timeout: _FakeHTTPResponse({"success": False, "msg": "quota"}),
    )
    client = BackendClient(base_url="http://backend.example")

    with pytest.raises(UpstreamError, match="Failed to create task"):
        client.create_task(user_id=None, task_id="t1", params={}, category="x", name="")


def test_plan_proxies_upstream_status(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float):
        raise _http_error(req.full_url, 422, '{"detail": "topic missing"}')

    monkeypatch.setattr(backend_client.request, "urlopen", fake_urlopen)
    client = BackendClient(base_url="http://backend.example")

    with pytest.raises(UpstreamError) as exc_info:
        client.fetch_plan({"topic": ""})

    assert exc_info.value.status_code == 422
    assert exc_info.value.upstream_status == 422


def test_task_detail_errors_are_plain_500(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float):
        raise _http_error(req.full_url, 404, "not found")

    monkeypatch.setattr(backend_client.request, "urlopen", fake_urlopen)
    client = BackendClient(base_url="http://backend.example")

    with pytest.raises(UpstreamError) as exc_info:
        client.get_task_detail("job-1")

    assert exc_info.value.status_code == 500


def test_missing_endpoint_is_an_error() -> None:
    with pytest.raises(UpstreamError, match="Backend endpoint not configured"):
        BackendClient(base_url="").fetch_plan({"topic": "Coffee"})
