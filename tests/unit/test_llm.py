from __future__ import annotations

import io
import json
from urllib import error, request

import pytest

from camus import llm
from camus.config.settings import Settings
from camus.llm import ChatCompletionsAdapter, LLMRequestError, build_llm_adapter, completion_text
from camus.tasks.assistant import TaskTitle


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


def _reply(content: object) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _adapter(max_retries: int = 1) -> ChatCompletionsAdapter:
    return ChatCompletionsAdapter(
        api_key="sk-test",
        model="test-model",
        base_url="https://llm.example/v1/",
        max_retries=max_retries,
        backoff_s=0.0,
    )


def test_generate_structured_posts_json_mode_request(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[request.Request] = []

    def fake_urlopen(req: request.Request, timeout: float) -> _FakeHTTPResponse:
        captured.append(req)
        return _FakeHTTPResponse(_reply('{"title": "Coffee Habits"}'))

    monkeypatch.setattr(llm.request, "urlopen", fake_urlopen)

    result = _adapter().generate_structured(
        messages=[{"role": "user", "content": "topic: coffee"}],
        response_model=TaskTitle,
        timeout_s=2.0,
    )

    assert result.title == "Coffee Habits"
    assert captured[0].full_url == "https://llm.example/v1/chat/completions"
    assert captured[0].get_header("Authorization") == "Bearer sk-test"
    body = json.loads(captured[0].data)
    assert body["model"] == "test-model"
    assert body["response_format"] == {"type": "json_object"}


def test_transient_errors_are_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(req: request.Request, timeout: float) -> _FakeHTTPResponse:
        calls["count"] += 1
        if calls["count"] == 1:
            raise error.HTTPError(req.full_url, 503, "busy", {}, io.BytesIO(b"busy"))
        return _FakeHTTPResponse(_reply('{"title": "Tea"}'))

    monkeypatch.setattr(llm.request, "urlopen", fake_urlopen)

    result = _adapter().generate_structured(messages=[], response_model=TaskTitle, timeout_s=1.0)

    assert result.title == "Tea"
    assert calls["count"] == 2


def test_client_errors_fail_without_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_urlopen(req: request.Request, timeout: float) -> _FakeHTTPResponse:
        calls["count"] += 1
        raise error.HTTPError(req.full_url, 401, "unauthorized", {}, io.BytesIO(b"bad key"))

    monkeypatch.setattr(llm.request, "urlopen", fake_urlopen)

    with pytest.raises(LLMRequestError) as exc_info:
        _adapter(max_retries=3).generate_structured(
            messages=[],
            response_model=TaskTitle,
            timeout_s=1.0,
        )

    assert exc_info.value.upstream_status == 401
    assert calls["count"] == 1


def test_reply_that_misses_the_schema_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        llm.request,
        "urlopen",
        lambda req, timeout: _FakeHTTPResponse(_reply('{"name": "wrong key"}')),
    )

    with pytest.raises(LLMRequestError, match="TaskTitle"):
        _adapter().generate_structured(messages=[], response_model=TaskTitle, timeout_s=1.0)


def test_completion_text_variants() -> None:
    assert completion_text(_reply([{"type": "text", "text": '{"a"'}, {"text": ": 1}"}])) == '{"a": 1}'
    with pytest.raises(LLMRequestError, match="no choices"):
        completion_text({"choices": []})
    with pytest.raises(LLMRequestError, match="refused"):
        completion_text({"choices": [{"message": {"refusal": "cannot help"}}]})
    with pytest.raises(LLMRequestError, match="no text"):
        completion_text(_reply("   "))


def test_build_llm_adapter_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("CAMUS_OPENAI_API_KEY", raising=False)

    assert build_llm_adapter(Settings(_env_file=None)) is None
    adapter = build_llm_adapter(Settings(_env_file=None, openai_api_key="sk-live"))
    assert isinstance(adapter, ChatCompletionsAdapter)
