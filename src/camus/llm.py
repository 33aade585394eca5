"""JSON-mode chat completions for the task assistant."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from camus.config.settings import Settings
from camus.errors import UpstreamError

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class LLMAdapter(Protocol):
    def generate_structured(
        self,
        *,
        messages: list[dict[str, str]],
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...


class LLMRequestError(UpstreamError):
    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, upstream_status=upstream_status)
        self.retryable = retryable


class ChatCompletionsAdapter:
    """Asks an OpenAI-compatible endpoint for a JSON object and validates it.

    Timeouts, connection errors and 408/429/5xx answers are retried up to
    `max_retries` times with a fixed pause. Other HTTP errors, refusals and
    replies that do not fit `response_model` fail on the first attempt.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_structured(
        self,
        *,
        messages: list[dict[str, str]],
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        body = {
            "model": self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                reply = self._post(body, timeout_s=timeout_s)
                break
            except LLMRequestError as exc:
                logger.warning(
                    "llm_request event=failed attempt=%d/%d model=%s status=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    exc.upstream_status,
                    exc.message,
                )
                if not exc.retryable or attempt == attempts:
                    raise
                time.sleep(self.backoff_s)

        text = completion_text(reply)
        try:
            return response_model.model_validate_json(text)
        except SchemaError as exc:
            raise LLMRequestError(
                f"LLM reply does not match {response_model.__name__}: {exc.error_count()} errors"
            ) from exc

    def _post(self, body: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            url=self.endpoint,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                return json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:400]
            raise LLMRequestError(
                f"LLM API returned {exc.code}: {detail}",
                upstream_status=exc.code,
                retryable=exc.code in RETRYABLE_STATUSES,
            ) from exc
        except (error.URLError, TimeoutError) as exc:
            reason = getattr(exc, "reason", exc)
            raise LLMRequestError(f"LLM API unreachable: {reason}", retryable=True) from exc
        except json.JSONDecodeError as exc:
            raise LLMRequestError("LLM API returned a non-JSON body") from exc


def completion_text(reply: dict[str, Any]) -> str:
    """Pull the assistant text out of a chat completions reply."""
    choices = reply.get("choices") or []
    if not choices:
        raise LLMRequestError("LLM reply has no choices")
    message = choices[0].get("message") or {}
    if message.get("refusal"):
        raise LLMRequestError(f"LLM refused: {message['refusal']}")
    content = message.get("content")
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    if not isinstance(content, str) or not content.strip():
        raise LLMRequestError("LLM reply has no text content")
    return content


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return ChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
