"""HTTP client for the external report-generation backend.

The backend plans reports, runs one job per plan stage and renders the final
PDF. It reports back through `POST /api/task/{id}/callback`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol
from urllib import error, request

from camus.errors import UpstreamError

logger = logging.getLogger(__name__)

# Request field -> backend planner field.
PLAN_FIELD_MAP = {
    "topic": "topic_and_objective",
    "persona": "target_population",
    "questions": "questionnaire",
    "reportDimensions": "report_dimensions",
    "basicKnowledge": "background_info",
}

MODULE_CATEGORIES = {
    "DR": "deepresearch",
    "SL": "social_listening",
    "SS": "synthetic_survey",
}

REPORT_CATEGORY = "report_pdf"


class TaskBackend(Protocol):
    """Operations the task service needs from the generation backend."""

    def fetch_plan(self, params: dict[str, Any]) -> Any: ...

    def create_task(
        self,
        *,
        user_id: str | None,
        task_id: str,
        params: dict[str, Any],
        category: str,
        name: str,
    ) -> str: ...

    def get_task_detail(self, backend_task_id: str) -> dict[str, Any]: ...


def build_plan_request(params: dict[str, Any]) -> dict[str, Any]:
    return {target: params.get(source) for source, target in PLAN_FIELD_MAP.items()}


def module_category(module: str) -> str:
    return MODULE_CATEGORIES.get(module, module)


def build_create_task_request(
    *,
    user_id: str | None,
    task_id: str,
    params: dict[str, Any],
    category: str,
    name: str,
    callback_endpoint: str,
) -> dict[str, Any]:
    return {
        "flow": {**params, "category": category, "name": name},
        "meta": {
            "agent_user_id": user_id,
            "agent_task_id": task_id,
            "callback_url": f"{callback_endpoint}/{task_id}/callback",
            "third": True,
        },
        "user_id": 0,
    }


class BackendClient:
    """urllib-based client for `BACKEND_ENDPOINT`."""

    def __init__(
        self,
        *,
        base_url: str,
        callback_endpoint: str = "",
        timeout_s: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.callback_endpoint = callback_endpoint.rstrip("/")
        self.timeout_s = timeout_s

    def fetch_plan(self, params: dict[str, Any]) -> Any:
        """Proxy to `/report/plan`; upstream error statuses are proxied back."""
        return self._request_json(
            "POST",
            "/report/plan",
            body=build_plan_request(params),
            action="plan",
            proxy_status=True,
        )

    def create_task(
        self,
        *,
        user_id: str | None,
        task_id: str,
        params: dict[str, Any],
        category: str,
        name: str,
    ) -> str:
        body = build_create_task_request(
            user_id=user_id,
            task_id=task_id,
            params=params,
            category=category,
            name=name,
            callback_endpoint=self.callback_endpoint,
        )
        payload = self._request_json("POST", "/task/", body=body, action="create_task")
        if not isinstance(payload, dict) or not payload.get("success"):
            logger.error(
                "backend_request event=rejected action=create_task task_id=%s category=%s "
                "payload=%s",
                task_id,
                category,
                json.dumps(payload)[:400],
            )
            raise UpstreamError("Failed to create task", details={"category": category})
        backend_task_id = payload.get("task_id")
        if backend_task_id is None:
            raise UpstreamError("Backend response did not contain task_id")
        return str(backend_task_id)

    def get_task_detail(self, backend_task_id: str) -> dict[str, Any]:
        payload = self._request_json(
            "GET",
            f"/task/{backend_task_id}/detail",
            action="get_task",
        )
        if not isinstance(payload, dict):
            raise UpstreamError("Backend task detail was not an object")
        return payload

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        action: str,
        body: dict[str, Any] | None = None,
        proxy_status: bool = False,
    ) -> Any:
        if not self.base_url:
            raise UpstreamError("Backend endpoint not configured")

        url = f"{self.base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = request.Request(
            url=url,
            data=data,
            method=method,
            headers={"Content-Type": "application/json"},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            logger.error(
                "backend_request event=http_error action=%s status=%s body=%s",
                action,
                exc.code,
                message[:400],
            )
            raise UpstreamError(
                f"Backend {action} request failed",
                upstream_status=exc.code,
                proxy_status=proxy_status,
            ) from exc
        except (error.URLError, TimeoutError) as exc:
            reason = getattr(exc, "reason", exc)
            logger.error("backend_request event=unreachable action=%s reason=%s", action, reason)
            raise UpstreamError(f"Backend {action} request failed: {reason}") from exc

        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise UpstreamError(f"Backend {action} returned non-JSON response") from exc
