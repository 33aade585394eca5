"""Thin urllib client for the camus HTTP API."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error, parse, request

from camus.errors import UpstreamError

logger = logging.getLogger(__name__)


class CamusApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        user_id: str | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.timeout_s = timeout_s

    def list_tasks(self, *, session_id: str | None = None) -> list[dict[str, Any]]:
        query = {"sessionId": session_id} if session_id else None
        return self._request("GET", "/api/task", query=query)["tasks"]

    def create_task(self, topic: str, *, session_id: str | None = None) -> dict[str, Any]:
        body = {"topic": topic, "sessionId": session_id}
        return self._request("POST", "/api/task", body=body)["task"]

    def get_task(self, task_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/task/{task_id}")["task"]

    def get_status(self, task_id: str) -> str:
        return str(self.get_task(task_id)["status"])

    def update_task(
        self,
        task_id: str,
        fields: dict[str, Any],
        *,
        start_progress: bool = False,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        query: dict[str, str] = {}
        if start_progress:
            query["startProgress"] = "true"
        if session_id:
            query["sessionId"] = session_id
        return self._request("PATCH", f"/api/task/{task_id}", body=fields, query=query)["task"]

    def fetch_plan(self, params: dict[str, Any]) -> Any:
        return self._request("POST", "/api/task/plan", body={"params": params})

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        query: dict[str, str] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{parse.urlencode(query)}"
        headers = {"Content-Type": "application/json"}
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        req = request.Request(
            url=url,
            data=json.dumps(body).encode("utf-8") if body is not None else None,
            method=method,
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                return json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace")
            try:
                message = json.loads(raw).get("error") or raw
            except (json.JSONDecodeError, AttributeError):
                message = raw
            logger.warning(
                "api_request event=http_error method=%s path=%s status=%s",
                method,
                path,
                exc.code,
            )
            raise UpstreamError(
                str(message)[:400],
                upstream_status=exc.code,
                proxy_status=True,
            ) from exc
        except (error.URLError, TimeoutError) as exc:
            reason = getattr(exc, "reason", exc)
            raise UpstreamError(f"camus API unreachable: {reason}") from exc
