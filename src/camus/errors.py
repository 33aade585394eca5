"""Error taxonomy shared by services and the HTTP boundary.

Each error carries the HTTP status it maps to. Route handlers never build
error responses by hand: they raise one of these and the exception handler
registered in `camus.api.main` renders the `{error, details?}` envelope.
"""

from __future__ import annotations

from typing import Any


class CamusError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class NotFoundError(CamusError):
    status_code = 404


class ValidationError(CamusError):
    status_code = 400


class UnauthenticatedError(CamusError):
    status_code = 401


class InvalidTransition(CamusError):
    status_code = 409

    def __init__(
        self,
        current: str,
        requested: str,
        *,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Cannot move task from {current} to {requested}",
            details={"current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class UpstreamError(CamusError):
    """External backend returned a non-success status or was unreachable.

    `proxy_status=True` makes the HTTP response reuse the upstream status code
    (the plan proxy does this); otherwise callers see a plain 500.
    """

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        proxy_status: bool = False,
        details: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.upstream_status = upstream_status
        if proxy_status and upstream_status is not None and upstream_status >= 400:
            self.status_code = upstream_status
