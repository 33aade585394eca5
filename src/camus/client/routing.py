"""Map task status to the page a client should show."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_FAILED_ROUTE = "/agents/{id}"

VIEW_FORM = "form"
VIEW_STAGE = "stage"
VIEW_PROGRESS = "progress"
VIEW_REPORT = "report"
VIEW_FAILED = "failed"

_STATUS_ROUTES = {
    "pending": ("/agents/{id}", VIEW_FORM),
    "stage": ("/agents/{id}/stage", VIEW_STAGE),
    "in_progress": ("/agents/{id}/progress", VIEW_PROGRESS),
    "completed": ("/agents/{id}/report", VIEW_REPORT),
}


@dataclass(frozen=True)
class Route:
    path: str
    view: str


def route_for_status(
    task_id: str,
    status: str | None,
    *,
    failed_route: str = DEFAULT_FAILED_ROUTE,
) -> Route:
    """Total: unknown or missing statuses fall back to the form page."""
    key = (status or "").strip().lower()
    if key == "failed":
        return Route(failed_route.format(id=task_id), VIEW_FAILED)
    template, view = _STATUS_ROUTES.get(key, _STATUS_ROUTES["pending"])
    return Route(template.format(id=task_id), view)


class RouteReactor:
    """Navigates when a task's status changes and the target page differs.

    `current_view` always follows the latest status, so FAILED shows its own
    view even when the failed route is the page the client is already on.
    """

    def __init__(
        self,
        navigate: Callable[[str], None],
        *,
        failed_route: str = DEFAULT_FAILED_ROUTE,
        current_path: str | None = None,
    ) -> None:
        self.navigate = navigate
        self.failed_route = failed_route
        self.current_path = current_path
        self.current_view: str | None = None
        self._last_status: dict[str, str] = {}

    def observe(self, task_id: str, status: str | None) -> Route | None:
        """Returns the route navigated to, or None when nothing changed."""
        key = (status or "").strip().lower()
        if self._last_status.get(task_id) == key:
            return None
        self._last_status[task_id] = key

        route = route_for_status(task_id, key, failed_route=self.failed_route)
        self.current_view = route.view
        if route.path == self.current_path:
            return None
        logger.info("route_change task_id=%s status=%s path=%s", task_id, key, route.path)
        self.current_path = route.path
        self.navigate(route.path)
        return route

    def forget(self, task_id: str) -> None:
        self._last_status.pop(task_id, None)
