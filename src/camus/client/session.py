"""Client-side state for the agents pages: sidebar, search, current task."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol
from uuid import uuid4

from camus.client.polling import DEFAULT_POLL_INTERVAL_S, TaskPoller
from camus.client.routing import DEFAULT_FAILED_ROUTE, RouteReactor
from camus.config.settings import Settings

logger = logging.getLogger(__name__)

POLLED_STATUSES = frozenset({"in_progress"})


class TaskApi(Protocol):
    def list_tasks(self, *, session_id: str | None = None) -> list[dict[str, Any]]: ...

    def create_task(self, topic: str, *, session_id: str | None = None) -> dict[str, Any]: ...

    def get_task(self, task_id: str) -> dict[str, Any]: ...

    def get_status(self, task_id: str) -> str: ...

    def update_task(
        self,
        task_id: str,
        fields: dict[str, Any],
        *,
        start_progress: bool = False,
        session_id: str | None = None,
    ) -> dict[str, Any]: ...


class AgentsSession:
    """One user's view of their tasks.

    Holds at most one poller: opening another task cancels the previous one.
    After `close()` every method raises RuntimeError.
    """

    def __init__(
        self,
        api: TaskApi,
        *,
        navigate: Callable[[str], None],
        session_id: str | None = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        failed_route: str = DEFAULT_FAILED_ROUTE,
    ) -> None:
        self.api = api
        self.session_id = session_id or str(uuid4())
        self.poll_interval_s = poll_interval_s
        self.reactor = RouteReactor(navigate, failed_route=failed_route)
        self.tasks: list[dict[str, Any]] = []
        self.search_query = ""
        self.current_task_id: str | None = None
        self.poller: TaskPoller | None = None
        self._lock = threading.RLock()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        api: TaskApi,
        *,
        navigate: Callable[[str], None],
        settings: Settings,
        session_id: str | None = None,
    ) -> AgentsSession:
        return cls(
            api,
            navigate=navigate,
            session_id=session_id,
            poll_interval_s=settings.poll_interval_s,
            failed_route=settings.failed_route,
        )

    def __enter__(self) -> AgentsSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def refresh_tasks(self) -> list[dict[str, Any]]:
        self._ensure_open()
        tasks = self.api.list_tasks(session_id=self.session_id)
        with self._lock:
            self.tasks = list(tasks)
        return self.visible_tasks()

    def set_search_query(self, query: str) -> list[dict[str, Any]]:
        self._ensure_open()
        self.search_query = query
        return self.visible_tasks()

    def visible_tasks(self) -> list[dict[str, Any]]:
        needle = self.search_query.strip().lower()
        with self._lock:
            tasks = list(self.tasks)
        if not needle:
            return tasks
        return [task for task in tasks if needle in str(task.get("title") or "").lower()]

    def create_task(self, topic: str) -> dict[str, Any]:
        self._ensure_open()
        task = self.api.create_task(topic, session_id=self.session_id)
        with self._lock:
            self.tasks.insert(0, task)
        self.open_task(task["id"], status=task.get("status"))
        return task

    def open_task(self, task_id: str, *, status: str | None = None) -> None:
        """Make `task_id` current, route to its page and poll it if it is running."""
        self._ensure_open()
        self._stop_polling()
        with self._lock:
            self.current_task_id = task_id
        self.reactor.forget(task_id)
        if status is None:
            status = self.api.get_status(task_id)
        self._on_status(task_id, status)
        if str(status).lower() in POLLED_STATUSES:
            self._start_polling(task_id)

    def update_task(self, fields: dict[str, Any]) -> dict[str, Any]:
        task_id = self._require_current()
        task = self.api.update_task(task_id, fields, session_id=self.session_id)
        self._on_status(task_id, task["status"])
        return task

    def start_progress(self, fields: dict[str, Any] | None = None) -> dict[str, Any]:
        task_id = self._require_current()
        task = self.api.update_task(
            task_id,
            {**(fields or {}), "status": "in_progress"},
            start_progress=True,
            session_id=self.session_id,
        )
        self._on_status(task_id, task["status"])
        if str(task["status"]).lower() in POLLED_STATUSES:
            self._start_polling(task_id)
        return task

    def close(self) -> None:
        if self._closed:
            return
        self._stop_polling()
        with self._lock:
            self.tasks = []
            self.search_query = ""
            self.current_task_id = None
            self._closed = True
        logger.info("agents_session event=closed session_id=%s", self.session_id)

    def _on_status(self, task_id: str, status: str) -> None:
        with self._lock:
            for task in self.tasks:
                if task.get("id") == task_id:
                    task["status"] = status
            if self._closed or task_id != self.current_task_id:
                return
        self.reactor.observe(task_id, status)

    def _start_polling(self, task_id: str) -> None:
        self._stop_polling()
        poller = TaskPoller(
            task_id,
            self.api.get_status,
            interval_s=self.poll_interval_s,
            on_status=self._on_status,
        )
        with self._lock:
            self.poller = poller
        poller.start()

    def _stop_polling(self) -> None:
        with self._lock:
            poller, self.poller = self.poller, None
        if poller is not None:
            poller.cancel()

    def _require_current(self) -> str:
        self._ensure_open()
        if self.current_task_id is None:
            raise RuntimeError("No task is open")
        return self.current_task_id

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("AgentsSession is closed")
