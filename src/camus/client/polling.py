"""Status polling for one task until it reaches a terminal state."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from camus.errors import ValidationError
from camus.tasks.status import is_terminal, parse_status

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 5.0


class TaskPoller:
    """Fetches a task's status once per interval.

    Stops on its own at COMPLETED or FAILED. `cancel()` wakes a waiting poll
    immediately and joins the thread, so nothing keeps running afterwards.
    """

    def __init__(
        self,
        task_id: str,
        fetch_status: Callable[[str], str],
        *,
        interval_s: float = DEFAULT_POLL_INTERVAL_S,
        on_status: Callable[[str, str], None] | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.task_id = task_id
        self.fetch_status = fetch_status
        self.interval_s = interval_s
        self.on_status = on_status
        self.last_status: str | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def poll_once(self) -> str | None:
        try:
            status = self.fetch_status(self.task_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_poll event=fetch_failed task_id=%s reason=%s", self.task_id, exc)
            return None
        self.last_status = status
        if self.on_status is not None:
            self.on_status(self.task_id, status)
        return status

    def run(self) -> str | None:
        """Poll in the calling thread. Returns the terminal status, or None if cancelled."""
        while not self._stop_event.is_set():
            status = self.poll_once()
            if status is not None and _is_terminal(status):
                logger.info("task_poll event=stopped task_id=%s status=%s", self.task_id, status)
                return status
            if self._stop_event.wait(self.interval_s):
                break
        return None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Poller already started")
        self._thread = threading.Thread(
            target=self.run,
            daemon=True,
            name=f"camus-poll-{self.task_id}",
        )
        self._thread.start()

    def cancel(self, timeout_s: float = 3.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout_s)


def _is_terminal(status: str) -> bool:
    try:
        return is_terminal(parse_status(status))
    except ValidationError:
        return False
