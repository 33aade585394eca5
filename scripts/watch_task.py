from __future__ import annotations

import argparse
import json
import logging
from typing import Callable

from camus.client.api import CamusApiClient
from camus.client.polling import TaskPoller
from camus.client.routing import RouteReactor, route_for_status
from camus.client.session import TaskApi
from camus.config.log import configure_logging
from camus.config.settings import get_settings

logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Poll a camus task until it finishes and print the page it routes to.",
    )
    parser.add_argument("task_id", help="Task id to watch.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="camus API base URL.")
    parser.add_argument("--user-id", default=None, help="Value sent as X-User-Id.")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.poll_interval_s,
        help="Seconds between polls (CAMUS_POLL_INTERVAL_S).",
    )
    parser.add_argument(
        "--failed-route",
        default=settings.failed_route,
        help="Route template for failed tasks (CAMUS_FAILED_ROUTE).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print one JSON line per status change, then the final task record.",
    )
    return parser.parse_args()


def watch(
    api: TaskApi,
    task_id: str,
    *,
    interval_s: float,
    failed_route: str,
    as_json: bool = False,
    emit: Callable[[str], None] = print,
) -> str | None:
    """Poll until the task is terminal. Returns the final status."""
    reactor = RouteReactor(
        (lambda path: None) if as_json else (lambda path: emit(f"-> {path}")),
        failed_route=failed_route,
    )

    seen: list[str] = []

    def on_status(observed_task_id: str, status: str) -> None:
        reactor.observe(observed_task_id, status)
        if not as_json or (seen and seen[-1] == status):
            return
        seen.append(status)
        route = route_for_status(observed_task_id, status, failed_route=failed_route)
        emit(
            json.dumps(
                {
                    "task_id": observed_task_id,
                    "status": status,
                    "view": route.view,
                    "path": route.path,
                }
            )
        )

    poller = TaskPoller(task_id, api.get_status, interval_s=interval_s, on_status=on_status)
    try:
        final_status = poller.run()
    except KeyboardInterrupt:
        poller.cancel()
        logger.warning("watch_task event=interrupted task_id=%s", task_id)
        return None

    if as_json:
        emit(json.dumps(api.get_task(task_id), ensure_ascii=False))
    else:
        emit(f"status={final_status} view={reactor.current_view}")
    return final_status


def main() -> None:
    args = _parse_args()
    configure_logging("WARNING")
    api = CamusApiClient(args.base_url, user_id=args.user_id)
    watch(
        api,
        args.task_id,
        interval_s=args.interval,
        failed_route=args.failed_route,
        as_json=args.json,
    )


if __name__ == "__main__":
    main()
