from __future__ import annotations

import json
from typing import Any

from scripts.watch_task import watch


class ScriptedTaskApi:
    def __init__(self, statuses: list[str]) -> None:
        self.statuses = list(statuses)

    def get_status(self, task_id: str) -> str:
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]

    def get_task(self, task_id: str) -> dict[str, Any]:
        return {"id": task_id, "status": self.statuses[0]}


def test_json_output_has_one_line_per_status_change() -> None:
    lines: list[str] = []
    api = ScriptedTaskApi(["in_progress", "in_progress", "in_progress", "completed"])

    final = watch(
        api,
        "t1",
        interval_s=0.01,
        failed_route="/agents/{id}",
        as_json=True,
        emit=lines.append,
    )

    assert final == "completed"
    records = [json.loads(line) for line in lines]
    assert records[:-1] == [
        {"task_id": "t1", "status": "in_progress", "view": "progress", "path": "/agents/t1/progress"},
        {"task_id": "t1", "status": "completed", "view": "report", "path": "/agents/t1/report"},
    ]
    assert records[-1] == {"id": "t1", "status": "completed"}


def test_plain_output_prints_route_changes() -> None:
    lines: list[str] = []
    api = ScriptedTaskApi(["stage", "failed"])

    watch(api, "t1", interval_s=0.01, failed_route="/agents/{id}/failed", emit=lines.append)

    assert lines == [
        "-> /agents/t1/stage",
        "-> /agents/t1/failed",
        "status=failed view=failed",
    ]
