from __future__ import annotations

from fastapi.testclient import TestClient

from tests.fakes import SAMPLE_PLAN, SESSION_ID, START_BODY, USER_ID, FakeBackend


def _callback(client: TestClient, task_id: str, /, **payload: object):
    return client.post(f"/api/task/{task_id}/callback", json=payload)


def test_task_lifecycle_from_topic_to_report(
    client: TestClient,
    backend: FakeBackend,
    user_headers: dict[str, str],
) -> None:
    create_resp = client.post(
        "/api/task",
        json={"topic": "Plant-based milk adoption among office workers", "sessionId": SESSION_ID},
        headers=user_headers,
    )
    assert create_resp.status_code == 200
    created = create_resp.json()["task"]
    assert created["status"] == "pending"
    assert created["topic"] == "Plant-based milk adoption among office workers"
    task_id = created["id"]

    # Title generation ran in the background without an LLM configured.
    fetched = client.get(f"/api/task/{task_id}").json()["task"]
    assert fetched["title"] == "Plant-based milk adoption among office w"
    assert fetched["userId"] == USER_ID
    assert fetched["sessionId"] == SESSION_ID

    staged = client.patch(
        f"/api/task/{task_id}",
        json={"status": "stage", "stages": SAMPLE_PLAN},
        headers=user_headers,
    )
    assert staged.status_code == 200
    assert staged.json()["task"]["status"] == "stage"

    started = client.patch(f"/api/task/{task_id}?startProgress=true", json=START_BODY, headers=user_headers)
    assert started.status_code == 200
    assert started.json()["task"]["status"] == "in_progress"
    assert [job["category"] for job in backend.created] == ["synthetic_survey", "deepresearch"]
    assert backend.created[0]["params"] == {"sample_size": 200}
    stages = client.get(f"/api/task/{task_id}").json()["task"]["stages"]["stages"]
    assert [stage["task_id"] for stage in stages] == ["job-1", "job-2"]

    first = _callback(client, task_id, task_id="job-1", status="completed", category="synthetic_survey")
    assert first.json() == {"success": True}
    assert len(backend.created) == 2

    second = _callback(client, task_id, task_id="job-2", status="completed", category="deepresearch")
    assert second.json() == {"success": True}
    assert backend.created[-1]["category"] == "report_pdf"
    in_progress = client.get(f"/api/task/{task_id}").json()["task"]
    assert in_progress["status"] == "in_progress"
    assert in_progress["metadata"]["report_task_id"] == "job-3"

    report = _callback(client, task_id, task_id="job-3", status="completed", category="report_pdf")
    assert report.json() == {"success": True}
    done = client.get(f"/api/task/{task_id}").json()["task"]
    assert done["status"] == "completed"
    assert done["results"] == {"pdf_url": "https://files.example/job-3.pdf", "status": "completed"}


def test_repeated_stage_callback_dispatches_report_once(
    client: TestClient,
    backend: FakeBackend,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)
    for backend_task_id in ("job-1", "job-2", "job-2"):
        response = _callback(
            client,
            staged_task_id,
            task_id=backend_task_id,
            status="completed",
            category="deepresearch",
        )
        assert response.json() == {"success": True}

    report_jobs = [job for job in backend.created if job["category"] == "report_pdf"]
    assert len(report_jobs) == 1


def test_callback_after_completion_is_a_no_op(
    client: TestClient,
    backend: FakeBackend,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)
    _callback(client, staged_task_id, task_id="job-1", status="completed", category="synthetic_survey")
    _callback(client, staged_task_id, task_id="job-2", status="completed", category="deepresearch")
    _callback(client, staged_task_id, task_id="job-3", status="completed", category="report_pdf")
    before = client.get(f"/api/task/{staged_task_id}").json()["task"]

    backend.details["job-3"] = {"results": {"results": {"pdf_url": "https://files.example/other.pdf"}}}
    repeat = _callback(client, staged_task_id, task_id="job-3", status="completed", category="report_pdf")
    late_failure = _callback(client, staged_task_id, task_id="job-1", status="failed", category="deepresearch")

    assert repeat.status_code == 200
    assert repeat.json() == {"success": True}
    assert late_failure.json() == {"success": True}
    assert client.get(f"/api/task/{staged_task_id}").json()["task"] == before


def test_failed_worker_callback_marks_task_failed(
    client: TestClient,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    response = _callback(client, staged_task_id, task_id="job-2", status="failed", category="deepresearch")

    assert response.json() == {"success": False}
    task = client.get(f"/api/task/{staged_task_id}").json()["task"]
    assert task["status"] == "failed"
    assert task["metadata"]["error"] == f"[deepresearch] task[{staged_task_id}] failed"
    assert task["results"] is None


def test_callback_for_unknown_stage_fails_task(
    client: TestClient,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    response = _callback(client, staged_task_id, task_id="job-99", status="completed", category="deepresearch")

    assert response.json() == {"success": False}
    task = client.get(f"/api/task/{staged_task_id}").json()["task"]
    assert task["status"] == "failed"
    assert task["metadata"]["error"] == "Stage not found"


def test_callback_before_start_is_rejected(client: TestClient, staged_task_id: str) -> None:
    response = _callback(client, staged_task_id, task_id="job-1", status="completed", category="deepresearch")

    assert response.status_code == 409
    assert response.json()["details"]["current"] == "stage"


def test_failed_callback_on_staged_task_fails_it(client: TestClient, staged_task_id: str) -> None:
    response = _callback(client, staged_task_id, task_id="plan-1", status="failed", category="planner")

    assert response.status_code == 200
    assert response.json() == {"success": False}
    task = client.get(f"/api/task/{staged_task_id}").json()["task"]
    assert task["status"] == "failed"
    assert task["metadata"]["error"] == f"[planner] task[{staged_task_id}] failed"


def test_start_progress_with_empty_body_is_rejected(
    client: TestClient,
    backend: FakeBackend,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    response = client.patch(
        f"/api/task/{staged_task_id}?startProgress=true",
        json={},
        headers=user_headers,
    )

    assert response.status_code == 400
    assert response.json() == {"error": "No fields to update"}
    assert backend.created == []
    assert client.get(f"/api/task/{staged_task_id}").json()["task"]["status"] == "stage"


def test_dispatch_failure_moves_task_to_failed(
    client: TestClient,
    backend: FakeBackend,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    backend.fail_create = True

    response = client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    assert response.status_code == 500
    assert response.json()["error"] == "Failed to dispatch task stages"
    task = client.get(f"/api/task/{staged_task_id}").json()["task"]
    assert task["status"] == "failed"
    assert task["metadata"]["error"] == "Failed to create task"


def test_start_progress_requires_identity(client: TestClient, staged_task_id: str) -> None:
    response = client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY)

    assert response.status_code == 401
    assert client.get(f"/api/task/{staged_task_id}").json()["task"]["status"] == "stage"


def test_start_progress_accepts_owning_session(client: TestClient, staged_task_id: str) -> None:
    response = client.patch(
        f"/api/task/{staged_task_id}?startProgress=true&sessionId={SESSION_ID}",
        json=START_BODY,
    )

    assert response.status_code == 200
    assert response.json()["task"]["status"] == "in_progress"


def test_start_progress_rejects_other_user(client: TestClient, staged_task_id: str) -> None:
    response = client.patch(
        f"/api/task/{staged_task_id}?startProgress=true",
        json=START_BODY,
        headers={"X-User-Id": "someone-else"},
    )

    assert response.status_code == 401


def test_start_progress_twice_is_rejected(
    client: TestClient,
    backend: FakeBackend,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    again = client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    assert again.status_code == 409
    assert len(backend.created) == 2


def test_start_progress_without_stages_is_rejected(
    client: TestClient,
    user_headers: dict[str, str],
) -> None:
    task_id = client.post("/api/task", json={"topic": "Coffee"}, headers=user_headers).json()["task"]["id"]
    client.patch(f"/api/task/{task_id}", json={"status": "stage"}, headers=user_headers)

    response = client.patch(f"/api/task/{task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    assert response.status_code == 400
    assert response.json() == {"error": "Task has no stages"}


def test_patch_rules(client: TestClient, user_headers: dict[str, str]) -> None:
    task_id = client.post("/api/task", json={"topic": "Coffee"}, headers=user_headers).json()["task"]["id"]

    empty = client.patch(f"/api/task/{task_id}", json={})
    assert empty.status_code == 400
    assert empty.json() == {"error": "No fields to update"}

    unknown = client.patch(f"/api/task/{task_id}", json={"status": "archived"})
    assert unknown.status_code == 400

    skipped = client.patch(f"/api/task/{task_id}", json={"status": "in_progress"})
    assert skipped.status_code == 409

    # Status values are matched case-insensitively.
    staged = client.patch(f"/api/task/{task_id}", json={"status": "STAGE", "title": "Coffee habits"})
    assert staged.status_code == 200
    assert staged.json()["task"]["title"] == "Coffee habits"
    assert staged.json()["task"]["status"] == "stage"

    back = client.patch(f"/api/task/{task_id}", json={"status": "pending"})
    assert back.status_code == 409


def test_params_are_read_only_once_in_progress(
    client: TestClient,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)

    response = client.patch(f"/api/task/{staged_task_id}", json={"params": {"topic": "Tea"}})

    assert response.status_code == 409
    renamed = client.patch(f"/api/task/{staged_task_id}", json={"title": "Renamed"})
    assert renamed.status_code == 200


def test_terminal_task_status_cannot_change(
    client: TestClient,
    staged_task_id: str,
    user_headers: dict[str, str],
) -> None:
    client.patch(f"/api/task/{staged_task_id}?startProgress=true", json=START_BODY, headers=user_headers)
    _callback(client, staged_task_id, task_id="job-1", status="failed", category="deepresearch")

    for status in ("pending", "stage", "in_progress", "completed", "failed"):
        response = client.patch(f"/api/task/{staged_task_id}", json={"status": status})
        assert response.status_code == 409


def test_list_tasks_for_owner(client: TestClient, user_headers: dict[str, str]) -> None:
    client.post("/api/task", json={"topic": "Coffee", "sessionId": SESSION_ID}, headers=user_headers)
    client.post("/api/task", json={"topic": "Tea", "sessionId": "other"}, headers={"X-User-Id": "user-2"})

    mine = client.get("/api/task", headers=user_headers)
    by_session = client.get(f"/api/task?sessionId={SESSION_ID}")
    anonymous = client.get("/api/task")

    assert [task["title"] for task in mine.json()["tasks"]] == ["Coffee"]
    assert set(mine.json()["tasks"][0]) == {"id", "title", "status", "createdAt", "updatedAt"}
    assert [task["title"] for task in by_session.json()["tasks"]] == ["Coffee"]
    assert anonymous.status_code == 401


def test_create_and_get_errors(client: TestClient) -> None:
    missing_topic = client.post("/api/task", json={"sessionId": SESSION_ID})
    assert missing_topic.status_code == 400
    assert missing_topic.json() == {"error": "Topic is required"}

    missing_task = client.get("/api/task/does-not-exist")
    assert missing_task.status_code == 404
    assert missing_task.json()["error"] == "Task not found"

    bad_callback = client.post("/api/task/does-not-exist/callback", json={"status": "completed"})
    assert bad_callback.status_code == 400
    assert bad_callback.json()["error"] == "Invalid request"


def test_plan_proxy_maps_fields(client: TestClient, backend: FakeBackend) -> None:
    response = client.post(
        "/api/task/plan",
        json={"params": {"topic": "Coffee", "persona": "Students", "questions": "Q1"}},
    )

    assert response.status_code == 200
    assert response.json()["request"] == {
        "topic_and_objective": "Coffee",
        "target_population": "Students",
        "questionnaire": "Q1",
        "report_dimensions": None,
        "background_info": None,
    }


def test_plan_proxy_passes_upstream_status(client: TestClient, backend: FakeBackend) -> None:
    backend.fail_plan_status = 422

    response = client.post("/api/task/plan", json={"params": {"topic": "Coffee"}})

    assert response.status_code == 422
    assert response.json() == {"error": "Backend plan request failed"}


def test_generate_title_and_dialog(client: TestClient) -> None:
    title = client.post("/api/task/generate-title", json={"topic": "  Coffee habits  "})
    assert title.json() == {"title": "Coffee habits"}

    no_topic = client.post("/api/task/generate-title", json={})
    assert no_topic.status_code == 400

    bad_field = client.post(
        "/api/task/dialog",
        json={"params": {"topic": "Coffee"}, "targetField": "budget"},
    )
    assert bad_field.status_code == 400
    assert bad_field.json()["error"] == "Invalid targetField"

    unconfigured = client.post(
        "/api/task/dialog",
        json={"params": {"topic": "Coffee"}, "targetField": "persona"},
    )
    assert unconfigured.status_code == 500
    assert unconfigured.json() == {"error": "AI assistant is not configured"}


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "camus"}
