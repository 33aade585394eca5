from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from camus.api.main import create_app
from camus.config.settings import Settings
from camus.storage.memory import InMemoryConversationStorage, InMemoryTaskStorage
from tests.fakes import SAMPLE_PLAN, SESSION_ID, USER_ID, FakeBackend


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    for name in ("OPENAI_API_KEY", "DATABASE_URL", "NEXTAUTH_URL", "BACKEND_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    return Settings(_env_file=None, public_base_url="https://camus.example")


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def task_storage() -> InMemoryTaskStorage:
    return InMemoryTaskStorage()


@pytest.fixture
def conversation_storage() -> InMemoryConversationStorage:
    return InMemoryConversationStorage()


@pytest.fixture
def client(
    settings: Settings,
    backend: FakeBackend,
    task_storage: InMemoryTaskStorage,
    conversation_storage: InMemoryConversationStorage,
) -> TestClient:
    app = create_app(
        task_storage=task_storage,
        conversation_storage=conversation_storage,
        backend=backend,
        settings_override=settings,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-Id": USER_ID}


@pytest.fixture
def staged_task_id(client: TestClient, user_headers: dict[str, str]) -> str:
    """A task moved to STAGE with a two-stage plan."""
    created = client.post(
        "/api/task",
        json={"topic": "Plant-based milk adoption in Shanghai", "sessionId": SESSION_ID},
        headers=user_headers,
    )
    task_id = created.json()["task"]["id"]
    staged = client.patch(
        f"/api/task/{task_id}",
        json={"status": "stage", "stages": SAMPLE_PLAN},
        headers=user_headers,
    )
    assert staged.status_code == 200
    return task_id
