"""Storage interfaces for tasks and conversations.

Backends must make every method a single atomic operation. Application code
never does a read followed by a dependent write against these stores; where
it needs "write only if unchanged" it passes `expected_status`, and where it
needs "insert or update" it calls an `upsert_*` method.
"""

from __future__ import annotations

from typing import Any, Protocol

from camus.storage.models import (
    ArtifactRecord,
    ArtifactWrite,
    ConversationRecord,
    MessageRecord,
    MessageWrite,
    TaskRecord,
)
from camus.tasks.status import TaskStatus

# Columns a task update may touch.
TASK_UPDATE_FIELDS = frozenset(
    {"title", "user_id", "session_id", "status", "params", "stages", "metadata", "results"}
)
ARTIFACT_UPDATE_FIELDS = frozenset({"name", "content", "category", "timestamp"})


class StatusConflict(Exception):
    """Compare-and-set write lost: the stored status moved on."""

    def __init__(self, task_id: str, expected: TaskStatus, actual: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id} expected status {expected.value}, found {actual.value}"
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        *,
        title: str,
        params: dict[str, Any],
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> TaskRecord: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: TaskStatus | None = None,
    ) -> TaskRecord: ...

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> list[TaskRecord]: ...


class ConversationStorage(Protocol):
    def migrate(self) -> None: ...

    def create_conversation(
        self,
        *,
        title: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ConversationRecord: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def list_conversations(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[ConversationRecord]: ...

    def touch_conversation(self, conversation_id: str) -> None: ...

    def upsert_message(self, conversation_id: str, message: MessageWrite) -> MessageRecord: ...

    def list_messages(self, conversation_id: str) -> list[MessageRecord]: ...

    def upsert_artifact(self, artifact: ArtifactWrite) -> ArtifactRecord: ...

    def update_artifact(self, artifact_id: str, changes: dict[str, Any]) -> ArtifactRecord: ...

    def get_artifact(self, artifact_id: str) -> ArtifactRecord | None: ...

    def list_artifacts(self, conversation_id: str) -> list[ArtifactRecord]: ...

    def set_artifact_share(self, artifact_id: str, *, slug: str | None) -> ArtifactRecord: ...

    def get_public_artifact_by_slug(self, slug: str) -> ArtifactRecord | None: ...

    def increment_artifact_views(self, artifact_id: str) -> ArtifactRecord: ...

    def list_public_artifacts(
        self,
        *,
        limit: int,
        offset: int = 0,
        category: str | None = None,
    ) -> list[ArtifactRecord]: ...

    def list_public_artifact_categories(self) -> list[str]: ...

    def set_conversation_share(
        self,
        conversation_id: str,
        *,
        slug: str | None,
    ) -> ConversationRecord: ...

    def get_public_conversation_by_slug(self, slug: str) -> ConversationRecord | None: ...

    def increment_conversation_views(self, conversation_id: str) -> ConversationRecord: ...


def check_task_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - TASK_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported task fields: {sorted(unknown)}")


def check_artifact_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - ARTIFACT_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported artifact fields: {sorted(unknown)}")
