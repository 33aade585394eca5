"""In-memory storage backends for tests and local development."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from camus.storage.base import StatusConflict, check_artifact_changes, check_task_changes
from camus.storage.models import (
    ArtifactRecord,
    ArtifactWrite,
    ConversationRecord,
    MessageRecord,
    MessageWrite,
    TaskRecord,
)
from camus.tasks.status import TaskStatus


class InMemoryTaskStorage:
    """Dict-backed task store; every method runs under one lock."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskRecord] = {}
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def create_task(
        self,
        *,
        title: str,
        params: dict[str, Any],
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            id=str(uuid4()),
            title=title,
            user_id=user_id,
            session_id=session_id,
            status=TaskStatus.PENDING,
            params=dict(params),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.id] = record
        return record.model_copy(deep=True)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: TaskStatus | None = None,
    ) -> TaskRecord:
        check_task_changes(changes)
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            if expected_status is not None and current.status != expected_status:
                raise StatusConflict(task_id, expected_status, current.status)
            updated = current.model_copy(
                update={**changes, "updated_at": datetime.now(UTC)},
                deep=True,
            )
            # model_copy skips validation, so coerce the enum explicitly.
            updated.status = TaskStatus(updated.status)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> list[TaskRecord]:
        with self._lock:
            tasks = list(self._tasks.values())
        if user_id:
            tasks = [task for task in tasks if task.user_id == user_id]
        elif session_id:
            tasks = [task for task in tasks if task.session_id == session_id]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in tasks]


class InMemoryConversationStorage:
    """Dict-backed conversation store with the same atomicity as Postgres."""

    def __init__(self) -> None:
        self._conversations: dict[str, ConversationRecord] = {}
        self._messages: dict[tuple[str, str], MessageRecord] = {}
        self._artifacts: dict[str, ArtifactRecord] = {}
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def create_conversation(
        self,
        *,
        title: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ConversationRecord:
        now = datetime.now(UTC)
        record = ConversationRecord(
            id=str(uuid4()),
            title=title,
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._conversations[record.id] = record
        return record.model_copy()

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            record = self._conversations.get(conversation_id)
            return record.model_copy() if record else None

    def list_conversations(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[ConversationRecord]:
        if not user_id and not session_id:
            return []
        with self._lock:
            records = [
                record
                for record in self._conversations.values()
                if (user_id and record.user_id == user_id)
                or (session_id and record.session_id == session_id)
            ]
        records.sort(key=lambda record: record.updated_at, reverse=True)
        return [record.model_copy() for record in records[:limit]]

    def touch_conversation(self, conversation_id: str) -> None:
        with self._lock:
            record = self._conversations.get(conversation_id)
            if record is None:
                raise KeyError(f"Conversation {conversation_id} does not exist")
            self._conversations[conversation_id] = record.model_copy(
                update={"updated_at": datetime.now(UTC)}
            )

    def upsert_message(self, conversation_id: str, message: MessageWrite) -> MessageRecord:
        key = (conversation_id, message.id)
        now = datetime.now(UTC)
        fields = {
            name: value
            for name, value in message.model_dump(exclude={"id", "role"}).items()
            if value is not None
        }
        with self._lock:
            existing = self._messages.get(key)
            if existing is None:
                record = MessageRecord(
                    conversation_id=conversation_id,
                    created_at=now,
                    updated_at=now,
                    **message.model_dump(),
                )
            else:
                # Role is fixed by the first writer; omitted tool fields are kept.
                record = existing.model_copy(update={**fields, "updated_at": now})
            self._messages[key] = record
            return record.model_copy()

    def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        with self._lock:
            records = [
                record
                for (owner, _), record in self._messages.items()
                if owner == conversation_id
            ]
        records.sort(key=lambda record: record.created_at)
        return [record.model_copy() for record in records]

    def upsert_artifact(self, artifact: ArtifactWrite) -> ArtifactRecord:
        now = datetime.now(UTC)
        with self._lock:
            existing = self._artifacts.get(artifact.id)
            if existing is None:
                record = ArtifactRecord(created_at=now, updated_at=now, **artifact.model_dump())
            else:
                record = existing.model_copy(
                    update={
                        "name": artifact.name,
                        "content": artifact.content,
                        "category": artifact.category or existing.category,
                        "timestamp": artifact.timestamp or existing.timestamp,
                        "message_id": existing.message_id or artifact.message_id,
                        "updated_at": now,
                    }
                )
            self._artifacts[artifact.id] = record
            return record.model_copy()

    def update_artifact(self, artifact_id: str, changes: dict[str, Any]) -> ArtifactRecord:
        check_artifact_changes(changes)
        with self._lock:
            existing = self._artifacts.get(artifact_id)
            if existing is None:
                raise KeyError(f"Artifact {artifact_id} does not exist")
            record = existing.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
            self._artifacts[artifact_id] = record
            return record.model_copy()

    def get_artifact(self, artifact_id: str) -> ArtifactRecord | None:
        with self._lock:
            record = self._artifacts.get(artifact_id)
            return record.model_copy() if record else None

    def list_artifacts(self, conversation_id: str) -> list[ArtifactRecord]:
        with self._lock:
            records = [
                record
                for record in self._artifacts.values()
                if record.conversation_id == conversation_id
            ]
        records.sort(key=lambda record: record.created_at)
        return [record.model_copy() for record in records]

    def set_artifact_share(self, artifact_id: str, *, slug: str | None) -> ArtifactRecord:
        """Share with `slug` (an existing slug wins) or unshare when None."""
        with self._lock:
            existing = self._artifacts.get(artifact_id)
            if existing is None:
                raise KeyError(f"Artifact {artifact_id} does not exist")
            if slug is None:
                update = {"is_public": False, "share_slug": None}
            else:
                update = {"is_public": True, "share_slug": existing.share_slug or slug}
            record = existing.model_copy(update={**update, "updated_at": datetime.now(UTC)})
            self._artifacts[artifact_id] = record
            return record.model_copy()

    def get_public_artifact_by_slug(self, slug: str) -> ArtifactRecord | None:
        with self._lock:
            for record in self._artifacts.values():
                if record.share_slug == slug and record.is_public:
                    return record.model_copy()
        return None

    def increment_artifact_views(self, artifact_id: str) -> ArtifactRecord:
        with self._lock:
            existing = self._artifacts.get(artifact_id)
            if existing is None:
                raise KeyError(f"Artifact {artifact_id} does not exist")
            record = existing.model_copy(update={"views": existing.views + 1})
            self._artifacts[artifact_id] = record
            return record.model_copy()

    def list_public_artifacts(
        self,
        *,
        limit: int,
        offset: int = 0,
        category: str | None = None,
    ) -> list[ArtifactRecord]:
        with self._lock:
            records = [
                record
                for record in self._artifacts.values()
                if record.is_public and (category is None or record.category == category)
            ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return [record.model_copy() for record in records[offset : offset + limit]]

    def list_public_artifact_categories(self) -> list[str]:
        with self._lock:
            categories = {
                record.category
                for record in self._artifacts.values()
                if record.is_public and record.category
            }
        return sorted(categories)

    def set_conversation_share(
        self,
        conversation_id: str,
        *,
        slug: str | None,
    ) -> ConversationRecord:
        with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is None:
                raise KeyError(f"Conversation {conversation_id} does not exist")
            if slug is None:
                update = {"is_public": False, "share_slug": None}
            else:
                update = {"is_public": True, "share_slug": existing.share_slug or slug}
            record = existing.model_copy(update=update)
            self._conversations[conversation_id] = record
            return record.model_copy()

    def get_public_conversation_by_slug(self, slug: str) -> ConversationRecord | None:
        with self._lock:
            for record in self._conversations.values():
                if record.share_slug == slug and record.is_public:
                    return record.model_copy()
        return None

    def increment_conversation_views(self, conversation_id: str) -> ConversationRecord:
        with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is None:
                raise KeyError(f"Conversation {conversation_id} does not exist")
            record = existing.model_copy(update={"views": existing.views + 1})
            self._conversations[conversation_id] = record
            return record.model_copy()
