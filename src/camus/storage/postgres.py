"""PostgreSQL-backed storage with automatic table migration.

Every write is one SQL statement. Upserts use `INSERT ... ON CONFLICT DO
UPDATE`, status transitions use `UPDATE ... WHERE status = %s`, and view
counters use `views = views + 1`, so concurrent request handlers never race
on a read-then-write.
"""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

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

# Task field -> column. Also the whitelist for dynamic UPDATE statements.
_TASK_COLUMNS = {
    "title": "title",
    "user_id": "user_id",
    "session_id": "session_id",
    "status": "status",
    "params": "params_json",
    "stages": "stages_json",
    "metadata": "metadata_json",
    "results": "results_json",
}
_TASK_JSON_FIELDS = frozenset({"params", "stages", "metadata", "results"})

_ARTIFACT_COLUMNS = {
    "name": "name",
    "content": "content",
    "category": "category",
    "timestamp": "client_timestamp",
}


class _PostgresBase:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("CAMUS_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _json_or_none(self, value: Any) -> Any:
        return self._json_wrapper(value) if value is not None else None

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")


class PostgresTaskStorage(_PostgresBase):
    """Persist tasks in PostgreSQL."""

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id UUID PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    user_id TEXT,
                    session_id TEXT,
                    status TEXT NOT NULL,
                    params_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    stages_json JSONB,
                    metadata_json JSONB,
                    results_json JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_user_id_created_at
                ON tasks(user_id, created_at DESC)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_session_id_created_at
                ON tasks(session_id, created_at DESC)
                """)
            conn.commit()

    def create_task(
        self,
        *,
        title: str,
        params: dict[str, Any],
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> TaskRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO tasks (
                    id,
                    title,
                    user_id,
                    session_id,
                    status,
                    params_json,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    title,
                    user_id,
                    session_id,
                    TaskStatus.PENDING.value,
                    self._json_wrapper(params),
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist task")
        return self._row_to_task(row)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: TaskStatus | None = None,
    ) -> TaskRecord:
        check_task_changes(changes)
        assignments: list[str] = []
        values: list[Any] = []
        for field, value in changes.items():
            assignments.append(f"{_TASK_COLUMNS[field]} = %s")
            if field in _TASK_JSON_FIELDS:
                values.append(self._json_or_none(value))
            elif field == "status":
                values.append(TaskStatus(value).value)
            else:
                values.append(value)
        assignments.append("updated_at = %s")
        values.append(datetime.now(tz=UTC))

        query = f"UPDATE tasks SET {', '.join(assignments)} WHERE id::text = %s"
        values.append(task_id)
        if expected_status is not None:
            query += " AND status = %s"
            values.append(expected_status.value)
        query += " RETURNING *"

        with self._lock, self._connect() as conn:
            row = conn.execute(query, tuple(values)).fetchone()
            conn.commit()
        if row is not None:
            return self._row_to_task(row)

        # Nothing matched: tell a missing row apart from a lost status race.
        current = self.get_task(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist")
        if expected_status is not None:
            raise StatusConflict(task_id, expected_status, current.status)
        raise RuntimeError(f"Failed to update task {task_id}")

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> list[TaskRecord]:
        query = "SELECT * FROM tasks"
        params: tuple[Any, ...] = ()
        if user_id:
            query += " WHERE user_id = %s"
            params = (user_id,)
        elif session_id:
            query += " WHERE session_id = %s"
            params = (session_id,)
        query += " ORDER BY created_at DESC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        return TaskRecord(
            id=str(row["id"]),
            title=row.get("title") or "",
            user_id=row.get("user_id"),
            session_id=row.get("session_id"),
            status=row["status"],
            params=cls._parse_json_optional(row.get("params_json")) or {},
            stages=cls._parse_json_optional(row.get("stages_json")),
            metadata=cls._parse_json_optional(row.get("metadata_json")),
            results=cls._parse_json_optional(row.get("results_json")),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )


class PostgresConversationStorage(_PostgresBase):
    """Persist conversations, messages and artifacts in PostgreSQL."""

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id UUID PRIMARY KEY,
                    title TEXT NOT NULL,
                    user_id TEXT,
                    session_id TEXT,
                    share_slug TEXT UNIQUE,
                    is_public BOOLEAN NOT NULL DEFAULT FALSE,
                    views INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            for column in (
                "share_slug TEXT UNIQUE",
                "is_public BOOLEAN NOT NULL DEFAULT FALSE",
                "views INTEGER NOT NULL DEFAULT 0",
            ):
                conn.execute(f"ALTER TABLE conversations ADD COLUMN IF NOT EXISTS {column}")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    conversation_id UUID NOT NULL
                        REFERENCES conversations(id) ON DELETE CASCADE,
                    id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    tool_name TEXT,
                    image_url TEXT,
                    tool_result_id TEXT,
                    tool_call_id TEXT,
                    is_error BOOLEAN NOT NULL DEFAULT FALSE,
                    is_incomplete BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (conversation_id, id)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS artifacts (
                    id TEXT PRIMARY KEY,
                    conversation_id UUID
                        REFERENCES conversations(id) ON DELETE CASCADE,
                    message_id TEXT,
                    user_id TEXT,
                    name TEXT NOT NULL,
                    content TEXT NOT NULL,
                    share_slug TEXT UNIQUE,
                    is_public BOOLEAN NOT NULL DEFAULT FALSE,
                    views INTEGER NOT NULL DEFAULT 0,
                    category TEXT,
                    client_timestamp BIGINT NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversations_updated_at
                ON conversations(updated_at DESC)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_conversation_id
                ON artifacts(conversation_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_public_created_at
                ON artifacts(created_at DESC) WHERE is_public
                """)
            conn.commit()

    def create_conversation(
        self,
        *,
        title: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ConversationRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO conversations (id, title, user_id, session_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid.uuid4(), title, user_id, session_id, now, now),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist conversation")
        return self._row_to_conversation(row)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id::text = %s",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_conversation(row)

    def list_conversations(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
    ) -> list[ConversationRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if session_id:
            clauses.append("session_id = %s")
            params.append(session_id)
        if not clauses:
            return []
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM conversations
                WHERE {" OR ".join(clauses)}
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                tuple(params),
            ).fetchall()
        return [self._row_to_conversation(row) for row in rows]

    def touch_conversation(self, conversation_id: str) -> None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "UPDATE conversations SET updated_at = %s WHERE id::text = %s RETURNING id",
                (datetime.now(tz=UTC), conversation_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Conversation {conversation_id} does not exist")

    def upsert_message(self, conversation_id: str, message: MessageWrite) -> MessageRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO messages (
                    conversation_id,
                    id,
                    role,
                    content,
                    tool_name,
                    image_url,
                    tool_result_id,
                    tool_call_id,
                    is_error,
                    is_incomplete,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (conversation_id, id) DO UPDATE
                SET content = EXCLUDED.content,
                    tool_name = COALESCE(EXCLUDED.tool_name, messages.tool_name),
                    image_url = COALESCE(EXCLUDED.image_url, messages.image_url),
                    tool_result_id = COALESCE(EXCLUDED.tool_result_id, messages.tool_result_id),
                    tool_call_id = COALESCE(EXCLUDED.tool_call_id, messages.tool_call_id),
                    is_error = EXCLUDED.is_error,
                    is_incomplete = EXCLUDED.is_incomplete,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    conversation_id,
                    message.id,
                    message.role,
                    message.content,
                    message.tool_name,
                    message.image_url,
                    message.tool_result_id,
                    message.tool_call_id,
                    message.is_error,
                    message.is_incomplete,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist message")
        return self._row_to_message(row)

    def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM messages
                WHERE conversation_id::text = %s
                ORDER BY created_at ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def upsert_artifact(self, artifact: ArtifactWrite) -> ArtifactRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO artifacts (
                    id,
                    conversation_id,
                    message_id,
                    user_id,
                    name,
                    content,
                    category,
                    client_timestamp,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET name = EXCLUDED.name,
                    content = EXCLUDED.content,
                    category = COALESCE(EXCLUDED.category, artifacts.category),
                    client_timestamp = CASE
                        WHEN EXCLUDED.client_timestamp > 0 THEN EXCLUDED.client_timestamp
                        ELSE artifacts.client_timestamp
                    END,
                    message_id = COALESCE(artifacts.message_id, EXCLUDED.message_id),
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    artifact.id,
                    artifact.conversation_id,
                    artifact.message_id,
                    artifact.user_id,
                    artifact.name,
                    artifact.content,
                    artifact.category,
                    artifact.timestamp,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist artifact")
        return self._row_to_artifact(row)

    def update_artifact(self, artifact_id: str, changes: dict[str, Any]) -> ArtifactRecord:
        check_artifact_changes(changes)
        assignments = [f"{_ARTIFACT_COLUMNS[field]} = %s" for field in changes]
        values: list[Any] = list(changes.values())
        assignments.append("updated_at = %s")
        values.extend([datetime.now(tz=UTC), artifact_id])
        return self._update_artifact_row(
            f"UPDATE artifacts SET {', '.join(assignments)} WHERE id = %s RETURNING *",
            tuple(values),
            artifact_id,
        )

    def get_artifact(self, artifact_id: str) -> ArtifactRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE id = %s",
                (artifact_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_artifact(row)

    def list_artifacts(self, conversation_id: str) -> list[ArtifactRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM artifacts
                WHERE conversation_id::text = %s
                ORDER BY created_at ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [self._row_to_artifact(row) for row in rows]

    def set_artifact_share(self, artifact_id: str, *, slug: str | None) -> ArtifactRecord:
        now = datetime.now(tz=UTC)
        if slug is None:
            return self._update_artifact_row(
                """
                UPDATE artifacts
                SET is_public = FALSE,
                    share_slug = NULL,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, artifact_id),
                artifact_id,
            )
        return self._update_artifact_row(
            """
            UPDATE artifacts
            SET is_public = TRUE,
                share_slug = COALESCE(share_slug, %s),
                updated_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (slug, now, artifact_id),
            artifact_id,
        )

    def get_public_artifact_by_slug(self, slug: str) -> ArtifactRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM artifacts WHERE share_slug = %s AND is_public",
                (slug,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_artifact(row)

    def increment_artifact_views(self, artifact_id: str) -> ArtifactRecord:
        return self._update_artifact_row(
            "UPDATE artifacts SET views = views + 1 WHERE id = %s RETURNING *",
            (artifact_id,),
            artifact_id,
        )

    def list_public_artifacts(
        self,
        *,
        limit: int,
        offset: int = 0,
        category: str | None = None,
    ) -> list[ArtifactRecord]:
        query = "SELECT * FROM artifacts WHERE is_public"
        params: list[Any] = []
        if category is not None:
            query += " AND category = %s"
            params.append(category)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_artifact(row) for row in rows]

    def list_public_artifact_categories(self) -> list[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT category FROM artifacts
                WHERE is_public AND category IS NOT NULL AND category <> ''
                ORDER BY category
                """
            ).fetchall()
        return [row["category"] for row in rows]

    def set_conversation_share(
        self,
        conversation_id: str,
        *,
        slug: str | None,
    ) -> ConversationRecord:
        if slug is None:
            query = """
                UPDATE conversations
                SET is_public = FALSE, share_slug = NULL
                WHERE id::text = %s
                RETURNING *
                """
            params: tuple[Any, ...] = (conversation_id,)
        else:
            query = """
                UPDATE conversations
                SET is_public = TRUE, share_slug = COALESCE(share_slug, %s)
                WHERE id::text = %s
                RETURNING *
                """
            params = (slug, conversation_id)
        return self._update_conversation_row(query, params, conversation_id)

    def get_public_conversation_by_slug(self, slug: str) -> ConversationRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE share_slug = %s AND is_public",
                (slug,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_conversation(row)

    def increment_conversation_views(self, conversation_id: str) -> ConversationRecord:
        return self._update_conversation_row(
            "UPDATE conversations SET views = views + 1 WHERE id::text = %s RETURNING *",
            (conversation_id,),
            conversation_id,
        )

    def _update_conversation_row(
        self,
        query: str,
        params: tuple[Any, ...],
        conversation_id: str,
    ) -> ConversationRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Conversation {conversation_id} does not exist")
        return self._row_to_conversation(row)

    def _update_artifact_row(
        self,
        query: str,
        params: tuple[Any, ...],
        artifact_id: str,
    ) -> ArtifactRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Artifact {artifact_id} does not exist")
        return self._row_to_artifact(row)

    @classmethod
    def _row_to_conversation(cls, row: Any) -> ConversationRecord:
        return ConversationRecord(
            id=str(row["id"]),
            title=row["title"],
            user_id=row.get("user_id"),
            session_id=row.get("session_id"),
            share_slug=row.get("share_slug"),
            is_public=bool(row.get("is_public")),
            views=int(row.get("views") or 0),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_message(cls, row: Any) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            tool_name=row.get("tool_name"),
            image_url=row.get("image_url"),
            tool_result_id=row.get("tool_result_id"),
            tool_call_id=row.get("tool_call_id"),
            is_error=bool(row.get("is_error")),
            is_incomplete=bool(row.get("is_incomplete")),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_artifact(cls, row: Any) -> ArtifactRecord:
        conversation_id = row.get("conversation_id")
        return ArtifactRecord(
            id=row["id"],
            conversation_id=str(conversation_id) if conversation_id is not None else None,
            message_id=row.get("message_id"),
            user_id=row.get("user_id"),
            name=row["name"],
            content=row["content"],
            share_slug=row.get("share_slug"),
            is_public=bool(row.get("is_public")),
            views=int(row.get("views") or 0),
            category=row.get("category"),
            timestamp=int(row.get("client_timestamp") or 0),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )
