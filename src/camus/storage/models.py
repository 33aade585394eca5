"""Storage models shared by API and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from camus.tasks.status import TaskStatus

MessageRole = Literal["user", "assistant", "thinking", "tool", "tool-result"]


class TaskRecord(BaseModel):
    """Persisted task record."""

    id: str
    title: str = ""
    user_id: str | None = None
    session_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    params: dict[str, Any] = Field(default_factory=dict)
    stages: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    results: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class ConversationRecord(BaseModel):
    """Chat thread, optionally shared read-only under a public slug."""

    id: str
    title: str = "New Conversation"
    user_id: str | None = None
    session_id: str | None = None
    share_slug: str | None = None
    is_public: bool = False
    views: int = 0
    created_at: datetime
    updated_at: datetime


class MessageRecord(BaseModel):
    """One chat message. Unique per (conversation_id, id)."""

    id: str
    conversation_id: str
    role: MessageRole
    content: str
    tool_name: str | None = None
    image_url: str | None = None
    tool_result_id: str | None = None
    tool_call_id: str | None = None
    is_error: bool = False
    is_incomplete: bool = False
    created_at: datetime
    updated_at: datetime


class ArtifactRecord(BaseModel):
    """Generated content item, optionally shared under a public slug."""

    id: str
    conversation_id: str | None = None
    message_id: str | None = None
    user_id: str | None = None
    name: str
    content: str
    share_slug: str | None = None
    is_public: bool = False
    views: int = 0
    category: str | None = None
    timestamp: int = 0
    created_at: datetime
    updated_at: datetime


class MessageWrite(BaseModel):
    """Fields a writer supplies when saving a message."""

    id: str
    role: MessageRole
    content: str
    tool_name: str | None = None
    image_url: str | None = None
    tool_result_id: str | None = None
    tool_call_id: str | None = None
    is_error: bool = False
    is_incomplete: bool = False


class ArtifactWrite(BaseModel):
    """Fields a writer supplies when saving an artifact."""

    id: str
    conversation_id: str | None = None
    message_id: str | None = None
    user_id: str | None = None
    name: str
    content: str
    category: str | None = None
    timestamp: int = 0
