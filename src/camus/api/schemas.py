"""Request and response bodies for the HTTP API.

Wire keys are camelCase; Python attributes stay snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from camus.storage.models import ArtifactRecord, MessageRole, TaskRecord
from camus.tasks.status import TaskStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Tasks


class CreateTaskRequest(CamelModel):
    session_id: str | None = None
    topic: str | None = None


class UpdateTaskRequest(CamelModel):
    """PATCH body. Only keys the client actually sent are applied."""

    title: str | None = None
    params: dict[str, Any] | None = None
    status: str | None = None
    stages: dict[str, Any] | None = None


class PlanRequest(CamelModel):
    params: dict[str, Any] = Field(default_factory=dict)


class GenerateTitleRequest(CamelModel):
    topic: str | None = None


class DialogMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class DialogRequest(CamelModel):
    params: dict[str, Any] = Field(default_factory=dict)
    messages: list[DialogMessage] = Field(default_factory=list)
    target_field: str


class TaskSummary(CamelModel):
    id: str
    title: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime


class CreatedTask(TaskSummary):
    topic: str | None = None

    @classmethod
    def from_record(cls, record: TaskRecord) -> CreatedTask:
        return cls(**record.model_dump(), topic=record.params.get("topic"))


class TaskDetail(CamelModel):
    id: str
    title: str
    user_id: str | None = None
    session_id: str | None = None
    status: TaskStatus
    params: dict[str, Any]
    stages: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    results: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class PatchedTask(CamelModel):
    id: str
    title: str
    status: TaskStatus
    params: dict[str, Any]
    updated_at: datetime


class TaskListResponse(CamelModel):
    tasks: list[TaskSummary]


class CreateTaskResponse(CamelModel):
    task: CreatedTask


class TaskDetailResponse(CamelModel):
    task: TaskDetail


class PatchTaskResponse(CamelModel):
    task: PatchedTask


class CallbackResponse(CamelModel):
    success: bool


class TitleResponse(CamelModel):
    title: str


class DialogResponse(BaseModel):
    # `new_value` keeps its snake_case key on the wire.
    role: Literal["assistant"] = "assistant"
    content: str
    new_value: str = ""


# Conversations


class CreateConversationRequest(CamelModel):
    title: str | None = None
    session_id: str | None = None


class SaveMessageRequest(CamelModel):
    role: str | None = None
    content: str | None = None
    message_id: str | None = None
    is_incomplete: bool = False
    tool_name: str | None = None
    image_url: str | None = None
    tool_result_id: str | None = None
    tool_call_id: str | None = None
    is_error: bool = False


class ArtifactPayload(CamelModel):
    id: str | None = None
    name: str | None = None
    content: str | None = None
    category: str | None = None
    timestamp: int | None = None


class SaveArtifactRequest(CamelModel):
    artifact: ArtifactPayload | None = None
    message_id: str | None = None


class UpdateArtifactRequest(CamelModel):
    artifact_id: str | None = None
    updates: dict[str, Any] = Field(default_factory=dict)


class ConversationOut(CamelModel):
    id: str
    title: str
    user_id: str | None = None
    session_id: str | None = None
    share_slug: str | None = None
    is_public: bool = False
    views: int = 0
    created_at: datetime
    updated_at: datetime


class MessageOut(CamelModel):
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


class ArtifactOut(CamelModel):
    id: str
    conversation_id: str | None = None
    message_id: str | None = None
    name: str
    content: str
    share_slug: str | None = None
    is_public: bool = False
    views: int = 0
    category: str | None = None
    timestamp: int = 0
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(CamelModel):
    conversations: list[ConversationOut]


class ConversationResponse(CamelModel):
    conversation: ConversationOut


class ConversationDetailResponse(CamelModel):
    conversation: ConversationOut
    messages: list[MessageOut]
    artifacts: list[ArtifactOut]


class MessageResponse(CamelModel):
    message: MessageOut


class ArtifactResponse(CamelModel):
    artifact: ArtifactOut


class ShareResponse(CamelModel):
    success: bool = True
    share_url: str | None = None
    artifact: ArtifactOut


class SharedArtifact(CamelModel):
    id: str
    name: str
    content: str
    slug: str | None = None
    views: int
    created_at: datetime

    @classmethod
    def from_record(cls, record: ArtifactRecord, *, content: str) -> SharedArtifact:
        return cls(
            id=record.id,
            name=record.name,
            content=content,
            slug=record.share_slug,
            views=record.views,
            created_at=record.created_at,
        )


class ConversationShareResponse(CamelModel):
    success: bool = True
    share_id: str | None = None
    share_url: str | None = None
    conversation: ConversationOut


class SharedConversation(CamelModel):
    id: str
    share_id: str | None = None
    title: str
    messages: list[MessageOut]
    artifacts: list[ArtifactOut]
    views: int
    created_at: datetime


class Pagination(CamelModel):
    limit: int
    offset: int
    has_more: bool


class PublicArtifactsResponse(CamelModel):
    artifacts: list[ArtifactOut]
    categories: list[str]
    pagination: Pagination


class DemoCasesResponse(CamelModel):
    success: bool = True
    demo_case_ids: list[str]
