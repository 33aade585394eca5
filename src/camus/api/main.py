"""FastAPI app entrypoint for camus."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from camus.api.schemas import (
    ArtifactOut,
    ArtifactResponse,
    CallbackResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationOut,
    ConversationResponse,
    ConversationShareResponse,
    CreateConversationRequest,
    CreatedTask,
    CreateTaskRequest,
    CreateTaskResponse,
    DemoCasesResponse,
    DialogRequest,
    DialogResponse,
    GenerateTitleRequest,
    MessageOut,
    MessageResponse,
    Pagination,
    PatchedTask,
    PatchTaskResponse,
    PlanRequest,
    PublicArtifactsResponse,
    SaveArtifactRequest,
    SaveMessageRequest,
    SharedArtifact,
    SharedConversation,
    ShareResponse,
    TaskDetail,
    TaskDetailResponse,
    TaskListResponse,
    TaskSummary,
    TitleResponse,
    UpdateArtifactRequest,
    UpdateTaskRequest,
)
from camus.backend.client import BackendClient, TaskBackend
from camus.config.log import configure_logging
from camus.config.settings import Settings, get_settings
from camus.conversations.artifacts import as_html_document
from camus.conversations.service import (
    DEFAULT_GALLERY_LIMIT,
    MAX_GALLERY_LIMIT,
    ConversationService,
)
from camus.errors import CamusError, ValidationError
from camus.llm import LLMAdapter, build_llm_adapter
from camus.storage.base import ConversationStorage, TaskStorage
from camus.storage.memory import InMemoryConversationStorage, InMemoryTaskStorage
from camus.storage.postgres import PostgresConversationStorage, PostgresTaskStorage
from camus.tasks.assistant import TaskAssistant
from camus.tasks.service import CallbackPayload, TaskService

logger = logging.getLogger(__name__)


def _build_storages(settings: Settings) -> tuple[TaskStorage, ConversationStorage]:
    database_url = settings.resolved_database_url()
    if database_url:
        return (
            PostgresTaskStorage(database_url),
            PostgresConversationStorage(database_url),
        )
    if settings.app_env != "dev":
        raise RuntimeError(
            "Missing database URL. Set CAMUS_DATABASE_URL or DATABASE_URL "
            "before starting the app."
        )
    logger.warning("storage event=in_memory reason=no_database_url app_env=%s", settings.app_env)
    return InMemoryTaskStorage(), InMemoryConversationStorage()


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    task_storage: TaskStorage | None,
    conversation_storage: ConversationStorage | None,
    backend: TaskBackend | None,
    llm_adapter: LLMAdapter | None,
) -> None:
    if not hasattr(app.state, "task_storage"):
        if task_storage is None or conversation_storage is None:
            built_tasks, built_conversations = _build_storages(settings)
            task_storage = task_storage or built_tasks
            conversation_storage = conversation_storage or built_conversations
        task_storage.migrate()
        conversation_storage.migrate()
        app.state.task_storage = task_storage
        app.state.conversation_storage = conversation_storage

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "task_service"):
        app.state.backend = backend or BackendClient(
            base_url=settings.resolved_backend_endpoint(),
            callback_endpoint=settings.resolved_callback_endpoint(),
            timeout_s=settings.backend_timeout_s,
        )
        app.state.task_service = TaskService(
            storage=app.state.task_storage,
            backend=app.state.backend,
        )
        app.state.conversation_service = ConversationService(
            storage=app.state.conversation_storage,
        )
        app.state.assistant = TaskAssistant(
            llm_adapter=llm_adapter or build_llm_adapter(settings),
            timeout_s=settings.llm_timeout_s,
        )


def create_app(
    *,
    task_storage: TaskStorage | None = None,
    conversation_storage: ConversationStorage | None = None,
    backend: TaskBackend | None = None,
    llm_adapter: LLMAdapter | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)
    injected = task_storage is not None and conversation_storage is not None

    def ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            task_storage=task_storage,
            conversation_storage=conversation_storage,
            backend=backend,
            llm_adapter=llm_adapter,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure(app)
        yield

    app_lifespan = lifespan if not injected else None
    app = FastAPI(title=settings.app_name, debug=settings.app_debug, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if injected:
        ensure(app)

    def _state(request: Request) -> Any:
        if not hasattr(request.app.state, "task_service"):
            ensure(request.app)
        return request.app.state

    def _tasks(request: Request) -> TaskService:
        return _state(request).task_service

    def _conversations(request: Request) -> ConversationService:
        return _state(request).conversation_service

    @app.exception_handler(CamusError)
    async def camus_error_handler(request: Request, exc: CamusError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "request event=unhandled method=%s path=%s", request.method, request.url.path
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    # Tasks

    @app.get("/api/task", response_model=TaskListResponse)
    def list_tasks(
        request: Request,
        session_id: str | None = Query(default=None, alias="sessionId"),
        x_user_id: str | None = Header(default=None),
    ) -> TaskListResponse:
        records = _tasks(request).list_tasks(user_id=x_user_id, session_id=session_id)
        return TaskListResponse(tasks=[TaskSummary.model_validate(r.model_dump()) for r in records])

    @app.post("/api/task", response_model=CreateTaskResponse)
    def create_task(
        payload: CreateTaskRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        x_user_id: str | None = Header(default=None),
    ) -> CreateTaskResponse:
        service = _tasks(request)
        record = service.create_task(
            topic=payload.topic,
            user_id=x_user_id,
            session_id=payload.session_id,
        )
        background_tasks.add_task(
            _state(request).assistant.generate_title_in_background,
            service.storage,
            record.id,
            payload.topic or "",
        )
        return CreateTaskResponse(task=CreatedTask.from_record(record))

    @app.post("/api/task/plan")
    def plan_task(payload: PlanRequest, request: Request) -> Any:
        return _state(request).backend.fetch_plan(payload.params)

    @app.post("/api/task/generate-title", response_model=TitleResponse)
    def generate_title(payload: GenerateTitleRequest, request: Request) -> TitleResponse:
        return TitleResponse(title=_state(request).assistant.generate_title(payload.topic or ""))

    @app.post("/api/task/dialog", response_model=DialogResponse)
    def dialog(payload: DialogRequest, request: Request) -> DialogResponse:
        reply = _state(request).assistant.generate_dialog(
            params=payload.params,
            target_field=payload.target_field,
            messages=[message.model_dump() for message in payload.messages],
        )
        return DialogResponse(content=reply.content, new_value=reply.new_value)

    @app.get("/api/task/{task_id}", response_model=TaskDetailResponse)
    def get_task(task_id: str, request: Request) -> TaskDetailResponse:
        record = _tasks(request).get_task(task_id)
        return TaskDetailResponse(task=TaskDetail.model_validate(record.model_dump()))

    @app.patch("/api/task/{task_id}", response_model=PatchTaskResponse)
    def update_task(
        task_id: str,
        request: Request,
        payload: UpdateTaskRequest,
        start_progress: bool = Query(default=False, alias="startProgress"),
        session_id: str | None = Query(default=None, alias="sessionId"),
        x_user_id: str | None = Header(default=None),
    ) -> PatchTaskResponse:
        service = _tasks(request)
        fields = {
            key: value
            for key, value in payload.model_dump(exclude_unset=True).items()
            if value is not None
        }
        if not fields:
            raise ValidationError("No fields to update")
        if start_progress:
            # The status change is made by the server after dispatch.
            fields.pop("status", None)
            if fields:
                service.update_task(task_id, fields)
            record = service.start_progress(task_id, user_id=x_user_id, session_id=session_id)
        else:
            record = service.update_task(task_id, fields)
        return PatchTaskResponse(task=PatchedTask.model_validate(record.model_dump()))

    @app.post("/api/task/{task_id}/callback", response_model=CallbackResponse)
    def task_callback(task_id: str, payload: CallbackPayload, request: Request) -> CallbackResponse:
        return CallbackResponse(success=_tasks(request).handle_callback(task_id, payload))

    # Conversations

    @app.get("/api/conversations", response_model=ConversationListResponse)
    def list_conversations(
        request: Request,
        session_id: str | None = Query(default=None, alias="sessionId"),
        x_user_id: str | None = Header(default=None),
    ) -> ConversationListResponse:
        records = _conversations(request).list_conversations(
            user_id=x_user_id,
            session_id=session_id,
        )
        return ConversationListResponse(
            conversations=[ConversationOut.model_validate(r.model_dump()) for r in records]
        )

    @app.post("/api/conversations", response_model=ConversationResponse)
    def create_conversation(
        payload: CreateConversationRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> ConversationResponse:
        record = _conversations(request).create_conversation(
            title=payload.title,
            user_id=x_user_id,
            session_id=payload.session_id,
        )
        conversation = ConversationOut.model_validate(record.model_dump())
        return ConversationResponse(conversation=conversation)

    @app.get("/api/conversations/{conversation_id}", response_model=ConversationDetailResponse)
    def get_conversation(conversation_id: str, request: Request) -> ConversationDetailResponse:
        conversation, messages, artifacts = _conversations(request).get_conversation_detail(
            conversation_id
        )
        return ConversationDetailResponse(
            conversation=ConversationOut.model_validate(conversation.model_dump()),
            messages=[MessageOut.model_validate(m.model_dump()) for m in messages],
            artifacts=[ArtifactOut.model_validate(a.model_dump()) for a in artifacts],
        )

    @app.post("/api/conversations/{conversation_id}/messages", response_model=MessageResponse)
    def save_message(
        conversation_id: str,
        payload: SaveMessageRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> MessageResponse:
        options = payload.model_dump(exclude={"role", "content", "message_id", "is_incomplete"})
        record = _conversations(request).save_message(
            conversation_id,
            role=payload.role,
            content=payload.content,
            message_id=payload.message_id,
            is_incomplete=payload.is_incomplete,
            user_id=x_user_id,
            **options,
        )
        return MessageResponse(message=MessageOut.model_validate(record.model_dump()))

    @app.put("/api/conversations/{conversation_id}/messages", response_model=MessageResponse)
    def update_message(
        conversation_id: str,
        payload: SaveMessageRequest,
        request: Request,
    ) -> MessageResponse:
        options = payload.model_dump(exclude={"role", "content", "message_id", "is_incomplete"})
        record = _conversations(request).update_message(
            conversation_id,
            message_id=payload.message_id,
            content=payload.content,
            role=payload.role,
            is_incomplete=payload.is_incomplete,
            **options,
        )
        return MessageResponse(message=MessageOut.model_validate(record.model_dump()))

    @app.post("/api/conversations/{conversation_id}/artifacts", response_model=ArtifactResponse)
    def save_artifact(
        conversation_id: str,
        payload: SaveArtifactRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> ArtifactResponse:
        record = _conversations(request).save_artifact(
            conversation_id,
            payload.artifact.model_dump(exclude_none=True) if payload.artifact else None,
            message_id=payload.message_id,
            user_id=x_user_id,
        )
        return ArtifactResponse(artifact=ArtifactOut.model_validate(record.model_dump()))

    @app.put("/api/conversations/{conversation_id}/artifacts", response_model=ArtifactResponse)
    def update_artifact(
        conversation_id: str,
        payload: UpdateArtifactRequest,
        request: Request,
    ) -> ArtifactResponse:
        record = _conversations(request).update_artifact(
            conversation_id,
            payload.artifact_id,
            payload.updates,
        )
        return ArtifactResponse(artifact=ArtifactOut.model_validate(record.model_dump()))

    @app.post("/api/artifacts/{artifact_id}/share", response_model=ShareResponse)
    def share_artifact(artifact_id: str, request: Request) -> ShareResponse:
        record = _conversations(request).share_artifact(artifact_id)
        base_url = settings.resolved_public_base_url() or str(request.base_url).rstrip("/")
        return ShareResponse(
            share_url=f"{base_url}/shared/artifact/{record.share_slug}",
            artifact=ArtifactOut.model_validate(record.model_dump()),
        )

    @app.delete("/api/artifacts/{artifact_id}/share", response_model=ShareResponse)
    def unshare_artifact(artifact_id: str, request: Request) -> ShareResponse:
        record = _conversations(request).unshare_artifact(artifact_id)
        return ShareResponse(artifact=ArtifactOut.model_validate(record.model_dump()))

    @app.get("/api/shared/artifact/{slug}", response_model=SharedArtifact)
    def read_shared_artifact(slug: str, request: Request) -> SharedArtifact:
        record = _conversations(request).read_shared_artifact(slug)
        content = as_html_document(record.name, record.content)
        return SharedArtifact.from_record(record, content=content)

    @app.get("/api/artifacts/public", response_model=PublicArtifactsResponse)
    def list_public_artifacts(
        request: Request,
        limit: int = Query(default=DEFAULT_GALLERY_LIMIT),
        offset: int = Query(default=0),
        category: str | None = Query(default=None),
    ) -> PublicArtifactsResponse:
        limit = min(max(limit, 1), MAX_GALLERY_LIMIT)
        offset = max(offset, 0)
        artifacts, categories = _conversations(request).list_public_artifacts(
            limit=limit,
            offset=offset,
            category=category,
        )
        return PublicArtifactsResponse(
            artifacts=[ArtifactOut.model_validate(a.model_dump()) for a in artifacts],
            categories=categories,
            pagination=Pagination(
                limit=limit,
                offset=offset,
                has_more=len(artifacts) == limit,
            ),
        )

    @app.post(
        "/api/conversations/{conversation_id}/share",
        response_model=ConversationShareResponse,
    )
    def share_conversation(conversation_id: str, request: Request) -> ConversationShareResponse:
        record = _conversations(request).share_conversation(conversation_id)
        base_url = settings.resolved_public_base_url() or str(request.base_url).rstrip("/")
        return ConversationShareResponse(
            share_id=record.share_slug,
            share_url=f"{base_url}/shared/conversation/{record.share_slug}",
            conversation=ConversationOut.model_validate(record.model_dump()),
        )

    @app.delete(
        "/api/conversations/{conversation_id}/share",
        response_model=ConversationShareResponse,
    )
    def unshare_conversation(conversation_id: str, request: Request) -> ConversationShareResponse:
        record = _conversations(request).unshare_conversation(conversation_id)
        return ConversationShareResponse(
            conversation=ConversationOut.model_validate(record.model_dump())
        )

    @app.get("/api/shared/conversation/{slug}", response_model=SharedConversation)
    def read_shared_conversation(slug: str, request: Request) -> SharedConversation:
        conversation, messages, artifacts = _conversations(request).read_shared_conversation(slug)
        return SharedConversation(
            id=conversation.id,
            share_id=conversation.share_slug,
            title=conversation.title,
            messages=[MessageOut.model_validate(m.model_dump()) for m in messages],
            artifacts=[ArtifactOut.model_validate(a.model_dump()) for a in artifacts],
            views=conversation.views,
            created_at=conversation.created_at,
        )

    @app.get("/api/demo-cases", response_model=DemoCasesResponse)
    def demo_cases(request: Request) -> DemoCasesResponse:
        return DemoCasesResponse(demo_case_ids=list(_state(request).settings.demo_case_ids))

    return app


app = create_app()
