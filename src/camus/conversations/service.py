"""Conversation, message and artifact operations.

Message and artifact saves are upserts keyed by a caller-stable id, so the
streaming client and the server can both save the same message without
creating duplicate rows.
"""

from __future__ import annotations

import logging
import time
from typing import Any, get_args
from uuid import uuid4

from camus.conversations.artifacts import (
    artifact_id_for,
    extract_artifact_content,
    extract_html_title,
    new_share_slug,
)
from camus.errors import NotFoundError, ValidationError
from camus.storage.base import ConversationStorage
from camus.storage.models import (
    ArtifactRecord,
    ArtifactWrite,
    ConversationRecord,
    MessageRecord,
    MessageRole,
    MessageWrite,
)

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_TITLE = "New Conversation"
MESSAGE_ROLES = frozenset(get_args(MessageRole))
MESSAGE_OPTION_FIELDS = ("tool_name", "image_url", "tool_result_id", "tool_call_id", "is_error")
ARTIFACT_UPDATE_FIELDS = ("name", "content", "category", "timestamp")
DEFAULT_GALLERY_LIMIT = 20
MAX_GALLERY_LIMIT = 50


class ConversationService:
    def __init__(self, *, storage: ConversationStorage) -> None:
        self.storage = storage

    def create_conversation(
        self,
        *,
        title: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ConversationRecord:
        return self.storage.create_conversation(
            title=title or DEFAULT_CONVERSATION_TITLE,
            user_id=user_id,
            session_id=session_id,
        )

    def list_conversations(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> list[ConversationRecord]:
        return self.storage.list_conversations(user_id=user_id, session_id=session_id)

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self.storage.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(
                "Conversation not found", details={"conversation_id": conversation_id}
            )
        return conversation

    def get_conversation_detail(
        self, conversation_id: str
    ) -> tuple[ConversationRecord, list[MessageRecord], list[ArtifactRecord]]:
        conversation = self.get_conversation(conversation_id)
        return (
            conversation,
            self.storage.list_messages(conversation_id),
            self.storage.list_artifacts(conversation_id),
        )

    def save_message(
        self,
        conversation_id: str,
        *,
        role: str | None,
        content: str | None,
        message_id: str | None = None,
        is_incomplete: bool = False,
        user_id: str | None = None,
        **options: Any,
    ) -> MessageRecord:
        """Save a message by role. Repeated saves of one id update in place."""
        if not content or not role:
            raise ValidationError("Content and role are required")
        if role not in MESSAGE_ROLES:
            raise ValidationError(
                f"Unknown message role: {role}", details={"allowed": sorted(MESSAGE_ROLES)}
            )
        self.get_conversation(conversation_id)

        if role == "user":
            is_incomplete = False
        message = MessageWrite(
            id=message_id or str(uuid4()),
            role=role,
            content=content,
            is_incomplete=bool(is_incomplete),
            **_message_options(options),
        )
        saved = self._upsert_message(conversation_id, message)

        if role == "assistant" and not message.is_incomplete:
            self._save_embedded_artifact(conversation_id, saved, user_id=user_id)
        return saved

    def update_message(
        self,
        conversation_id: str,
        *,
        message_id: str | None,
        content: str | None,
        role: str | None = None,
        is_incomplete: bool = False,
        **options: Any,
    ) -> MessageRecord:
        if not message_id:
            raise ValidationError("Conversation ID and message ID are required")
        if not content:
            raise ValidationError("Content is required")
        self.get_conversation(conversation_id)
        # Role only applies if the row does not exist yet.
        message = MessageWrite(
            id=message_id,
            role=role if role in MESSAGE_ROLES else "user",
            content=content,
            is_incomplete=bool(is_incomplete),
            **_message_options(options),
        )
        return self._upsert_message(conversation_id, message)

    def save_artifact(
        self,
        conversation_id: str,
        artifact: dict[str, Any] | None,
        *,
        message_id: str | None = None,
        user_id: str | None = None,
    ) -> ArtifactRecord:
        if not artifact or not artifact.get("name") or not artifact.get("content"):
            raise ValidationError("Artifact with name and content is required")
        self.get_conversation(conversation_id)
        content = str(artifact["content"])
        record = self.storage.upsert_artifact(
            ArtifactWrite(
                id=artifact.get("id") or artifact_id_for(conversation_id, content),
                conversation_id=conversation_id,
                message_id=message_id,
                user_id=user_id,
                name=str(artifact["name"]),
                content=content,
                category=artifact.get("category"),
                timestamp=int(artifact.get("timestamp") or time.time() * 1000),
            )
        )
        logger.info(
            "artifact_save event=upserted conversation_id=%s artifact_id=%s",
            conversation_id,
            record.id,
        )
        return record

    def update_artifact(
        self,
        conversation_id: str,
        artifact_id: str | None,
        updates: dict[str, Any],
    ) -> ArtifactRecord:
        if not artifact_id:
            raise ValidationError("Conversation ID and artifact ID are required")
        self.get_conversation(conversation_id)
        # Empty values are ignored, never written.
        changes = {key: updates[key] for key in ARTIFACT_UPDATE_FIELDS if updates.get(key)}
        try:
            if not changes:
                return self._require_artifact(artifact_id)
            return self.storage.update_artifact(artifact_id, changes)
        except KeyError as exc:
            raise NotFoundError("Artifact not found", details={"artifact_id": artifact_id}) from exc

    def share_artifact(self, artifact_id: str) -> ArtifactRecord:
        """Make public; the first share assigns the slug and later shares keep it."""
        try:
            record = self.storage.set_artifact_share(artifact_id, slug=new_share_slug())
        except KeyError as exc:
            raise NotFoundError("Artifact not found", details={"artifact_id": artifact_id}) from exc
        logger.info(
            "artifact_share event=shared artifact_id=%s slug=%s", artifact_id, record.share_slug
        )
        return record

    def unshare_artifact(self, artifact_id: str) -> ArtifactRecord:
        try:
            return self.storage.set_artifact_share(artifact_id, slug=None)
        except KeyError as exc:
            raise NotFoundError("Artifact not found", details={"artifact_id": artifact_id}) from exc

    def read_shared_artifact(self, slug: str) -> ArtifactRecord:
        """Public read; every read counts one view."""
        record = self.storage.get_public_artifact_by_slug(slug)
        if record is None:
            raise NotFoundError("Shared artifact not found", details={"slug": slug})
        try:
            return self.storage.increment_artifact_views(record.id)
        except KeyError as exc:
            raise NotFoundError("Shared artifact not found", details={"slug": slug}) from exc

    def list_public_artifacts(
        self,
        *,
        limit: int = DEFAULT_GALLERY_LIMIT,
        offset: int = 0,
        category: str | None = None,
    ) -> tuple[list[ArtifactRecord], list[str]]:
        """Gallery page of public artifacts, newest first, plus every public category."""
        limit = min(max(limit, 1), MAX_GALLERY_LIMIT)
        artifacts = self.storage.list_public_artifacts(
            limit=limit,
            offset=max(offset, 0),
            category=category or None,
        )
        return artifacts, self.storage.list_public_artifact_categories()

    def share_conversation(self, conversation_id: str) -> ConversationRecord:
        try:
            record = self.storage.set_conversation_share(conversation_id, slug=new_share_slug())
        except KeyError as exc:
            raise NotFoundError(
                "Conversation not found", details={"conversation_id": conversation_id}
            ) from exc
        logger.info(
            "conversation_share event=shared conversation_id=%s slug=%s",
            conversation_id,
            record.share_slug,
        )
        return record

    def unshare_conversation(self, conversation_id: str) -> ConversationRecord:
        try:
            return self.storage.set_conversation_share(conversation_id, slug=None)
        except KeyError as exc:
            raise NotFoundError(
                "Conversation not found", details={"conversation_id": conversation_id}
            ) from exc

    def read_shared_conversation(
        self, slug: str
    ) -> tuple[ConversationRecord, list[MessageRecord], list[ArtifactRecord]]:
        record = self.storage.get_public_conversation_by_slug(slug)
        if record is None:
            raise NotFoundError("Shared conversation not found", details={"slug": slug})
        try:
            record = self.storage.increment_conversation_views(record.id)
        except KeyError as exc:
            raise NotFoundError("Shared conversation not found", details={"slug": slug}) from exc
        return (
            record,
            self.storage.list_messages(record.id),
            self.storage.list_artifacts(record.id),
        )

    def _upsert_message(self, conversation_id: str, message: MessageWrite) -> MessageRecord:
        saved = self.storage.upsert_message(conversation_id, message)
        try:
            self.storage.touch_conversation(conversation_id)
        except KeyError:
            logger.warning("conversation_touch event=missing conversation_id=%s", conversation_id)
        return saved

    def _save_embedded_artifact(
        self,
        conversation_id: str,
        message: MessageRecord,
        *,
        user_id: str | None,
    ) -> None:
        content = extract_artifact_content(message.content)
        if content is None:
            return
        self.storage.upsert_artifact(
            ArtifactWrite(
                id=artifact_id_for(conversation_id, content),
                conversation_id=conversation_id,
                message_id=message.id,
                user_id=user_id,
                name=extract_html_title(content),
                content=content,
                timestamp=int(message.created_at.timestamp() * 1000),
            )
        )

    def _require_artifact(self, artifact_id: str) -> ArtifactRecord:
        record = self.storage.get_artifact(artifact_id)
        if record is None:
            raise KeyError(artifact_id)
        return record


def _message_options(options: dict[str, Any]) -> dict[str, Any]:
    picked = {key: options[key] for key in MESSAGE_OPTION_FIELDS if options.get(key) is not None}
    picked["is_error"] = bool(picked.get("is_error", False))
    return picked
