"""Storage backends and models."""

from camus.storage.base import ConversationStorage, StatusConflict, TaskStorage
from camus.storage.memory import InMemoryConversationStorage, InMemoryTaskStorage
from camus.storage.models import (
    ArtifactRecord,
    ArtifactWrite,
    ConversationRecord,
    MessageRecord,
    MessageWrite,
    TaskRecord,
)
from camus.storage.postgres import PostgresConversationStorage, PostgresTaskStorage

__all__ = [
    "ArtifactRecord",
    "ArtifactWrite",
    "ConversationRecord",
    "ConversationStorage",
    "InMemoryConversationStorage",
    "InMemoryTaskStorage",
    "MessageRecord",
    "MessageWrite",
    "PostgresConversationStorage",
    "PostgresTaskStorage",
    "StatusConflict",
    "TaskRecord",
    "TaskStorage",
]
