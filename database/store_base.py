"""
Abstract Conversation Store — Interface for all storage backends.

Implementations:
  - SqlConversationStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - InMemoryConversationStore (dict-based, single-process, no persistence)
  - FileConversationStore     (JSON files on disk, single-process, durable)

Stores hand out copies: mutating a returned Conversation has no effect
until it is passed back to save_conversation().
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import ChannelType, Conversation, ConversationStatus, Message, ScheduledTimer


class ConversationStore(ABC):
    """Interface that all conversation store backends must implement."""

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        ...

    @abstractmethod
    async def find_active_conversation(
        self,
        flow_id: Optional[str],
        channel_id: str,
        external_user_id: str,
        channel_type: Optional[ChannelType] = None,
    ) -> Optional[Conversation]:
        """Most recent active conversation for this user; flow_id None searches all flows."""
        ...

    @abstractmethod
    async def find_latest_conversation(
        self,
        channel_id: str,
        external_user_id: str,
        channel_type: Optional[ChannelType] = None,
    ) -> Optional[Conversation]:
        """Most recently started conversation for this user, whatever its status."""
        ...

    @abstractmethod
    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        flow_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Conversation]:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def append_message(self, message: Message) -> None:
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> list[Message]:
        ...

    @abstractmethod
    async def save_transcript(self, conversation: Conversation, messages: list[Message]) -> None:
        ...

    @abstractmethod
    async def get_transcript(self, conversation_id: str) -> Optional[dict]:
        ...

    # ── Timers ────────────────────────────────────────────────

    @abstractmethod
    async def save_timer(self, timer: ScheduledTimer) -> None:
        ...

    @abstractmethod
    async def delete_timer(self, timer_id: str) -> None:
        ...

    @abstractmethod
    async def list_timers(self, conversation_id: Optional[str] = None) -> list[ScheduledTimer]:
        ...

    # ── Lifecycle ─────────────────────────────────────────────

    async def close(self) -> None:
        pass


def build_transcript(conversation: Conversation, messages: list[Message]) -> dict:
    """Serialisable transcript record shared by every backend."""
    return {
        "conversation_id": conversation.id,
        "flow_id": conversation.flow_id,
        "flow_version": conversation.flow_version,
        "channel_type": conversation.channel_type.value,
        "external_user_id": conversation.external_user_id,
        "status": conversation.status.value,
        "variables": conversation.user_data,
        "messages": [m.model_dump(mode="json") for m in messages],
    }
