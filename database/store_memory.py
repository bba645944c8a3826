"""
InMemoryConversationStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlConversationStore
  - Safe under asyncio (single event loop, no awaits while mutating)
  - All data lost on process restart

Records are kept as JSON-mode dicts, so every load returns a fresh copy.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional

import structlog

from database.store_base import ConversationStore, build_transcript
from models.schemas import ChannelType, Conversation, ConversationStatus, Message, ScheduledTimer

logger = structlog.get_logger()


class InMemoryConversationStore(ConversationStore):

    def __init__(self):
        self._conversations: dict[str, dict] = {}               # id → conversation dict
        self._messages: dict[str, list[dict]] = defaultdict(list)  # conv_id → [msg dicts]
        self._transcripts: dict[str, dict] = {}                 # conv_id → transcript
        self._timers: dict[str, dict] = {}                      # timer id → timer dict

        # Index
        self._user_index: dict[str, list[str]] = defaultdict(list)  # "channel_id:user" → [conv ids]
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _user_key(channel_id: str, external_user_id: str) -> str:
        return f"{channel_id}:{external_user_id}"

    # ── Conversations ─────────────────────────────────────

    async def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = self._conversations.get(conversation_id)
        return Conversation.model_validate(data) if data else None

    async def save_conversation(self, conversation: Conversation) -> None:
        is_new = conversation.id not in self._conversations
        self._conversations[conversation.id] = conversation.model_dump(mode="json")
        if is_new:
            key = self._user_key(conversation.channel_id, conversation.external_user_id)
            self._user_index[key].append(conversation.id)

    async def find_active_conversation(
        self,
        flow_id: Optional[str],
        channel_id: str,
        external_user_id: str,
        channel_type: Optional[ChannelType] = None,
    ) -> Optional[Conversation]:
        key = self._user_key(channel_id, external_user_id)
        for conv_id in reversed(self._user_index.get(key, [])):
            data = self._conversations.get(conv_id)
            if not data or data["status"] != ConversationStatus.ACTIVE.value:
                continue
            if flow_id is not None and data["flow_id"] != flow_id:
                continue
            if channel_type is not None and data["channel_type"] != channel_type.value:
                continue
            return Conversation.model_validate(data)
        return None

    async def find_latest_conversation(
        self,
        channel_id: str,
        external_user_id: str,
        channel_type: Optional[ChannelType] = None,
    ) -> Optional[Conversation]:
        key = self._user_key(channel_id, external_user_id)
        for conv_id in reversed(self._user_index.get(key, [])):
            data = self._conversations.get(conv_id)
            if not data:
                continue
            if channel_type is not None and data["channel_type"] != channel_type.value:
                continue
            return Conversation.model_validate(data)
        return None

    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        flow_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Conversation]:
        results = []
        for data in self._conversations.values():
            if status is not None and data["status"] != status.value:
                continue
            if flow_id is not None and data["flow_id"] != flow_id:
                continue
            results.append(Conversation.model_validate(data))
        results.sort(key=lambda c: c.updated_at, reverse=True)
        return results[:limit]

    # ── Messages ──────────────────────────────────────────

    async def append_message(self, message: Message) -> None:
        self._messages[message.conversation_id].append(message.model_dump(mode="json"))

    async def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> list[Message]:
        rows = self._messages.get(conversation_id, [])
        if limit:
            rows = rows[-limit:]
        return [Message.model_validate(m) for m in rows]

    async def save_transcript(self, conversation: Conversation, messages: list[Message]) -> None:
        self._transcripts[conversation.id] = build_transcript(conversation, messages)
        logger.info("transcript_saved", conversation_id=conversation.id, messages=len(messages))

    async def get_transcript(self, conversation_id: str) -> Optional[dict]:
        return self._transcripts.get(conversation_id)

    # ── Timers ────────────────────────────────────────────

    async def save_timer(self, timer: ScheduledTimer) -> None:
        self._timers[timer.id] = timer.model_dump(mode="json")

    async def delete_timer(self, timer_id: str) -> None:
        self._timers.pop(timer_id, None)

    async def list_timers(self, conversation_id: Optional[str] = None) -> list[ScheduledTimer]:
        timers = [ScheduledTimer.model_validate(t) for t in self._timers.values()]
        if conversation_id is not None:
            timers = [t for t in timers if t.conversation_id == conversation_id]
        return sorted(timers, key=lambda t: t.due_at)

    # ── Stats ─────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "conversations": len(self._conversations),
            "messages": sum(len(v) for v in self._messages.values()),
            "transcripts": len(self._transcripts),
            "timers": len(self._timers),
        }
