"""
SqlConversationStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

JSON columns carry variables, node state, and processed event ids so no
dialect-specific types are needed. SQLite returns naive datetimes; every
row conversion re-attaches UTC.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, func, select

from database.models import ConversationRow, MessageRow, TimerRow, TranscriptRow
from database.session import close_db, get_session, init_db
from database.store_base import ConversationStore, build_transcript
from models.schemas import ChannelType, Conversation, ConversationStatus, Message, ScheduledTimer

logger = structlog.get_logger()


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SqlConversationStore(ConversationStore):
    """
    Persistent conversation store backed by any SQLAlchemy-supported database.
    Call initialize() once before use to create the tables.
    """

    def __init__(self, db_url: str = None):
        self._db_url = db_url

    async def initialize(self) -> None:
        await init_db(self._db_url)

    async def close(self) -> None:
        await close_db()

    # ── Row conversion ─────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            flow_id=row.flow_id,
            flow_version=row.flow_version,
            channel_id=row.channel_id,
            channel_type=ChannelType(row.channel_type),
            external_user_id=row.external_user_id,
            current_node_id=row.current_node_id,
            status=ConversationStatus(row.status),
            waiting_for=row.waiting_for,
            user_data=row.user_data or {},
            node_state=row.node_state or {},
            processed_event_ids=row.processed_event_ids or [],
            end_reason=row.end_reason or "",
            wake_at=_aware(row.wake_at),
            started_at=_aware(row.started_at),
            updated_at=_aware(row.updated_at),
            ended_at=_aware(row.ended_at),
            metadata=row.metadata_ or {},
        )

    @staticmethod
    def _apply(row: ConversationRow, conv: Conversation) -> None:
        dumped = conv.model_dump(mode="json")
        row.flow_id = conv.flow_id
        row.flow_version = conv.flow_version
        row.channel_id = conv.channel_id
        row.channel_type = conv.channel_type.value
        row.external_user_id = conv.external_user_id
        row.current_node_id = conv.current_node_id
        row.status = conv.status.value
        row.waiting_for = conv.waiting_for.value
        row.end_reason = conv.end_reason
        row.user_data = dumped["user_data"]
        row.node_state = dumped["node_state"]
        row.processed_event_ids = list(conv.processed_event_ids)
        row.metadata_ = dumped["metadata"]
        row.wake_at = conv.wake_at
        row.started_at = conv.started_at
        row.updated_at = conv.updated_at
        row.ended_at = conv.ended_at

    # ── Conversations ──────────────────────────────────────

    async def load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def save_conversation(self, conversation: Conversation) -> None:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation.id)
            if row is None:
                row = ConversationRow(id=conversation.id)
                db.add(row)
            self._apply(row, conversation)

    async def find_active_conversation(
        self,
        flow_id: Optional[str],
        channel_id: str,
        external_user_id: str,
        channel_type: Optional[ChannelType] = None,
    ) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = select(ConversationRow).where(
                ConversationRow.channel_id == channel_id,
                ConversationRow.external_user_id == external_user_id,
                ConversationRow.status == ConversationStatus.ACTIVE.value,
            )
            if flow_id is not None:
                stmt = stmt.where(ConversationRow.flow_id == flow_id)
            if channel_type is not None:
                stmt = stmt.where(ConversationRow.channel_type == channel_type.value)
            stmt = stmt.order_by(ConversationRow.started_at.desc()).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def find_latest_conversation(
        self,
        channel_id: str,
        external_user_id: str,
        channel_type: Optional[ChannelType] = None,
    ) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = select(ConversationRow).where(
                ConversationRow.channel_id == channel_id,
                ConversationRow.external_user_id == external_user_id,
            )
            if channel_type is not None:
                stmt = stmt.where(ConversationRow.channel_type == channel_type.value)
            stmt = stmt.order_by(ConversationRow.started_at.desc()).limit(1)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        flow_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Conversation]:
        async with get_session() as db:
            stmt = select(ConversationRow)
            if status is not None:
                stmt = stmt.where(ConversationRow.status == status.value)
            if flow_id is not None:
                stmt = stmt.where(ConversationRow.flow_id == flow_id)
            stmt = stmt.order_by(ConversationRow.updated_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars()]

    # ── Messages ───────────────────────────────────────────

    async def append_message(self, message: Message) -> None:
        async with get_session() as db:
            count = await db.scalar(
                select(func.count()).select_from(MessageRow)
                .where(MessageRow.conversation_id == message.conversation_id)
            )
            db.add(MessageRow(
                id=message.id,
                seq=(count or 0) + 1,
                conversation_id=message.conversation_id,
                node_id=message.node_id,
                direction=message.direction.value,
                content=message.content,
                media_url=message.media_url,
                metadata_=message.metadata,
                timestamp=message.timestamp,
            ))

    async def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> list[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.seq)
            )
            rows = list((await db.execute(stmt)).scalars())
        if limit:
            rows = rows[-limit:]
        return [
            Message(
                id=r.id, conversation_id=r.conversation_id, node_id=r.node_id,
                direction=r.direction, content=r.content or "", media_url=r.media_url,
                metadata=r.metadata_ or {}, timestamp=_aware(r.timestamp),
            )
            for r in rows
        ]

    async def save_transcript(self, conversation: Conversation, messages: list[Message]) -> None:
        async with get_session() as db:
            row = await db.get(TranscriptRow, conversation.id)
            if row is None:
                row = TranscriptRow(conversation_id=conversation.id)
                db.add(row)
            row.flow_id = conversation.flow_id
            row.body = build_transcript(conversation, messages)
        logger.info("transcript_saved", conversation_id=conversation.id, messages=len(messages))

    async def get_transcript(self, conversation_id: str) -> Optional[dict]:
        async with get_session() as db:
            row = await db.get(TranscriptRow, conversation_id)
            return row.body if row else None

    # ── Timers ─────────────────────────────────────────────

    async def save_timer(self, timer: ScheduledTimer) -> None:
        async with get_session() as db:
            row = await db.get(TimerRow, timer.id)
            if row is None:
                row = TimerRow(id=timer.id)
                db.add(row)
            row.conversation_id = timer.conversation_id
            row.kind = timer.kind
            row.node_id = timer.node_id
            row.due_at = timer.due_at

    async def delete_timer(self, timer_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(TimerRow).where(TimerRow.id == timer_id))

    async def list_timers(self, conversation_id: Optional[str] = None) -> list[ScheduledTimer]:
        async with get_session() as db:
            stmt = select(TimerRow).order_by(TimerRow.due_at)
            if conversation_id is not None:
                stmt = stmt.where(TimerRow.conversation_id == conversation_id)
            result = await db.execute(stmt)
            return [
                ScheduledTimer(id=r.id, conversation_id=r.conversation_id, kind=r.kind,
                               node_id=r.node_id, due_at=_aware(r.due_at))
                for r in result.scalars()
            ]
