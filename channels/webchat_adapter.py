"""
Webchat Channel Adapter — in-process outbox with optional WebSocket push.

Provides:
- Per-user outbox that the HTTP API (or a test) can drain
- WebSocket connection registration with superseding
- Offline queue drained on reconnect
- Client event routing (message, typing, heartbeat)
"""
from __future__ import annotations

import json
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from channels.base import ChannelAdapter, ChannelError
from models.schemas import ChannelType, Conversation, EventKind, InboundEvent, OutboundAction

logger = structlog.get_logger()


class ConnectionState:
    """Tracks a single WebSocket connection."""

    def __init__(self, user_id: str, ws: Any):
        self.user_id = user_id
        self.ws = ws
        self.connected_at = datetime.now(timezone.utc)
        self.last_heartbeat = time.monotonic()


class WebchatAdapter(ChannelAdapter):
    """
    Embeddable chat widget channel.

    Every outbound action lands in the user's outbox; when the user holds a
    WebSocket connection the payload is pushed immediately as well.
    """

    channel_type = ChannelType.WEBCHAT

    def __init__(self, max_outbox: int = 200, **kwargs):
        super().__init__(**kwargs)
        self._connections: dict[str, ConnectionState] = {}
        self._outbox: dict[str, deque[dict[str, Any]]] = {}
        self._max_outbox = max_outbox

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._max_outbox = int(self._config.get("max_outbox", self._max_outbox))

    # ── Connection management ─────────────────────────────────

    async def register_connection(self, user_id: str, ws: Any) -> None:
        existing = self._connections.get(user_id)
        if existing:
            try:
                await existing.ws.close()
            except Exception as e:
                logger.debug("connection_close_failed", user_id=user_id, error=str(e))
            logger.info("connection_superseded", user_id=user_id)
        self._connections[user_id] = ConnectionState(user_id, ws)
        logger.info("connection_registered", user_id=user_id)

        for payload in self.drain(user_id):
            await ws.send_text(json.dumps(payload))

    async def remove_connection(self, user_id: str) -> None:
        self._connections.pop(user_id, None)
        logger.info("connection_removed", user_id=user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    # ── Outbox ────────────────────────────────────────────────

    def _enqueue(self, user_id: str, payload: dict[str, Any]) -> None:
        queue = self._outbox.setdefault(user_id, deque(maxlen=self._max_outbox))
        queue.append(payload)

    def peek(self, user_id: str) -> list[dict[str, Any]]:
        return list(self._outbox.get(user_id, ()))

    def drain(self, user_id: str) -> list[dict[str, Any]]:
        queue = self._outbox.pop(user_id, None)
        return list(queue) if queue else []

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        user_id = conversation.external_user_id
        if not user_id:
            raise ChannelError("No webchat user id", self.channel_type.value)

        msg_id = uuid.uuid4().hex
        payload = {
            "type": action.kind.value,
            "message_id": msg_id,
            "conversation_id": conversation.id,
            "text": action.text,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if action.media_url:
            payload["media_url"] = action.media_url
            payload["media_type"] = action.media_type
        if action.options:
            payload["options"] = [o.model_dump() for o in action.options]
        if action.params:
            payload["params"] = action.params

        conn = self._connections.get(user_id)
        if conn is None:
            self._enqueue(user_id, payload)
            return {"status": "queued", "channel_message_id": msg_id}

        try:
            await conn.ws.send_text(json.dumps(payload))
            return {"status": "delivered", "channel_message_id": msg_id}
        except Exception as e:
            # Connection broken: drop it and keep the payload for reconnect
            self._connections.pop(user_id, None)
            self._enqueue(user_id, payload)
            logger.warning("webchat_push_failed", user_id=user_id, error=str(e))
            return {"status": "queued", "channel_message_id": msg_id}

    # ── Client events ─────────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        event_type = payload.get("type", "message")
        if event_type in ("heartbeat", "typing", "ack"):
            return None
        if event_type in ("close", "end"):
            payload = {**payload, "kind": EventKind.CLOSE.value, "type": EventKind.CLOSE.value}
        elif "text" not in payload and "content" in payload:
            payload = {**payload, "text": payload["content"]}
        return super().parse_inbound(payload)

    async def handle_client_event(self, user_id: str, event: dict[str, Any],
                                  channel_id: str = "") -> Optional[InboundEvent]:
        conn = self._connections.get(user_id)
        if event.get("type") == "heartbeat" and conn:
            conn.last_heartbeat = time.monotonic()
            return None
        return await self.on_inbound_event(channel_id or self._config.get("channel_id", "webchat"),
                                           user_id, event)

    async def shutdown(self) -> None:
        for conn in list(self._connections.values()):
            try:
                await conn.ws.close()
            except Exception as e:
                logger.debug("connection_close_failed", user_id=conn.user_id, error=str(e))
        self._connections.clear()
