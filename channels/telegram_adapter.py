"""
Telegram Channel Adapter — Bot API over HTTPS.

Provides:
- Outbound: sendMessage (inline keyboard for menus), sendPhoto / sendDocument /
  sendAudio / sendVideo, sendLocation, sendContact, sendChatAction
- Inbound: message updates (text, photo, document, location, contact)
  and callback_query button presses
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from channels.base import ChannelAdapter, ChannelError, raise_for_provider
from models.schemas import ActionKind, ChannelType, Conversation, InboundEvent, OutboundAction

logger = structlog.get_logger()

TELEGRAM_API_URL = "https://api.telegram.org"

_MEDIA_METHODS = {
    "image": ("sendPhoto", "photo"),
    "audio": ("sendAudio", "audio"),
    "video": ("sendVideo", "video"),
    "document": ("sendDocument", "document"),
}


class TelegramAdapter(ChannelAdapter):

    channel_type = ChannelType.TELEGRAM

    def __init__(self, transport: httpx.AsyncBaseTransport = None, **kwargs):
        super().__init__(**kwargs)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._bot_token = ""
        self._channel_id = "telegram"

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._bot_token = self._config.get("bot_token", "")
        self._channel_id = str(self._config.get("channel_id") or self._config.get("bot_username") or "telegram")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            api_url = self._config.get("api_url", TELEGRAM_API_URL)
            self._client = httpx.AsyncClient(
                base_url=f"{api_url}/bot{self._bot_token}",
                transport=self._transport,
                timeout=15.0,
            )
        return self._client

    # ── Send ──────────────────────────────────────────────────

    def build_request(self, chat_id: str, action: OutboundAction) -> tuple[str, dict[str, Any]]:
        """Map an action to (Bot API method, JSON body)."""
        kind = action.kind
        if kind in (ActionKind.TEXT, ActionKind.TTS, ActionKind.DTMF_PROMPT):
            body: dict[str, Any] = {"chat_id": chat_id, "text": action.text or " "}
            if action.options:
                body["reply_markup"] = {"inline_keyboard": [
                    [{"text": o.text, "callback_data": o.value[:64]}] for o in action.options
                ]}
            return "sendMessage", body

        if kind in (ActionKind.MEDIA, ActionKind.PLAYBACK):
            default = "audio" if kind == ActionKind.PLAYBACK else "document"
            method, field = _MEDIA_METHODS.get(action.media_type, _MEDIA_METHODS[default])
            body = {"chat_id": chat_id, field: action.media_url}
            if action.text:
                body["caption"] = action.text
            return method, body

        if kind == ActionKind.LOCATION:
            return "sendLocation", {
                "chat_id": chat_id,
                "latitude": action.params.get("latitude"),
                "longitude": action.params.get("longitude"),
            }

        if kind == ActionKind.CONTACT:
            return "sendContact", {
                "chat_id": chat_id,
                "phone_number": str(action.params.get("phone", "")),
                "first_name": action.params.get("name", "") or " ",
            }

        if kind == ActionKind.TYPING:
            return "sendChatAction", {"chat_id": chat_id, "action": "typing"}

        raise ChannelError(f"Telegram cannot perform '{kind.value}'", self.channel_type.value)

    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        chat_id = conversation.external_user_id
        if not chat_id:
            raise ChannelError("No Telegram chat id", self.channel_type.value)
        method, body = self.build_request(chat_id, action)

        client = await self._get_client()
        response = await client.post(f"/{method}", json=body)
        raise_for_provider(response, self.channel_type.value)
        data = response.json()
        if not data.get("ok", False):
            raise ChannelError(f"Telegram {method} rejected: {data.get('description', '')}",
                               self.channel_type.value)
        result = data.get("result")
        msg_id = result.get("message_id", "") if isinstance(result, dict) else ""
        logger.info("telegram_message_sent", chat_id=chat_id, method=method, msg_id=msg_id)
        return {"status": "sent", "channel_message_id": str(msg_id)}

    # ── Inbound ───────────────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        if "update_id" not in payload:
            return super().parse_inbound(payload)

        callback = payload.get("callback_query")
        if callback:
            chat = ((callback.get("message") or {}).get("chat") or {})
            sender = callback.get("from") or {}
            return self._event(payload, chat.get("id") or sender.get("id"), sender,
                               text=callback.get("data", ""), extra={"callback_id": callback.get("id")})

        msg = payload.get("message") or payload.get("edited_message")
        if not msg:
            return None
        chat = msg.get("chat") or {}
        sender = msg.get("from") or {}
        text = msg.get("text") or msg.get("caption") or ""
        media_url = None
        extra: dict[str, Any] = {}

        if msg.get("photo"):
            # largest size is last
            media_url = msg["photo"][-1].get("file_id")
            extra["message_type"] = "image"
        elif msg.get("document"):
            media_url = msg["document"].get("file_id")
            extra["message_type"] = "document"
        elif msg.get("location"):
            loc = msg["location"]
            text = f"{loc.get('latitude', 0)},{loc.get('longitude', 0)}"
            extra.update(message_type="location", latitude=loc.get("latitude"),
                         longitude=loc.get("longitude"))
        elif msg.get("contact"):
            text = msg["contact"].get("phone_number", "")
            extra["message_type"] = "contact"

        return self._event(payload, chat.get("id"), sender, text=text,
                           media_url=media_url, extra=extra)

    def _event(self, update: dict[str, Any], chat_id: Any, sender: dict[str, Any],
               text: str = "", media_url: Optional[str] = None,
               extra: Optional[dict[str, Any]] = None) -> Optional[InboundEvent]:
        if chat_id is None:
            return None
        name = " ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p)
        return InboundEvent(
            event_id=f"tg:{update['update_id']}",
            channel_type=self.channel_type,
            channel_id=self._channel_id,
            external_user_id=str(chat_id),
            text=text,
            media_url=media_url,
            attributes={"contactName": name, "username": sender.get("username", "")},
            payload={**update, **(extra or {})},
        )

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
