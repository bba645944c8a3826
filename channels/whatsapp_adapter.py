"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Outbound: text, interactive buttons / list for menus, media, location, contacts
- Inbound: text, interactive (button_reply, list_reply), media, location
- Status updates (sent, delivered, read) are acknowledged and dropped
"""
from __future__ import annotations

import re
from typing import Any, Optional

import httpx
import structlog

from channels.base import ChannelAdapter, ChannelError, raise_for_provider
from models.schemas import ActionKind, ChannelType, Conversation, InboundEvent, OutboundAction

logger = structlog.get_logger()

GRAPH_API_URL = "https://graph.facebook.com/v18.0"
MAX_BUTTONS = 3


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Business Cloud API adapter."""

    channel_type = ChannelType.WHATSAPP

    def __init__(self, transport: httpx.AsyncBaseTransport = None, **kwargs):
        super().__init__(**kwargs)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._api_url = GRAPH_API_URL

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = str(self._config.get("phone_number_id", ""))
        self._access_token = self._config.get("access_token", "")
        self._verify_token = self._config.get("verify_token", "")
        self._api_url = self._config.get("api_url", GRAPH_API_URL)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                headers={"Authorization": f"Bearer {self._access_token}"},
                transport=self._transport,
                timeout=15.0,
            )
        return self._client

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone or "")

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """Return the challenge string on success, None on failure."""
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return params.get("hub.challenge", "")
        return None

    # ── Send ──────────────────────────────────────────────────

    def build_payload(self, to: str, action: OutboundAction) -> Optional[dict[str, Any]]:
        base = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to}
        kind = action.kind

        if kind in (ActionKind.TEXT, ActionKind.TTS, ActionKind.DTMF_PROMPT):
            if action.options:
                return {**base, "type": "interactive", "interactive": self._interactive(action)}
            return {**base, "type": "text", "text": {"body": action.text, "preview_url": False}}

        if kind in (ActionKind.MEDIA, ActionKind.PLAYBACK):
            media_type = action.media_type if action.media_type in ("image", "audio", "video", "document") \
                else ("audio" if kind == ActionKind.PLAYBACK else "document")
            media: dict[str, Any] = {"link": action.media_url}
            if action.text and media_type != "audio":
                media["caption"] = action.text
            if media_type == "document" and action.params.get("filename"):
                media["filename"] = action.params["filename"]
            return {**base, "type": media_type, media_type: media}

        if kind == ActionKind.LOCATION:
            return {**base, "type": "location", "location": {
                "latitude": action.params.get("latitude"),
                "longitude": action.params.get("longitude"),
                "name": action.params.get("name", ""),
                "address": action.params.get("address", ""),
            }}

        if kind == ActionKind.CONTACT:
            phone = str(action.params.get("phone", ""))
            return {**base, "type": "contacts", "contacts": [{
                "name": {"formatted_name": action.params.get("name", ""),
                         "first_name": action.params.get("name", "")},
                "phones": [{"phone": phone, "wa_id": self._normalize_phone(phone)}],
            }]}

        if kind == ActionKind.TYPING:
            return None

        raise ChannelError(f"WhatsApp cannot perform '{kind.value}'", self.channel_type.value)

    @staticmethod
    def _interactive(action: OutboundAction) -> dict[str, Any]:
        body = {"text": action.text or " "}
        if len(action.options) <= MAX_BUTTONS:
            return {
                "type": "button",
                "body": body,
                "action": {"buttons": [
                    {"type": "reply", "reply": {"id": o.value, "title": o.text[:20]}}
                    for o in action.options
                ]},
            }
        return {
            "type": "list",
            "body": body,
            "action": {
                "button": "Options",
                "sections": [{"title": "Options", "rows": [
                    {"id": o.value, "title": o.text[:24]} for o in action.options[:10]
                ]}],
            },
        }

    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        to = self._normalize_phone(conversation.external_user_id)
        if not to:
            raise ChannelError("No WhatsApp number", self.channel_type.value)
        payload = self.build_payload(to, action)
        if payload is None:
            return {"status": "skipped"}

        client = await self._get_client()
        response = await client.post(f"/{self._phone_number_id}/messages", json=payload)
        raise_for_provider(response, self.channel_type.value)
        data = response.json()
        msg_id = (data.get("messages") or [{}])[0].get("id", "")
        logger.info("whatsapp_message_sent", to=to, type=payload["type"], msg_id=msg_id)
        return {"status": "sent", "channel_message_id": msg_id}

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, payload: dict[str, Any]) -> list[InboundEvent]:
        """Parse a Cloud API webhook; one event per inbound message."""
        events: list[InboundEvent] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                meta = value.get("metadata") or {}
                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts") or []
                }
                for msg in value.get("messages") or []:
                    event = self._parse_message(msg, meta, names)
                    if event is not None:
                        events.append(event)
        return events

    def parse_inbound(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        if "entry" not in payload:
            return super().parse_inbound(payload)
        events = self.parse_webhook(payload)
        return events[0] if events else None

    def _parse_message(self, msg: dict[str, Any], meta: dict[str, Any],
                       names: dict[str, str]) -> Optional[InboundEvent]:
        sender = msg.get("from", "")
        if not sender:
            return None
        msg_type = msg.get("type", "text")
        text = ""
        media_url = None
        extra: dict[str, Any] = {"message_type": msg_type}

        if msg_type == "text":
            text = (msg.get("text") or {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            text = reply.get("id") or reply.get("title", "")
            extra["reply_title"] = reply.get("title", "")
        elif msg_type == "button":
            text = (msg.get("button") or {}).get("payload") or (msg.get("button") or {}).get("text", "")
        elif msg_type in ("image", "document", "audio", "video", "sticker"):
            media = msg.get(msg_type) or {}
            text = media.get("caption", "")
            media_url = media.get("link") or media.get("id")
            extra["media_id"] = media.get("id", "")
            extra["mime_type"] = media.get("mime_type", "")
        elif msg_type == "location":
            loc = msg.get("location") or {}
            text = f"{loc.get('latitude', 0)},{loc.get('longitude', 0)}"
            extra["latitude"] = loc.get("latitude")
            extra["longitude"] = loc.get("longitude")

        fields: dict[str, Any] = {
            "channel_type": self.channel_type,
            "channel_id": str(meta.get("phone_number_id") or self._phone_number_id),
            "external_user_id": sender,
            "text": text,
            "media_url": media_url,
            "attributes": {
                "phone_number": meta.get("display_phone_number", ""),
                "phone_number_id": meta.get("phone_number_id", ""),
                "contactName": names.get(sender, ""),
            },
            "payload": {**msg, **extra},
        }
        if msg.get("id"):
            fields["event_id"] = msg["id"]
        return InboundEvent(**fields)

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
