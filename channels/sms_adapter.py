"""
SMS Channel Adapter — Twilio Programmable Messaging.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic message truncation to max segment limit
- STOP/START opt-out/opt-in compliance
- Menus rendered as numbered text lines
- Inbound parsing of form-encoded webhooks with media attachments
"""
from __future__ import annotations

import re
from typing import Any, Optional

import httpx
import structlog

from channels.base import ChannelAdapter, ChannelError, raise_for_provider, render_text
from models.schemas import ActionKind, ChannelType, Conversation, InboundEvent, OutboundAction

logger = structlog.get_logger()

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 (takes 2 bytes each)
_GSM7_EXTENDED = set("^{}[]~|\\€")

OPT_OUT_WORDS = {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "QUIT"}
OPT_IN_WORDS = {"START", "UNSTOP", "SUBSCRIBE"}


def _is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """
    GSM-7: 160 chars single / 153 chars per segment.
    Unicode: 70 chars single / 67 chars per segment.
    """
    if not text:
        return 0
    if _is_gsm7(text):
        char_count = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if char_count <= 160:
            return 1
        return (char_count + 152) // 153
    if len(text) <= 70:
        return 1
    return (len(text) + 66) // 67


def truncate_to_segments(content: str, max_segments: int) -> str:
    if segment_count(content) <= max_segments:
        return content
    max_chars = (153 if _is_gsm7(content) else 67) * max_segments - 3
    return content[:max_chars] + "..."


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):
    """
    SMS adapter with segment awareness and opt-out compliance.

    Outbound messages go through the Twilio Messages resource. Numbers
    that texted STOP are refused until they text START again.
    """

    channel_type = ChannelType.SMS

    def __init__(self, transport: httpx.AsyncBaseTransport = None, **kwargs):
        super().__init__(**kwargs)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._account_sid = ""
        self._auth_token = ""
        self._from_number = ""
        self._max_segments = 3
        self._opt_out_list: set[str] = set()

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._account_sid = self._config.get("account_sid", "")
        self._auth_token = self._config.get("auth_token", "")
        self._from_number = self._config.get("from_number", "")
        self._max_segments = int(self._config.get("max_segments", 3))

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.get("api_url", TWILIO_API_URL),
                auth=(self._account_sid, self._auth_token),
                transport=self._transport,
                timeout=15.0,
            )
        return self._client

    @staticmethod
    def _normalize(phone: str) -> str:
        return re.sub(r"[^\d]", "", phone or "")

    def is_opted_out(self, phone: str) -> bool:
        return self._normalize(phone) in self._opt_out_list

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        phone = conversation.external_user_id
        if not phone:
            raise ChannelError("No SMS number", self.channel_type.value)
        if self.is_opted_out(phone):
            raise ChannelError(f"{phone} has opted out", self.channel_type.value)
        if action.kind == ActionKind.TYPING:
            return {"status": "skipped"}
        if action.kind not in (ActionKind.TEXT, ActionKind.DTMF_PROMPT, ActionKind.TTS,
                               ActionKind.MEDIA, ActionKind.LOCATION, ActionKind.CONTACT):
            raise ChannelError(f"SMS cannot perform '{action.kind.value}'", self.channel_type.value)

        body = self._body(action)
        form: dict[str, Any] = {"To": phone, "From": self._from_number, "Body": body}
        if action.kind == ActionKind.MEDIA and action.media_url:
            form["MediaUrl"] = action.media_url

        client = await self._get_client()
        response = await client.post(f"/Accounts/{self._account_sid}/Messages.json", data=form)
        raise_for_provider(response, self.channel_type.value)
        sid = response.json().get("sid", "")
        segments = segment_count(body)
        logger.info("sms_sent", to=phone, segments=segments, msg_sid=sid)
        return {"status": "sent", "channel_message_id": sid, "segments": segments}

    def _body(self, action: OutboundAction) -> str:
        if action.kind == ActionKind.LOCATION:
            p = action.params
            text = f"{p.get('name', '')} {p.get('address', '')}".strip()
            text = f"{text}\nhttps://maps.google.com/?q={p.get('latitude')},{p.get('longitude')}".strip()
        elif action.kind == ActionKind.CONTACT:
            text = f"{action.params.get('name', '')}: {action.params.get('phone', '')}"
        else:
            text = render_text(action)
        return truncate_to_segments(text, self._max_segments)

    # ── Inbound ───────────────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        """Parse a Twilio inbound SMS webhook (form fields)."""
        sender = payload.get("From", "")
        if not sender:
            return super().parse_inbound(payload)
        body = (payload.get("Body") or "").strip()
        normalized = self._normalize(sender)

        keyword = body.upper()
        if keyword in OPT_OUT_WORDS:
            self._opt_out_list.add(normalized)
            logger.info("sms_opt_out", phone=sender)
            return None
        if keyword in OPT_IN_WORDS:
            self._opt_out_list.discard(normalized)
            logger.info("sms_opt_in", phone=sender)
            return None

        media_urls = [
            payload[f"MediaUrl{i}"]
            for i in range(int(payload.get("NumMedia") or 0))
            if payload.get(f"MediaUrl{i}")
        ]
        fields: dict[str, Any] = {
            "channel_type": self.channel_type,
            "channel_id": payload.get("To", "") or self._from_number,
            "external_user_id": sender,
            "text": body,
            "media_url": media_urls[0] if media_urls else None,
            "attributes": {"phone_number": payload.get("To", "")},
            "payload": {**payload, "media_urls": media_urls},
        }
        if payload.get("MessageSid"):
            fields["event_id"] = payload["MessageSid"]
        return InboundEvent(**fields)

    @staticmethod
    def parse_status(data: dict[str, Any]) -> dict[str, Any]:
        """Twilio status callback fields."""
        return {
            "message_sid": data.get("MessageSid", ""),
            "status": (data.get("MessageStatus") or "").lower(),
            "error_code": data.get("ErrorCode", ""),
        }

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
