"""
Voice Channel Adapter — IVR calls over the Asterisk REST Interface (ARI).

Provides:
- Call lifecycle tracking from Stasis events (StasisStart → StasisEnd)
- Outbound actions: answer, playback, spoken prompts, dial (originate + bridge),
  queue / voicemail (continue in dialplan), record, hangup
- DTMF input: single digit and buffered collection (length or terminator)

ARI events are JSON documents delivered to POST /webhooks/voice (typically
relayed from the ARI events websocket). Speech output relies on a TTS
service reachable by Asterisk through a configurable `tts_media` template.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog

from channels.base import ChannelAdapter, ChannelError, raise_for_provider, render_text
from models.schemas import ActionKind, ChannelType, Conversation, EventKind, InboundEvent, OutboundAction

logger = structlog.get_logger()

DIALED_ARG = "dialed"
_HANGUP_EVENTS = ("StasisEnd", "ChannelHangupRequest", "ChannelDestroyed")


# ══════════════════════════════════════════════════════════════
#  CALL STATE
# ══════════════════════════════════════════════════════════════

class CallStatus(str, Enum):
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


@dataclass
class DTMFCollector:
    """Buffers DTMF digits until expected_length or terminator is received."""
    expected_length: int = 0         # 0 = no length limit
    terminator: str = ""             # e.g. "#"
    digits: str = ""
    active: bool = True

    def add(self, digit: str) -> Optional[str]:
        """Add a digit. Returns collected string when complete, None if still collecting."""
        if self.terminator and digit == self.terminator:
            self.active = False
            return self.digits
        self.digits += digit
        if self.expected_length > 0 and len(self.digits) >= self.expected_length:
            self.active = False
            return self.digits
        return None


class VoiceCallState:
    """One live call, keyed by the ARI channel id."""

    def __init__(self, channel_id: str, caller: str, did: str, caller_name: str = ""):
        self.channel_id = channel_id
        self.caller = caller
        self.did = did
        self.caller_name = caller_name
        self.status = CallStatus.RINGING
        self.created_at = datetime.now(timezone.utc)
        self.dtmf_seq = 0
        self.collector: Optional[DTMFCollector] = None
        self.bridge_id: Optional[str] = None
        self.recordings: list[str] = []

    def to_summary(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "caller": self.caller,
            "did": self.did,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "dtmf_count": self.dtmf_seq,
            "recordings": list(self.recordings),
        }


# ══════════════════════════════════════════════════════════════
#  VOICE ADAPTER
# ══════════════════════════════════════════════════════════════

class VoiceAdapter(ChannelAdapter):
    """
    Asterisk ARI adapter.

    Calls are tracked by ARI channel id; the conversation's external user id
    (caller number) maps back to its live call for outbound actions.
    """

    channel_type = ChannelType.VOICE
    voice_capable = True

    def __init__(self, transport: httpx.AsyncBaseTransport = None, **kwargs):
        super().__init__(**kwargs)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._calls: dict[str, VoiceCallState] = {}
        self._by_caller: dict[str, str] = {}
        self._app = "flow-engine"

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._app = self._config.get("app", self._app)
        self._breaker.failure_threshold = 3
        self._breaker.recovery_timeout = 120.0
        logger.info("voice_adapter_initialized", ari_url=self._config.get("ari_url", ""), app=self._app)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._config.get("ari_url", "http://localhost:8088/ari"),
                auth=(self._config.get("username", ""), self._config.get("password", "")),
                transport=self._transport,
                timeout=10.0,
            )
        return self._client

    async def _ari(self, method: str, path: str, **params: Any) -> Any:
        client = await self._get_client()
        clean = {k: v for k, v in params.items() if v is not None and v != ""}
        response = await client.request(method, path, params=clean)
        raise_for_provider(response, self.channel_type.value)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    # ── Call lookup ───────────────────────────────────────────

    def get_call(self, caller: str) -> Optional[VoiceCallState]:
        cid = self._by_caller.get(caller)
        return self._calls.get(cid) if cid else None

    def get_active_calls(self) -> list[dict[str, Any]]:
        return [c.to_summary() for c in self._calls.values()]

    def _forget(self, call: VoiceCallState) -> None:
        call.status = CallStatus.ENDED
        self._calls.pop(call.channel_id, None)
        if self._by_caller.get(call.caller) == call.channel_id:
            self._by_caller.pop(call.caller, None)

    def _media_for_text(self, text: str) -> Optional[str]:
        template = self._config.get("tts_media", "")
        if not template or not text:
            return None
        return template.format(text=quote(text), voice=quote(self._config.get("tts_voice", "")))

    @staticmethod
    def _sound_uri(url: str) -> str:
        if url.split(":", 1)[0] in ("sound", "recording", "number", "digits", "characters", "tone"):
            return url
        return f"sound:{url}"

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        call = self.get_call(conversation.external_user_id)
        if call is None:
            raise ChannelError(f"No live call for {conversation.external_user_id}", self.channel_type.value)
        cid = call.channel_id
        kind = action.kind

        if kind == ActionKind.ANSWER:
            await self._ari("POST", f"/channels/{cid}/answer")
            call.status = CallStatus.CONNECTED
            return {"status": "answered"}

        if kind in (ActionKind.TEXT, ActionKind.TTS, ActionKind.DTMF_PROMPT):
            if kind == ActionKind.DTMF_PROMPT:
                max_digits = int(action.params.get("maxDigits") or 0)
                terminator = action.params.get("terminator") or ""
                call.collector = DTMFCollector(expected_length=max_digits, terminator=terminator) \
                    if (max_digits > 1 or terminator) else None
            media = self._media_for_text(render_text(action))
            if media is None:
                logger.warning("tts_unavailable", channel_id=cid)
                return {"status": "skipped"}
            playback = await self._ari("POST", f"/channels/{cid}/play", media=media,
                                       lang=action.params.get("language"))
            return {"status": "playing", "playback_id": playback.get("id", "")}

        if kind == ActionKind.PLAYBACK or (kind == ActionKind.MEDIA and action.media_type == "audio"):
            if not action.media_url:
                raise ChannelError("Playback without media url", self.channel_type.value)
            playback = await self._ari("POST", f"/channels/{cid}/play", media=self._sound_uri(action.media_url))
            return {"status": "playing", "playback_id": playback.get("id", "")}

        if kind == ActionKind.DIAL:
            return await self._dial(call, action.params)

        if kind == ActionKind.QUEUE:
            await self._ari("POST", f"/channels/{cid}/continue",
                            context=self._config.get("queue_context", "queues"),
                            extension=action.params.get("queueName", ""), priority=1)
            return {"status": "queued"}

        if kind == ActionKind.VOICEMAIL:
            await self._ari("POST", f"/channels/{cid}/continue",
                            context=self._config.get("voicemail_context", "voicemail"),
                            extension=action.params.get("mailbox", ""), priority=1)
            return {"status": "voicemail"}

        if kind == ActionKind.RECORD:
            name = f"rec-{cid}-{uuid.uuid4().hex[:8]}"
            beep = action.params.get("beep", True)
            await self._ari("POST", f"/channels/{cid}/record", name=name,
                            format=action.params.get("format", "wav"),
                            maxDurationSeconds=action.params.get("maxDuration"),
                            beep=str(bool(beep)).lower(), ifExists="overwrite")
            call.recordings.append(name)
            return {"status": "recording", "recording": name}

        if kind == ActionKind.HANGUP:
            await self._ari("DELETE", f"/channels/{cid}")
            self._forget(call)
            return {"status": "hungup"}

        logger.debug("voice_action_skipped", kind=kind.value, channel_id=cid)
        return {"status": "skipped"}

    async def _dial(self, call: VoiceCallState, params: dict[str, Any]) -> dict[str, Any]:
        endpoint = params.get("endpoint") or params.get("number")
        if not endpoint:
            raise ChannelError("Dial without number or endpoint", self.channel_type.value)
        if "/" not in str(endpoint):
            endpoint = f"{self._config.get('dial_technology', 'PJSIP')}/{endpoint}"
        leg = await self._ari("POST", "/channels", endpoint=endpoint, app=self._app,
                              appArgs=DIALED_ARG, callerId=params.get("callerId"),
                              timeout=params.get("timeout"))
        bridge = await self._ari("POST", "/bridges", type="mixing")
        call.bridge_id = bridge.get("id", "")
        await self._ari("POST", f"/bridges/{call.bridge_id}/addChannel",
                        channel=f"{call.channel_id},{leg.get('id', '')}")
        logger.info("voice_dial_started", channel_id=call.channel_id, endpoint=endpoint)
        return {"status": "dialing", "dialStatus": (leg.get("state") or "DIALING").upper()}

    # ── Inbound ARI events ────────────────────────────────────

    def parse_inbound(self, payload: dict[str, Any]) -> Optional[InboundEvent]:
        event_type = payload.get("type", "")
        channel = payload.get("channel") or {}
        cid = channel.get("id", "")
        if not event_type or not cid:
            return super().parse_inbound(payload)

        if event_type == "StasisStart":
            if DIALED_ARG in (payload.get("args") or []):
                return None
            caller = (channel.get("caller") or {})
            did = (channel.get("dialplan") or {}).get("exten", "")
            call = VoiceCallState(cid, caller.get("number", ""), did, caller.get("name", ""))
            self._calls[cid] = call
            self._by_caller[call.caller] = cid
            logger.info("voice_call_started", channel_id=cid, caller=call.caller, did=did)
            return self._event(call, EventKind.CALL_START, "start", trigger_type="inbound_call")

        call = self._calls.get(cid)
        if call is None:
            return None

        if event_type == "ChannelDtmfReceived":
            return self._on_digit(call, str(payload.get("digit", "")))

        if event_type in _HANGUP_EVENTS:
            self._forget(call)
            logger.info("voice_call_ended", channel_id=cid, caller=call.caller, event=event_type)
            return self._event(call, EventKind.HANGUP, "hangup")

        return None

    def _on_digit(self, call: VoiceCallState, digit: str) -> Optional[InboundEvent]:
        call.dtmf_seq += 1
        collector = call.collector
        if collector and collector.active:
            completed = collector.add(digit)
            if completed is None:
                return None
            call.collector = None
            return self._event(call, EventKind.DTMF, f"dtmf:{call.dtmf_seq}", text=completed)
        return self._event(call, EventKind.DTMF, f"dtmf:{call.dtmf_seq}", text=digit)

    def _event(self, call: VoiceCallState, kind: EventKind, suffix: str, text: str = "",
               trigger_type: str = "inbound_message") -> InboundEvent:
        return InboundEvent(
            event_id=f"ari:{call.channel_id}:{suffix}",
            channel_type=self.channel_type,
            channel_id=call.did,
            external_user_id=call.caller,
            kind=kind,
            text=text,
            trigger_type=trigger_type,
            attributes={"did": call.did, "phone_number": call.did, "contactName": call.caller_name},
            payload={"ari_channel_id": call.channel_id},
        )

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        base["active_calls"] = len(self._calls)
        return base

    async def shutdown(self) -> None:
        self._calls.clear()
        self._by_caller.clear()
        if self._client and not self._client.is_closed:
            await self._client.aclose()
