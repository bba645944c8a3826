"""
Tests for channel adapters.

Covers:
  - Base send wrapper: retry, non-retryable errors, circuit breaker
  - WhatsApp Cloud API payloads and webhook parsing
  - SMS segmenting, opt-out and Twilio webhooks
  - Telegram Bot API requests and updates
  - Voice (ARI) call lifecycle, DTMF collection and actions
  - Webchat outbox and socket push
"""
import json
from urllib.parse import parse_qs

import httpx
import pytest

from channels.base import (
    ChannelError, ChannelRegistry, ChannelSendError, CircuitBreaker, InputSanitizer, render_text,
)
from channels.sms_adapter import SMSAdapter, segment_count, truncate_to_segments
from channels.telegram_adapter import TelegramAdapter
from channels.voice_adapter import DTMFCollector, VoiceAdapter
from channels.webchat_adapter import WebchatAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from models.schemas import ActionKind, ChannelType, Conversation, EventKind, MenuOption, OutboundAction
from conftest import RecordingAdapter


def conversation(channel: ChannelType, user: str) -> Conversation:
    return Conversation(flow_id="f", channel_type=channel, channel_id="c", external_user_id=user)


def text(body: str, options=None) -> OutboundAction:
    return OutboundAction(kind=ActionKind.TEXT, text=body,
                          options=[MenuOption(text=t, value=v) for v, t in (options or [])])


class Recorder:
    """MockTransport handler that answers from a queue and keeps every request."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json={})
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class FakeSocket:
    def __init__(self, broken: bool = False):
        self.sent: list[dict] = []
        self.closed = False
        self.broken = broken

    async def send_text(self, data: str):
        if self.broken:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True


# ══════════════════════════════════════════════════════════════
#  BASE
# ══════════════════════════════════════════════════════════════

class TestChannelBase:
    @pytest.mark.asyncio
    async def test_retryable_failures_are_retried(self):
        adapter = RecordingAdapter(fail_times=2, backoff_base=0, backoff_max=0)
        result = await adapter.send(conversation(ChannelType.WEBCHAT, "u1"), text("hi"))
        assert result["attempts"] == 3
        assert adapter.texts() == ["hi"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_send_error(self):
        adapter = RecordingAdapter(always_fail=True, max_attempts=2, backoff_base=0, backoff_max=0)
        with pytest.raises(ChannelSendError) as exc_info:
            await adapter.send(conversation(ChannelType.WEBCHAT, "u1"), text("hi"))
        assert exc_info.value.attempts == 2
        assert adapter.calls == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        recorder = Recorder(httpx.Response(400, json={"error": {"message": "bad"}}))
        adapter = WhatsAppAdapter(transport=recorder.transport, backoff_base=0)
        await adapter.initialize({"phone_number_id": "PN1", "access_token": "tok"})
        with pytest.raises(ChannelSendError):
            await adapter.send(conversation(ChannelType.WHATSAPP, "+1 555 000"), text("hi"))
        assert len(recorder.requests) == 1
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self):
        recorder = Recorder(httpx.Response(503), httpx.Response(200, json={"messages": [{"id": "wamid.1"}]}))
        adapter = WhatsAppAdapter(transport=recorder.transport, backoff_base=0, backoff_max=0)
        await adapter.initialize({"phone_number_id": "PN1", "access_token": "tok"})
        result = await adapter.send(conversation(ChannelType.WHATSAPP, "15550001"), text("hi"))
        assert result["channel_message_id"] == "wamid.1"
        assert len(recorder.requests) == 2
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_sends(self):
        adapter = RecordingAdapter()
        for _ in range(adapter._breaker.failure_threshold):
            adapter._breaker.record_failure()
        with pytest.raises(ChannelSendError):
            await adapter.send(conversation(ChannelType.WEBCHAT, "u1"), text("hi"))
        assert adapter.calls == 0

    def test_circuit_breaker_half_opens(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == "closed"
        breaker.record_failure()
        assert breaker.state == "half_open"
        breaker.record_success()
        assert breaker.stats == {"state": "closed", "failure_count": 0}

    def test_sanitizer_and_render_text(self):
        assert InputSanitizer(max_length=5).sanitize("a\x00b\x07cdefg ") == "abcde"
        assert render_text(text("Pick", [("1", "Sales"), ("Help", "Help")])) == "Pick\n1. Sales\nHelp"

    def test_registry_falls_back_to_voice_adapter(self):
        registry = ChannelRegistry()
        voice = RecordingAdapter(ChannelType.VOICE, voice=True)
        registry.register(voice)
        assert registry.get(ChannelType.ASTERISK) is voice
        assert registry.get(ChannelType.SMS) is None

    @pytest.mark.asyncio
    async def test_webhook_dispatches_parsed_events(self):
        received = []

        async def handler(event):
            received.append(event)

        adapter = RecordingAdapter()
        adapter.set_inbound_handler(handler)
        events = await adapter.handle_webhook({"userId": "u1", "channelId": "site", "text": "hi\x00",
                                               "eventId": "e-1"})
        assert [e.event_id for e in events] == ["e-1"]
        assert received[0].text == "hi"
        assert received[0].external_user_id == "u1"


# ══════════════════════════════════════════════════════════════
#  WHATSAPP
# ══════════════════════════════════════════════════════════════

class TestWhatsApp:
    @pytest.fixture
    def adapter(self):
        return WhatsAppAdapter()

    def test_menu_uses_buttons_up_to_three(self, adapter):
        payload = adapter.build_payload("1555", text("Pick", [("1", "Sales"), ("2", "Support")]))
        assert payload["type"] == "interactive"
        assert payload["interactive"]["type"] == "button"
        assert [b["reply"]["id"] for b in payload["interactive"]["action"]["buttons"]] == ["1", "2"]

    def test_long_menu_uses_list(self, adapter):
        options = [(str(i), f"Option {i}") for i in range(5)]
        payload = adapter.build_payload("1555", text("Pick", options))
        assert payload["interactive"]["type"] == "list"
        assert len(payload["interactive"]["action"]["sections"][0]["rows"]) == 5

    def test_media_location_and_typing(self, adapter):
        image = adapter.build_payload("1555", OutboundAction(
            kind=ActionKind.MEDIA, media_url="https://x/a.png", media_type="image", text="Look"))
        assert image["image"] == {"link": "https://x/a.png", "caption": "Look"}
        loc = adapter.build_payload("1555", OutboundAction(
            kind=ActionKind.LOCATION, params={"latitude": 1.5, "longitude": 2.5, "name": "HQ"}))
        assert loc["location"]["latitude"] == 1.5
        assert adapter.build_payload("1555", OutboundAction(kind=ActionKind.TYPING)) is None

    def test_voice_actions_rejected(self, adapter):
        with pytest.raises(ChannelError):
            adapter.build_payload("1555", OutboundAction(kind=ActionKind.DIAL))

    @pytest.mark.asyncio
    async def test_send_posts_to_cloud_api(self):
        recorder = Recorder(httpx.Response(200, json={"messages": [{"id": "wamid.9"}]}))
        adapter = WhatsAppAdapter(transport=recorder.transport)
        await adapter.initialize({"phone_number_id": "PN1", "access_token": "tok"})
        result = await adapter.send(conversation(ChannelType.WHATSAPP, "+1 (555) 000-1111"), text("Hello"))

        request = recorder.requests[0]
        assert request.url.path.endswith("/PN1/messages")
        assert request.headers["Authorization"] == "Bearer tok"
        assert json.loads(request.content)["to"] == "15550001111"
        assert result["status"] == "sent"
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_verify_webhook(self, adapter):
        await adapter.initialize({"verify_token": "v"})
        ok = {"hub.mode": "subscribe", "hub.verify_token": "v", "hub.challenge": "123"}
        assert adapter.verify_webhook(ok) == "123"
        assert adapter.verify_webhook({**ok, "hub.verify_token": "x"}) is None

    def test_parse_webhook_messages(self, adapter):
        payload = {"entry": [{"changes": [{"value": {
            "metadata": {"display_phone_number": "15550009999", "phone_number_id": "PN1"},
            "contacts": [{"wa_id": "15551234", "profile": {"name": "Maria"}}],
            "messages": [
                {"id": "wamid.A", "from": "15551234", "type": "text", "text": {"body": "hi"}},
                {"id": "wamid.B", "from": "15551234", "type": "interactive",
                 "interactive": {"type": "button_reply", "button_reply": {"id": "2", "title": "Support"}}},
                {"id": "wamid.C", "from": "15551234", "type": "location",
                 "location": {"latitude": 1, "longitude": 2}},
            ],
        }}]}]}
        events = adapter.parse_webhook(payload)
        assert [e.event_id for e in events] == ["wamid.A", "wamid.B", "wamid.C"]
        assert [e.text for e in events] == ["hi", "2", "1,2"]
        assert events[0].channel_id == "PN1"
        assert events[0].attributes["contactName"] == "Maria"
        assert events[0].attributes["phone_number"] == "15550009999"

    def test_status_updates_produce_no_events(self, adapter):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.A", "status": "read"}]}}]}]}
        assert adapter.parse_webhook(payload) == []


# ══════════════════════════════════════════════════════════════
#  SMS
# ══════════════════════════════════════════════════════════════

class TestSMS:
    def test_segment_counting(self):
        assert segment_count("") == 0
        assert segment_count("a" * 160) == 1
        assert segment_count("a" * 161) == 2
        assert segment_count("€" * 80) == 1
        assert segment_count("ह" * 71) == 2

    def test_truncation(self):
        long_text = "a" * 1000
        truncated = truncate_to_segments(long_text, 2)
        assert truncated.endswith("...")
        assert segment_count(truncated) <= 2
        assert truncate_to_segments("short", 1) == "short"

    @pytest.mark.asyncio
    async def test_send_uses_twilio_form(self):
        recorder = Recorder(httpx.Response(201, json={"sid": "SM1"}))
        adapter = SMSAdapter(transport=recorder.transport)
        await adapter.initialize({"account_sid": "AC1", "auth_token": "t", "from_number": "+15550000000"})
        result = await adapter.send(conversation(ChannelType.SMS, "+15551234567"),
                                    text("Pick", [("1", "Sales"), ("2", "Support")]))

        request = recorder.requests[0]
        form = parse_qs(request.content.decode())
        assert request.url.path.endswith("/Accounts/AC1/Messages.json")
        assert request.headers["Authorization"].startswith("Basic ")
        assert form["To"] == ["+15551234567"]
        assert form["Body"] == ["Pick\n1. Sales\n2. Support"]
        assert result["channel_message_id"] == "SM1"
        assert result["segments"] == 1
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_opt_out_and_back_in(self):
        recorder = Recorder(httpx.Response(201, json={"sid": "SM2"}))
        adapter = SMSAdapter(transport=recorder.transport, backoff_base=0)
        await adapter.initialize({"account_sid": "AC1", "auth_token": "t"})
        conv = conversation(ChannelType.SMS, "+15551234567")

        assert adapter.parse_inbound({"From": "+15551234567", "Body": "stop"}) is None
        assert adapter.is_opted_out("+1 555 123 4567")
        with pytest.raises(ChannelSendError):
            await adapter.send(conv, text("hello"))
        assert recorder.requests == []

        assert adapter.parse_inbound({"From": "+15551234567", "Body": "START"}) is None
        await adapter.send(conv, text("hello"))
        assert len(recorder.requests) == 1
        await adapter.shutdown()

    def test_parse_inbound_with_media(self):
        event = SMSAdapter().parse_inbound({
            "From": "+15551234567", "To": "+15550000000", "Body": " hi ", "MessageSid": "SM9",
            "NumMedia": "1", "MediaUrl0": "https://api.twilio.com/media/1",
        })
        assert event.event_id == "SM9"
        assert event.text == "hi"
        assert event.channel_id == "+15550000000"
        assert event.media_url == "https://api.twilio.com/media/1"
        assert event.attributes["phone_number"] == "+15550000000"

    def test_parse_status(self):
        status = SMSAdapter.parse_status({"MessageSid": "SM1", "MessageStatus": "DELIVERED"})
        assert status == {"message_sid": "SM1", "status": "delivered", "error_code": ""}


# ══════════════════════════════════════════════════════════════
#  TELEGRAM
# ══════════════════════════════════════════════════════════════

class TestTelegram:
    def test_menu_becomes_inline_keyboard(self):
        method, body = TelegramAdapter().build_request("42", text("Pick", [("1", "Sales")]))
        assert method == "sendMessage"
        assert body["reply_markup"]["inline_keyboard"] == [[{"text": "Sales", "callback_data": "1"}]]

    def test_media_and_typing_methods(self):
        adapter = TelegramAdapter()
        method, body = adapter.build_request("42", OutboundAction(
            kind=ActionKind.MEDIA, media_type="image", media_url="https://x/a.png"))
        assert (method, body["photo"]) == ("sendPhoto", "https://x/a.png")
        assert adapter.build_request("42", OutboundAction(kind=ActionKind.TYPING))[0] == "sendChatAction"

    @pytest.mark.asyncio
    async def test_send_and_rejection(self):
        recorder = Recorder(httpx.Response(200, json={"ok": True, "result": {"message_id": 7}}),
                            httpx.Response(200, json={"ok": False, "description": "chat not found"}))
        adapter = TelegramAdapter(transport=recorder.transport, max_attempts=1)
        await adapter.initialize({"bot_token": "123:ABC"})
        conv = conversation(ChannelType.TELEGRAM, "42")

        result = await adapter.send(conv, text("Hello"))
        assert result["channel_message_id"] == "7"
        assert recorder.requests[0].url.path == "/bot123:ABC/sendMessage"
        with pytest.raises(ChannelSendError):
            await adapter.send(conv, text("Again"))
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_parse_message_and_callback(self):
        adapter = TelegramAdapter()
        await adapter.initialize({"bot_username": "acme_bot"})
        message = adapter.parse_inbound({"update_id": 10, "message": {
            "chat": {"id": 42}, "from": {"first_name": "Maria", "last_name": "S", "username": "ms"},
            "text": "hello"}})
        assert message.event_id == "tg:10"
        assert message.external_user_id == "42"
        assert message.channel_id == "acme_bot"
        assert message.attributes == {"contactName": "Maria S", "username": "ms"}

        press = adapter.parse_inbound({"update_id": 11, "callback_query": {
            "id": "cb", "data": "2", "from": {"id": 42}, "message": {"chat": {"id": 42}}}})
        assert press.text == "2"
        assert adapter.parse_inbound({"update_id": 12}) is None


# ══════════════════════════════════════════════════════════════
#  VOICE
# ══════════════════════════════════════════════════════════════

def stasis_start(cid: str = "chan-1", args=None) -> dict:
    return {
        "type": "StasisStart",
        "args": args or [],
        "channel": {"id": cid, "caller": {"number": "+15551234567", "name": "Maria"},
                    "dialplan": {"exten": "4000"}},
    }


class TestVoice:
    def test_dtmf_collector(self):
        collector = DTMFCollector(expected_length=3)
        assert collector.add("1") is None
        assert collector.add("2") is None
        assert collector.add("3") == "123"
        terminated = DTMFCollector(terminator="#")
        terminated.add("4")
        assert terminated.add("#") == "4"

    def test_call_start_and_hangup_events(self):
        adapter = VoiceAdapter()
        start = adapter.parse_inbound(stasis_start())
        assert start.kind == EventKind.CALL_START
        assert start.trigger_type == "inbound_call"
        assert start.channel_id == "4000"
        assert start.external_user_id == "+15551234567"
        assert start.attributes["contactName"] == "Maria"
        assert adapter.get_call("+15551234567").channel_id == "chan-1"

        hangup = adapter.parse_inbound({"type": "StasisEnd", "channel": {"id": "chan-1"}})
        assert hangup.kind == EventKind.HANGUP
        assert adapter.get_call("+15551234567") is None
        assert adapter.parse_inbound({"type": "ChannelDestroyed", "channel": {"id": "chan-1"}}) is None

    def test_dialed_leg_is_ignored(self):
        adapter = VoiceAdapter()
        assert adapter.parse_inbound(stasis_start("leg-2", args=["dialed"])) is None
        assert adapter.get_active_calls() == []

    @pytest.mark.asyncio
    async def test_dtmf_prompt_collects_digits(self):
        recorder = Recorder(httpx.Response(200, json={"id": "pb-1"}))
        adapter = VoiceAdapter(transport=recorder.transport)
        await adapter.initialize({"tts_media": "sound:tts/{text}"})
        adapter.parse_inbound(stasis_start())
        conv = conversation(ChannelType.VOICE, "+15551234567")

        await adapter.send(conv, OutboundAction(kind=ActionKind.DTMF_PROMPT, text="Account number",
                                                params={"maxDigits": 0, "terminator": "#"}))
        assert recorder.requests[0].url.path == "/ari/channels/chan-1/play"
        assert recorder.requests[0].url.params["media"] == "sound:tts/Account%20number"

        digit = {"type": "ChannelDtmfReceived", "channel": {"id": "chan-1"}}
        assert adapter.parse_inbound({**digit, "digit": "4"}) is None
        assert adapter.parse_inbound({**digit, "digit": "2"}) is None
        event = adapter.parse_inbound({**digit, "digit": "#"})
        assert event.kind == EventKind.DTMF
        assert event.text == "42"
        assert event.event_id == "ari:chan-1:dtmf:3"

        single = adapter.parse_inbound({**digit, "digit": "9"})
        assert single.text == "9"
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_answer_playback_and_hangup(self):
        recorder = Recorder(httpx.Response(204))
        adapter = VoiceAdapter(transport=recorder.transport)
        await adapter.initialize({})
        adapter.parse_inbound(stasis_start())
        conv = conversation(ChannelType.VOICE, "+15551234567")

        await adapter.send(conv, OutboundAction(kind=ActionKind.ANSWER))
        await adapter.send(conv, OutboundAction(kind=ActionKind.PLAYBACK, media_url="welcome"))
        skipped = await adapter.send(conv, OutboundAction(kind=ActionKind.TTS, text="Hi"))
        await adapter.send(conv, OutboundAction(kind=ActionKind.HANGUP))

        calls = [(r.method, r.url.path) for r in recorder.requests]
        assert calls == [
            ("POST", "/ari/channels/chan-1/answer"),
            ("POST", "/ari/channels/chan-1/play"),
            ("DELETE", "/ari/channels/chan-1"),
        ]
        assert recorder.requests[1].url.params["media"] == "sound:welcome"
        assert skipped["status"] == "skipped"
        assert adapter.get_call("+15551234567") is None
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_dial_bridges_new_leg(self):
        recorder = Recorder(
            httpx.Response(200, json={"id": "leg-2", "state": "Ring"}),
            httpx.Response(200, json={"id": "br-1"}),
            httpx.Response(204),
        )
        adapter = VoiceAdapter(transport=recorder.transport)
        await adapter.initialize({"app": "ivr"})
        adapter.parse_inbound(stasis_start())

        result = await adapter.send(conversation(ChannelType.VOICE, "+15551234567"),
                                    OutboundAction(kind=ActionKind.DIAL, params={"number": "2001"}))
        originate, bridge, add = recorder.requests
        assert originate.url.params["endpoint"] == "PJSIP/2001"
        assert originate.url.params["appArgs"] == "dialed"
        assert bridge.url.params["type"] == "mixing"
        assert add.url.params["channel"] == "chan-1,leg-2"
        assert result["dialStatus"] == "RING"
        await adapter.shutdown()

    @pytest.mark.asyncio
    async def test_send_without_live_call_fails(self):
        adapter = VoiceAdapter(max_attempts=1)
        with pytest.raises(ChannelSendError):
            await adapter.send(conversation(ChannelType.VOICE, "+1999"), OutboundAction(kind=ActionKind.ANSWER))


# ══════════════════════════════════════════════════════════════
#  WEBCHAT
# ══════════════════════════════════════════════════════════════

class TestWebchat:
    @pytest.mark.asyncio
    async def test_offline_outbox_drained_on_connect(self):
        adapter = WebchatAdapter()
        conv = conversation(ChannelType.WEBCHAT, "u1")
        result = await adapter.send(conv, text("Pick", [("1", "Sales")]))
        assert result["status"] == "queued"
        assert adapter.peek("u1")[0]["options"] == [{"text": "Sales", "value": "1"}]

        socket = FakeSocket()
        await adapter.register_connection("u1", socket)
        assert [p["text"] for p in socket.sent] == ["Pick"]
        assert adapter.drain("u1") == []

        result = await adapter.send(conv, text("Live"))
        assert result["status"] == "delivered"
        assert socket.sent[-1]["conversation_id"] == conv.id

    @pytest.mark.asyncio
    async def test_broken_socket_requeues(self):
        adapter = WebchatAdapter()
        await adapter.register_connection("u1", FakeSocket(broken=True))
        result = await adapter.send(conversation(ChannelType.WEBCHAT, "u1"), text("hi"))
        assert result["status"] == "queued"
        assert not adapter.is_connected("u1")
        assert [p["text"] for p in adapter.drain("u1")] == ["hi"]

    @pytest.mark.asyncio
    async def test_new_connection_supersedes_old(self):
        adapter = WebchatAdapter()
        old, new = FakeSocket(), FakeSocket()
        await adapter.register_connection("u1", old)
        await adapter.register_connection("u1", new)
        assert old.closed
        await adapter.shutdown()
        assert new.closed

    @pytest.mark.asyncio
    async def test_client_events(self):
        received = []

        async def handler(event):
            received.append(event)

        adapter = WebchatAdapter()
        await adapter.initialize({"channel_id": "site-1"})
        adapter.set_inbound_handler(handler)

        assert await adapter.handle_client_event("u1", {"type": "heartbeat"}) is None
        message = await adapter.handle_client_event("u1", {"type": "message", "content": "hello"})
        close = await adapter.handle_client_event("u1", {"type": "close"})

        assert message.text == "hello"
        assert message.channel_id == "site-1"
        assert close.kind == EventKind.CLOSE
        assert [e.kind for e in received] == [EventKind.MESSAGE, EventKind.CLOSE]
