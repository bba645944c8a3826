"""
Tests for the FastAPI surface: webhooks, flows, conversations, webchat.
"""
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import build_engine, create_app
from channels.sms_adapter import SMSAdapter
from channels.webchat_adapter import WebchatAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import ChannelConfig
from core.engine import FlowEngine
from models.schemas import ChannelType
from conftest import make_flow


def greeting_flow(channel: str = "all") -> dict:
    return make_flow("greet", [
        {"id": "hi", "type": "message", "data": {"content": "Hi from {{company_name}}"}},
        {"id": "ask", "type": "input", "data": {"question": "Name?", "variableName": "name"}},
        {"id": "bye", "type": "end", "data": {"endMessage": "Bye {{name}}"}},
    ], [{"from": "hi", "to": "ask"}, {"from": "ask", "to": "bye"}],
        triggers=[{"id": "t", "triggerType": "inbound_message", "channelType": channel}])


@pytest.fixture
def sms_requests():
    return []


@pytest.fixture
def client(settings, store, sms_requests):
    settings.channels = {
        "whatsapp": ChannelConfig(enabled=True, credentials={"verify_token": "v", "phone_number_id": "PN1"}),
        "sms": ChannelConfig(enabled=True, credentials={"account_sid": "AC1", "auth_token": "t",
                                                        "from_number": "+15550000000"}),
    }

    def twilio(request: httpx.Request) -> httpx.Response:
        sms_requests.append(parse_qs(request.content.decode()))
        return httpx.Response(201, json={"sid": f"SM{len(sms_requests)}"})

    engine = FlowEngine(settings=settings, store=store)
    engine.register_channel(WebchatAdapter())
    engine.register_channel(WhatsAppAdapter())
    engine.register_channel(SMSAdapter(transport=httpx.MockTransport(twilio)))
    with TestClient(create_app(engine)) as test_client:
        yield test_client


class TestHealthAndFlows:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["channels"]) == {"webchat", "whatsapp", "sms"}

    def test_activate_flow_versions(self, client):
        first = client.post("/flows", json=greeting_flow())
        second = client.post("/flows", json=greeting_flow())
        assert first.json() == {"id": "greet", "version": 1}
        assert second.json()["version"] == 2
        assert client.get("/flows").json() == [{"id": "greet", "version": 2, "nodes": 3, "triggers": 1}]

    def test_invalid_flow_rejected(self, client):
        broken = make_flow("broken", [{"id": "a", "type": "message"}], [{"from": "a", "to": "ghost"}])
        response = client.post("/flows", json=broken)
        assert response.status_code == 422
        assert response.json()["detail"]["flow_id"] == "broken"
        assert client.get("/flows").json() == []

    def test_malformed_flow_rejected(self, client):
        response = client.post("/flows", json={"id": "x", "nodes": [{"type": "message"}]})
        assert response.status_code == 422

    def test_reload_unknown_flow(self, client):
        assert client.post("/flows/ghost/reload").status_code == 404


class TestWebchatRoutes:
    def test_conversation_over_http(self, client):
        client.post("/flows", json=greeting_flow())
        client.post("/webchat/u1/messages", json={"type": "message", "text": "hello"})
        first = client.get("/webchat/u1/messages").json()
        assert [m["text"] for m in first] == ["Hi from Acme", "Name?"]

        client.post("/webchat/u1/messages", json={"type": "message", "text": "Maria"})
        assert [m["text"] for m in client.get("/webchat/u1/messages").json()] == ["Bye Maria"]
        assert client.get("/webchat/u1/messages").json() == []

        conversations = client.get("/conversations").json()
        assert len(conversations) == 1
        assert conversations[0]["status"] == "ended"
        assert conversations[0]["userData"]["name"] == "Maria"

        messages = client.get(f"/conversations/{conversations[0]['id']}/messages").json()
        assert [m["content"] for m in messages if m["direction"] == "inbound"] == ["hello", "Maria"]

    def test_websocket_push(self, client):
        client.post("/flows", json=greeting_flow())
        with client.websocket_connect("/ws/webchat/u2") as ws:
            ws.send_json({"type": "message", "text": "hello"})
            assert ws.receive_json()["text"] == "Hi from Acme"
            assert ws.receive_json()["text"] == "Name?"
            ws.send_text("Maria")
            assert ws.receive_json()["text"] == "Bye Maria"


class TestConversationRoutes:
    def _start(self, client) -> str:
        client.post("/flows", json=greeting_flow())
        client.post("/webchat/u1/messages", json={"type": "message", "text": "hello"})
        return client.get("/conversations", params={"status": "active"}).json()[0]["id"]

    def test_get_and_terminate(self, client):
        conv_id = self._start(client)
        body = client.get(f"/conversations/{conv_id}").json()
        assert body["currentNodeId"] == "ask"
        assert body["waitingFor"] == "input"

        response = client.post(f"/conversations/{conv_id}/terminate",
                               json={"reason": "agent_takeover", "status": "failed"})
        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["endReason"] == "agent_takeover"

    def test_terminate_defaults(self, client):
        conv_id = self._start(client)
        response = client.post(f"/conversations/{conv_id}/terminate")
        assert response.json()["endReason"] == "operator_terminated"

    def test_terminate_into_active_rejected(self, client):
        conv_id = self._start(client)
        response = client.post(f"/conversations/{conv_id}/terminate", json={"status": "active"})
        assert response.status_code == 422

    def test_unknown_conversation(self, client):
        assert client.get("/conversations/nope").status_code == 404
        assert client.get("/conversations/nope/messages").status_code == 404
        assert client.post("/conversations/nope/terminate").status_code == 404


class TestWebhooks:
    def test_sms_form_webhook_runs_flow(self, client, sms_requests):
        client.post("/flows", json=greeting_flow("sms"))
        response = client.post("/webhooks/sms", data={
            "From": "+15551234567", "To": "+15550000000", "Body": "hello", "MessageSid": "SMin1",
        })
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "events": ["SMin1"]}
        assert [r["Body"] for r in sms_requests] == [["Hi from Acme"], ["Name?"]]
        assert sms_requests[0]["To"] == ["+15551234567"]

    def test_duplicate_webhook_delivery_is_harmless(self, client, sms_requests):
        client.post("/flows", json=greeting_flow("sms"))
        form = {"From": "+15551234567", "To": "+15550000000", "Body": "hello", "MessageSid": "SMin1"}
        client.post("/webhooks/sms", data=form)
        client.post("/webhooks/sms", data=form)
        assert [r["Body"] for r in sms_requests] == [["Hi from Acme"], ["Name?"]]
        client.post("/webhooks/sms", data={**form, "Body": "Maria", "MessageSid": "SMin2"})
        assert sms_requests[-1]["Body"] == ["Bye Maria"]

    def test_whatsapp_verification(self, client):
        ok = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "v", "hub.challenge": "abc"})
        assert ok.status_code == 200
        assert ok.text == "abc"
        bad = client.get("/webhooks/whatsapp", params={
            "hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "abc"})
        assert bad.status_code == 403

    def test_unknown_or_disabled_channel(self, client):
        assert client.post("/webhooks/fax", json={}).status_code == 404
        assert client.post("/webhooks/telegram", json={}).status_code == 404

    def test_malformed_json(self, client):
        response = client.post("/webhooks/whatsapp", content=b"{nope",
                               headers={"content-type": "application/json"})
        assert response.status_code == 400


class TestBuildEngine:
    def test_registers_enabled_channels_and_webchat(self, settings):
        settings.channels = {
            "telegram": ChannelConfig(enabled=True),
            "voice": ChannelConfig(enabled=False),
        }
        engine = build_engine(settings)
        assert set(engine.channels.get_available()) == {ChannelType.WEBCHAT, ChannelType.TELEGRAM}
