"""Shared test fixtures for the flow engine."""
from __future__ import annotations

from typing import Any, Optional

import pytest
import pytest_asyncio

from channels.base import ChannelAdapter, ChannelError
from config.settings import DatabaseConfig, EngineConfig, Settings, reset_settings
from core.engine import FlowEngine
from database.store_factory import reset_store
from database.store_memory import InMemoryConversationStore
from models.schemas import ActionKind, ChannelType, Conversation, EventKind, InboundEvent, OutboundAction


class RecordingAdapter(ChannelAdapter):
    """Channel double that keeps every action it was asked to deliver."""

    def __init__(self, channel_type: ChannelType = ChannelType.WEBCHAT, voice: bool = False,
                 fail_times: int = 0, always_fail: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.channel_type = channel_type
        self.voice_capable = voice
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.calls = 0
        self.sent: list[tuple[str, OutboundAction]] = []

    async def _do_send(self, conversation: Conversation, action: OutboundAction) -> dict[str, Any]:
        self.calls += 1
        if self.always_fail or self.calls <= self.fail_times:
            raise ChannelError("provider unavailable", self.channel_type.value, retryable=True)
        self.sent.append((conversation.external_user_id, action))
        result: dict[str, Any] = {"status": "sent"}
        if action.kind == ActionKind.DIAL:
            result["dialStatus"] = "ANSWER"
        if action.kind == ActionKind.RECORD:
            result["recording"] = "rec-001"
        return result

    def texts(self, user: Optional[str] = None) -> list[str]:
        return [a.text for u, a in self.sent
                if (user is None or u == user) and a.kind in (ActionKind.TEXT, ActionKind.DTMF_PROMPT, ActionKind.TTS)]

    def kinds(self) -> list[ActionKind]:
        return [a.kind for _, a in self.sent]


# ──────────────────────────────────────────────────────────────
#  Builders
# ──────────────────────────────────────────────────────────────

def make_flow(flow_id: str, nodes: list[dict], edges: list[dict], triggers: list[dict] = None,
              **extra) -> dict[str, Any]:
    """Flow document in the editor's camelCase shape."""
    edge_docs = []
    for i, edge in enumerate(edges):
        doc = {"id": edge.get("id", f"{flow_id}-e{i}"), "sourceNodeId": edge["from"], "targetNodeId": edge["to"]}
        for key in ("condition", "sourceHandle", "label"):
            if key in edge:
                doc[key] = edge[key]
        edge_docs.append(doc)
    if triggers is None:
        triggers = [{"id": f"{flow_id}-t", "triggerType": "inbound_message", "channelType": "all"}]
    return {
        "id": flow_id,
        "name": flow_id,
        "nodes": [{"id": n["id"], "type": n["type"], "data": n.get("data", {})} for n in nodes],
        "edges": edge_docs,
        "triggers": triggers,
        **extra,
    }


def inbound(text: str = "", user: str = "u1", event_id: str = None, kind: EventKind = EventKind.MESSAGE,
            channel: ChannelType = ChannelType.WEBCHAT, channel_id: str = "site-1",
            trigger_type: str = "inbound_message", **attributes) -> InboundEvent:
    fields: dict[str, Any] = {
        "channel_type": channel,
        "channel_id": channel_id,
        "external_user_id": user,
        "kind": kind,
        "text": text,
        "trigger_type": trigger_type,
        "attributes": attributes,
    }
    if event_id:
        fields["event_id"] = event_id
    return InboundEvent(**fields)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_store()
    reset_settings()
    yield
    reset_store()
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        engine=EngineConfig(
            max_hops=50,
            idle_timeout_seconds=3600,
            input_max_retries=3,
            send_max_attempts=3,
            send_backoff_base=0.0,
            send_backoff_max=0.0,
            processed_event_window=50,
        ),
        database=DatabaseConfig(store_backend="memory"),
        variables={"company_name": "Acme"},
    )


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def webchat() -> RecordingAdapter:
    return RecordingAdapter(ChannelType.WEBCHAT)


@pytest_asyncio.fixture
async def engine(settings, store, webchat):
    eng = FlowEngine(settings=settings, store=store)
    eng.register_channel(webchat)
    await eng.startup()
    yield eng
    await eng.shutdown()
