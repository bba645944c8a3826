"""
FastAPI Application — webhooks, operator endpoints and the webchat socket.

Provides:
- Webhook endpoints for every registered channel (JSON or form-encoded)
- WhatsApp verification challenge
- Flow activation and hot reload (new versions apply to new conversations)
- Conversation inspection and forced termination
- Webchat WebSocket and outbox polling
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ValidationError

from channels import ADAPTER_CLASSES
from channels.webchat_adapter import WebchatAdapter
from config.settings import Settings, get_settings
from core.engine import FlowEngine
from core.errors import GraphIntegrityError, UnknownFlowError
from models.schemas import ChannelType, ConversationStatus

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_engine(settings: Settings = None) -> FlowEngine:
    """Engine with one adapter per enabled channel (webchat is always on)."""
    settings = settings or get_settings()
    engine = FlowEngine(settings)
    enabled = {name for name, cfg in settings.channels.items() if cfg.enabled}
    enabled.add("webchat")
    for name in sorted(enabled):
        adapter_cls = ADAPTER_CLASSES.get(name)
        if adapter_cls is None:
            logger.warning("unknown_channel_configured", channel=name)
            continue
        engine.register_channel(adapter_cls())
    return engine


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TerminateRequest(BaseModel):
    reason: str = "operator_terminated"
    status: ConversationStatus = ConversationStatus.ENDED


def create_app(engine: Optional[FlowEngine] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        flow_engine: FlowEngine = app.state.engine
        await flow_engine.startup()
        yield
        await flow_engine.shutdown()

    app = FastAPI(
        title="FlowEngine API",
        description="Graph-based multi-channel conversation flow engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine or build_engine()

    def _engine() -> FlowEngine:
        return app.state.engine

    def _adapter(channel: str):
        try:
            channel_type = ChannelType(channel)
        except ValueError:
            raise HTTPException(404, f"Unknown channel '{channel}'")
        adapter = _engine().channels.get(channel_type)
        if adapter is None:
            raise HTTPException(404, f"Channel '{channel}' is not enabled")
        return adapter

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        eng = _engine()
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "flows": eng.repository.flow_ids(),
            "channels": await eng.channels.health_check_all(),
            "pending_timers": len(eng.scheduler.pending()),
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(request: Request):
        adapter = _adapter(ChannelType.WHATSAPP.value)
        challenge = adapter.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/{channel}")
    async def channel_webhook(channel: str, request: Request):
        adapter = _adapter(channel)
        content_type = request.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                body = await request.json()
            except json.JSONDecodeError:
                raise HTTPException(400, "Malformed JSON body")
        else:
            body = dict(await request.form())
        if not isinstance(body, dict):
            raise HTTPException(400, "Webhook body must be an object")

        events = await adapter.handle_webhook(body)
        logger.info("webhook_received", channel=channel, events=len(events))
        return {"status": "ok", "events": [e.event_id for e in events]}

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.get("/flows")
    async def list_flows():
        return [
            {"id": g.flow_id, "version": g.version, "nodes": len(g), "triggers": len(g.triggers)}
            for g in _engine().repository.latest_graphs()
        ]

    @app.post("/flows")
    async def activate_flow(document: dict[str, Any]):
        try:
            graph = _engine().activate_flow(document)
        except ValidationError as e:
            raise HTTPException(422, e.errors(include_url=False))
        except GraphIntegrityError as e:
            raise HTTPException(422, {"flow_id": e.flow_id, "problems": e.problems})
        return {"id": graph.flow_id, "version": graph.version}

    @app.post("/flows/{flow_id}/reload")
    async def reload_flow(flow_id: str):
        try:
            graph = _engine().reload_flow(flow_id)
        except UnknownFlowError as e:
            raise HTTPException(404, str(e))
        except GraphIntegrityError as e:
            raise HTTPException(422, {"flow_id": e.flow_id, "problems": e.problems})
        return {"id": graph.flow_id, "version": graph.version}

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    @app.get("/conversations")
    async def list_conversations(status: Optional[ConversationStatus] = None,
                                 flow_id: Optional[str] = None, limit: int = 100):
        convs = await _engine().store.list_conversations(status=status, flow_id=flow_id, limit=limit)
        return [c.model_dump(mode="json", by_alias=True) for c in convs]

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str):
        conv = await _engine().get_conversation(conversation_id)
        if conv is None:
            raise HTTPException(404, "Conversation not found")
        return conv.model_dump(mode="json", by_alias=True)

    @app.get("/conversations/{conversation_id}/messages")
    async def get_messages(conversation_id: str, limit: int = 500):
        eng = _engine()
        if await eng.get_conversation(conversation_id) is None:
            raise HTTPException(404, "Conversation not found")
        messages = await eng.store.get_messages(conversation_id, limit)
        return [m.model_dump(mode="json", by_alias=True) for m in messages]

    @app.post("/conversations/{conversation_id}/terminate")
    async def terminate_conversation(conversation_id: str, req: Optional[TerminateRequest] = None):
        req = req or TerminateRequest()
        if req.status == ConversationStatus.ACTIVE:
            raise HTTPException(422, "Cannot terminate into the active status")
        conv = await _engine().terminate(conversation_id, req.reason, req.status)
        if conv is None:
            raise HTTPException(404, "Conversation not found")
        return conv.model_dump(mode="json", by_alias=True)

    # ══════════════════════════════════════════════════════════
    #  WEBCHAT
    # ══════════════════════════════════════════════════════════

    def _webchat() -> WebchatAdapter:
        return _adapter(ChannelType.WEBCHAT.value)

    @app.post("/webchat/{user_id}/messages")
    async def webchat_send(user_id: str, event: dict[str, Any]):
        parsed = await _webchat().handle_client_event(user_id, event)
        return {"status": "ok", "event_id": parsed.event_id if parsed else None}

    @app.get("/webchat/{user_id}/messages")
    async def webchat_poll(user_id: str):
        return _webchat().drain(user_id)

    @app.websocket("/ws/webchat/{user_id}")
    async def webchat_socket(websocket: WebSocket, user_id: str):
        """
        Client sends JSON events:
          {"type": "message", "text": "hello"}
          {"type": "heartbeat"}
          {"type": "close"}
        """
        adapter = _webchat()
        await websocket.accept()
        await adapter.register_connection(user_id, websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    event = {"type": "message", "text": raw}
                await adapter.handle_client_event(user_id, event)
        except WebSocketDisconnect:
            await adapter.remove_connection(user_id)
        except Exception as e:
            logger.error("websocket_error", user_id=user_id, error=str(e))
            await adapter.remove_connection(user_id)

    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
