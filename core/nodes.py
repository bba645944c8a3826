"""
Node Executor — processes one node of a conversation and says what next.

Dispatch is a table NodeType → handler. Each handler receives a
NodeContext and returns exactly one of:

  Continue(next_node_id, flow_id=None)  → runner moves on in the same turn
  Suspend(waiting_for, duration=None)   → runner persists and waits for an event
  Terminate(status, reason)             → runner persists and closes the conversation

Handlers absorb node-local failures (bad input, API errors, channel send
errors) and turn them into one of the three results; nothing but
programming errors escapes execute().
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from backend.api_client import ApiRequestClient
from channels.base import ChannelAdapter, ChannelSendError
from config.settings import EngineConfig
from context.scope import VariableScope
from core.errors import ApiRequestError, ConditionAllFalseError, InputValidationError
from flows.graph import FlowGraph
from models.schemas import (
    VOICE_ONLY_NODES, ActionKind, Conversation, ConversationStatus, Edge, EventKind,
    InboundEvent, MenuOption, Message, MessageDirection, Node, NodeType,
    OutboundAction, WaitingFor,
)
from utils.conditions import ConditionEvaluator
from utils.validators import validate_input

logger = structlog.get_logger()

BRANCH_HANDLES = frozenset({"true", "false", "yes", "no"})


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Continue:
    next_node_id: Optional[str]
    flow_id: Optional[str] = None


@dataclass(frozen=True)
class Suspend:
    waiting_for: WaitingFor
    duration: Optional[float] = None


@dataclass(frozen=True)
class Terminate:
    status: ConversationStatus
    reason: str


NodeResult = Union[Continue, Suspend, Terminate]

MessageSink = Callable[[Message], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Context
# ──────────────────────────────────────────────────────────────

@dataclass
class NodeContext:
    node: Node
    graph: FlowGraph
    conversation: Conversation
    scope: VariableScope
    adapter: Optional[ChannelAdapter]
    event: Optional[InboundEvent]
    settings: EngineConfig
    sink: MessageSink
    written: int = field(default=0)

    @property
    def data(self) -> dict[str, Any]:
        return self.node.data

    @property
    def state(self) -> dict[str, Any]:
        """Per-node scratch state (retry counters), persisted with the conversation."""
        return self.conversation.node_state.setdefault(self.node.id, {})

    def clear_state(self) -> None:
        self.conversation.node_state.pop(self.node.id, None)

    @property
    def on_voice(self) -> bool:
        if self.adapter is not None and self.adapter.voice_capable:
            return True
        return self.conversation.channel_type.voice_capable

    async def record(self, content: str = "", direction: MessageDirection = MessageDirection.OUTBOUND,
                     media_url: str = None, **metadata) -> Message:
        msg = Message(
            conversation_id=self.conversation.id,
            node_id=self.node.id,
            direction=direction,
            content=content,
            media_url=media_url,
            metadata=metadata,
        )
        await self.sink(msg)
        self.written += 1
        return msg

    async def send(self, action: OutboundAction) -> dict[str, Any]:
        if self.adapter is None:
            raise ChannelSendError(
                f"No adapter for channel {self.conversation.channel_type.value}",
                self.conversation.channel_type.value,
            )
        result = await self.adapter.send(self.conversation, action)
        content = action.text
        if action.options:
            content = "\n".join([action.text] + [o.text for o in action.options]).strip()
        await self.record(content, media_url=action.media_url, kind=action.kind.value)
        return result


# ──────────────────────────────────────────────────────────────
#  Executor
# ──────────────────────────────────────────────────────────────

class NodeExecutor:

    def __init__(
        self,
        api_client: ApiRequestClient = None,
        evaluator: ConditionEvaluator = None,
        store=None,
    ):
        self.api_client = api_client or ApiRequestClient()
        self.evaluator = evaluator or ConditionEvaluator()
        self.store = store
        self._alert_callbacks: list[Callable] = []
        self._handlers: dict[NodeType, Callable[[NodeContext], Awaitable[NodeResult]]] = {
            NodeType.MESSAGE: self._message,
            NodeType.TTS: self._tts,
            NodeType.PLAYBACK: self._playback,
            NodeType.MEDIA: self._media,
            NodeType.FILE: self._media,
            NodeType.TYPING: self._typing,
            NodeType.LOCATION: self._location,
            NodeType.CONTACT: self._contact,
            NodeType.INPUT: self._input,
            NodeType.MENU: self._menu,
            NodeType.CONDITION: self._condition,
            NodeType.GOTOIF: self._condition,
            NodeType.API_REQUEST: self._api_request,
            NodeType.WEBHOOK: self._webhook,
            NodeType.WAIT: self._wait,
            NodeType.GOTO: self._goto,
            NodeType.END: self._end,
            NodeType.ANSWER: self._voice_action,
            NodeType.DIAL: self._voice_action,
            NodeType.QUEUE: self._voice_action,
            NodeType.VOICEMAIL: self._voice_action,
            NodeType.RECORD: self._voice_action,
            NodeType.HANGUP: self._hangup,
        }

    def add_alert_callback(self, callback: Callable[[dict[str, Any]], Any]):
        self._alert_callbacks.append(callback)

    async def execute(self, ctx: NodeContext) -> NodeResult:
        node = ctx.node
        channel = ctx.conversation.channel_type
        skip = not node.supports(channel) or (node.type in VOICE_ONLY_NODES and not ctx.on_voice)
        try:
            if skip:
                logger.info("node_skipped", conversation_id=ctx.conversation.id,
                            node_id=node.id, node_type=node.type.value, channel=channel.value)
                await ctx.record(kind="visit", node_type=node.type.value, skipped=True)
                return self._advance(ctx)

            handler = self._handlers[node.type]
            result = await handler(ctx)
        except ChannelSendError as e:
            await self._alert(ctx, e)
            await ctx.record(kind="visit", node_type=node.type.value, error=str(e))
            return Terminate(ConversationStatus.FAILED, "channel_send_failed")
        except ConditionAllFalseError as e:
            logger.warning("condition_all_false", conversation_id=ctx.conversation.id, node_id=e.node_id)
            result = Terminate(ConversationStatus.FAILED, "no_matching_edge")

        if ctx.written == 0:
            await ctx.record(kind="visit", node_type=node.type.value)
        return result

    # ── Routing ───────────────────────────────────────────────

    def select_edge(self, ctx: NodeContext, edges: list[Edge] = None) -> Optional[Edge]:
        """First edge in definition order that is unconditional or whose condition holds."""
        if edges is None:
            edges = ctx.graph.routing_edges(ctx.node.id)
        for edge in edges:
            if edge.is_default or self.evaluator.evaluate(edge.condition, ctx.scope):
                return edge
        return None

    def _advance(self, ctx: NodeContext, edges: list[Edge] = None) -> NodeResult:
        if edges is None:
            edges = ctx.graph.routing_edges(ctx.node.id)
        if not edges:
            return Terminate(ConversationStatus.ENDED, "flow_completed")
        edge = self.select_edge(ctx, edges)
        if edge is None:
            raise ConditionAllFalseError(ctx.node.id)
        return Continue(edge.target)

    def _follow_handle(self, ctx: NodeContext, *handles: str) -> Optional[Continue]:
        edge = ctx.graph.edge_by_handle(ctx.node.id, *handles)
        return Continue(edge.target) if edge else None

    async def _alert(self, ctx: NodeContext, error: Exception):
        alert = {
            "conversation_id": ctx.conversation.id,
            "flow_id": ctx.graph.flow_id,
            "node_id": ctx.node.id,
            "channel": ctx.conversation.channel_type.value,
            "error": str(error),
        }
        logger.error("operator_alert", reason="channel_send_failed", **alert)
        for callback in self._alert_callbacks:
            try:
                outcome = callback(alert)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("alert_callback_failed", error=str(e))

    # ══════════════════════════════════════════════════════════
    #  OUTPUT NODES
    # ══════════════════════════════════════════════════════════

    async def _message(self, ctx: NodeContext) -> NodeResult:
        text = ctx.scope.render(ctx.data.get("content") or ctx.data.get("message") or "")
        params = {"voice": ctx.data["voice"]} if ctx.data.get("voice") else {}
        await ctx.send(OutboundAction(kind=ActionKind.TEXT, text=text, params=params))
        return self._advance(ctx)

    async def _tts(self, ctx: NodeContext) -> NodeResult:
        text = ctx.scope.render(ctx.data.get("text") or ctx.data.get("message") or "")
        params = {k: ctx.data[k] for k in ("voice", "language") if ctx.data.get(k)}
        await ctx.send(OutboundAction(kind=ActionKind.TTS, text=text, params=params))
        return self._advance(ctx)

    async def _playback(self, ctx: NodeContext) -> NodeResult:
        url = ctx.scope.render(ctx.data.get("audioUrl") or ctx.data.get("file") or ctx.data.get("mediaUrl") or "")
        await ctx.send(OutboundAction(kind=ActionKind.PLAYBACK, media_url=url, media_type="audio"))
        return self._advance(ctx)

    async def _media(self, ctx: NodeContext) -> NodeResult:
        default_type = "document" if ctx.node.type == NodeType.FILE else "image"
        await ctx.send(OutboundAction(
            kind=ActionKind.MEDIA,
            text=ctx.scope.render(ctx.data.get("caption") or ""),
            media_url=ctx.scope.render(ctx.data.get("mediaUrl") or ctx.data.get("fileUrl") or ""),
            media_type=ctx.data.get("mediaType") or default_type,
            params={"filename": ctx.data["fileName"]} if ctx.data.get("fileName") else {},
        ))
        return self._advance(ctx)

    async def _typing(self, ctx: NodeContext) -> NodeResult:
        await ctx.send(OutboundAction(kind=ActionKind.TYPING,
                                      params={"duration": ctx.data.get("duration", 1)}))
        return self._advance(ctx)

    async def _location(self, ctx: NodeContext) -> NodeResult:
        params = ctx.scope.render_value({
            k: ctx.data.get(k) for k in ("latitude", "longitude", "name", "address")
            if ctx.data.get(k) is not None
        })
        await ctx.send(OutboundAction(kind=ActionKind.LOCATION, text=str(params.get("name", "")), params=params))
        return self._advance(ctx)

    async def _contact(self, ctx: NodeContext) -> NodeResult:
        params = ctx.scope.render_value({
            "name": ctx.data.get("name") or ctx.data.get("contactName") or "",
            "phone": ctx.data.get("phone") or ctx.data.get("contactPhone") or "",
        })
        await ctx.send(OutboundAction(kind=ActionKind.CONTACT, text=params["name"], params=params))
        return self._advance(ctx)

    # ══════════════════════════════════════════════════════════
    #  CAPTURE NODES
    # ══════════════════════════════════════════════════════════

    def _max_retries(self, ctx: NodeContext) -> int:
        try:
            return max(1, int(ctx.data.get("maxRetries") or ctx.settings.input_max_retries))
        except (TypeError, ValueError):
            return ctx.settings.input_max_retries

    @staticmethod
    def _is_reply(ctx: NodeContext) -> bool:
        return ctx.event is not None and ctx.event.kind in (EventKind.MESSAGE, EventKind.DTMF)

    async def _prompt(self, ctx: NodeContext, text: str, options: list[MenuOption] = None) -> None:
        if ctx.on_voice:
            default_digits = 1 if options else 0
            params = {
                "maxDigits": int(ctx.data.get("maxDigits") or default_digits),
                "timeout": ctx.data.get("timeout"),
                "terminator": ctx.data.get("terminator", "#"),
            }
            await ctx.send(OutboundAction(kind=ActionKind.DTMF_PROMPT, text=text,
                                          options=options or [], params=params))
        else:
            await ctx.send(OutboundAction(kind=ActionKind.TEXT, text=text, options=options or []))

    async def _reject(self, ctx: NodeContext, prompt: str, options: list[MenuOption] = None) -> NodeResult:
        """Count a failed attempt; re-prompt, route to invalid/fallback, or fail."""
        attempts = int(ctx.state.get("attempts", 0)) + 1
        ctx.state["attempts"] = attempts
        if attempts < self._max_retries(ctx):
            retry_text = ctx.scope.render(ctx.data.get("retryMessage") or "")
            if retry_text:
                await ctx.send(OutboundAction(kind=ActionKind.TEXT, text=retry_text))
            await self._prompt(ctx, prompt, options)
            return Suspend(WaitingFor.INPUT)

        ctx.clear_state()
        logger.info("input_retries_exhausted", conversation_id=ctx.conversation.id,
                    node_id=ctx.node.id, attempts=attempts)
        routed = self._follow_handle(ctx, "invalid", "fallback")
        if routed:
            return routed
        fallback = ctx.scope.render(ctx.data.get("fallbackMessage") or "")
        if fallback:
            await ctx.send(OutboundAction(kind=ActionKind.TEXT, text=fallback))
        return Terminate(ConversationStatus.FAILED, "input_retries_exhausted")

    async def _input(self, ctx: NodeContext) -> NodeResult:
        prompt = ctx.scope.render(ctx.data.get("question") or ctx.data.get("prompt") or "")

        if ctx.event is None:
            ctx.state["attempts"] = 0
            await self._prompt(ctx, prompt)
            return Suspend(WaitingFor.INPUT)

        if ctx.event.attributes.get("timeout"):
            routed = self._follow_handle(ctx, "timeout")
            if routed:
                ctx.clear_state()
                return routed
        if not self._is_reply(ctx):
            return Suspend(WaitingFor.INPUT)

        try:
            value = validate_input(ctx.data.get("validation") or "none", ctx.event.text)
        except InputValidationError as e:
            logger.info("input_validation_failed", conversation_id=ctx.conversation.id,
                        node_id=ctx.node.id, validation=e.validation)
            return await self._reject(ctx, prompt)

        ctx.scope.set(ctx.data.get("variableName") or "userInput", value)
        ctx.clear_state()
        return self._advance(ctx)

    async def _menu(self, ctx: NodeContext) -> NodeResult:
        prompt = ctx.scope.render(ctx.data.get("prompt") or ctx.data.get("question") or "")
        options = [
            MenuOption(text=ctx.scope.render(o.get("text", "")), value=o.get("value", ""))
            for o in ctx.data.get("options") or [] if isinstance(o, dict)
        ]

        if ctx.event is None:
            ctx.state["attempts"] = 0
            await self._prompt(ctx, prompt, options)
            return Suspend(WaitingFor.INPUT)
        if not self._is_reply(ctx):
            return Suspend(WaitingFor.INPUT)

        reply = ctx.event.text.strip()
        chosen = next((o for o in options if reply and reply == o.value.strip()), None)
        if chosen is None:
            chosen = next((o for o in options if reply and reply.lower() == o.text.strip().lower()), None)
        if chosen is None:
            logger.info("menu_no_match", conversation_id=ctx.conversation.id, node_id=ctx.node.id)
            return await self._reject(ctx, prompt, options)

        var = ctx.data.get("variableName") or "menuSelection"
        ctx.scope.set(var, chosen.text)
        ctx.scope.set(f"{var}Value", chosen.value)
        ctx.clear_state()

        routed = self._follow_handle(ctx, chosen.value, f"option-{chosen.value}")
        if routed:
            return routed
        option_handles = set()
        for o in options:
            option_handles.update({o.value.strip().lower(), f"option-{o.value.strip().lower()}"})
        edges = [e for e in ctx.graph.routing_edges(ctx.node.id) if e.handle not in option_handles]
        return self._advance(ctx, edges)

    # ══════════════════════════════════════════════════════════
    #  BRANCHING
    # ══════════════════════════════════════════════════════════

    async def _condition(self, ctx: NodeContext) -> NodeResult:
        if not ctx.graph.routing_edges(ctx.node.id):
            raise ConditionAllFalseError(ctx.node.id)
        expression = ctx.data.get("condition")
        if not expression:
            return self._advance(ctx)

        outcome = self.evaluator.evaluate(expression, ctx.scope)
        logger.debug("condition_evaluated", conversation_id=ctx.conversation.id,
                     node_id=ctx.node.id, result=outcome)
        routed = self._follow_handle(ctx, *(("true", "yes") if outcome else ("false", "no")))
        if routed:
            return routed
        edges = [e for e in ctx.graph.routing_edges(ctx.node.id) if e.handle not in BRANCH_HANDLES]
        if not edges:
            raise ConditionAllFalseError(ctx.node.id)
        return self._advance(ctx, edges)

    # ══════════════════════════════════════════════════════════
    #  EXTERNAL CALLS
    # ══════════════════════════════════════════════════════════

    async def _call(self, ctx: NodeContext, default_method: str, default_body: Any = None):
        data = ctx.data
        body = data.get("body", default_body)
        timeout = data.get("timeout") or ctx.settings.api_timeout_seconds
        ctx.conversation.waiting_for = WaitingFor.API
        try:
            return await self.api_client.request(
                method=ctx.scope.render(data.get("method") or default_method),
                url=ctx.scope.render(data.get("url") or ""),
                headers=ctx.scope.render_value(data.get("headers")),
                body=ctx.scope.render_value(body),
                timeout=float(timeout),
            )
        finally:
            ctx.conversation.waiting_for = WaitingFor.NONE

    async def _api_request(self, ctx: NodeContext) -> NodeResult:
        var = ctx.data.get("resultVariable") or "apiResponse"
        try:
            response = await self._call(ctx, "GET")
        except (ApiRequestError, ValueError) as e:
            status = getattr(e, "status_code", None)
            ctx.scope.set("api_error", str(e))
            ctx.scope.set(f"{var}_error", str(e))
            if status is not None:
                ctx.scope.set(f"{var}_status", status)
            if getattr(e, "response", None) is not None:
                ctx.scope.set(var, e.response.data)
            logger.warning("api_request_failed", conversation_id=ctx.conversation.id,
                           node_id=ctx.node.id, error=str(e), status=status)
            await ctx.record(kind="visit", node_type=ctx.node.type.value, error=str(e), status=status)
            routed = self._follow_handle(ctx, "error")
            if routed:
                return routed
            return Terminate(ConversationStatus.FAILED, "api_request_failed")

        ctx.scope.set(var, response.data)
        ctx.scope.set(f"{var}_status", response.status_code)
        await ctx.record(kind="visit", node_type=ctx.node.type.value,
                         status=response.status_code, elapsed_ms=response.elapsed_ms)
        return self._advance(ctx)

    async def _webhook(self, ctx: NodeContext) -> NodeResult:
        default_body = {
            "conversationId": ctx.conversation.id,
            "flowId": ctx.graph.flow_id,
            "nodeId": ctx.node.id,
            "userId": ctx.conversation.external_user_id,
            "variables": ctx.scope.snapshot(),
        }
        try:
            response = await self._call(ctx, "POST", default_body)
            await ctx.record(kind="visit", node_type=ctx.node.type.value, status=response.status_code)
        except (ApiRequestError, ValueError) as e:
            logger.warning("webhook_failed", conversation_id=ctx.conversation.id,
                           node_id=ctx.node.id, error=str(e))
            await ctx.record(kind="visit", node_type=ctx.node.type.value, error=str(e))
        return self._advance(ctx)

    # ══════════════════════════════════════════════════════════
    #  CONTROL FLOW
    # ══════════════════════════════════════════════════════════

    async def _wait(self, ctx: NodeContext) -> NodeResult:
        if ctx.event is not None and ctx.event.kind == EventKind.TIMER:
            ctx.clear_state()
            return self._advance(ctx)
        if ctx.event is not None:
            return Suspend(WaitingFor.TIMER)
        try:
            duration = float(ctx.scope.render(ctx.data.get("duration", 5)) or 5)
        except ValueError:
            duration = 5.0
        return Suspend(WaitingFor.TIMER, max(0.0, duration))

    async def _goto(self, ctx: NodeContext) -> NodeResult:
        target_flow = ctx.data.get("targetFlow")
        target_node = ctx.data.get("targetNodeId")
        target_node = str(target_node) if target_node not in (None, "") else None
        if target_flow not in (None, "") and str(target_flow) != ctx.graph.flow_id:
            return Continue(target_node, flow_id=str(target_flow))
        return Continue(target_node)

    async def _end(self, ctx: NodeContext) -> NodeResult:
        text = ctx.scope.render(ctx.data.get("endMessage") or "")
        if text:
            await ctx.send(OutboundAction(kind=ActionKind.TEXT, text=text))
        if ctx.data.get("storeConversation") and ctx.settings.store_transcripts and self.store:
            messages = await self.store.get_messages(ctx.conversation.id)
            await self.store.save_transcript(ctx.conversation, messages)
        return Terminate(ConversationStatus.ENDED, "end_node")

    # ══════════════════════════════════════════════════════════
    #  TELEPHONY
    # ══════════════════════════════════════════════════════════

    _VOICE_ACTIONS = {
        NodeType.ANSWER: (ActionKind.ANSWER, ()),
        NodeType.DIAL: (ActionKind.DIAL, ("number", "endpoint", "timeout", "callerId")),
        NodeType.QUEUE: (ActionKind.QUEUE, ("queueName", "timeout", "musicOnHold")),
        NodeType.VOICEMAIL: (ActionKind.VOICEMAIL, ("mailbox",)),
        NodeType.RECORD: (ActionKind.RECORD, ("maxDuration", "format", "beep")),
    }

    async def _voice_action(self, ctx: NodeContext) -> NodeResult:
        kind, keys = self._VOICE_ACTIONS[ctx.node.type]
        params = ctx.scope.render_value({k: ctx.data[k] for k in keys if ctx.data.get(k) is not None})
        result = await ctx.send(OutboundAction(kind=kind, params=params))

        if ctx.node.type == NodeType.DIAL and "dialStatus" in result:
            ctx.scope.set("dialStatus", result["dialStatus"])
        if ctx.node.type == NodeType.RECORD and ctx.data.get("variableName"):
            ctx.scope.set(ctx.data["variableName"], result.get("recording", ""))
        return self._advance(ctx)

    async def _hangup(self, ctx: NodeContext) -> NodeResult:
        await ctx.send(OutboundAction(kind=ActionKind.HANGUP))
        return Terminate(ConversationStatus.ENDED, "hangup_node")
