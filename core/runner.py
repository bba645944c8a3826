"""
Conversation Runner — the per-conversation state machine.

State at rest is {current_node_id, waiting_for} plus the session variables,
persisted through the ConversationStore. One inbound event drives one turn:

    load state → deliver the event to the waiting node → follow Continue
    results (bounded by max_hops) → persist at the Suspend/Terminate boundary

Transitions of one conversation are serialised by an asyncio.Lock keyed on
the conversation id; distinct conversations run concurrently and share
only immutable FlowGraphs and defaults.

Status only ever moves active → ended | failed. Events for closed
conversations are logged and ignored.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Mapping, Optional

import structlog

from channels.base import ChannelRegistry
from config.settings import Settings
from context.scope import VariableScope
from core.errors import IdleTimeoutError, UnknownFlowError
from core.locks import KeyedLock
from core.nodes import Continue, NodeContext, NodeExecutor, NodeResult, Suspend, Terminate
from database.store_base import ConversationStore
from flows.graph import FlowGraph
from flows.repository import FlowRepository
from models.schemas import (
    Conversation, ConversationStatus, EventKind, InboundEvent, Message,
    MessageDirection, Trigger, WaitingFor,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRunner:

    def __init__(
        self,
        repository: FlowRepository,
        store: ConversationStore,
        channels: ChannelRegistry,
        executor: NodeExecutor,
        settings: Settings,
        scheduler=None,
    ):
        self.repository = repository
        self.store = store
        self.channels = channels
        self.executor = executor
        self.settings = settings
        self.scheduler = scheduler
        self._locks = KeyedLock()
        self._defaults: dict[tuple[str, int], Mapping[str, Any]] = {}

    # ── Helpers ───────────────────────────────────────────────

    def defaults_for(self, graph: FlowGraph) -> Mapping[str, Any]:
        """Global settings variables overlaid with the flow's defaults, shared read-only."""
        key = (graph.flow_id, graph.version)
        if key not in self._defaults:
            merged = dict(self.settings.variables)
            merged.update(graph.defaults)
            self._defaults[key] = MappingProxyType(merged)
        return self._defaults[key]

    def lock_for(self, conversation_id: str):
        return self._locks.hold(conversation_id)

    def _remember(self, conv: Conversation, event_id: str) -> None:
        window = self.settings.engine.processed_event_window
        conv.processed_event_ids.append(event_id)
        if len(conv.processed_event_ids) > window:
            del conv.processed_event_ids[:-window]

    async def _record_inbound(self, conv: Conversation, event: InboundEvent) -> None:
        if event.kind not in (EventKind.MESSAGE, EventKind.DTMF) or not (event.text or event.media_url):
            return
        await self.store.append_message(Message(
            conversation_id=conv.id,
            node_id=conv.current_node_id,
            direction=MessageDirection.INBOUND,
            content=event.text,
            media_url=event.media_url,
            metadata={"event_id": event.event_id, "kind": event.kind.value},
        ))

    @staticmethod
    def _accepts(conv: Conversation, event: InboundEvent) -> bool:
        if conv.waiting_for == WaitingFor.INPUT:
            return event.kind in (EventKind.MESSAGE, EventKind.DTMF)
        if conv.waiting_for == WaitingFor.TIMER:
            node_id = event.payload.get("node_id")
            return event.kind == EventKind.TIMER and node_id in (None, conv.current_node_id)
        return False

    # ══════════════════════════════════════════════════════════
    #  ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def start(self, graph: FlowGraph, trigger: Optional[Trigger], event: InboundEvent) -> Optional[Conversation]:
        entry = graph.entry_node_for_trigger(trigger)
        if entry is None:
            logger.warning("flow_has_no_entry_node", flow_id=graph.flow_id)
            return None

        seeds = dict(graph.session_seeds)
        seeds.update({
            "channel": event.channel_type.value,
            "userId": event.external_user_id,
            "contactName": event.attributes.get("contactName") or event.payload.get("contactName") or "",
        })
        conv = Conversation(
            flow_id=graph.flow_id,
            flow_version=graph.version,
            channel_id=event.channel_id,
            channel_type=event.channel_type,
            external_user_id=event.external_user_id,
            current_node_id=entry.id,
            user_data=seeds,
            metadata={
                "trigger_id": trigger.id if trigger else "",
                "trigger_type": event.trigger_type,
            },
        )
        logger.info("conversation_started", conversation_id=conv.id, flow_id=graph.flow_id,
                    version=graph.version, channel=event.channel_type.value,
                    user=event.external_user_id, entry_node=entry.id)

        async with self.lock_for(conv.id):
            self._remember(conv, event.event_id)
            await self._record_inbound(conv, event)
            scope = VariableScope(self.defaults_for(graph), conv.user_data)
            await self._run(conv, graph, scope, None)
        return conv

    async def resume(self, conversation_id: str, event: InboundEvent) -> Optional[Conversation]:
        async with self.lock_for(conversation_id):
            conv = await self.store.load_conversation(conversation_id)
            if conv is None:
                logger.warning("resume_unknown_conversation", conversation_id=conversation_id)
                return None
            if not conv.is_active:
                logger.info("event_for_closed_conversation", conversation_id=conv.id,
                            status=conv.status.value, event_id=event.event_id)
                return conv
            if event.event_id in conv.processed_event_ids:
                logger.info("duplicate_event_ignored", conversation_id=conv.id, event_id=event.event_id)
                return conv

            self._remember(conv, event.event_id)
            await self._record_inbound(conv, event)

            try:
                graph = self.repository.load_flow(conv.flow_id, conv.flow_version)
            except UnknownFlowError as e:
                logger.error("pinned_flow_missing", conversation_id=conv.id, error=str(e))
                await self._finish(conv, VariableScope(None, conv.user_data),
                                   Terminate(ConversationStatus.FAILED, "unknown_flow"))
                return conv
            scope = VariableScope.restore(self.defaults_for(graph), conv.user_data)

            if event.kind.is_terminal:
                await self._finish(conv, scope, Terminate(ConversationStatus.ENDED, "channel_hangup"))
                return conv

            if not self._accepts(conv, event):
                logger.info("event_ignored_while_waiting", conversation_id=conv.id,
                            waiting_for=conv.waiting_for.value, kind=event.kind.value)
                await self.store.save_conversation(conv)
                return conv

            await self._run(conv, graph, scope, event)
            return conv

    async def terminate(self, conversation_id: str, status: ConversationStatus, reason: str) -> Optional[Conversation]:
        """Force a conversation closed (operator or idle watchdog)."""
        async with self.lock_for(conversation_id):
            conv = await self.store.load_conversation(conversation_id)
            if conv is None or not conv.is_active:
                return conv
            await self._finish(conv, VariableScope(None, conv.user_data), Terminate(status, reason))
            return conv

    async def handle_timer(self, conversation_id: str, event: InboundEvent) -> Optional[Conversation]:
        return await self.resume(conversation_id, event)

    async def handle_idle(self, conversation_id: str, idle_seconds: float) -> Optional[Conversation]:
        error = IdleTimeoutError(conversation_id, idle_seconds)
        logger.warning("idle_timeout", conversation_id=conversation_id, error=str(error))
        return await self.terminate(conversation_id, ConversationStatus.FAILED, "idle_timeout")

    # ══════════════════════════════════════════════════════════
    #  TRANSITION LOOP
    # ══════════════════════════════════════════════════════════

    async def _run(self, conv: Conversation, graph: FlowGraph, scope: VariableScope,
                   event: Optional[InboundEvent]) -> None:
        max_hops = self.settings.engine.max_hops
        adapter = self.channels.get(conv.channel_type)
        node_id = conv.current_node_id
        hops = 0
        result: NodeResult

        while True:
            if hops >= max_hops:
                logger.warning("hop_limit_exceeded", conversation_id=conv.id,
                               node_id=node_id, max_hops=max_hops)
                result = Terminate(ConversationStatus.FAILED, "hop_limit_exceeded")
                break

            node = graph.get_node(node_id) if node_id is not None else None
            if node is None:
                logger.error("node_not_found", conversation_id=conv.id, node_id=node_id)
                result = Terminate(ConversationStatus.FAILED, "node_not_found")
                break

            conv.current_node_id = node.id
            ctx = NodeContext(
                node=node,
                graph=graph,
                conversation=conv,
                scope=scope,
                adapter=adapter,
                event=event if hops == 0 else None,
                settings=self.settings.engine,
                sink=self.store.append_message,
            )
            result = await self.executor.execute(ctx)
            hops += 1
            logger.debug("node_executed", conversation_id=conv.id, node_id=node.id,
                         node_type=node.type.value, result=type(result).__name__)

            if not isinstance(result, Continue):
                break

            if result.flow_id:
                try:
                    target = self.repository.load_flow(result.flow_id)
                except UnknownFlowError:
                    logger.error("goto_unknown_flow", conversation_id=conv.id, flow_id=result.flow_id)
                    result = Terminate(ConversationStatus.FAILED, "unknown_flow")
                    break
                graph = target
                conv.flow_id, conv.flow_version = graph.flow_id, graph.version
                scope = VariableScope(self.defaults_for(graph), scope.snapshot())
                entry = graph.get_node(result.next_node_id) if result.next_node_id else None
                entry = entry or graph.entry_node_for_trigger(None)
                node_id = entry.id if entry else None
                logger.info("flow_switched", conversation_id=conv.id, flow_id=graph.flow_id,
                            version=graph.version, node_id=node_id)
            else:
                node_id = result.next_node_id

        await self._finish(conv, scope, result)

    async def _finish(self, conv: Conversation, scope: VariableScope, result: NodeResult) -> None:
        now = _utcnow()
        conv.user_data = scope.snapshot()
        conv.updated_at = now

        if isinstance(result, Suspend):
            conv.waiting_for = result.waiting_for
            conv.wake_at = (now + timedelta(seconds=result.duration or 0)
                            if result.waiting_for == WaitingFor.TIMER else None)
            await self.store.save_conversation(conv)
            if self.scheduler is not None:
                await self.scheduler.cancel(conv.id)
                if result.waiting_for == WaitingFor.TIMER:
                    await self.scheduler.schedule_timer(conv.id, conv.current_node_id, result.duration or 0)
                await self.scheduler.schedule_idle(conv.id, self.settings.engine.idle_timeout_seconds)
            logger.info("conversation_suspended", conversation_id=conv.id,
                        node_id=conv.current_node_id, waiting_for=result.waiting_for.value)
            return

        conv.status = result.status
        conv.end_reason = result.reason
        conv.waiting_for = WaitingFor.NONE
        conv.wake_at = None
        conv.ended_at = now
        await self.store.save_conversation(conv)
        if self.scheduler is not None:
            await self.scheduler.cancel(conv.id)
        log = logger.info if result.status == ConversationStatus.ENDED else logger.warning
        log("conversation_terminated", conversation_id=conv.id, node_id=conv.current_node_id,
            status=result.status.value, reason=result.reason)
