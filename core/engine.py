"""
Flow Engine — wiring facade for the whole runtime.

Architecture:
  Inbound:  webhook/WS → ChannelAdapter.parse_inbound → FlowEngine.handle_inbound
            → active conversation for (channel id, user)?  → runner.resume
            → else trigger match in FlowRepository           → runner.start
            → else logged and ignored

  Timers:   Scheduler fires → runner.handle_timer / runner.handle_idle

  Operator: reload_flow (new version for future conversations only),
            terminate (force close)

The engine owns no conversation state of its own; everything at rest lives
in the ConversationStore.
"""
from __future__ import annotations

import dataclasses
from typing import Any, Callable, Optional

import structlog

from backend.api_client import ApiRequestClient
from channels.base import ChannelAdapter, ChannelRegistry
from config.settings import Settings, get_settings
from core.locks import KeyedLock
from core.nodes import NodeExecutor
from core.runner import ConversationRunner
from core.scheduler import Scheduler
from database.store_base import ConversationStore
from database.store_factory import create_store
from flows.graph import FlowGraph
from flows.repository import FlowRepository
from models.schemas import Conversation, ConversationStatus, InboundEvent

logger = structlog.get_logger()


class FlowEngine:

    def __init__(
        self,
        settings: Settings = None,
        store: ConversationStore = None,
        repository: FlowRepository = None,
        channels: ChannelRegistry = None,
        api_client: ApiRequestClient = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or FlowRepository()
        self.store = store or create_store(dataclasses.asdict(self.settings.database))
        self.channels = channels or ChannelRegistry()
        self.api_client = api_client or ApiRequestClient(self.settings.engine.api_timeout_seconds)

        self.executor = NodeExecutor(api_client=self.api_client, store=self.store)
        self.runner = ConversationRunner(
            repository=self.repository,
            store=self.store,
            channels=self.channels,
            executor=self.executor,
            settings=self.settings,
        )
        self.scheduler = Scheduler(
            self.store,
            on_timer=self.runner.handle_timer,
            on_idle=self.runner.handle_idle,
        )
        self.runner.scheduler = self.scheduler
        self.channels.set_inbound_handler(self.handle_inbound)
        self._route_locks = KeyedLock()
        self._started = False

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def startup(self) -> None:
        if self._started:
            return
        initialize = getattr(self.store, "initialize", None)
        if initialize is not None:
            await initialize()
        if self.settings.flow_paths:
            self.repository.load_paths(self.settings.flow_paths)
        await self.channels.initialize_all(self.settings.channels)
        restored = await self.scheduler.restore()
        self._started = True
        logger.info("flow_engine_started",
                    flows=len(self.repository.flow_ids()),
                    channels=[c.value for c in self.channels.get_available()],
                    timers_restored=restored)

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.channels.shutdown_all()
        await self.api_client.close()
        await self.store.close()
        self._started = False
        logger.info("flow_engine_stopped")

    # ══════════════════════════════════════════════════════════
    #  WIRING
    # ══════════════════════════════════════════════════════════

    def register_channel(self, adapter: ChannelAdapter) -> None:
        adapter.max_attempts = max(1, self.settings.engine.send_max_attempts)
        adapter.backoff_base = self.settings.engine.send_backoff_base
        adapter.backoff_max = self.settings.engine.send_backoff_max
        adapter.set_inbound_handler(self.handle_inbound)
        self.channels.register(adapter)

    def add_alert_callback(self, callback: Callable[[dict[str, Any]], Any]) -> None:
        self.executor.add_alert_callback(callback)

    def activate_flow(self, flow) -> FlowGraph:
        return self.repository.activate(flow)

    def reload_flow(self, flow_id: str) -> FlowGraph:
        return self.repository.reload(flow_id)

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def handle_inbound(self, event: InboundEvent) -> Optional[Conversation]:
        """Route one inbound event to its conversation, starting one on a trigger match."""
        key = f"{event.channel_type.value}:{event.channel_id}:{event.external_user_id}"
        async with self._route_locks.hold(key):
            conv = await self.store.find_active_conversation(
                None, event.channel_id, event.external_user_id, event.channel_type,
            )
            if conv is not None:
                return await self.runner.resume(conv.id, event)

            # a redelivered event may have closed the user's last conversation
            latest = await self.store.find_latest_conversation(
                event.channel_id, event.external_user_id, event.channel_type,
            )
            if latest is not None and event.event_id in latest.processed_event_ids:
                logger.info("duplicate_event_ignored", conversation_id=latest.id,
                            event_id=event.event_id, status=latest.status.value)
                return latest

            if event.kind.is_terminal:
                logger.info("terminal_event_without_conversation",
                            channel=event.channel_type.value, user=event.external_user_id)
                return None

            match = self.repository.match_trigger(
                event.channel_type, event.trigger_type, event.attributes, event.text,
            )
            if match is None:
                logger.info("no_trigger_matched", channel=event.channel_type.value,
                            trigger_type=event.trigger_type, user=event.external_user_id)
                return None

            graph, trigger = match
            return await self.runner.start(graph, trigger, event)

    # ══════════════════════════════════════════════════════════
    #  OPERATOR
    # ══════════════════════════════════════════════════════════

    async def terminate(self, conversation_id: str, reason: str = "operator_terminated",
                        status: ConversationStatus = ConversationStatus.ENDED) -> Optional[Conversation]:
        return await self.runner.terminate(conversation_id, status, reason)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self.store.load_conversation(conversation_id)
