"""
Scheduler — durable timers and idle watchdogs for suspended conversations.

Each timer is persisted through the ConversationStore before it is armed,
then waited on by its own asyncio task. No threads are parked. After a
restart, restore() re-arms every persisted timer, and overdue ones fire
immediately.

Timer ids double as event ids ("timer:<conversation>:<node>:<due>"), so a
timer that fires again after a crash is dropped by the runner's processed
event window.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog

from database.store_base import ConversationStore
from models.schemas import ChannelType, EventKind, InboundEvent, ScheduledTimer

logger = structlog.get_logger()

TimerCallback = Callable[[str, InboundEvent], Awaitable[object]]
IdleCallback = Callable[[str, float], Awaitable[object]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timer_id(conversation_id: str, node_id: str, due_at: datetime) -> str:
    return f"timer:{conversation_id}:{node_id}:{due_at.isoformat()}"


def idle_id(conversation_id: str) -> str:
    return f"idle:{conversation_id}"


class Scheduler:

    def __init__(
        self,
        store: ConversationStore,
        on_timer: TimerCallback = None,
        on_idle: IdleCallback = None,
    ):
        self.store = store
        self.on_timer = on_timer
        self.on_idle = on_idle
        self._tasks: dict[str, asyncio.Task] = {}
        self._owners: dict[str, str] = {}       # timer id → conversation id
        self._idle_ceilings: dict[str, float] = {}

    # ══════════════════════════════════════════════════════════
    #  SCHEDULING
    # ══════════════════════════════════════════════════════════

    async def schedule_timer(self, conversation_id: str, node_id: str, delay: float) -> ScheduledTimer:
        due = _utcnow() + timedelta(seconds=max(0.0, delay))
        timer = ScheduledTimer(
            id=timer_id(conversation_id, node_id, due),
            conversation_id=conversation_id,
            kind="timer",
            node_id=node_id,
            due_at=due,
        )
        await self.store.save_timer(timer)
        self._arm(timer)
        logger.info("timer_scheduled", conversation_id=conversation_id,
                    node_id=node_id, delay=delay, timer_id=timer.id)
        return timer

    async def schedule_idle(self, conversation_id: str, ceiling: float) -> ScheduledTimer:
        """(Re)arm the idle watchdog; one per conversation."""
        tid = idle_id(conversation_id)
        self._disarm(tid)
        timer = ScheduledTimer(
            id=tid,
            conversation_id=conversation_id,
            kind="idle",
            due_at=_utcnow() + timedelta(seconds=max(0.0, ceiling)),
        )
        self._idle_ceilings[conversation_id] = ceiling
        await self.store.save_timer(timer)
        self._arm(timer)
        return timer

    async def cancel(self, conversation_id: str) -> int:
        """Cancel and delete every timer of a conversation. Returns how many were dropped."""
        dropped = 0
        for tid in [t for t, owner in self._owners.items() if owner == conversation_id]:
            self._disarm(tid)
        for timer in await self.store.list_timers(conversation_id):
            await self.store.delete_timer(timer.id)
            dropped += 1
        self._idle_ceilings.pop(conversation_id, None)
        return dropped

    async def restore(self) -> int:
        """Re-arm persisted timers after a restart."""
        timers = await self.store.list_timers()
        for timer in timers:
            if timer.id not in self._tasks:
                self._arm(timer)
        logger.info("timers_restored", count=len(timers))
        return len(timers)

    async def stop(self) -> None:
        """Cancel in-flight tasks. Persisted timers survive for restore()."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._owners.clear()

    def pending(self, conversation_id: Optional[str] = None) -> list[str]:
        return [t for t, owner in self._owners.items()
                if conversation_id is None or owner == conversation_id]

    # ══════════════════════════════════════════════════════════
    #  TASKS
    # ══════════════════════════════════════════════════════════

    def _arm(self, timer: ScheduledTimer) -> None:
        self._disarm(timer.id)
        self._owners[timer.id] = timer.conversation_id
        self._tasks[timer.id] = asyncio.create_task(self._run(timer), name=timer.id)

    def _disarm(self, tid: str) -> None:
        task = self._tasks.pop(tid, None)
        self._owners.pop(tid, None)
        # a firing timer may cancel its own conversation's timers; never self-cancel
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _run(self, timer: ScheduledTimer) -> None:
        delay = (timer.due_at - _utcnow()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)

        if self._tasks.get(timer.id) is asyncio.current_task():
            self._tasks.pop(timer.id, None)
            self._owners.pop(timer.id, None)

        try:
            if timer.kind == "idle":
                ceiling = self._idle_ceilings.pop(timer.conversation_id, None)
                logger.info("idle_timer_fired", conversation_id=timer.conversation_id)
                if self.on_idle:
                    await self.on_idle(timer.conversation_id, ceiling or 0.0)
            else:
                event = InboundEvent(
                    event_id=timer.id,
                    channel_type=ChannelType.ALL,
                    kind=EventKind.TIMER,
                    payload={"node_id": timer.node_id, "conversation_id": timer.conversation_id},
                )
                logger.info("timer_fired", conversation_id=timer.conversation_id,
                            node_id=timer.node_id, timer_id=timer.id)
                if self.on_timer:
                    await self.on_timer(timer.conversation_id, event)
            await self.store.delete_timer(timer.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("timer_callback_failed", conversation_id=timer.conversation_id,
                         timer_id=timer.id, error=str(e))
