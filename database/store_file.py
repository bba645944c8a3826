"""
FileConversationStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    conversations.json
    messages.json
    transcripts.json
    timers.json

Features:
  - Survives process restarts (unlike InMemoryConversationStore)
  - No external dependencies (no database server)
  - Every mutation flushes the changed collection, or batches with flush_interval_s
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, and durable timers in tests.
"""
from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

import structlog

from database.store_memory import InMemoryConversationStore
from models.schemas import Conversation, Message, ScheduledTimer

logger = structlog.get_logger()

_COLLECTIONS = ["conversations", "messages", "transcripts", "timers"]


class FileConversationStore(InMemoryConversationStore):
    """
    Extends InMemoryConversationStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data)
                logger.debug("file_store_loaded", collection=collection,
                             records=len(data) if isinstance(data, dict) else "N/A")
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))

    def _set_collection(self, collection: str, data: Any):
        data = data if isinstance(data, dict) else {}
        if collection == "conversations":
            self._conversations = data
            self._user_index.clear()
            ordered = sorted(data.values(), key=lambda c: c.get("started_at") or "")
            for c in ordered:
                key = self._user_key(c.get("channel_id", ""), c.get("external_user_id", ""))
                self._user_index[key].append(c["id"])
        elif collection == "messages":
            self._messages = defaultdict(list, data)
        elif collection == "transcripts":
            self._transcripts = data
        elif collection == "timers":
            self._timers = data

    def _get_collection_data(self, collection: str) -> Any:
        mapping = {
            "conversations": self._conversations,
            "messages": dict(self._messages),
            "transcripts": self._transcripts,
            "timers": self._timers,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._get_collection_data(collection), f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def save_conversation(self, conversation: Conversation) -> None:
        await super().save_conversation(conversation)
        self._mark_dirty("conversations")

    async def append_message(self, message: Message) -> None:
        await super().append_message(message)
        self._mark_dirty("messages")

    async def save_transcript(self, conversation: Conversation, messages: list[Message]) -> None:
        await super().save_transcript(conversation, messages)
        self._mark_dirty("transcripts")

    async def save_timer(self, timer: ScheduledTimer) -> None:
        await super().save_timer(timer)
        self._mark_dirty("timers")

    async def delete_timer(self, timer_id: str) -> None:
        await super().delete_timer(timer_id)
        self._mark_dirty("timers")
