"""
Database layer — Multi-backend persistence for conversations, messages,
transcripts, and durable timers.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  conv = await store.load_conversation("abc123")
"""
from database.models import Base, ConversationRow, MessageRow, TimerRow, TranscriptRow
from database.session import close_db, get_engine, get_session, init_db
from database.store import SqlConversationStore
from database.store_base import ConversationStore
from database.store_factory import create_store, get_store, reset_store
from database.store_file import FileConversationStore
from database.store_memory import InMemoryConversationStore

__all__ = [
    "Base", "ConversationRow", "MessageRow", "TimerRow", "TranscriptRow",
    "get_engine", "get_session", "init_db", "close_db",
    "ConversationStore", "SqlConversationStore",
    "InMemoryConversationStore", "FileConversationStore",
    "create_store", "get_store", "reset_store",
]
