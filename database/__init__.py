"""
Database layer — multi-backend persistence for execution states,
identities, conversations, the message log and saved flows.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(backend="memory"))
  state = await store.get_state(conversation_id)
"""
from database.models import (
    Base, ExecutionStateRow, IdentityRow, ConversationRow, MessageRow, FlowRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseStateStore
from database.store import SqlStateStore
from database.store_memory import InMemoryStateStore
from database.store_file import FileStateStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base", "ExecutionStateRow", "IdentityRow", "ConversationRow", "MessageRow", "FlowRow",
    "get_engine", "get_session", "init_db", "close_db",
    "BaseStateStore", "SqlStateStore", "InMemoryStateStore", "FileStateStore",
    "create_store", "get_store", "reset_store",
]
