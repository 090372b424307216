"""
Database layer — Multi-backend persistence for agents and saved test conversations.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from config.settings import DatabaseConfig
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  agent = await store.get_agent("demo")
"""
from database.models import Base, AgentRow, ConversationRecordRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseAgentStore
from database.store import SqlAgentStore
from database.store_memory import InMemoryAgentStore
from database.store_file import FileAgentStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "AgentRow", "ConversationRecordRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseAgentStore",
    # Store backends
    "SqlAgentStore", "InMemoryAgentStore", "FileAgentStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
