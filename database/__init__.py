"""
Database layer — Multi-backend persistence for bots, sessions and the
interaction ledger.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_session("s1")
"""
from database.models import Base, BotRow, BotSessionRow, NodeInteractionRow
from database.store_base import BaseFlowStore
from database.store import SqlFlowStore, create_engine_for
from database.store_memory import InMemoryFlowStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "BotRow", "BotSessionRow", "NodeInteractionRow",
    # Engine construction
    "create_engine_for",
    # Store interface
    "BaseFlowStore",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
