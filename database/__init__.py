"""
Database layer — Multi-backend persistence for workflows, sessions,
timers and the outbound action outbox.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  workflow = await store.load("wf-1")
"""
from database.models import (
    Base, WorkflowRow, SessionRow, TimerRow, OutboundActionRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseFlowStore
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_file import FileFlowStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "WorkflowRow", "SessionRow", "TimerRow", "OutboundActionRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseFlowStore",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore", "FileFlowStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
