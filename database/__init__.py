"""
Database layer — Multi-backend persistence for messages, sessions,
automations, analytics events, campaigns and the template cache.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  message = await store.get_message("m1")
"""
from database.models import (
    Base, AnalyticsEventRow, AutomationRow, CampaignRecipientRow, CampaignRow,
    MessageRow, SessionFlowTokenRow, SessionRow, TemplateRow,
)
from database.session import (
    close_db, create_engine_for_url, get_engine, get_session,
    get_session_factory, init_db,
)
from database.store_base import BaseMessagingStore, SessionConflictError
from database.store import SqlMessagingStore, PostgresMessagingStore
from database.store_memory import InMemoryMessagingStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "AnalyticsEventRow", "AutomationRow", "CampaignRecipientRow",
    "CampaignRow", "MessageRow", "SessionFlowTokenRow", "SessionRow", "TemplateRow",
    # Session management
    "get_engine", "get_session", "get_session_factory",
    "create_engine_for_url", "init_db", "close_db",
    # Store interface
    "BaseMessagingStore", "SessionConflictError",
    # Store backends
    "SqlMessagingStore", "PostgresMessagingStore", "InMemoryMessagingStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
