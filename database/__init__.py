"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  customer = await store.get_customer(1)
"""
from database.models import Base, CompanyRow, ReviewCustomerRow
from database.session import configure_database, get_engine, get_session, init_db, close_db
from database.store_base import BaseReviewStore
from database.store import SqlReviewStore
from database.store_memory import InMemoryReviewStore
from database.store_factory import create_store, reset_store

__all__ = [
    # ORM models
    "Base", "CompanyRow", "ReviewCustomerRow",
    # Session management
    "configure_database", "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseReviewStore",
    # Store backends
    "SqlReviewStore", "InMemoryReviewStore",
    # Factory
    "create_store", "reset_store",
]
