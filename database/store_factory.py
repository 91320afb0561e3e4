"""
Store Factory — create the right state store backend from configuration.

Configuration in settings.yaml:
    database:
      #   "memory"   - in-memory dicts (development, testing)
      #   "file"     - JSON files on disk (small deployments, demos)
      #   "sqlite"   - SQLAlchemy + aiosqlite
      #   "postgres" - SQLAlchemy + asyncpg
      backend: "memory"
      url: "sqlite:///./flow_engine.db"
      data_dir: "./data"

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from DatabaseConfig
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

from typing import Optional

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseStateStore

logger = structlog.get_logger()

_instance: Optional[BaseStateStore] = None

SQL_BACKENDS = ("sql", "sqlite", "postgres")


def create_store(config: Optional[DatabaseConfig] = None) -> BaseStateStore:
    """
    Factory: create the configured backend and remember it as the singleton.

    SQL backends need `await init_db()` before first use; the app lifespan does that.
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or DatabaseConfig()
    backend = config.backend

    if backend in SQL_BACKENDS:
        from database.session import configure_engine
        from database.store import SqlStateStore
        configure_engine(config.url, config)
        _instance = SqlStateStore()
        logger.info("store_created", backend=backend)

    elif backend == "file":
        from database.store_file import FileStateStore
        _instance = FileStateStore(data_dir=config.data_dir, flush_interval_s=config.flush_interval_s)
        logger.info("store_created", backend="file", data_dir=config.data_dir)

    else:
        from database.store_memory import InMemoryStateStore
        _instance = InMemoryStateStore()
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseStateStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
