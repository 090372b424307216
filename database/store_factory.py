"""
Picks the agent store backend named by `database.store_backend`:
"memory" (default), "file" (JSON under `store_file_dir`) or "sql"
(the database at `database.url`; call init_db() before use).

The store is a process-wide singleton: sessions, the API and the
conversation service all read and save through the same instance.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig, get_settings
from database.store_base import BaseAgentStore

logger = structlog.get_logger()

_instance: Optional[BaseAgentStore] = None


def create_store(config: DatabaseConfig = None) -> BaseAgentStore:
    """Create the configured backend once; later calls return the same store."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or get_settings().database
    if config.store_backend == "sql":
        from database.store import SqlAgentStore
        _instance = SqlAgentStore()
    elif config.store_backend == "file":
        from database.store_file import FileAgentStore
        _instance = FileAgentStore(data_dir=config.store_file_dir)
    else:
        if config.store_backend != "memory":
            logger.warning("unknown_store_backend", backend=config.store_backend)
        from database.store_memory import InMemoryAgentStore
        _instance = InMemoryAgentStore()

    logger.info("store_created", backend=type(_instance).__name__)
    return _instance


def get_store() -> BaseAgentStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    """Forget the singleton so the next create_store() builds a fresh one."""
    global _instance
    _instance = None
