"""
FileAgentStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    agents.json
    conversations.json

Features:
  - Survives process restarts (unlike InMemoryAgentStore)
  - No external dependencies (no database server)
  - Flushes the changed collection on every mutation
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, offline preview machines.
"""
from __future__ import annotations

import json
import os
import structlog
from pathlib import Path

from core.errors import PersistError
from database.store_memory import InMemoryAgentStore
from models.schemas import AgentConfig, ConversationRecord

logger = structlog.get_logger()

_COLLECTIONS = ["agents", "conversations"]


class FileAgentStore(InMemoryAgentStore):
    """
    Extends InMemoryAgentStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("file_store_load_error", collection=collection,
                               path=str(path), error=str(e))
                continue

            if collection == "agents":
                self._agents = {k: AgentConfig.model_validate(v) for k, v in data.items()}
            else:
                self._conversations = {k: ConversationRecord.model_validate(v) for k, v in data.items()}
                self._session_index = {
                    r.session_id: r.id for r in self._conversations.values() if r.session_id
                }
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _flush(self, collection: str):
        """Write one collection to disk atomically (write tmp, then rename)."""
        source = self._agents if collection == "agents" else self._conversations
        data = {k: v.model_dump(mode="json") for k, v in source.items()}
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    # ── Mutations (flush after each) ──────────────────────

    async def upsert_agent(self, agent: AgentConfig) -> AgentConfig:
        result = await super().upsert_agent(agent)
        self._flush("agents")
        return result

    async def save_conversation(self, record: ConversationRecord) -> str:
        previous = dict(self._conversations), dict(self._session_index)
        record_id = await super().save_conversation(record)
        try:
            self._flush("conversations")
        except OSError as e:
            # Memory must not hold a record the file does not
            self._conversations, self._session_index = previous
            logger.error("file_store_flush_failed", record_id=record_id, error=str(e))
            raise PersistError(f"Could not write conversation {record_id}: {e}") from e
        return record_id
