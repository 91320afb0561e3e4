"""
FileStateStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    states.json
    identities.json
    conversations.json
    messages.json
    flows.json

Writes flush the changed collection immediately, or are batched when
flush_interval_s > 0. Single-process only.
"""
from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

import structlog

from database.store_memory import InMemoryStateStore
from models.schemas import Conversation, ExecutionState, Identity, MessageStatus, StoredMessage

logger = structlog.get_logger()

_COLLECTIONS = ["states", "identities", "conversations", "messages", "flows"]


class FileStateStore(InMemoryStateStore):
    """
    Extends InMemoryStateStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            if not isinstance(data, dict):
                continue
            if collection == "messages":
                self._messages = defaultdict(list, data)
            else:
                setattr(self, f"_{collection}", data)
            logger.debug("file_store_loaded", collection=collection, records=len(data))
        self._rebuild_indexes()

    def _collection_data(self, collection: str) -> Any:
        if collection == "messages":
            return dict(self._messages)
        return getattr(self, f"_{collection}")

    def _flush_collection(self, collection: str):
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._collection_data(collection), f, indent=2, default=str)
        tmp_path.replace(path)

    def _mark_dirty(self, *collections: str):
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
            return
        self._dirty.update(collections)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def save_state(self, state: ExecutionState) -> ExecutionState:
        result = await super().save_state(state)
        self._mark_dirty("states")
        return result

    async def delete_state(self, key: str) -> bool:
        removed = await super().delete_state(key)
        if removed:
            self._mark_dirty("states")
        return removed

    async def get_or_create_identity(self, phone: str, name: str = "",
                                     is_business: bool = False) -> Identity:
        result = await super().get_or_create_identity(phone, name, is_business)
        self._mark_dirty("identities")
        return result

    async def get_or_create_conversation(self, customer_id: str, business_id: str) -> Conversation:
        result = await super().get_or_create_conversation(customer_id, business_id)
        self._mark_dirty("conversations")
        return result

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        result = await super().save_conversation(conversation)
        self._mark_dirty("conversations")
        return result

    async def save_message(self, message: StoredMessage) -> bool:
        stored = await super().save_message(message)
        if stored:
            self._mark_dirty("messages")
        return stored

    async def update_message_status(self, provider_message_id: str, status: MessageStatus,
                                    error: Optional[dict[str, Any]] = None) -> bool:
        updated = await super().update_message_status(provider_message_id, status, error)
        if updated:
            self._mark_dirty("messages")
        return updated

    async def save_flow(self, flow: dict[str, Any]) -> None:
        await super().save_flow(flow)
        self._mark_dirty("flows")

    async def delete_flow(self, flow_id: str) -> bool:
        removed = await super().delete_flow(flow_id)
        if removed:
            self._mark_dirty("flows")
        return removed
