"""
InMemoryStateStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStateStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from database.store_base import BaseStateStore
from models.schemas import (
    Conversation, ExecutionState, Identity, MessageStatus, StoredMessage,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStateStore(BaseStateStore):
    """
    Records are kept as JSON-mode dicts so the file backend can dump them
    as-is; models are rebuilt on read, which also means callers never hold
    a reference into the store.
    """

    def __init__(self):
        self._states: dict[str, dict] = {}              # key → state dict
        self._identities: dict[str, dict] = {}          # id → identity dict
        self._conversations: dict[str, dict] = {}       # id → conversation dict
        self._messages: dict[str, list[dict]] = defaultdict(list)  # conv_id → [msg dicts]
        self._flows: dict[str, dict] = {}               # flow_id → definition

        # Indexes
        self._phone_index: dict[str, str] = {}          # phone → identity_id
        self._pair_index: dict[str, str] = {}           # "customer:business" → conversation_id
        self._provider_index: dict[str, tuple[str, int]] = {}  # provider id → (conv_id, position)
        logger.info("inmemory_store_initialized")

    # ── Execution states ──────────────────────────────────

    async def get_state(self, key: str) -> Optional[ExecutionState]:
        data = self._states.get(key)
        return ExecutionState.model_validate(data) if data else None

    async def save_state(self, state: ExecutionState) -> ExecutionState:
        state.updated_at = _utcnow()
        self._states[state.conversation_id] = state.model_dump(mode="json")
        return state

    async def delete_state(self, key: str) -> bool:
        return self._states.pop(key, None) is not None

    async def list_states(self, is_test: Optional[bool] = None) -> list[ExecutionState]:
        return [
            ExecutionState.model_validate(d) for d in self._states.values()
            if is_test is None or d.get("is_test_session") == is_test
        ]

    # ── Identities ────────────────────────────────────────

    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        data = self._identities.get(identity_id)
        return Identity.model_validate(data) if data else None

    async def find_identity_by_phone(self, phone: str) -> Optional[Identity]:
        iid = self._phone_index.get(phone)
        return await self.get_identity(iid) if iid else None

    async def get_or_create_identity(self, phone: str, name: str = "",
                                     is_business: bool = False) -> Identity:
        existing = await self.find_identity_by_phone(phone)
        if existing:
            if name and not existing.name:
                existing.name = name
                self._identities[existing.id] = existing.model_dump(mode="json")
            return existing
        identity = Identity(phone=phone, name=name, is_business=is_business)
        self._identities[identity.id] = identity.model_dump(mode="json")
        self._phone_index[phone] = identity.id
        logger.info("identity_created", identity_id=identity.id, is_business=is_business)
        return identity

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = self._conversations.get(conversation_id)
        return Conversation.model_validate(data) if data else None

    async def get_or_create_conversation(self, customer_id: str, business_id: str) -> Conversation:
        cid = self._pair_index.get(f"{customer_id}:{business_id}")
        if cid:
            return await self.get_conversation(cid)
        conv = Conversation(customer_id=customer_id, business_id=business_id)
        self._conversations[conv.id] = conv.model_dump(mode="json")
        self._pair_index[f"{customer_id}:{business_id}"] = conv.id
        logger.info("conversation_created", conversation_id=conv.id)
        return conv

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = _utcnow()
        self._conversations[conversation.id] = conversation.model_dump(mode="json")
        self._pair_index[f"{conversation.customer_id}:{conversation.business_id}"] = conversation.id
        return conversation

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: StoredMessage) -> bool:
        pid = message.provider_message_id
        if pid and pid in self._provider_index:
            return False
        bucket = self._messages[message.conversation_id]
        bucket.append(message.model_dump(mode="json"))
        if pid:
            self._provider_index[pid] = (message.conversation_id, len(bucket) - 1)
        return True

    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[StoredMessage]:
        loc = self._provider_index.get(provider_message_id)
        if not loc:
            return None
        conv_id, pos = loc
        return StoredMessage.model_validate(self._messages[conv_id][pos])

    async def update_message_status(self, provider_message_id: str, status: MessageStatus,
                                    error: Optional[dict[str, Any]] = None) -> bool:
        loc = self._provider_index.get(provider_message_id)
        if not loc:
            return False
        conv_id, pos = loc
        record = self._messages[conv_id][pos]
        record["status"] = MessageStatus(status).value
        record["updated_at"] = _utcnow().isoformat()
        if error is not None:
            record["error"] = error
        return True

    async def list_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        return [StoredMessage.model_validate(m) for m in self._messages.get(conversation_id, [])[-limit:]]

    # ── Flow definitions ──────────────────────────────────

    async def save_flow(self, flow: dict[str, Any]) -> None:
        self._flows[flow["id"]] = flow

    async def list_flows(self) -> list[dict[str, Any]]:
        return list(self._flows.values())

    async def delete_flow(self, flow_id: str) -> bool:
        return self._flows.pop(flow_id, None) is not None

    def _rebuild_indexes(self):
        self._phone_index = {d["phone"]: iid for iid, d in self._identities.items()}
        self._pair_index = {
            f"{d['customer_id']}:{d['business_id']}": cid
            for cid, d in self._conversations.items()
        }
        self._provider_index = {}
        for conv_id, bucket in self._messages.items():
            for pos, m in enumerate(bucket):
                if m.get("provider_message_id"):
                    self._provider_index[m["provider_message_id"]] = (conv_id, pos)
