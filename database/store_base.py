"""
Abstract State Store — interface for all storage backends.

Implementations:
  - SqlStateStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryStateStore (dict-based, single-process, no persistence)
  - FileStateStore     (JSON files on disk, single-process, durable)

Collections:
  execution states  keyed by conversation id (or test session id)
  identities        unique by phone
  conversations     unique by (customer, business) pair
  messages          unique by provider message id (the dedup key)
  flows             saved flow definitions, reloaded on startup
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    Conversation, ExecutionState, Identity, MessageStatus, StoredMessage,
)


class BaseStateStore(ABC):
    """Interface that all state store backends must implement."""

    # ── Execution states ──────────────────────────────────────

    @abstractmethod
    async def get_state(self, key: str) -> Optional[ExecutionState]:
        ...

    @abstractmethod
    async def save_state(self, state: ExecutionState) -> ExecutionState:
        ...

    @abstractmethod
    async def delete_state(self, key: str) -> bool:
        ...

    @abstractmethod
    async def list_states(self, is_test: Optional[bool] = None) -> list[ExecutionState]:
        ...

    # ── Identities ────────────────────────────────────────────

    @abstractmethod
    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        ...

    @abstractmethod
    async def find_identity_by_phone(self, phone: str) -> Optional[Identity]:
        ...

    @abstractmethod
    async def get_or_create_identity(self, phone: str, name: str = "",
                                     is_business: bool = False) -> Identity:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def get_or_create_conversation(self, customer_id: str, business_id: str) -> Conversation:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def save_message(self, message: StoredMessage) -> bool:
        """Store a message. Returns False when its provider id is already stored."""
        ...

    @abstractmethod
    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[StoredMessage]:
        ...

    @abstractmethod
    async def update_message_status(self, provider_message_id: str, status: MessageStatus,
                                    error: Optional[dict[str, Any]] = None) -> bool:
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        ...

    # ── Flow definitions ──────────────────────────────────────

    @abstractmethod
    async def save_flow(self, flow: dict[str, Any]) -> None:
        """Upsert one flow definition (editor JSON, keyed by its "id")."""
        ...

    @abstractmethod
    async def list_flows(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> bool:
        ...

    async def close(self) -> None:
        pass
