"""
SqlStateStore — portable SQL persistence for PostgreSQL and SQLite.

Message dedup relies on the UNIQUE provider_message_id column: a second
insert of the same id fails inside its own session and is reported as
"already stored" rather than raised.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from database.models import ConversationRow, ExecutionStateRow, FlowRow, IdentityRow, MessageRow
from database.session import get_session
from database.store_base import BaseStateStore
from models.schemas import (
    Conversation, ExecutionState, Identity, MessageStatus, StoredMessage,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _columns(row) -> dict[str, Any]:
    data = {c.key: getattr(row, c.key) for c in row.__table__.columns}
    return {k: _aware(v) if isinstance(v, datetime) else v for k, v in data.items()}


class SqlStateStore(BaseStateStore):
    """Persistent state store backed by any SQLAlchemy-supported database."""

    # ── Execution states ──────────────────────────────────

    async def get_state(self, key: str) -> Optional[ExecutionState]:
        async with get_session() as db:
            row = await db.get(ExecutionStateRow, key)
            return ExecutionState.model_validate(_columns(row)) if row else None

    async def save_state(self, state: ExecutionState) -> ExecutionState:
        state.updated_at = _utcnow()
        values = state.model_dump(mode="python")
        values["status"] = state.status.value
        async with get_session() as db:
            row = await db.get(ExecutionStateRow, state.conversation_id)
            if row is None:
                db.add(ExecutionStateRow(**values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
        return state

    async def delete_state(self, key: str) -> bool:
        async with get_session() as db:
            row = await db.get(ExecutionStateRow, key)
            if row is None:
                return False
            await db.delete(row)
            return True

    async def list_states(self, is_test: Optional[bool] = None) -> list[ExecutionState]:
        async with get_session() as db:
            stmt = select(ExecutionStateRow)
            if is_test is not None:
                stmt = stmt.where(ExecutionStateRow.is_test_session == is_test)
            result = await db.execute(stmt)
            return [ExecutionState.model_validate(_columns(r)) for r in result.scalars()]

    # ── Identities ────────────────────────────────────────

    async def get_identity(self, identity_id: str) -> Optional[Identity]:
        async with get_session() as db:
            row = await db.get(IdentityRow, identity_id)
            return Identity.model_validate(_columns(row)) if row else None

    async def find_identity_by_phone(self, phone: str) -> Optional[Identity]:
        async with get_session() as db:
            result = await db.execute(select(IdentityRow).where(IdentityRow.phone == phone))
            row = result.scalar_one_or_none()
            return Identity.model_validate(_columns(row)) if row else None

    async def get_or_create_identity(self, phone: str, name: str = "",
                                     is_business: bool = False) -> Identity:
        async with get_session() as db:
            result = await db.execute(select(IdentityRow).where(IdentityRow.phone == phone))
            row = result.scalar_one_or_none()
            if row is not None:
                if name and not row.name:
                    row.name = name
                return Identity.model_validate(_columns(row))
        identity = Identity(phone=phone, name=name, is_business=is_business)
        try:
            async with get_session() as db:
                db.add(IdentityRow(**identity.model_dump()))
        except IntegrityError:
            # another worker inserted the same phone first
            logger.info("identity_insert_conflict", phone=phone)
            existing = await self.find_identity_by_phone(phone)
            if existing is None:
                raise
            return existing
        logger.info("identity_created", identity_id=identity.id, is_business=is_business)
        return identity

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return Conversation.model_validate(_columns(row)) if row else None

    async def get_or_create_conversation(self, customer_id: str, business_id: str) -> Conversation:
        stmt = select(ConversationRow).where(
            ConversationRow.customer_id == customer_id,
            ConversationRow.business_id == business_id,
        )
        async with get_session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is not None:
                return Conversation.model_validate(_columns(row))
        conv = Conversation(customer_id=customer_id, business_id=business_id)
        try:
            async with get_session() as db:
                db.add(ConversationRow(**conv.model_dump()))
        except IntegrityError:
            logger.info("conversation_insert_conflict", customer_id=customer_id, business_id=business_id)
            async with get_session() as db:
                row = (await db.execute(stmt)).scalar_one_or_none()
                if row is None:
                    raise
                return Conversation.model_validate(_columns(row))
        logger.info("conversation_created", conversation_id=conv.id)
        return conv

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = _utcnow()
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation.id)
            if row is None:
                db.add(ConversationRow(**conversation.model_dump()))
            else:
                for key, value in conversation.model_dump().items():
                    setattr(row, key, value)
        return conversation

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: StoredMessage) -> bool:
        values = message.model_dump(mode="json")
        values["created_at"] = message.created_at
        values["updated_at"] = message.updated_at
        try:
            async with get_session() as db:
                if message.provider_message_id:
                    stmt = select(MessageRow.id).where(
                        MessageRow.provider_message_id == message.provider_message_id)
                    if (await db.execute(stmt)).first() is not None:
                        return False
                db.add(MessageRow(**values))
        except IntegrityError:
            logger.info("message_insert_conflict", provider_message_id=message.provider_message_id)
            return False
        return True

    async def get_message_by_provider_id(self, provider_message_id: str) -> Optional[StoredMessage]:
        async with get_session() as db:
            stmt = select(MessageRow).where(MessageRow.provider_message_id == provider_message_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return StoredMessage.model_validate(_columns(row)) if row else None

    async def update_message_status(self, provider_message_id: str, status: MessageStatus,
                                    error: Optional[dict[str, Any]] = None) -> bool:
        values: dict[str, Any] = {"status": MessageStatus(status).value, "updated_at": _utcnow()}
        if error is not None:
            values["error"] = error
        async with get_session() as db:
            result = await db.execute(
                update(MessageRow)
                .where(MessageRow.provider_message_id == provider_message_id)
                .values(**values)
            )
            return result.rowcount > 0

    async def list_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            rows = list((await db.execute(stmt)).scalars())
            return [StoredMessage.model_validate(_columns(r)) for r in reversed(rows)]

    # ── Flow definitions ──────────────────────────────────

    async def save_flow(self, flow: dict[str, Any]) -> None:
        async with get_session() as db:
            row = await db.get(FlowRow, flow["id"])
            if row is None:
                db.add(FlowRow(id=flow["id"], definition=flow))
            else:
                row.definition = flow
                row.updated_at = _utcnow()

    async def list_flows(self) -> list[dict[str, Any]]:
        async with get_session() as db:
            result = await db.execute(select(FlowRow).order_by(FlowRow.id))
            return [row.definition for row in result.scalars()]

    async def delete_flow(self, flow_id: str) -> bool:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            if row is None:
                return False
            await db.delete(row)
            return True
