"""
Webhook Ingestion Pipeline — provider events in, interpreter steps out.

    ingest(raw_body, signature_header)
      → verify signature (enforce, or warn-only)
      → parse into inbound messages + status updates
      → per message: dedup by provider id, find-or-create identities and
        conversation, store, refresh the 24h window, hand off to the interpreter
      → per status: update the stored outbound message
      → acknowledge

Each message is handled under the customer lock and then the conversation
lock shared with the interpreter, so events for one conversation are applied
in arrival order and the window fields are never written concurrently.

Every sub-item is fail-soft: an exception is logged against that item and
the rest of the batch continues. Once the signature has passed, the caller
always acknowledges the provider with {"success": true}.
"""
from __future__ import annotations

import json
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from channels.whatsapp_adapter import normalize_phone
from channels.whatsapp_parser import message_preview, parse_webhook
from database.store_base import BaseStateStore
from flows.interpreter import FlowInterpreter
from models.errors import IngestionError
from models.schemas import (
    InboundMessage, MessageDirection, MessageStatus, OutboundMessage, StatusUpdate, StoredMessage,
)
from webhooks.signature import verify_signature

logger = structlog.get_logger()

STATUS_MAP = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
}

# when several statuses are held for one message, the furthest is kept
STATUS_RANK = {
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
    MessageStatus.FAILED: 4,
}

# statuses that arrived before their outbound row was written
MAX_EARLY_STATUSES = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IngestionReport(BaseModel):
    processed: int = 0
    duplicates: int = 0
    statuses: int = 0
    errors: list[str] = Field(default_factory=list)


class WebhookIngestionPipeline:
    """
    Args:
        store:          identities, conversations and the message log
        interpreter:    flow interpreter to hand inbound replies to
        app_secret:     shared HMAC secret
        signature_mode: "enforce" rejects bad/absent signatures, "warn" logs and proceeds
        business_phone: fallback business number when the payload has no display number
    """

    def __init__(
        self,
        store: BaseStateStore,
        interpreter: FlowInterpreter,
        app_secret: str = "",
        signature_mode: str = "enforce",
        business_phone: str = "",
        business_name: str = "Business",
    ):
        self.store = store
        self.interpreter = interpreter
        self.app_secret = app_secret
        self.signature_mode = signature_mode
        self.business_phone = business_phone
        self.business_name = business_name
        self._early_statuses: OrderedDict[str, StatusUpdate] = OrderedDict()

    # ── Signature ─────────────────────────────────────

    def check_signature(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        """Raise IngestionError when the signature is bad and mode is enforce."""
        if verify_signature(raw_body, signature_header, self.app_secret):
            return
        reason = "missing signature" if not signature_header else "invalid signature"
        if not self.app_secret:
            reason = "no app secret configured"
        if self.signature_mode == "warn":
            logger.warning("webhook_signature_unverified", reason=reason)
            return
        logger.warning("webhook_signature_rejected", reason=reason)
        raise IngestionError(reason)

    # ── Entry point ───────────────────────────────────

    async def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> IngestionReport:
        self.check_signature(raw_body, signature_header)
        try:
            payload = json.loads(raw_body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("webhook_body_unparseable", error=str(e))
            return IngestionReport(errors=[f"body: {e}"])
        return await self.process_payload(payload)

    async def process_payload(self, payload: dict[str, Any]) -> IngestionReport:
        parsed = parse_webhook(payload if isinstance(payload, dict) else {})
        report = IngestionReport(errors=list(parsed.errors))

        for message in parsed.messages:
            try:
                if await self.process_message(message):
                    report.processed += 1
                else:
                    report.duplicates += 1
            except Exception as e:
                logger.error("inbound_message_failed",
                             provider_message_id=message.provider_message_id, error=str(e))
                report.errors.append(f"{message.provider_message_id}: {e}")

        for status in parsed.statuses:
            try:
                await self.process_status(status)
                report.statuses += 1
            except Exception as e:
                logger.error("status_update_failed",
                             provider_message_id=status.provider_message_id, error=str(e))
                report.errors.append(f"{status.provider_message_id}: {e}")

        logger.info("webhook_ingested",
                    processed=report.processed, duplicates=report.duplicates,
                    statuses=report.statuses, errors=len(report.errors))
        return report

    # ── Messages ──────────────────────────────────────

    async def process_message(self, message: InboundMessage) -> bool:
        """Store and hand off one inbound message. Returns False for a duplicate."""
        if await self.store.get_message_by_provider_id(message.provider_message_id):
            logger.info("inbound_duplicate_skipped", provider_message_id=message.provider_message_id)
            return False

        customer_phone = normalize_phone(message.sender_phone)
        business_phone = normalize_phone(message.recipient_phone or self.business_phone)
        locks = self.interpreter.locks

        # customer first, then conversation; the interpreter only ever takes the latter
        async with locks.acquire(f"customer:{customer_phone}"):
            customer = await self.store.get_or_create_identity(customer_phone, message.sender_name)
            business = await self.store.get_or_create_identity(business_phone, self.business_name, is_business=True)
            conversation = await self.store.get_or_create_conversation(customer.id, business.id)

            async with locks.acquire(conversation.id):
                return await self._store_and_hand_off(message, conversation.id, customer.id, customer_phone)

    async def _store_and_hand_off(self, message: InboundMessage, conversation_id: str,
                                  customer_id: str, customer_phone: str) -> bool:
        stored = await self.store.save_message(StoredMessage(
            conversation_id=conversation_id,
            provider_message_id=message.provider_message_id,
            direction=MessageDirection.INBOUND,
            sender_id=customer_id,
            type=message.type,
            content=message.content,
            status=MessageStatus.DELIVERED,
            reply_to=message.reply_to,
            created_at=message.timestamp,
        ))
        if not stored:
            # lost a race with a concurrent delivery of the same id
            logger.info("inbound_duplicate_skipped", provider_message_id=message.provider_message_id)
            return False

        # re-read under the lock so window fields written by an earlier event are not lost
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise IngestionError(f"Conversation '{conversation_id}' vanished during ingestion")
        now = _utcnow()
        conversation.last_message = message_preview(message)
        conversation.last_message_at = now
        conversation.last_customer_message_at = now
        conversation.refresh_window(now)
        await self.store.save_conversation(conversation)

        outcome = await self.interpreter.handle_inbound_locked(
            conversation_id,
            message.to_user_input(),
            recipient=customer_phone,
            initial_variables={"customer_phone": customer_phone, "customer_name": message.sender_name},
        )
        logger.info("inbound_processed",
                    conversation_id=conversation_id,
                    provider_message_id=message.provider_message_id,
                    status=outcome.state.status.value if outcome.state else None,
                    sent=len(outcome.sent))
        await self._apply_early_statuses(outcome.sent)
        return True

    # ── Statuses ──────────────────────────────────────

    async def process_status(self, status: StatusUpdate) -> bool:
        mapped = STATUS_MAP.get(status.status)
        if mapped is None:
            logger.info("status_unknown", status=status.status, provider_message_id=status.provider_message_id)
            return False
        error = status.error if mapped == MessageStatus.FAILED else None
        updated = await self.store.update_message_status(status.provider_message_id, mapped, error)
        if not updated:
            self._hold_early_status(status, mapped)
        elif error:
            logger.warning("outbound_delivery_failed", provider_message_id=status.provider_message_id, error=error)
        return updated

    def _hold_early_status(self, status: StatusUpdate, mapped: MessageStatus) -> None:
        """
        Keep a status whose message is not stored yet. Outbound rows are written
        after the provider answers the send, so a fast status can beat them.
        """
        held = self._early_statuses.get(status.provider_message_id)
        if held is not None and STATUS_RANK[STATUS_MAP[held.status]] >= STATUS_RANK[mapped]:
            return
        self._early_statuses[status.provider_message_id] = status
        self._early_statuses.move_to_end(status.provider_message_id)
        while len(self._early_statuses) > MAX_EARLY_STATUSES:
            self._early_statuses.popitem(last=False)
        logger.info("status_for_unknown_message", provider_message_id=status.provider_message_id)

    async def _apply_early_statuses(self, sent: list[OutboundMessage]) -> None:
        for message in sent:
            status = self._early_statuses.pop(message.provider_message_id or "", None)
            if status is not None:
                logger.info("early_status_applied", provider_message_id=status.provider_message_id,
                            status=status.status)
                await self.process_status(status)
