"""
Tests for the webhook ingestion pipeline.

Covers:
  - signature enforce / warn modes
  - inbound message storage, dedup and window refresh
  - hand-off to the interpreter
  - delivery status updates, including ones that beat their outbound row
  - fail-soft processing of a mixed batch
"""
import asyncio
import json

import pytest

from channels.base import RecordingSender
from flows.interpreter import FlowInterpreter
from models.errors import IngestionError
from models.schemas import ExecutionStatus, MessageDirection, MessageStatus, StatusUpdate
from webhooks.ingestion import WebhookIngestionPipeline
from webhooks.signature import compute_signature

SECRET = "app-secret"


def webhook(*messages, statuses=None) -> dict:
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"field": "messages", "value": {
        "metadata": {"display_phone_number": "905550000000", "phone_number_id": "PNID"},
        "contacts": [{"wa_id": "905551112233", "profile": {"name": "Ayse"}}],
        "messages": list(messages),
        "statuses": statuses or [],
    }}]}]}


def text(msg_id: str, body: str, sender: str = "905551112233") -> dict:
    return {"from": sender, "id": msg_id, "timestamp": "1700000000", "type": "text", "text": {"body": body}}


def button(msg_id: str, button_id: str, title: str) -> dict:
    return {"from": "905551112233", "id": msg_id, "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": button_id, "title": title}}}


def signed(payload: dict) -> tuple[bytes, str]:
    raw = json.dumps(payload).encode()
    return raw, compute_signature(raw, SECRET)


@pytest.fixture
def pipeline(store, interpreter):
    return WebhookIngestionPipeline(store, interpreter, app_secret=SECRET)


class TestSignature:
    @pytest.mark.asyncio
    async def test_valid_signature_is_processed(self, pipeline):
        raw, header = signed(webhook(text("wamid.1", "hi")))
        report = await pipeline.ingest(raw, header)
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_when_enforced(self, pipeline, store):
        raw, _ = signed(webhook(text("wamid.1", "hi")))
        with pytest.raises(IngestionError):
            await pipeline.ingest(raw, "sha256=" + "0" * 64)
        with pytest.raises(IngestionError):
            await pipeline.ingest(raw, None)
        assert await store.get_message_by_provider_id("wamid.1") is None

    @pytest.mark.asyncio
    async def test_missing_secret_rejects_under_enforce(self, store, interpreter):
        pipeline = WebhookIngestionPipeline(store, interpreter)
        raw, header = signed(webhook(text("wamid.1", "hi")))
        with pytest.raises(IngestionError, match="no app secret"):
            await pipeline.ingest(raw, header)

    @pytest.mark.asyncio
    async def test_warn_mode_proceeds(self, store, interpreter):
        pipeline = WebhookIngestionPipeline(store, interpreter, app_secret=SECRET, signature_mode="warn")
        raw = json.dumps(webhook(text("wamid.1", "hi"))).encode()
        report = await pipeline.ingest(raw, "sha256=bogus")
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_unparseable_body_is_acknowledged(self, pipeline):
        raw = b"not json"
        report = await pipeline.ingest(raw, compute_signature(raw, SECRET))
        assert report.processed == 0
        assert report.errors


class TestInboundMessages:
    @pytest.mark.asyncio
    async def test_creates_identities_conversation_and_log(self, pipeline, store):
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))

        customer = await store.find_identity_by_phone("905551112233")
        business = await store.find_identity_by_phone("905550000000")
        assert customer.name == "Ayse"
        assert business.is_business
        conv = await store.get_or_create_conversation(customer.id, business.id)
        assert conv.is_window_open
        assert conv.last_message == "hi"

        inbound = [m for m in await store.list_messages(conv.id) if m.direction == MessageDirection.INBOUND]
        assert len(inbound) == 1
        assert inbound[0].sender_id == customer.id

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped(self, pipeline, sender):
        payload = webhook(text("wamid.1", "hi"))
        first = await pipeline.process_payload(payload)
        again = await pipeline.process_payload(payload)
        assert first.processed == 1
        assert again.duplicates == 1 and again.processed == 0
        # the flow only ran once
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_business_phone_fallback_without_display_number(self, store, interpreter):
        pipeline = WebhookIngestionPipeline(store, interpreter, app_secret=SECRET, business_phone="+90 555 999 0000")
        payload = webhook(text("wamid.1", "hi"))
        del payload["entry"][0]["changes"][0]["value"]["metadata"]["display_phone_number"]
        await pipeline.process_payload(payload)

        business = await store.find_identity_by_phone("905559990000")
        assert business is not None and business.is_business
        assert await store.find_identity_by_phone("PNID") is None

    @pytest.mark.asyncio
    async def test_replies_drive_the_flow(self, pipeline, store, sender):
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))
        assert sender.sent[0]["message"].type == "buttons"
        assert sender.sent[0]["to"] == "905551112233"

        await pipeline.process_payload(webhook(button("wamid.2", "b", "B")))
        assert sender.sent[-1]["message"].text == "B it is, Ayse"

        states = await store.list_states()
        assert states[0].status == ExecutionStatus.COMPLETED
        assert states[0].variables["customer_phone"] == "905551112233"


class TestStatuses:
    @pytest.mark.asyncio
    async def test_failed_status_records_error(self, pipeline, store, sender):
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))
        outbound_id = sender.sent[0]["provider_message_id"]

        report = await pipeline.process_payload(webhook(statuses=[{
            "id": outbound_id, "status": "failed", "recipient_id": "905551112233",
            "errors": [{"code": 131047, "title": "Re-engagement message"}],
        }]))
        assert report.statuses == 1
        stored = await store.get_message_by_provider_id(outbound_id)
        assert stored.status == MessageStatus.FAILED
        assert stored.error["code"] == 131047

    @pytest.mark.asyncio
    async def test_read_status_clears_nothing_else(self, pipeline, store, sender):
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))
        outbound_id = sender.sent[0]["provider_message_id"]
        await pipeline.process_payload(webhook(statuses=[{"id": outbound_id, "status": "read"}]))
        stored = await store.get_message_by_provider_id(outbound_id)
        assert stored.status == MessageStatus.READ
        assert stored.error is None

    @pytest.mark.asyncio
    async def test_unknown_message_and_status_are_ignored(self, pipeline):
        assert not await pipeline.process_status(
            StatusUpdate(provider_message_id="wamid.ghost", status="delivered"))
        assert not await pipeline.process_status(
            StatusUpdate(provider_message_id="wamid.ghost", status="typing"))

    @staticmethod
    def _racing_pipeline(store, registry, executors, statuses):
        """The provider reports each send before the send call has returned."""
        class RacingSender(RecordingSender):
            async def send(self, to, message):
                result = await super().send(to, message)
                for status in statuses:
                    await pipeline.process_status(
                        StatusUpdate(provider_message_id=result.provider_message_id, status=status))
                return result

        sender = RacingSender()
        pipeline = WebhookIngestionPipeline(
            store, FlowInterpreter(store, registry, executors, sender), app_secret=SECRET)
        return pipeline, sender

    @pytest.mark.asyncio
    async def test_status_arriving_before_outbound_row_is_applied(self, store, registry, executors):
        pipeline, sender = self._racing_pipeline(store, registry, executors, ["delivered"])
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))
        stored = await store.get_message_by_provider_id(sender.sent[0]["provider_message_id"])
        assert stored.status == MessageStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_early_statuses_keep_the_furthest(self, store, registry, executors):
        pipeline, sender = self._racing_pipeline(store, registry, executors, ["read", "sent"])
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))
        stored = await store.get_message_by_provider_id(sender.sent[0]["provider_message_id"])
        assert stored.status == MessageStatus.READ


class TestFailSoft:
    @pytest.mark.asyncio
    async def test_one_bad_message_does_not_block_others(self, store, interpreter):
        class ExplodingInterpreter:
            def __init__(self, inner):
                self.inner = inner
                self.locks = inner.locks

            async def handle_inbound_locked(self, conversation_id, user_input, **kw):
                if user_input.text == "boom":
                    raise RuntimeError("executor exploded")
                return await self.inner.handle_inbound_locked(conversation_id, user_input, **kw)

        pipeline = WebhookIngestionPipeline(store, ExplodingInterpreter(interpreter), app_secret=SECRET)
        report = await pipeline.process_payload(webhook(
            text("wamid.1", "boom", sender="905550001111"),
            text("wamid.2", "hi"),
        ))
        assert report.processed == 1
        assert len(report.errors) == 1
        assert "wamid.1" in report.errors[0]

    @pytest.mark.asyncio
    async def test_malformed_item_is_reported(self, pipeline):
        report = await pipeline.process_payload(webhook({"id": "wamid.x", "type": "text"}, text("wamid.2", "hi")))
        assert report.processed == 1
        assert len(report.errors) == 1


class TestConcurrentDelivery:
    @pytest.mark.asyncio
    async def test_first_messages_from_new_sender_are_all_kept(self, pipeline, store):
        reports = await asyncio.gather(
            pipeline.process_payload(webhook(text("wamid.A", "hi"))),
            pipeline.process_payload(webhook(text("wamid.B", "hello again"))),
        )
        assert [r.processed for r in reports] == [1, 1]
        assert all(not r.errors for r in reports)
        assert await store.get_message_by_provider_id("wamid.A")
        assert await store.get_message_by_provider_id("wamid.B")

        customer = await store.find_identity_by_phone("905551112233")
        business = await store.find_identity_by_phone("905550000000")
        conversation = await store.get_or_create_conversation(customer.id, business.id)
        inbound = [m for m in await store.list_messages(conversation.id)
                   if m.direction == MessageDirection.INBOUND]
        assert len(inbound) == 2

    @pytest.mark.asyncio
    async def test_replies_reach_the_interpreter_in_arrival_order(self, pipeline, store, sender):
        await pipeline.process_payload(webhook(text("wamid.1", "hi")))
        # first reply answers the question, second starts nothing new while completed
        await asyncio.gather(
            pipeline.process_payload(webhook(button("wamid.2", "a", "A"))),
            pipeline.process_payload(webhook(button("wamid.3", "b", "B"))),
        )
        texts = [s["message"].text for s in sender.sent]
        assert "You picked A" in texts
        assert not any(t.startswith("B it is") for t in texts)
