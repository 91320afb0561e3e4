"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- Outbound payload builders: text, reply buttons, list, form (WhatsApp Flow), template
- WhatsAppSender: Cloud API client with retry and circuit breaker; runs
  in mock mode (synthetic wamid ids, nothing sent) when no access token is set
"""
from __future__ import annotations

import re
import uuid
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from backend.http_client import is_retryable
from channels.base import CircuitBreaker, OutboundSender, SendResult
from config.settings import WhatsAppConfig, get_settings
from models.schemas import OutboundMessage

logger = structlog.get_logger()

MAX_BUTTONS = 3
BUTTON_TITLE_LIMIT = 20
ROW_TITLE_LIMIT = 24
ROW_DESCRIPTION_LIMIT = 72
MAX_LIST_ROWS = 10


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


def verify_webhook(params: dict[str, Any], verify_token: str) -> Optional[str]:
    """
    Verify the WhatsApp webhook subscription.
    Returns the challenge string on success, None on failure.
    """
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")

    if mode == "subscribe" and verify_token and token == verify_token:
        return challenge
    return None


# ══════════════════════════════════════════════════════════════
#  PAYLOAD BUILDERS
# ══════════════════════════════════════════════════════════════

def _decorate(interactive: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    if payload.get("header"):
        interactive["header"] = {"type": "text", "text": payload["header"]}
    if payload.get("footer"):
        interactive["footer"] = {"text": payload["footer"]}
    return interactive


def build_payload(to: str, message: OutboundMessage) -> dict[str, Any]:
    """Render an OutboundMessage into a Cloud API /messages request body."""
    base = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": normalize_phone(to)}
    p = message.payload

    if message.type == "buttons":
        buttons = [
            {"type": "reply", "reply": {"id": b["id"], "title": b["title"][:BUTTON_TITLE_LIMIT]}}
            for b in p.get("buttons", [])[:MAX_BUTTONS]
        ]
        interactive = {"type": "button", "body": {"text": message.text}, "action": {"buttons": buttons}}
        return {**base, "type": "interactive", "interactive": _decorate(interactive, p)}

    if message.type == "list":
        rows = []
        for row in p.get("rows", [])[:MAX_LIST_ROWS]:
            item = {"id": row["id"], "title": row["title"][:ROW_TITLE_LIMIT]}
            if row.get("description"):
                item["description"] = row["description"][:ROW_DESCRIPTION_LIMIT]
            rows.append(item)
        interactive = {
            "type": "list",
            "body": {"text": message.text},
            "action": {
                "button": p.get("button_text", "Select")[:BUTTON_TITLE_LIMIT],
                "sections": [{"title": p.get("section_title", "Options")[:ROW_TITLE_LIMIT], "rows": rows}],
            },
        }
        return {**base, "type": "interactive", "interactive": _decorate(interactive, p)}

    if message.type == "form":
        parameters: dict[str, Any] = {
            "flow_message_version": "3",
            "flow_token": p["flow_token"],
            "flow_id": p["form_id"],
            "flow_cta": p.get("cta", "Start"),
            "mode": p.get("mode", "published"),
        }
        if p.get("screen"):
            parameters["flow_action"] = "navigate"
            parameters["flow_action_payload"] = {"screen": p["screen"], "data": p.get("data") or {}}
        else:
            parameters["flow_action"] = "data_exchange"
        interactive = {
            "type": "flow",
            "body": {"text": message.text or " "},
            "action": {"name": "flow", "parameters": parameters},
        }
        return {**base, "type": "interactive", "interactive": _decorate(interactive, p)}

    if message.type == "template":
        return {**base, "type": "template", "template": p}

    return {**base, "type": "text", "text": {"preview_url": False, "body": message.text}}


# ══════════════════════════════════════════════════════════════
#  SENDER
# ══════════════════════════════════════════════════════════════

class WhatsAppSender(OutboundSender):
    """WhatsApp Business Cloud API sender."""

    channel = "whatsapp"

    def __init__(self, config: Optional[WhatsAppConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().whatsapp
        self._transport = transport
        self._breaker = CircuitBreaker()
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def mock_mode(self) -> bool:
        return not (self.config.access_token and self.config.phone_number_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=f"{self.config.base_url.rstrip('/')}/{self.config.api_version}",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(f"/{self.config.phone_number_id}/messages", json=body)
        response.raise_for_status()
        return response.json()

    async def send(self, to: str, message: OutboundMessage) -> SendResult:
        body = build_payload(to, message)

        if self.mock_mode:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_mock_sent", to=body["to"], type=body["type"], msg_id=msg_id)
            return SendResult(provider_message_id=msg_id, status="mock_sent")

        if self._breaker.is_open:
            logger.warning("whatsapp_circuit_open", to=body["to"])
            return SendResult(status="failed", error="circuit open")

        try:
            data = await self._post(body)
        except httpx.HTTPStatusError as e:
            self._breaker.record_failure()
            detail = e.response.text[:500]
            logger.error("whatsapp_send_failed", to=body["to"], status=e.response.status_code, detail=detail)
            return SendResult(status="failed", error=f"HTTP {e.response.status_code}: {detail}")
        except httpx.HTTPError as e:
            self._breaker.record_failure()
            logger.error("whatsapp_send_failed", to=body["to"], error=str(e))
            return SendResult(status="failed", error=str(e) or e.__class__.__name__)

        self._breaker.record_success()
        messages = data.get("messages") or []
        if not messages:
            logger.error("whatsapp_send_no_message_id", to=body["to"], response=data)
            return SendResult(status="failed", error="Cloud API response carried no message id")
        msg_id = messages[0].get("id")
        logger.info("whatsapp_sent", to=body["to"], type=body["type"], msg_id=msg_id)
        return SendResult(provider_message_id=msg_id, status="sent")

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
