"""Outbound channel senders and the WhatsApp webhook parser."""
from channels.base import (
    CircuitBreaker,
    OutboundSender,
    RecordingSender,
    SendResult,
)
from channels.whatsapp_adapter import WhatsAppSender, build_payload, verify_webhook
from channels.whatsapp_parser import ParsedWebhook, parse_webhook, message_preview

__all__ = [
    "CircuitBreaker", "OutboundSender", "RecordingSender", "SendResult",
    "WhatsAppSender", "build_payload", "verify_webhook",
    "ParsedWebhook", "parse_webhook", "message_preview",
]
