"""
WhatsApp webhook parser — Cloud API envelope → normalized events.

    entry[] → changes[] → value.messages[] / value.statuses[]

Every message and status is parsed on its own: a malformed item is
reported in `errors` and skipped, the rest of the batch still parses.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from models.schemas import InboundMessage, MessageType, StatusUpdate

logger = structlog.get_logger()

_MEDIA_TYPES = {
    "image": MessageType.IMAGE,
    "video": MessageType.VIDEO,
    "audio": MessageType.AUDIO,
    "document": MessageType.DOCUMENT,
    "sticker": MessageType.STICKER,
}

_PREVIEW_LABELS = {
    MessageType.IMAGE: "[Image]",
    MessageType.VIDEO: "[Video]",
    MessageType.AUDIO: "[Voice message]",
    MessageType.DOCUMENT: "[Document]",
    MessageType.STICKER: "[Sticker]",
    MessageType.CONTACTS: "[Shared contact]",
    MessageType.FORM_REPLY: "[Form submitted]",
}


class ParsedWebhook(BaseModel):
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[StatusUpdate] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def _timestamp(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _parse_interactive(msg: dict[str, Any]) -> tuple[MessageType, dict[str, Any]]:
    interactive = msg.get("interactive") or {}
    itype = interactive.get("type", "")

    if itype == "button_reply":
        reply = interactive.get("button_reply") or {}
        return MessageType.BUTTON_REPLY, {"button_id": reply.get("id", ""), "title": reply.get("title", "")}

    if itype == "list_reply":
        reply = interactive.get("list_reply") or {}
        return MessageType.LIST_REPLY, {
            "list_id": reply.get("id", ""),
            "title": reply.get("title", ""),
            "description": reply.get("description", ""),
        }

    if itype == "nfm_reply":
        reply = interactive.get("nfm_reply") or {}
        raw_json = reply.get("response_json") or "{}"
        response = json.loads(raw_json) if isinstance(raw_json, str) else raw_json
        return MessageType.FORM_REPLY, {
            "response_data": response,
            "flow_token": response.get("flow_token"),
            "body": reply.get("body", ""),
        }

    return MessageType.INTERACTIVE, {"interactive_type": itype}


def parse_message(msg: dict[str, Any], sender_name: str = "", recipient: str = "") -> InboundMessage:
    """Normalize one entry of value.messages. Raises KeyError/ValueError when unusable."""
    msg_type = msg.get("type", "text")
    content: dict[str, Any]

    if msg_type == "text":
        mtype, content = MessageType.TEXT, {"text": (msg.get("text") or {}).get("body", "")}
    elif msg_type == "interactive":
        mtype, content = _parse_interactive(msg)
    elif msg_type == "button":
        # quick-reply button on a template message
        button = msg.get("button") or {}
        mtype, content = MessageType.BUTTON_REPLY, {
            "button_id": button.get("payload", ""), "title": button.get("text", ""),
        }
    elif msg_type in _MEDIA_TYPES:
        media = msg.get(msg_type) or {}
        mtype, content = _MEDIA_TYPES[msg_type], {
            "media_id": media.get("id", ""),
            "mime_type": media.get("mime_type", ""),
            "caption": media.get("caption", ""),
            "filename": media.get("filename", ""),
        }
    elif msg_type == "reaction":
        reaction = msg.get("reaction") or {}
        mtype, content = MessageType.REACTION, {
            "emoji": reaction.get("emoji", ""), "message_id": reaction.get("message_id", ""),
        }
    elif msg_type == "location":
        loc = msg.get("location") or {}
        mtype, content = MessageType.LOCATION, {
            "latitude": loc.get("latitude"), "longitude": loc.get("longitude"),
            "name": loc.get("name", ""), "address": loc.get("address", ""),
        }
    elif msg_type == "contacts":
        mtype, content = MessageType.CONTACTS, {"contacts": msg.get("contacts") or []}
    else:
        mtype, content = MessageType.UNKNOWN, {"raw_type": msg_type}

    return InboundMessage(
        provider_message_id=msg["id"],
        sender_phone=msg["from"],
        sender_name=sender_name,
        recipient_phone=recipient,
        type=mtype,
        content=content,
        timestamp=_timestamp(msg.get("timestamp")),
        reply_to=(msg.get("context") or {}).get("id"),
    )


def parse_status(status: dict[str, Any]) -> StatusUpdate:
    errors = status.get("errors") or []
    error = None
    if errors:
        first = errors[0]
        error = {
            "code": first.get("code"),
            "title": first.get("title", ""),
            "message": first.get("message", ""),
            "details": (first.get("error_data") or {}).get("details", first.get("details", "")),
        }
    return StatusUpdate(
        provider_message_id=status["id"],
        status=status["status"],
        recipient_phone=status.get("recipient_id", ""),
        timestamp=_timestamp(status.get("timestamp")),
        error=error,
    )


def parse_webhook(payload: dict[str, Any]) -> ParsedWebhook:
    parsed = ParsedWebhook()
    for entry in payload.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            recipient = (value.get("metadata") or {}).get("display_phone_number", "")
            names = {
                c.get("wa_id"): (c.get("profile") or {}).get("name", "")
                for c in value.get("contacts") or []
            }

            for msg in value.get("messages") or []:
                try:
                    name = names.get(msg.get("from"), "") or next(iter(names.values()), "")
                    parsed.messages.append(parse_message(msg, name, recipient))
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning("webhook_message_unparseable", error=str(e))
                    parsed.errors.append(f"message: {e}")

            for status in value.get("statuses") or []:
                try:
                    parsed.statuses.append(parse_status(status))
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning("webhook_status_unparseable", error=str(e))
                    parsed.errors.append(f"status: {e}")
    return parsed


def message_preview(message: InboundMessage, limit: int = 100) -> str:
    """Short human-readable summary used as conversation.last_message."""
    c = message.content
    if message.type == MessageType.TEXT:
        text = c.get("text", "")
    elif message.type in (MessageType.BUTTON_REPLY, MessageType.LIST_REPLY):
        text = c.get("title", "")
    elif message.type == MessageType.REACTION:
        text = f"Reacted {c.get('emoji', '')}".strip()
    elif message.type == MessageType.LOCATION:
        text = c.get("name") or f"Location: {c.get('latitude')}, {c.get('longitude')}"
    elif message.type in _PREVIEW_LABELS:
        text = c.get("caption") or c.get("filename") or _PREVIEW_LABELS[message.type]
    else:
        text = f"[{c.get('raw_type') or message.type.value}]"
    return text[:limit]

