"""Builders shared by the test modules."""
from datetime import datetime, timedelta, timezone
from typing import Any


def make_flow(flow_id: str, nodes: list[dict[str, Any]], edges: list[tuple], **extra) -> dict[str, Any]:
    """Build a raw flow dict; edges are (source, target) or (source, target, handle)."""
    return {
        "id": flow_id,
        "name": flow_id.replace("_", " ").title(),
        "nodes": nodes,
        "edges": [
            {"id": f"e{i}", "source": e[0], "target": e[1],
             **({"sourceHandle": e[2]} if len(e) > 2 else {})}
            for i, e in enumerate(edges)
        ],
        **extra,
    }


async def open_conversation(store, phone: str = "+905551112233", last_inbound: datetime = None):
    """Create identities + a conversation whose window opened at `last_inbound` (default now)."""
    customer = await store.get_or_create_identity(phone, "Ayse")
    business = await store.get_or_create_identity("+905550000000", "Business", is_business=True)
    conversation = await store.get_or_create_conversation(customer.id, business.id)
    conversation.last_customer_message_at = last_inbound or datetime.now(timezone.utc)
    conversation.refresh_window()
    await store.save_conversation(conversation)
    return conversation


def hours_ago(hours: float = 0, minutes: float = 0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours, minutes=minutes)
