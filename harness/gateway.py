"""
Session Gateway — per test-session websocket fan-out plus event transcript.

Provides:
- Subscriber registration per session (several observers may watch one session)
- publish(): record the event and push it to every live subscriber
- Dead sockets are dropped on the first failed send
"""
from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger()

MAX_EVENTS = 500


class SessionGateway:
    def __init__(self, max_events: int = MAX_EVENTS):
        self._subscribers: dict[str, list[Any]] = {}
        self._events: dict[str, deque[dict[str, Any]]] = {}
        self._max_events = max_events

    # ── Subscribers ───────────────────────────────────────────

    def subscribe(self, session_id: str, ws: Any) -> None:
        self._subscribers.setdefault(session_id, []).append(ws)
        logger.info("session_subscriber_added", session_id=session_id,
                    subscribers=len(self._subscribers[session_id]))

    def unsubscribe(self, session_id: str, ws: Any) -> None:
        subs = self._subscribers.get(session_id, [])
        if ws in subs:
            subs.remove(ws)
        if not subs:
            self._subscribers.pop(session_id, None)
        logger.info("session_subscriber_removed", session_id=session_id)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    # ── Events ────────────────────────────────────────────────

    def events(self, session_id: str) -> list[dict[str, Any]]:
        return list(self._events.get(session_id, ()))

    async def publish(self, session_id: str, event: str, payload: dict[str, Any]) -> None:
        envelope = {
            "event": event,
            "session_id": session_id,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._events.setdefault(session_id, deque(maxlen=self._max_events)).append(envelope)
        await self._push(session_id, envelope)

    async def send_to(self, ws: Any, session_id: str, event: str, payload: dict[str, Any]) -> None:
        """Direct send to one subscriber, not recorded (state-recovery on join)."""
        await ws.send_text(json.dumps({
            "event": event,
            "session_id": session_id,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, default=str))

    async def _push(self, session_id: str, envelope: dict[str, Any]) -> None:
        text = json.dumps(envelope, default=str)
        for ws in list(self._subscribers.get(session_id, [])):
            try:
                await ws.send_text(text)
            except Exception as e:
                logger.warning("session_push_failed", session_id=session_id, error=str(e))
                self.unsubscribe(session_id, ws)

    def forget(self, session_id: str) -> None:
        """Drop a session's event log and subscribers."""
        self._events.pop(session_id, None)
        self._subscribers.pop(session_id, None)
