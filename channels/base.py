"""
Outbound channel contracts.

Provides:
- CircuitBreaker: failure-counting breaker with half-open probe
- SendResult: provider id + status of one send
- OutboundSender: (recipient, OutboundMessage) -> SendResult
- RecordingSender: in-process sender that keeps what it was asked to send
"""
from __future__ import annotations

import abc
import time
import uuid
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from models.schemas import OutboundMessage

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0


# ══════════════════════════════════════════════════════════════
#  SENDERS
# ══════════════════════════════════════════════════════════════

class SendResult(BaseModel):
    provider_message_id: Optional[str] = None
    status: str = "sent"                # sent | mock_sent | failed
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class OutboundSender(abc.ABC):
    """Delivers one rendered message to a recipient address."""

    channel: str = ""

    @abc.abstractmethod
    async def send(self, to: str, message: OutboundMessage) -> SendResult:
        ...

    async def close(self) -> None:
        pass


class RecordingSender(OutboundSender):
    """Keeps every send in memory; optional failure injection for tests."""

    channel = "recording"

    def __init__(self, fail_types: tuple[str, ...] = ()):
        self.sent: list[dict[str, Any]] = []
        self._fail_types = fail_types

    async def send(self, to: str, message: OutboundMessage) -> SendResult:
        if message.type in self._fail_types:
            return SendResult(status="failed", error=f"{message.type} sends disabled")
        msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
        self.sent.append({"to": to, "message": message, "provider_message_id": msg_id})
        return SendResult(provider_message_id=msg_id, status="sent")
