"""
Expiry Sweeper — completes executions that waited too long for a reply.

A paused execution carries an `expires_at` deadline (forms default to ten
minutes). An expired execution is also caught lazily when the customer's
next message arrives; the sweeper makes sure it is closed even when no
message ever comes.

Configure in settings:
    engine:
      form_timeout_min: 10
      question_timeout_min: 0
      expiry_sweep_interval_s: 60
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from flows.interpreter import FlowInterpreter

logger = structlog.get_logger()


class ExpirySweeper:

    def __init__(self, interpreter: FlowInterpreter, interval_s: float = 60):
        self.interpreter = interpreter
        self.interval_s = interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop as a background task. A zero interval disables it."""
        if self.interval_s <= 0:
            logger.info("expiry_sweeper_disabled")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="expiry_sweeper")
        logger.info("expiry_sweeper_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("expiry_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.interpreter.expire_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("expiry_sweep_error", error=str(e))

            await asyncio.sleep(self.interval_s)
