from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy.engine import Engine

from . import events
from .bookings import due_cancellations, finalize_cancellation
from .db import utcnow
from .models import Booking

CANCELLATION_SWEEP_SECONDS = float(os.getenv("CANCELLATION_SWEEP_SECONDS", "60"))

logger = logging.getLogger(__name__)


class CancellationScheduler:
    """
    Periodically finalizes cancellations whose effective time has passed.

    One asyncio task runs the sweep; the next tick is scheduled only after
    the previous one returns, so sweeps never overlap. `clock` and `publish`
    are injectable so tests can drive it without wall-clock delays or a broker.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        interval_seconds: float = CANCELLATION_SWEEP_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        publish: Callable[[str, dict[str, Any]], Awaitable[None]] = events.publish,
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.publish = publish
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> list[Booking]:
        now = self.clock()
        finalized: list[Booking] = []
        for booking_id in due_cancellations(self.engine, now):
            try:
                booking = finalize_cancellation(self.engine, booking_id, now)
            except Exception:
                # Left as-is; the next tick picks it up again.
                logger.exception("Failed to finalize cancellation for booking %s", booking_id)
                continue
            if booking is not None:
                finalized.append(booking)
        if finalized:
            logger.info("Cancellation sweep finalized %d booking(s)", len(finalized))
        return finalized

    async def tick(self) -> list[Booking]:
        finalized = self.run_once()
        for booking in finalized:
            await self.publish("booking.cancelled", events.booking_payload(booking))
        return finalized

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Cancellation sweep failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("Cancellation scheduler started (interval=%ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Cancellation scheduler stopped")
