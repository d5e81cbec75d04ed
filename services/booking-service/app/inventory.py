from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from .db import execute
from .errors import InvalidRequest, InvalidState, InventoryUnavailable, NotFound
from .models import FLIGHT, Flight

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Guards a per-resource availability counter.

    Both operations run inside the caller's session so the counter change
    commits (or rolls back) together with the booking row it belongs to.
    """

    kind: str = ""

    def reserve(self, s: Session, resource_id: str, count: int, now: datetime) -> None:
        raise NotImplementedError

    def release(self, s: Session, resource_id: str, count: int) -> None:
        raise NotImplementedError


class FlightSeatLedger(InventoryLedger):
    kind = FLIGHT

    def reserve(self, s: Session, resource_id: str, count: int, now: datetime) -> None:
        if count < 1:
            raise InvalidRequest("passengers must be at least 1")

        flight = s.get(Flight, resource_id)
        if flight is None:
            raise NotFound("Flight not found")
        if flight.departure_at <= now:
            raise InvalidState("Flight has already departed")

        # Check and decrement in one statement; two requests racing for the
        # last seat cannot both match the WHERE clause.
        result = execute(
            s,
            update(Flight)
            .where(Flight.id == resource_id)
            .where(Flight.seats_available >= count)
            .values(seats_available=Flight.seats_available - count)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InventoryUnavailable("Not enough seats available")
        s.expire(flight, ["seats_available"])

        logger.info("Reserved %s seat(s) on flight %s", count, resource_id)

    def release(self, s: Session, resource_id: str, count: int) -> None:
        restored = Flight.seats_available + count
        result = execute(
            s,
            update(Flight)
            .where(Flight.id == resource_id)
            .values(seats_available=case((restored > Flight.capacity, Flight.capacity), else_=restored))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound("Flight not found")

        logger.info("Released %s seat(s) on flight %s", count, resource_id)


# Hotel bookings carry no room inventory; register a ledger here to add it.
_LEDGERS: dict[str, InventoryLedger] = {
    FLIGHT: FlightSeatLedger(),
}


def ledger_for(kind: str) -> InventoryLedger | None:
    return _LEDGERS.get(kind)


def resource_for(booking) -> tuple[str | None, int]:
    """Resource id and unit count a booking holds in its kind's ledger."""
    if booking.type == FLIGHT:
        return booking.flight_id, booking.passengers or 0
    return None, 0
