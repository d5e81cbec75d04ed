"""
Booking lifecycle.

A booking is created PENDING/UNPAID with its seats reserved in the same
transaction. Paying moves it to COMPLETED. Cancelling is two-step: a request
stamps `cancellation_effective_at = now + 24h`, and `finalize_cancellation`
(run by the scheduler once that time passes) flips it to CANCELLED, refunds
a paid booking and gives its seats back, again in one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import as_utc, execute, session
from .errors import InvalidRequest, InvalidState, NotFound, PersistenceFailure
from .inventory import ledger_for, resource_for
from .models import (
    BOOKING_STATUSES,
    BOOKING_TYPES,
    CANCELLED,
    COMPLETED,
    FLIGHT,
    PAID,
    PENDING,
    REFUND_PENDING,
    REFUNDED,
    UNPAID,
    Booking,
    Flight,
    Hotel,
    Payment,
)
from .payments import confirm, load_pending, refund, refund_paid_payments

logger = logging.getLogger(__name__)

CANCELLATION_DELAY = timedelta(hours=24)


@dataclass(frozen=True)
class BookingRequest:
    user_id: str
    type: str
    date: datetime | None = None
    amount: int | None = None  # cents; derived from the flight/hotel price when omitted
    reference: str | None = None
    description: str | None = None
    currency: str = "USD"
    flight_id: str | None = None
    passengers: int | None = None
    hotel_id: str | None = None
    metadata: dict = field(default_factory=dict)


def _commit(s: Session) -> None:
    try:
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        raise PersistenceFailure(f"Could not commit booking change: {e}") from e


def _load(s: Session, booking_id: str) -> Booking:
    booking = s.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    return booking


def _new_reference() -> str:
    return f"AX-{uuid4().hex[:6].upper()}"


def create_booking(engine: Engine, req: BookingRequest, now: datetime) -> Booking:
    if req.type not in BOOKING_TYPES:
        raise InvalidRequest(f"type must be one of {', '.join(BOOKING_TYPES)}")
    if req.amount is not None and req.amount < 0:
        raise InvalidRequest("amount cannot be negative")

    with session(engine) as s:
        if req.type == FLIGHT:
            if not req.flight_id:
                raise InvalidRequest("flight_id is required for flight bookings")
            passengers = req.passengers or 0
            if passengers < 1:
                raise InvalidRequest("passengers must be at least 1")

            flight = s.get(Flight, req.flight_id)
            if flight is None:
                raise NotFound("Flight not found")
            date = as_utc(req.date) if req.date else flight.departure_at
            if date <= now:
                raise InvalidState("Booking date must be in the future")
            amount = req.amount if req.amount is not None else flight.price * passengers

            ledger_for(FLIGHT).reserve(s, flight.id, passengers, now)
            hotel_id = None
        else:
            if not req.hotel_id:
                raise InvalidRequest("hotel_id is required for hotel bookings")
            if req.date is None:
                raise InvalidRequest("date is required for hotel bookings")

            hotel = s.get(Hotel, req.hotel_id)
            if hotel is None:
                raise NotFound("Hotel not found")
            date = as_utc(req.date)
            if date <= now:
                raise InvalidState("Booking date must be in the future")
            amount = req.amount if req.amount is not None else hotel.price_per_night

            hotel_id = hotel.id
            passengers = None

        booking = Booking(
            id=str(uuid4()),
            user_id=req.user_id,
            type=req.type,
            reference=req.reference or _new_reference(),
            date=date,
            amount=amount,
            currency=req.currency,
            description=req.description,
            status=PENDING,
            payment_status=UNPAID,
            flight_id=req.flight_id if req.type == FLIGHT else None,
            passengers=passengers,
            hotel_id=hotel_id,
            meta=dict(req.metadata or {}),
            created_at=now,
            updated_at=now,
        )
        s.add(booking)
        _commit(s)

    logger.info("Created %s booking %s (%s) for user %s", booking.type, booking.id, booking.reference, booking.user_id)
    return booking


def get_booking(engine: Engine, booking_id: str) -> Booking:
    with session(engine) as s:
        return _load(s, booking_id)


def list_bookings(
    engine: Engine,
    *,
    user_id: str | None = None,
    status: str | None = None,
    type: str | None = None,
) -> list[Booking]:
    stmt = select(Booking).order_by(Booking.created_at.desc())
    if user_id is not None:
        stmt = stmt.where(Booking.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Booking.status == status)
    if type is not None:
        stmt = stmt.where(Booking.type == type)
    with session(engine) as s:
        return list(s.scalars(stmt).all())


def _pay(s: Session, booking_id: str, now: datetime) -> tuple[Booking, bool]:
    booking = _load(s, booking_id)
    # Conditional like the cancel flip, so a payment can never land on a
    # booking a concurrent finalize has already cancelled.
    paid = execute(
        s,
        update(Booking)
        .where(Booking.id == booking_id)
        .where(Booking.status != CANCELLED)
        .values(payment_status=PAID, status=COMPLETED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    s.refresh(booking)
    if paid.rowcount != 1:
        return booking, False
    if booking.cancellation_effective_at is not None:
        # Paid while a cancellation is pending: finalization will refund it.
        booking.refund_status = REFUND_PENDING
        booking.refund_amount = booking.amount
    return booking, True


def mark_paid(engine: Engine, booking_id: str, now: datetime) -> Booking:
    with session(engine) as s:
        booking, paid = _pay(s, booking_id, now)
        if not paid:
            raise InvalidState("Cannot pay for a cancelled booking")
        _commit(s)
    logger.info("Booking %s marked paid", booking_id)
    return booking


def settle_charge(engine: Engine, payment_id: str, now: datetime) -> tuple[Payment, Booking]:
    """
    Record an approved gateway charge and mark its booking paid, atomically.

    The booking may have been cancelled while the gateway call was in flight.
    The captured money is then refunded straight away and the booking is left
    CANCELLED; the caller sees `payment.status == "refunded"`.
    """
    with session(engine) as s:
        payment = load_pending(s, payment_id)
        booking, paid = _pay(s, payment.booking_id, now)
        confirm(payment, now)
        if not paid:
            refund(payment, now)
        _commit(s)

    if paid:
        logger.info("Payment %s settled, booking %s paid", payment_id, booking.id)
    else:
        logger.warning("Payment %s captured after booking %s was cancelled; refunded", payment_id, booking.id)
    return payment, booking


def request_cancellation(engine: Engine, booking_id: str, now: datetime) -> tuple[Booking, str]:
    with session(engine) as s:
        booking = _load(s, booking_id)
        if booking.status == CANCELLED:
            return booking, "Booking is already cancelled."
        if booking.date <= now:
            raise InvalidState("Cannot cancel a booking on or after its travel date")
        if booking.cancellation_effective_at is not None:
            return booking, (
                "Cancellation already requested; it takes effect at "
                f"{booking.cancellation_effective_at.isoformat()}Z."
            )

        booking.cancel_requested_at = now
        booking.cancellation_effective_at = now + CANCELLATION_DELAY
        if booking.payment_status == PAID:
            booking.refund_status = REFUND_PENDING
            booking.refund_amount = booking.amount
        booking.updated_at = now
        _commit(s)

    logger.info("Cancellation requested for booking %s, effective %s", booking_id, booking.cancellation_effective_at)
    message = (
        "Cancellation requested. It will take effect in 24 hours, at "
        f"{booking.cancellation_effective_at.isoformat()}Z."
    )
    if booking.refund_status == REFUND_PENDING:
        message += " A full refund will be issued then."
    return booking, message


def _finalize(s: Session, booking_id: str, now: datetime) -> Booking | None:
    # Only one finalizer can win the flip, so side effects below run once.
    flipped = execute(
        s,
        update(Booking)
        .where(Booking.id == booking_id)
        .where(Booking.status != CANCELLED)
        .values(status=CANCELLED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        _load(s, booking_id)
        return None

    booking = _load(s, booking_id)
    if booking.payment_status == PAID:
        booking.refund_status = REFUNDED
        booking.refunded_at = now
        if booking.refund_amount is None:
            booking.refund_amount = booking.amount
        refund_paid_payments(s, booking.id, now)

    ledger = ledger_for(booking.type)
    resource_id, count = resource_for(booking)
    if ledger is not None and resource_id and count:
        ledger.release(s, resource_id, count)
    return booking


def finalize_cancellation(engine: Engine, booking_id: str, now: datetime) -> Booking | None:
    """
    Move a booking to CANCELLED, refunding and releasing inventory atomically.

    Returns None when the booking was already cancelled.
    """
    with session(engine) as s:
        booking = _finalize(s, booking_id, now)
        if booking is None:
            return None
        _commit(s)
    logger.info("Booking %s cancelled (refund=%s)", booking_id, booking.refund_status)
    return booking


def update_status(engine: Engine, booking_id: str, status: str, now: datetime) -> Booking:
    if status not in BOOKING_STATUSES:
        raise InvalidRequest(f"status must be one of {', '.join(BOOKING_STATUSES)}")

    if status == CANCELLED:
        booking = finalize_cancellation(engine, booking_id, now)
        return booking if booking is not None else get_booking(engine, booking_id)

    with session(engine) as s:
        booking = _load(s, booking_id)
        if booking.status == CANCELLED:
            raise InvalidState("Cancelled bookings cannot change status")
        booking.status = status
        booking.updated_at = now
        _commit(s)
    logger.info("Booking %s status set to %s", booking_id, status)
    return booking


def due_cancellations(engine: Engine, now: datetime) -> list[str]:
    stmt = (
        select(Booking.id)
        .where(Booking.cancellation_effective_at.is_not(None))
        .where(Booking.cancellation_effective_at <= now)
        .where(Booking.status != CANCELLED)
        .order_by(Booking.cancellation_effective_at)
    )
    with session(engine) as s:
        return list(s.scalars(stmt).all())


def delete_booking(engine: Engine, booking_id: str) -> None:
    """Administrative delete. Seats still held by the booking are given back."""
    with session(engine) as s:
        booking = _load(s, booking_id)
        if booking.status != CANCELLED:
            ledger = ledger_for(booking.type)
            resource_id, count = resource_for(booking)
            if ledger is not None and resource_id and count:
                ledger.release(s, resource_id, count)
        s.execute(delete(Payment).where(Payment.booking_id == booking_id))
        s.delete(booking)
        _commit(s)
    logger.info("Booking %s deleted", booking_id)


def booking_stats(engine: Engine) -> dict:
    with session(engine) as s:
        by_status = dict(s.execute(select(Booking.status, func.count()).group_by(Booking.status)).all())
        by_type = dict(s.execute(select(Booking.type, func.count()).group_by(Booking.type)).all())
        revenue = s.scalar(
            select(func.coalesce(func.sum(Booking.amount), 0))
            .where(Booking.payment_status == PAID)
            .where(Booking.status != CANCELLED)
        )
    return {
        "total_bookings": sum(by_status.values()),
        "by_status": {st: by_status.get(st, 0) for st in BOOKING_STATUSES},
        "by_type": {t: by_type.get(t, 0) for t in BOOKING_TYPES},
        "total_revenue": int(revenue or 0),
    }
