from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import session
from .errors import InvalidRequest, InvalidState, NotFound, PersistenceFailure
from .models import Booking, Payment

logger = logging.getLogger(__name__)

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


def _commit(s: Session) -> None:
    try:
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        raise PersistenceFailure(f"Could not commit payment change: {e}") from e


def _load(s: Session, payment_id: str) -> Payment:
    payment = s.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Payment not found")
    return payment


def record_payment(
    engine: Engine,
    *,
    booking_id: str,
    user_id: str,
    amount: int,
    method: str,
    now: datetime,
) -> Payment:
    if amount < 0:
        raise InvalidRequest("amount cannot be negative")
    with session(engine) as s:
        booking = s.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        payment = Payment(
            id=str(uuid4()),
            booking_id=booking_id,
            user_id=user_id,
            amount=amount,
            currency=booking.currency,
            method=method,
            status=PAYMENT_PENDING,
            created_at=now,
        )
        s.add(payment)
        _commit(s)
    logger.info("Recorded payment %s for booking %s", payment.id, booking_id)
    return payment


def load_pending(s: Session, payment_id: str) -> Payment:
    payment = _load(s, payment_id)
    if payment.status != PAYMENT_PENDING:
        raise InvalidState(f"Payment is not pending (status={payment.status})")
    return payment


def confirm(payment: Payment, now: datetime) -> None:
    payment.status = PAYMENT_PAID
    payment.paid_at = now


def confirm_payment(engine: Engine, payment_id: str, now: datetime) -> Payment:
    with session(engine) as s:
        payment = load_pending(s, payment_id)
        confirm(payment, now)
        _commit(s)
    logger.info("Payment %s confirmed", payment_id)
    return payment


def fail_payment(engine: Engine, payment_id: str) -> Payment:
    with session(engine) as s:
        payment = load_pending(s, payment_id)
        payment.status = PAYMENT_FAILED
        _commit(s)
    logger.info("Payment %s failed", payment_id)
    return payment


def refund(payment: Payment, now: datetime) -> None:
    payment.status = PAYMENT_REFUNDED
    payment.refunded_at = now


def refund_paid_payments(s: Session, booking_id: str, now: datetime) -> list[Payment]:
    """Flip every paid payment of a booking to refunded, inside the caller's transaction."""
    paid = s.scalars(
        select(Payment).where(Payment.booking_id == booking_id).where(Payment.status == PAYMENT_PAID)
    ).all()
    for payment in paid:
        refund(payment, now)
    return list(paid)


def get_payment(engine: Engine, payment_id: str) -> Payment:
    with session(engine) as s:
        return _load(s, payment_id)


def list_payments(engine: Engine, user_id: str | None = None) -> list[Payment]:
    stmt = select(Payment).order_by(Payment.created_at.desc())
    if user_id is not None:
        stmt = stmt.where(Payment.user_id == user_id)
    with session(engine) as s:
        return list(s.scalars(stmt).all())
