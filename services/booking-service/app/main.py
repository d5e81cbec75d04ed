from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Callable, Literal

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import bookings, catalog, events, gateway, payments
from .db import get_engine, utcnow
from .errors import BookingError, InvalidRequest, InvalidState
from .models import CANCELLED
from .scheduler import CancellationScheduler
from .security import ADMIN_ROLE, ensure_owner, is_admin, require_roles

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CANCELLATION_SCHEDULER_ENABLED = os.getenv("CANCELLATION_SCHEDULER_ENABLED", "1").strip().lower() in {"1", "true", "yes", "on"}

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="AeroLux Booking Service",
    version="0.1.0",
    description="Flight and hotel bookings with atomic seat reservation, delayed cancellation and refund reconciliation.",
)

_scheduler: CancellationScheduler | None = None


def get_clock() -> Callable[[], datetime]:
    return utcnow


@app.exception_handler(BookingError)
async def _booking_error(_request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
async def _startup():
    global _scheduler
    if not CANCELLATION_SCHEDULER_ENABLED:
        logger.info("Cancellation scheduler disabled")
        return
    _scheduler = CancellationScheduler(get_engine())
    _scheduler.start()


@app.on_event("shutdown")
async def _shutdown():
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


@app.get("/health")
def health():
    return {"status": "ok", "scheduler_running": bool(_scheduler and _scheduler.running)}


#
# Flights & hotels
#


class FlightCreate(BaseModel):
    flight_number: str = Field(min_length=1)
    airline: str | None = None
    origin: str | None = None
    destination: str | None = None
    departure_at: datetime
    price: int = Field(default=0, ge=0, description="Per-passenger price in cents")
    capacity: int = Field(ge=0)
    seats_available: int | None = Field(default=None, ge=0, description="Defaults to capacity")


class FlightOut(BaseModel):
    id: str
    flight_number: str
    airline: str | None
    origin: str | None
    destination: str | None
    departure_at: datetime
    price: int
    capacity: int
    seats_available: int


class HotelCreate(BaseModel):
    name: str = Field(min_length=1)
    city: str | None = None
    country: str | None = None
    price_per_night: int = Field(default=0, ge=0)


class HotelOut(BaseModel):
    id: str
    name: str
    city: str | None
    country: str | None
    price_per_night: int


def _flight_out(f) -> FlightOut:
    return FlightOut(
        id=f.id,
        flight_number=f.flight_number,
        airline=f.airline,
        origin=f.origin,
        destination=f.destination,
        departure_at=f.departure_at,
        price=f.price,
        capacity=f.capacity,
        seats_available=f.seats_available,
    )


def _hotel_out(h) -> HotelOut:
    return HotelOut(id=h.id, name=h.name, city=h.city, country=h.country, price_per_night=h.price_per_night)


@app.post("/flights", response_model=FlightOut, status_code=201)
def create_flight(
    payload: FlightCreate,
    engine=Depends(get_engine),
    _principal=Depends(require_roles(ADMIN_ROLE)),
):
    return _flight_out(catalog.create_flight(engine, **payload.model_dump()))


@app.get("/flights/{flight_id}", response_model=FlightOut)
def get_flight(flight_id: str, engine=Depends(get_engine)):
    return _flight_out(catalog.get_flight(engine, flight_id))


@app.post("/hotels", response_model=HotelOut, status_code=201)
def create_hotel(
    payload: HotelCreate,
    engine=Depends(get_engine),
    _principal=Depends(require_roles(ADMIN_ROLE)),
):
    return _hotel_out(catalog.create_hotel(engine, **payload.model_dump()))


@app.get("/hotels/{hotel_id}", response_model=HotelOut)
def get_hotel(hotel_id: str, engine=Depends(get_engine)):
    return _hotel_out(catalog.get_hotel(engine, hotel_id))


#
# Bookings
#


class BookingCreate(BaseModel):
    user_id: str | None = Field(default=None, description="Admins may book on behalf of a user")
    type: Literal["FLIGHT", "HOTEL"]
    reference: str | None = None
    date: datetime | None = None
    amount: int | None = Field(default=None, ge=0, description="Cents; derived from the price when omitted")
    currency: str = "USD"
    description: str | None = None
    flight_id: str | None = None
    passengers: int | None = Field(default=None, ge=1)
    hotel_id: str | None = None
    metadata: dict = Field(default_factory=dict)


class BookingOut(BaseModel):
    id: str
    user_id: str
    type: str
    reference: str
    date: datetime
    amount: int
    currency: str
    description: str | None
    status: str
    payment_status: str
    flight_id: str | None
    passengers: int | None
    hotel_id: str | None
    metadata: dict
    created_at: datetime
    updated_at: datetime
    cancel_requested_at: datetime | None
    cancellation_effective_at: datetime | None
    refund_status: str | None
    refund_amount: int | None
    refunded_at: datetime | None


class CancellationOut(BaseModel):
    booking: BookingOut
    message: str


class StatusUpdate(BaseModel):
    status: Literal["PENDING", "CONFIRMED", "COMPLETED", "CANCELLED"]


class BookingStatsOut(BaseModel):
    total_bookings: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    total_revenue: int


def _booking_out(b) -> BookingOut:
    return BookingOut(
        id=b.id,
        user_id=b.user_id,
        type=b.type,
        reference=b.reference,
        date=b.date,
        amount=b.amount,
        currency=b.currency,
        description=b.description,
        status=b.status,
        payment_status=b.payment_status,
        flight_id=b.flight_id,
        passengers=b.passengers,
        hotel_id=b.hotel_id,
        metadata=b.meta or {},
        created_at=b.created_at,
        updated_at=b.updated_at,
        cancel_requested_at=b.cancel_requested_at,
        cancellation_effective_at=b.cancellation_effective_at,
        refund_status=b.refund_status,
        refund_amount=b.refund_amount,
        refunded_at=b.refunded_at,
    )


def _owned_booking(engine, booking_id: str, principal: dict):
    booking = bookings.get_booking(engine, booking_id)
    ensure_owner(principal, booking.user_id)
    return booking


@app.post("/bookings", response_model=BookingOut, status_code=201)
async def create_booking(
    payload: BookingCreate,
    engine=Depends(get_engine),
    clock=Depends(get_clock),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    if payload.user_id and is_admin(principal):
        user_id = payload.user_id
    else:
        user_id = principal.get("sub")
    if not user_id:
        raise InvalidRequest("user_id is required")

    booking = bookings.create_booking(
        engine,
        bookings.BookingRequest(
            user_id=str(user_id),
            type=payload.type,
            date=payload.date,
            amount=payload.amount,
            reference=payload.reference,
            description=payload.description,
            currency=payload.currency,
            flight_id=payload.flight_id,
            passengers=payload.passengers,
            hotel_id=payload.hotel_id,
            metadata=payload.metadata,
        ),
        clock(),
    )
    await events.publish("booking.created", events.booking_payload(booking))
    return _booking_out(booking)


@app.get("/bookings", response_model=list[BookingOut])
def list_bookings(
    status: str | None = None,
    type: str | None = None,
    user_id: str | None = None,
    engine=Depends(get_engine),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    if not is_admin(principal):
        user_id = str(principal.get("sub"))
    rows = bookings.list_bookings(engine, user_id=user_id, status=status, type=type)
    return [_booking_out(b) for b in rows]


@app.get("/bookings/stats", response_model=BookingStatsOut)
def booking_stats(
    engine=Depends(get_engine),
    _principal=Depends(require_roles(ADMIN_ROLE)),
):
    return BookingStatsOut(**bookings.booking_stats(engine))


@app.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    return _booking_out(_owned_booking(engine, booking_id, principal))


@app.post("/bookings/{booking_id}/cancel", response_model=CancellationOut)
async def request_cancellation(
    booking_id: str,
    engine=Depends(get_engine),
    clock=Depends(get_clock),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    _owned_booking(engine, booking_id, principal)
    now = clock()
    booking, message = bookings.request_cancellation(engine, booking_id, now)
    if booking.status != CANCELLED and booking.cancel_requested_at == now:
        await events.publish("booking.cancellation_requested", events.booking_payload(booking))
    return CancellationOut(booking=_booking_out(booking), message=message)


@app.post("/bookings/{booking_id}/pay", response_model=BookingOut)
async def mark_paid(
    booking_id: str,
    engine=Depends(get_engine),
    clock=Depends(get_clock),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    _owned_booking(engine, booking_id, principal)
    booking = bookings.mark_paid(engine, booking_id, clock())
    await events.publish("booking.paid", events.booking_payload(booking))
    return _booking_out(booking)


@app.patch("/bookings/{booking_id}/status", response_model=BookingOut)
async def update_status(
    booking_id: str,
    payload: StatusUpdate,
    engine=Depends(get_engine),
    clock=Depends(get_clock),
    _principal=Depends(require_roles(ADMIN_ROLE)),
):
    booking = bookings.update_status(engine, booking_id, payload.status, clock())
    if payload.status == CANCELLED:
        await events.publish("booking.cancelled", events.booking_payload(booking))
    return _booking_out(booking)


@app.delete("/bookings/{booking_id}")
def delete_booking(
    booking_id: str,
    engine=Depends(get_engine),
    _principal=Depends(require_roles(ADMIN_ROLE)),
):
    bookings.delete_booking(engine, booking_id)
    return {"ok": True, "message": "Booking deleted successfully"}


#
# Payments
#


class PaymentCreate(BaseModel):
    booking_id: str
    amount: int | None = Field(default=None, ge=0, description="Cents; defaults to the booking amount")
    method: str = Field(default="card", min_length=1)


class PaymentOut(BaseModel):
    id: str
    booking_id: str
    user_id: str
    amount: int
    currency: str
    method: str
    status: str
    created_at: datetime
    paid_at: datetime | None
    refunded_at: datetime | None


class ChargeRequest(BaseModel):
    token: str | None = Field(default=None, description="Opaque card/wallet token forwarded to the gateway")


class ChargeOut(BaseModel):
    approved: bool
    reason: str | None
    payment: PaymentOut
    booking: BookingOut


def _payment_out(p) -> PaymentOut:
    return PaymentOut(
        id=p.id,
        booking_id=p.booking_id,
        user_id=p.user_id,
        amount=p.amount,
        currency=p.currency,
        method=p.method,
        status=p.status,
        created_at=p.created_at,
        paid_at=p.paid_at,
        refunded_at=p.refunded_at,
    )


def _owned_payment(engine, payment_id: str, principal: dict):
    payment = payments.get_payment(engine, payment_id)
    ensure_owner(principal, payment.user_id)
    return payment


@app.post("/payments", response_model=PaymentOut, status_code=201)
def record_payment(
    payload: PaymentCreate,
    engine=Depends(get_engine),
    clock=Depends(get_clock),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    booking = _owned_booking(engine, payload.booking_id, principal)
    payment = payments.record_payment(
        engine,
        booking_id=booking.id,
        user_id=booking.user_id,
        amount=payload.amount if payload.amount is not None else booking.amount,
        method=payload.method,
        now=clock(),
    )
    return _payment_out(payment)


@app.get("/payments", response_model=list[PaymentOut])
def list_payments(
    user_id: str | None = None,
    engine=Depends(get_engine),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    if not is_admin(principal):
        user_id = str(principal.get("sub"))
    return [_payment_out(p) for p in payments.list_payments(engine, user_id=user_id)]


@app.get("/payments/{payment_id}", response_model=PaymentOut)
def get_payment(
    payment_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    return _payment_out(_owned_payment(engine, payment_id, principal))


@app.post("/payments/{payment_id}/charge", response_model=ChargeOut)
async def charge_payment(
    payment_id: str,
    payload: ChargeRequest,
    engine=Depends(get_engine),
    clock=Depends(get_clock),
    principal=Depends(require_roles("user", ADMIN_ROLE)),
):
    payment = _owned_payment(engine, payment_id, principal)
    if payment.status != payments.PAYMENT_PENDING:
        raise InvalidState(f"Payment is not pending (status={payment.status})")
    booking = bookings.get_booking(engine, payment.booking_id)
    if booking.status == CANCELLED:
        raise InvalidState("Cannot pay for a cancelled booking")

    result = await gateway.charge(payment, token=payload.token)
    if not result.approved:
        payment = payments.fail_payment(engine, payment_id)
        await events.publish("payment.failed", {"payment_id": payment.id, "booking_id": booking.id, "reason": result.reason})
        return ChargeOut(approved=False, reason=result.reason, payment=_payment_out(payment), booking=_booking_out(booking))

    payment, booking = bookings.settle_charge(engine, payment_id, clock())
    if payment.status == payments.PAYMENT_REFUNDED:
        await events.publish("payment.refunded", {"payment_id": payment.id, "booking_id": booking.id, "amount": payment.amount})
        return ChargeOut(
            approved=False,
            reason="Booking was cancelled during payment; the charge has been refunded",
            payment=_payment_out(payment),
            booking=_booking_out(booking),
        )

    await events.publish("payment.confirmed", {"payment_id": payment.id, "booking_id": booking.id, "amount": payment.amount})
    await events.publish("booking.paid", events.booking_payload(booking))
    return ChargeOut(approved=True, reason=result.reason, payment=_payment_out(payment), booking=_booking_out(booking))
