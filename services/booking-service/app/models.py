from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

FLIGHT = "FLIGHT"
HOTEL = "HOTEL"
BOOKING_TYPES = (FLIGHT, HOTEL)

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
BOOKING_STATUSES = (PENDING, CONFIRMED, COMPLETED, CANCELLED)

UNPAID = "UNPAID"
PAID = "PAID"

REFUND_PENDING = "PENDING"
REFUNDED = "REFUNDED"


class Base(DeclarativeBase):
    pass


class Flight(Base):
    __tablename__ = "flights"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    flight_number: Mapped[str] = mapped_column(String, index=True)
    airline: Mapped[str | None] = mapped_column(String)
    origin: Mapped[str | None] = mapped_column(String)
    destination: Mapped[str | None] = mapped_column(String)
    departure_at: Mapped[datetime] = mapped_column(DateTime, index=True)

    price: Mapped[int] = mapped_column(Integer, default=0)  # cents
    capacity: Mapped[int] = mapped_column(Integer, default=0)
    seats_available: Mapped[int] = mapped_column(Integer, default=0)  # 0 <= seats_available <= capacity


class Hotel(Base):
    __tablename__ = "hotels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, index=True)
    city: Mapped[str | None] = mapped_column(String)
    country: Mapped[str | None] = mapped_column(String)
    price_per_night: Mapped[int] = mapped_column(Integer, default=0)  # cents


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_cancellation_due", "cancellation_effective_at", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, index=True)

    type: Mapped[str] = mapped_column(String, index=True)  # FLIGHT|HOTEL
    reference: Mapped[str] = mapped_column(String, index=True)
    date: Mapped[datetime] = mapped_column(DateTime, index=True)

    amount: Mapped[int] = mapped_column(Integer)  # cents
    currency: Mapped[str] = mapped_column(String, default="USD")
    description: Mapped[str | None] = mapped_column(String)

    status: Mapped[str] = mapped_column(String, index=True, default=PENDING)
    payment_status: Mapped[str] = mapped_column(String, default=UNPAID)

    flight_id: Mapped[str | None] = mapped_column(ForeignKey("flights.id"), index=True)
    passengers: Mapped[int | None] = mapped_column(Integer)
    hotel_id: Mapped[str | None] = mapped_column(ForeignKey("hotels.id"), index=True)

    # `metadata` is reserved on declarative classes.
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

    cancel_requested_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancellation_effective_at: Mapped[datetime | None] = mapped_column(DateTime)
    refund_status: Mapped[str | None] = mapped_column(String)  # PENDING|REFUNDED
    refund_amount: Mapped[int | None] = mapped_column(Integer)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)

    amount: Mapped[int] = mapped_column(Integer)  # cents
    currency: Mapped[str] = mapped_column(String, default="USD")
    method: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")  # pending|paid|failed|refunded

    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime)
