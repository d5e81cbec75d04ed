from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db import as_utc, session
from .errors import InvalidRequest, NotFound, PersistenceFailure
from .models import Flight, Hotel


def create_flight(
    engine: Engine,
    *,
    flight_number: str,
    departure_at: datetime,
    capacity: int,
    seats_available: int | None = None,
    price: int = 0,
    airline: str | None = None,
    origin: str | None = None,
    destination: str | None = None,
) -> Flight:
    if capacity < 0:
        raise InvalidRequest("capacity cannot be negative")
    seats = capacity if seats_available is None else seats_available
    if seats < 0 or seats > capacity:
        raise InvalidRequest("seats_available must be between 0 and capacity")

    flight = Flight(
        id=str(uuid4()),
        flight_number=flight_number.strip().upper(),
        airline=airline,
        origin=origin,
        destination=destination,
        departure_at=as_utc(departure_at),
        price=price,
        capacity=capacity,
        seats_available=seats,
    )
    with session(engine) as s:
        s.add(flight)
        try:
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            raise PersistenceFailure(f"Could not save flight: {e}") from e
    return flight


def get_flight(engine: Engine, flight_id: str) -> Flight:
    with session(engine) as s:
        flight = s.get(Flight, flight_id)
    if flight is None:
        raise NotFound("Flight not found")
    return flight


def create_hotel(
    engine: Engine,
    *,
    name: str,
    city: str | None = None,
    country: str | None = None,
    price_per_night: int = 0,
) -> Hotel:
    if not name.strip():
        raise InvalidRequest("name is required")
    hotel = Hotel(
        id=str(uuid4()),
        name=name.strip(),
        city=city,
        country=country,
        price_per_night=price_per_night,
    )
    with session(engine) as s:
        s.add(hotel)
        try:
            s.commit()
        except SQLAlchemyError as e:
            s.rollback()
            raise PersistenceFailure(f"Could not save hotel: {e}") from e
    return hotel


def get_hotel(engine: Engine, hotel_id: str) -> Hotel:
    with session(engine) as s:
        hotel = s.get(Hotel, hotel_id)
    if hotel is None:
        raise NotFound("Hotel not found")
    return hotel
