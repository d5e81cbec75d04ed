from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app import catalog
from app.db import session
from app.errors import InvalidState, InventoryUnavailable, NotFound, PersistenceFailure
from app.inventory import FlightSeatLedger, ledger_for
from app.models import FLIGHT, HOTEL, Flight


def _seats(engine, flight_id):
    return catalog.get_flight(engine, flight_id).seats_available


def test_reserve_decrements_and_release_restores(engine, make_flight, now):
    flight = make_flight(capacity=5)
    ledger = FlightSeatLedger()

    with session(engine) as s:
        ledger.reserve(s, flight.id, 3, now)
        s.commit()
    assert _seats(engine, flight.id) == 2

    with session(engine) as s:
        ledger.release(s, flight.id, 3)
        s.commit()
    assert _seats(engine, flight.id) == 5


def test_reserve_rejects_more_seats_than_available(engine, make_flight, now):
    flight = make_flight(capacity=2, seats_available=1)

    with session(engine) as s:
        with pytest.raises(InventoryUnavailable):
            FlightSeatLedger().reserve(s, flight.id, 2, now)

    assert _seats(engine, flight.id) == 1


def test_reserve_unknown_flight(engine, now):
    with session(engine) as s:
        with pytest.raises(NotFound):
            FlightSeatLedger().reserve(s, "missing", 1, now)


def test_reserve_departed_flight(engine, make_flight, now):
    flight = make_flight(departure_at=now - timedelta(minutes=1))
    with session(engine) as s:
        with pytest.raises(InvalidState):
            FlightSeatLedger().reserve(s, flight.id, 1, now)


def test_release_never_exceeds_capacity(engine, make_flight):
    flight = make_flight(capacity=3, seats_available=2)
    with session(engine) as s:
        FlightSeatLedger().release(s, flight.id, 5)
        s.commit()
    assert _seats(engine, flight.id) == 3


def test_stale_read_cannot_oversell_last_seat(engine, make_flight, now):
    flight = make_flight(capacity=1)
    ledger = FlightSeatLedger()

    with session(engine) as racer:
        # The racer has already seen one free seat...
        assert racer.get(Flight, flight.id).seats_available == 1

        # ...when another request takes it.
        with session(engine) as winner:
            ledger.reserve(winner, flight.id, 1, now)
            winner.commit()

        with pytest.raises(InventoryUnavailable):
            ledger.reserve(racer, flight.id, 1, now)

    assert _seats(engine, flight.id) == 0


def test_only_flights_have_a_ledger():
    assert isinstance(ledger_for(FLIGHT), FlightSeatLedger)
    assert ledger_for(HOTEL) is None


class _LockedSession:
    """Session whose writes fail the way a busy SQLite file does."""

    def __init__(self, flight):
        self.flight = flight
        self.rolled_back = False

    def get(self, model, ident):
        return self.flight

    def execute(self, stmt):
        raise OperationalError("UPDATE flights", {}, Exception("database is locked"))

    def rollback(self):
        self.rolled_back = True


def test_driver_errors_surface_as_persistence_failure(make_flight, now):
    flight = make_flight(capacity=2)
    ledger = FlightSeatLedger()

    locked = _LockedSession(flight)
    with pytest.raises(PersistenceFailure):
        ledger.reserve(locked, flight.id, 1, now)
    assert locked.rolled_back

    with pytest.raises(PersistenceFailure):
        ledger.release(_LockedSession(flight), flight.id, 1)
