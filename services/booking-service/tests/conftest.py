import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Ensure `services/booking-service` is on sys.path so `import app` works when
# running tests from the repository root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import catalog  # noqa: E402
from app.db import build_engine  # noqa: E402

NOW = datetime(2025, 1, 1, 0, 0, 0)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine(tmp_path):
    # File-backed so separate sessions see each other's commits.
    eng = build_engine(f"sqlite+pysqlite:///{tmp_path / 'aerolux.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_flight(engine):
    def _make(capacity: int = 2, seats_available: int | None = None, departure_at: datetime | None = None, price: int = 150_00):
        return catalog.create_flight(
            engine,
            flight_number="AX101",
            airline="AeroLux",
            origin="JFK",
            destination="LHR",
            departure_at=departure_at or NOW + timedelta(days=1),
            capacity=capacity,
            seats_available=seats_available,
            price=price,
        )

    return _make


@pytest.fixture
def hotel(engine):
    return catalog.create_hotel(engine, name="Harbour View", city="Lisbon", country="PT", price_per_night=120_00)
