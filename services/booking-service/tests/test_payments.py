from datetime import timedelta

import httpx
import pytest

from app import bookings, gateway, payments
from app.bookings import BookingRequest
from app.db import session
from app.errors import InvalidState, NotFound


@pytest.fixture
def booking(engine, make_flight, now):
    flight = make_flight()
    return bookings.create_booking(
        engine,
        BookingRequest(user_id="user-1", type="FLIGHT", flight_id=flight.id, passengers=1),
        now,
    )


def test_record_and_confirm_payment(engine, booking, now):
    payment = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=booking.amount, method="card", now=now)
    assert payment.status == "pending"
    assert payment.currency == booking.currency
    # Recording a payment does not touch the booking.
    assert bookings.get_booking(engine, booking.id).payment_status == "UNPAID"

    confirmed = payments.confirm_payment(engine, payment.id, now + timedelta(minutes=1))
    assert confirmed.status == "paid"
    assert confirmed.paid_at == now + timedelta(minutes=1)


def test_record_payment_for_missing_booking(engine, now):
    with pytest.raises(NotFound):
        payments.record_payment(engine, booking_id="missing", user_id="u", amount=1, method="card", now=now)


def test_only_pending_payments_can_be_confirmed_or_failed(engine, booking, now):
    declined = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)
    assert payments.fail_payment(engine, declined.id).status == "failed"
    with pytest.raises(InvalidState):
        payments.confirm_payment(engine, declined.id, now)
    with pytest.raises(InvalidState):
        payments.fail_payment(engine, declined.id)

    paid = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)
    payments.confirm_payment(engine, paid.id, now)
    with pytest.raises(InvalidState):
        payments.confirm_payment(engine, paid.id, now)
    assert payments.get_payment(engine, declined.id).status == "failed"


def test_refund_paid_payments_leaves_other_statuses(engine, booking, now):
    declined = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)
    payments.fail_payment(engine, declined.id)
    pending = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)
    paid = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)
    payments.confirm_payment(engine, paid.id, now)

    later = now + timedelta(hours=1)
    with session(engine) as s:
        refunded = payments.refund_paid_payments(s, booking.id, later)
        s.commit()

    assert [p.id for p in refunded] == [paid.id]
    stored = payments.get_payment(engine, paid.id)
    assert stored.status == "refunded"
    assert stored.refunded_at == later
    assert payments.get_payment(engine, declined.id).status == "failed"
    assert payments.get_payment(engine, pending.id).status == "pending"


def test_settle_charge_marks_payment_and_booking_paid_together(engine, booking, now):
    payment = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=booking.amount, method="card", now=now)

    settled, paid_booking = bookings.settle_charge(engine, payment.id, now)

    assert settled.status == "paid"
    assert settled.paid_at == now
    assert paid_booking.payment_status == "PAID"
    assert paid_booking.status == "COMPLETED"
    with pytest.raises(InvalidState):
        bookings.settle_charge(engine, payment.id, now)


def test_settle_charge_refunds_when_booking_already_cancelled(engine, booking, now):
    payment = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=booking.amount, method="card", now=now)
    bookings.finalize_cancellation(engine, booking.id, now)

    settled, cancelled = bookings.settle_charge(engine, payment.id, now + timedelta(minutes=1))

    assert settled.status == "refunded"
    assert settled.refunded_at == now + timedelta(minutes=1)
    assert cancelled.status == "CANCELLED"
    assert cancelled.payment_status == "UNPAID"
    assert payments.get_payment(engine, payment.id).status == "refunded"


def test_list_payments_by_user(engine, booking, now):
    payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)
    payments.record_payment(engine, booking_id=booking.id, user_id="user-2", amount=1, method="card", now=now)
    assert len(payments.list_payments(engine)) == 2
    assert [p.user_id for p in payments.list_payments(engine, user_id="user-2")] == ["user-2"]


class _DummyResponse:
    def __init__(self, status_code: int, json_data: dict):
        self.status_code = status_code
        self._json = json_data
        self.text = "dummy"

    def json(self):
        return self._json


class _DummyAsyncClient:
    response = _DummyResponse(200, {"approved": True, "transaction_id": "tx-1"})
    requests: list = []

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, json=None, headers=None):
        self.requests.append((url, json))
        return self.response


class _UnreachableAsyncClient(_DummyAsyncClient):
    async def post(self, url, json=None, headers=None):
        raise httpx.ConnectError("connection refused")


@pytest.mark.anyio
async def test_mock_gateway_approves_without_url(engine, booking, now, monkeypatch):
    monkeypatch.setattr(gateway, "PAYMENT_GATEWAY_URL", "")
    payment = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)

    result = await gateway.charge(payment)

    assert result.approved
    assert result.transaction_id == f"mock-{payment.id}"


@pytest.mark.anyio
async def test_gateway_posts_charge(engine, booking, now, monkeypatch):
    monkeypatch.setattr(gateway, "PAYMENT_GATEWAY_URL", "http://gateway.local")
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    monkeypatch.setattr(_DummyAsyncClient, "requests", [])
    payment = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=99, method="card", now=now)

    result = await gateway.charge(payment, token="tok_visa")

    assert result.approved
    assert result.transaction_id == "tx-1"
    url, body = _DummyAsyncClient.requests[0]
    assert url == "http://gateway.local/charges"
    assert body["amount"] == 99
    assert body["token"] == "tok_visa"


@pytest.mark.anyio
async def test_gateway_errors_count_as_decline(engine, booking, now, monkeypatch):
    monkeypatch.setattr(gateway, "PAYMENT_GATEWAY_URL", "http://gateway.local")
    payment = payments.record_payment(engine, booking_id=booking.id, user_id="user-1", amount=1, method="card", now=now)

    monkeypatch.setattr(httpx, "AsyncClient", _UnreachableAsyncClient)
    result = await gateway.charge(payment)
    assert not result.approved
    assert result.reason == "gateway unavailable"

    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    monkeypatch.setattr(_DummyAsyncClient, "response", _DummyResponse(402, {}))
    result = await gateway.charge(payment)
    assert not result.approved
