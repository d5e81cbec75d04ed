from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import httpx

PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL", "")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    approved: bool
    reason: str | None = None
    transaction_id: str | None = None


async def charge(payment, token: str | None = None) -> ChargeResult:
    """
    Ask the payment gateway to capture a payment.

    Without PAYMENT_GATEWAY_URL the gateway is mocked and approves every
    charge. Transport errors and non-2xx answers count as a decline.
    """
    if not PAYMENT_GATEWAY_URL:
        return ChargeResult(approved=True, reason="mock gateway", transaction_id=f"mock-{payment.id}")

    req = {
        "payment_id": payment.id,
        "booking_id": payment.booking_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "method": payment.method,
        "token": token,
    }
    try:
        # Ignore HTTP(S)_PROXY env vars for internal service calls.
        async with httpx.AsyncClient(timeout=10.0, trust_env=False) as client:
            r = await client.post(f"{PAYMENT_GATEWAY_URL}/charges", json=req)
    except httpx.HTTPError as e:
        logger.warning("Payment gateway unreachable (payment_id=%s): %s", payment.id, e)
        return ChargeResult(approved=False, reason="gateway unavailable")

    if r.status_code >= 400:
        return ChargeResult(approved=False, reason=r.text or f"gateway status {r.status_code}")

    body = r.json()
    return ChargeResult(
        approved=bool(body.get("approved")),
        reason=body.get("reason"),
        transaction_id=body.get("transaction_id"),
    )
