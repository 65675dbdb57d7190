"""External card / mobile-money gateway client (Paystack-style REST API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx

from metercore.core.config import get_settings

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_ABANDONED = "abandoned"
OUTCOME_PENDING = "pending"


class GatewayError(Exception):
    """The gateway could not be reached or answered with an error."""


@dataclass(frozen=True)
class GatewaySession:
    reference: str
    authorization_url: str
    access_code: str


@dataclass(frozen=True)
class GatewayVerification:
    reference: str
    outcome: str
    amount: int | None  # minor units
    currency: str | None
    raw: dict


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def _client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        base_url=settings.gateway_base_url,
        timeout=settings.gateway_timeout_seconds,
        headers={
            "Authorization": f"Bearer {settings.gateway_secret_key}",
            "Content-Type": "application/json",
        },
    )


async def initialize_transaction(
    reference: str,
    amount: Decimal,
    currency: str,
    email: str,
    metadata: dict | None = None,
) -> GatewaySession:
    """Open a payment session; the payer completes it on ``authorization_url``."""
    settings = get_settings()
    body = {
        "reference": reference,
        "amount": to_minor_units(amount),
        "currency": currency,
        "email": email,
        "metadata": metadata or {},
    }
    if settings.gateway_callback_url:
        body["callback_url"] = settings.gateway_callback_url
    try:
        async with _client() as client:
            resp = await client.post("/transaction/initialize", json=body)
            resp.raise_for_status()
            payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Gateway initialize failed for %s: %s", reference, exc)
        raise GatewayError(str(exc)) from exc

    if not payload.get("status"):
        raise GatewayError(payload.get("message") or "Gateway refused to initialize payment")
    data = payload.get("data") or {}
    return GatewaySession(
        reference=data.get("reference", reference),
        authorization_url=data.get("authorization_url", ""),
        access_code=data.get("access_code", ""),
    )


async def verify_transaction(reference: str) -> GatewayVerification:
    """Ask the gateway for the current outcome of ``reference``."""
    try:
        async with _client() as client:
            resp = await client.get(f"/transaction/verify/{reference}")
            resp.raise_for_status()
            payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Gateway verify failed for %s: %s", reference, exc)
        raise GatewayError(str(exc)) from exc

    data = payload.get("data") or {}
    amount = data.get("amount")
    try:
        amount = int(amount) if amount is not None else None
    except (TypeError, ValueError) as exc:
        raise GatewayError(f"Gateway returned an invalid amount: {amount!r}") from exc
    return GatewayVerification(
        reference=data.get("reference", reference),
        outcome=str(data.get("status") or OUTCOME_PENDING),
        amount=amount,
        currency=data.get("currency"),
        raw=data,
    )


def parse_webhook(body: dict) -> tuple[str, str, int | None]:
    """Extract ``(reference, outcome, amount)`` from a gateway event body.

    Accepts the gateway's ``{"event": ..., "data": {...}}`` envelope as well
    as a flat ``{"reference", "outcome", "amount"}`` body.
    """
    data = body.get("data") if isinstance(body.get("data"), dict) else body
    reference = data.get("reference")
    if not reference:
        raise ValueError("Webhook body has no payment reference")
    outcome = data.get("outcome") or data.get("status")
    if not outcome:
        event = str(body.get("event", ""))
        outcome = OUTCOME_SUCCESS if event.endswith(".success") else OUTCOME_PENDING

    amount = data.get("amount")
    if amount is not None:
        try:
            amount = int(amount)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Webhook amount is not an integer: {amount!r}") from exc
    return str(reference), str(outcome), amount
