"""Tests for the SMS carrier and payment gateway HTTP clients."""

import json
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from metercore.core.errors import DispatchTransientFailure
from metercore.services import payment_gateway, sms_carrier
from metercore.services.payment_gateway import GatewayError

_RealAsyncClient = httpx.AsyncClient


def _mock_transport(handler):
    """Patch httpx.AsyncClient so every client built inside routes to ``handler``."""

    def _factory(*args, **kwargs):
        return _RealAsyncClient(*args, transport=httpx.MockTransport(handler), **kwargs)

    return patch("httpx.AsyncClient", _factory)


# ── SMS carrier ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_carrier_batch_receipts():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(
            200,
            json={
                "messages": [
                    {"to": "0241234567", "message_id": "m-1", "status": "Queued"},
                    {"to": "0241234568", "status": "rejected", "reason": "Blacklisted"},
                ]
            },
        )

    with _mock_transport(handler):
        receipts = await sms_carrier.send_sms_batch("Church", "Hello", ["0241234567", "0241234568"])

    assert seen["body"] == {"sender": "Church", "message": "Hello", "recipients": ["0241234567", "0241234568"]}
    assert seen["auth"].startswith("Bearer ")
    assert receipts[0].accepted is True
    assert receipts[0].message_id == "m-1"
    assert receipts[1].accepted is False
    assert receipts[1].reason == "Blacklisted"


@pytest.mark.asyncio
async def test_carrier_http_error_is_transient():
    with _mock_transport(lambda request: httpx.Response(502, text="bad gateway")):
        with pytest.raises(DispatchTransientFailure) as exc_info:
            await sms_carrier.send_sms_batch("Church", "Hello", ["0241234567"])
    assert "502" in exc_info.value.message


@pytest.mark.asyncio
async def test_carrier_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _mock_transport(handler):
        with pytest.raises(DispatchTransientFailure):
            await sms_carrier.send_sms_batch("Church", "Hello", ["0241234567"])


@pytest.mark.asyncio
async def test_carrier_unreadable_body_is_transient():
    with _mock_transport(lambda request: httpx.Response(200, text="<html>")):
        with pytest.raises(DispatchTransientFailure):
            await sms_carrier.send_sms_batch("Church", "Hello", ["0241234567"])


@pytest.mark.asyncio
async def test_carrier_non_object_body_is_transient():
    with _mock_transport(lambda request: httpx.Response(200, json=["ok"])):
        with pytest.raises(DispatchTransientFailure):
            await sms_carrier.send_sms_batch("Church", "Hello", ["0241234567"])


@pytest.mark.asyncio
async def test_carrier_skips_malformed_receipts():
    body = {"messages": ["junk", {"to": "0241234567", "message_id": "m-2", "status": "sent"}]}
    with _mock_transport(lambda request: httpx.Response(200, json=body)):
        receipts = await sms_carrier.send_sms_batch("Church", "Hello", ["0241234567"])
    assert [r.message_id for r in receipts] == ["m-2"]


# ── Payment gateway ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_initialize_sends_minor_units():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "status": True,
                "data": {"reference": "ref-1", "authorization_url": "https://pay.test/ref-1", "access_code": "ac"},
            },
        )

    with _mock_transport(handler):
        session = await payment_gateway.initialize_transaction("ref-1", Decimal("12.50"), "GHS", "a@b.example.com")

    assert seen["path"].endswith("/transaction/initialize")
    assert seen["body"]["amount"] == 1250
    assert session.authorization_url == "https://pay.test/ref-1"


@pytest.mark.asyncio
async def test_initialize_refused():
    with _mock_transport(lambda request: httpx.Response(200, json={"status": False, "message": "Invalid key"})):
        with pytest.raises(GatewayError, match="Invalid key"):
            await payment_gateway.initialize_transaction("ref-2", Decimal("1"), "GHS", "a@b.example.com")


@pytest.mark.asyncio
async def test_verify_reports_outcome():
    body = {"data": {"reference": "ref-3", "status": "success", "amount": 5000, "currency": "GHS"}}
    with _mock_transport(lambda request: httpx.Response(200, json=body)):
        verification = await payment_gateway.verify_transaction("ref-3")

    assert verification.outcome == payment_gateway.OUTCOME_SUCCESS
    assert verification.amount == 5000


@pytest.mark.asyncio
async def test_verify_unreachable():
    with _mock_transport(lambda request: httpx.Response(500)):
        with pytest.raises(GatewayError):
            await payment_gateway.verify_transaction("ref-4")


def test_parse_webhook_envelope():
    body = {"event": "charge.success", "data": {"reference": "ref-5", "status": "success", "amount": 100}}
    assert payment_gateway.parse_webhook(body) == ("ref-5", "success", 100)


def test_parse_webhook_event_only():
    body = {"event": "charge.success", "data": {"reference": "ref-6"}}
    assert payment_gateway.parse_webhook(body) == ("ref-6", "success", None)


def test_parse_webhook_without_reference():
    with pytest.raises(ValueError):
        payment_gateway.parse_webhook({"event": "charge.success", "data": {}})


def test_parse_webhook_coerces_amount():
    body = {"event": "charge.success", "data": {"reference": "ref-7", "amount": "5000"}}
    assert payment_gateway.parse_webhook(body) == ("ref-7", "success", 5000)


def test_parse_webhook_rejects_non_numeric_amount():
    with pytest.raises(ValueError, match="not an integer"):
        payment_gateway.parse_webhook({"data": {"reference": "ref-8", "status": "success", "amount": "abc"}})


@pytest.mark.asyncio
async def test_verify_rejects_non_numeric_amount():
    body = {"data": {"reference": "ref-9", "status": "success", "amount": "lots"}}
    with _mock_transport(lambda request: httpx.Response(200, json=body)):
        with pytest.raises(GatewayError):
            await payment_gateway.verify_transaction("ref-9")
