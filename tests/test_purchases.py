"""Tests for credit purchases over the wallet and gateway rails."""

import json
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient
from sqlmodel import select

from metercore.core.errors import InvalidStateTransition, PaymentRailFailure
from metercore.core.security import sign_payload
from metercore.models.credit import CreditTransaction, TransactionKind
from metercore.models.credit_package import CreditPackage
from metercore.models.purchase import PaymentRail, PurchaseStatus
from metercore.models.wallet import Wallet, WalletTransaction
from metercore.services import ledger, purchases
from metercore.services.payment_gateway import GatewayError, GatewaySession, GatewayVerification

GATEWAY_SECRET = "test-gateway-secret"


async def _package(session, credits: int = 100, price: str = "100.00", discount: int = 0) -> CreditPackage:
    package = CreditPackage(
        slug=f"pack-{uuid.uuid4().hex[:8]}",
        name=f"{credits} credits",
        credits=credits,
        price=Decimal(price),
        discount_percent=discount,
    )
    session.add(package)
    await session.commit()
    return package


def _gateway_session(reference: str) -> GatewaySession:
    return GatewaySession(
        reference=reference,
        authorization_url=f"https://checkout.test/{reference}",
        access_code="ac_123",
    )


async def _gateway_purchase(session, tenant, package):
    mock_init = AsyncMock(side_effect=lambda reference, *a, **kw: _gateway_session(reference))
    with patch("metercore.services.purchases.initialize_transaction", mock_init):
        purchase = await purchases.initiate(
            session, tenant.id, package.id, PaymentRail.GATEWAY, email=tenant.email
        )
    return purchase


async def _purchase_entries(session, tenant_id) -> list[CreditTransaction]:
    result = await session.execute(
        select(CreditTransaction).where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.kind == TransactionKind.PURCHASE,
        )
    )
    return list(result.scalars().all())


# ── Wallet rail ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_wallet_purchase_credits_ledger(session, make_tenant):
    """Balance 50 + a 100-credit package paid from the wallet gives 150."""
    tenant = await make_tenant(credits=50, wallet="250.00")
    package = await _package(session)

    purchase = await purchases.initiate(session, tenant.id, package.id, PaymentRail.WALLET)
    assert purchase.status == PurchaseStatus.PENDING
    assert purchase.reference.startswith("SMS-")

    purchase = await purchases.confirm_wallet(session, tenant.id, purchase.id)
    assert purchase.status == PurchaseStatus.COMPLETED
    assert purchase.credits_added is True

    assert await ledger.get_balance(session, tenant.id) == 150
    entries = await _purchase_entries(session, tenant.id)
    assert len(entries) == 1
    assert entries[0].amount == 100
    assert entries[0].reference == str(purchase.id)

    wallet = await session.get(Wallet, tenant.id, populate_existing=True)
    assert wallet.balance == Decimal("150.00")


@pytest.mark.asyncio
async def test_wallet_confirm_twice_debits_and_credits_once(session, make_tenant):
    tenant = await make_tenant(wallet="500.00")
    package = await _package(session, credits=40, price="80.00", discount=25)

    purchase = await purchases.initiate(session, tenant.id, package.id, PaymentRail.WALLET)
    assert purchase.amount == Decimal("60.00")
    await purchases.confirm_wallet(session, tenant.id, purchase.id)
    await purchases.confirm_wallet(session, tenant.id, purchase.id)

    assert await ledger.get_balance(session, tenant.id) == 40
    result = await session.execute(
        select(WalletTransaction).where(WalletTransaction.tenant_id == tenant.id)
    )
    assert len(result.scalars().all()) == 1
    wallet = await session.get(Wallet, tenant.id, populate_existing=True)
    assert wallet.balance == Decimal("440.00")


@pytest.mark.asyncio
async def test_wallet_insufficient_funds_fails_purchase(session, make_tenant):
    tenant = await make_tenant(credits=50, wallet="10.00")
    package = await _package(session)

    purchase = await purchases.initiate(session, tenant.id, package.id, PaymentRail.WALLET)
    tenant_id, purchase_id = tenant.id, purchase.id
    with pytest.raises(PaymentRailFailure) as exc_info:
        await purchases.confirm_wallet(session, tenant_id, purchase_id)
    assert exc_info.value.detail["purchase_id"] == str(purchase_id)

    purchase = await purchases.get_purchase(session, purchase_id)
    assert purchase.status == PurchaseStatus.FAILED
    assert await ledger.get_balance(session, tenant_id) == 50
    assert await _purchase_entries(session, tenant_id) == []

    # A failed purchase is terminal; the user starts a new attempt instead
    with pytest.raises(InvalidStateTransition):
        await purchases.confirm_wallet(session, tenant_id, purchase_id)


@pytest.mark.asyncio
async def test_rails_cannot_be_crossed(session, make_tenant):
    tenant = await make_tenant(wallet="500.00")
    package = await _package(session)

    gateway_purchase = await _gateway_purchase(session, tenant, package)
    with pytest.raises(InvalidStateTransition):
        await purchases.confirm_wallet(session, tenant.id, gateway_purchase.id)

    wallet_purchase = await purchases.initiate(session, tenant.id, package.id, PaymentRail.WALLET)
    with pytest.raises(InvalidStateTransition):
        await purchases.confirm_gateway(session, wallet_purchase.reference, "success")

    assert await ledger.get_balance(session, tenant.id) == 0


# ── Gateway rail ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_gateway_initiate_stores_session(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session, price="25.50")

    purchase = await _gateway_purchase(session, tenant, package)
    read = purchases.purchase_to_read(purchase)
    assert read.status == PurchaseStatus.PENDING
    assert read.session_data["authorization_url"].endswith(purchase.reference)
    assert read.session_data["amount_minor"] == 2550


@pytest.mark.asyncio
async def test_gateway_unavailable_at_initiate_fails_purchase(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)

    mock_init = AsyncMock(side_effect=GatewayError("timed out"))
    with patch("metercore.services.purchases.initialize_transaction", mock_init):
        with pytest.raises(PaymentRailFailure) as exc_info:
            await purchases.initiate(session, tenant.id, package.id, PaymentRail.GATEWAY)

    purchase = await purchases.get_purchase(session, uuid.UUID(exc_info.value.detail["purchase_id"]))
    assert purchase.status == PurchaseStatus.FAILED


@pytest.mark.asyncio
async def test_webhook_and_verify_race_credit_once(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    await purchases.confirm_gateway(session, purchase.reference, "success", 10000)

    verification = GatewayVerification(
        reference=purchase.reference, outcome="success", amount=10000, currency="GHS", raw={}
    )
    with patch(
        "metercore.services.purchases.verify_transaction", AsyncMock(return_value=verification)
    ) as mock_verify:
        verified = await purchases.verify(session, tenant.id, purchase.reference)

    # Already completed: the gateway is not asked again
    mock_verify.assert_not_called()
    assert verified.status == PurchaseStatus.COMPLETED
    assert await ledger.get_balance(session, tenant.id) == 100
    assert len(await _purchase_entries(session, tenant.id)) == 1


@pytest.mark.asyncio
async def test_verify_completes_pending_purchase(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    verification = GatewayVerification(
        reference=purchase.reference, outcome="success", amount=10000, currency="GHS", raw={}
    )
    with patch("metercore.services.purchases.verify_transaction", AsyncMock(return_value=verification)):
        verified = await purchases.verify(session, tenant.id, purchase.reference)

    assert verified.status == PurchaseStatus.COMPLETED
    assert verified.credits_added is True

    # The webhook arriving afterwards changes nothing
    await purchases.confirm_gateway(session, purchase.reference, "success", 10000)
    assert await ledger.get_balance(session, tenant.id) == 100


@pytest.mark.asyncio
async def test_duplicate_webhook_is_noop(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    await purchases.confirm_gateway(session, purchase.reference, "success", 10000)
    before = await ledger.get_summary(session, tenant.id)
    again = await purchases.confirm_gateway(session, purchase.reference, "success", 10000)
    after = await ledger.get_summary(session, tenant.id)

    assert again.status == PurchaseStatus.COMPLETED
    assert after.purchased_credits == before.purchased_credits == 100


@pytest.mark.asyncio
async def test_verify_leaves_pending_when_gateway_unreachable(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    with patch(
        "metercore.services.purchases.verify_transaction",
        AsyncMock(side_effect=GatewayError("read timeout")),
    ):
        verified = await purchases.verify(session, tenant.id, purchase.reference)

    assert verified.status == PurchaseStatus.PENDING
    assert await ledger.get_balance(session, tenant.id) == 0


@pytest.mark.asyncio
async def test_underpayment_fails_purchase(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    result = await purchases.confirm_gateway(session, purchase.reference, "success", 100)
    assert result.status == PurchaseStatus.FAILED
    assert "Amount mismatch" in result.failure_reason
    assert await ledger.get_balance(session, tenant.id) == 0


@pytest.mark.asyncio
async def test_declined_then_success_is_rejected(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    result = await purchases.confirm_gateway(session, purchase.reference, "failed")
    assert result.status == PurchaseStatus.FAILED

    with pytest.raises(InvalidStateTransition):
        await purchases.confirm_gateway(session, purchase.reference, "success", 10000)
    assert await ledger.get_balance(session, tenant.id) == 0


@pytest.mark.asyncio
async def test_abandoned_outcome_leaves_pending(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    result = await purchases.confirm_gateway(session, purchase.reference, "abandoned")
    assert result.status == PurchaseStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_pending_gateway_purchase(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    cancelled = await purchases.cancel(session, tenant.id, purchase.id)
    assert cancelled.status == PurchaseStatus.FAILED
    assert cancelled.failure_reason == "Cancelled by user"

    # Cancelling again is harmless
    again = await purchases.cancel(session, tenant.id, purchase.id)
    assert again.status == PurchaseStatus.FAILED


@pytest.mark.asyncio
async def test_cancel_completed_purchase_rejected(session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)
    await purchases.confirm_gateway(session, purchase.reference, "success", 10000)

    with pytest.raises(InvalidStateTransition):
        await purchases.cancel(session, tenant.id, purchase.id)
    assert await ledger.get_balance(session, tenant.id) == 100


# ── API ──────────────────────────────────────────────────────

def _signed(body: dict, secret: str = GATEWAY_SECRET) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode()
    return raw, {"X-Gateway-Signature": sign_payload(secret, raw), "Content-Type": "application/json"}


@pytest.mark.asyncio
async def test_purchase_requires_sms_credits_feature(
    client: AsyncClient, session, make_tenant, auth_headers
):
    tenant = await make_tenant(features={"smsSend": True})
    package = await _package(session)

    resp = await client.post(
        "/v1/purchases",
        json={"package_id": str(package.id), "rail": "wallet"},
        headers=auth_headers(tenant.id),
    )
    assert resp.status_code == 403
    assert resp.json()["feature"] == "smsCredits"


@pytest.mark.asyncio
async def test_wallet_purchase_over_api(client: AsyncClient, session, make_tenant, auth_headers):
    tenant = await make_tenant(wallet="100.00")
    package = await _package(session, credits=200, price="100.00")
    headers = auth_headers(tenant.id)

    resp = await client.post(
        "/v1/purchases", json={"package_id": str(package.id), "rail": "wallet"}, headers=headers
    )
    assert resp.status_code == 201
    purchase_id = resp.json()["id"]

    resp = await client.post(f"/v1/purchases/{purchase_id}/confirm-wallet", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    resp = await client.get("/v1/credits", headers=headers)
    assert resp.json()["purchased_credits"] == 200

    resp = await client.get("/v1/purchases", headers=headers)
    assert [p["id"] for p in resp.json()] == [purchase_id]


@pytest.mark.asyncio
async def test_wallet_shortfall_over_api_is_402(client: AsyncClient, session, make_tenant, auth_headers):
    tenant = await make_tenant(wallet="1.00")
    package = await _package(session)
    headers = auth_headers(tenant.id)

    resp = await client.post(
        "/v1/purchases", json={"package_id": str(package.id), "rail": "wallet"}, headers=headers
    )
    purchase_id = resp.json()["id"]

    resp = await client.post(f"/v1/purchases/{purchase_id}/confirm-wallet", headers=headers)
    assert resp.status_code == 402
    assert resp.json()["error"] == "payment_failed"


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(client: AsyncClient):
    raw, headers = _signed({"event": "charge.success", "data": {"reference": "SMS-x"}}, secret="wrong")
    resp = await client.post("/v1/payments/webhook", content=raw, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_signature"


@pytest.mark.asyncio
async def test_webhook_completes_purchase_once(client: AsyncClient, session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    raw, headers = _signed(
        {
            "event": "charge.success",
            "data": {"reference": purchase.reference, "status": "success", "amount": 10000},
        }
    )
    first = await client.post("/v1/payments/webhook", content=raw, headers=headers)
    second = await client.post("/v1/payments/webhook", content=raw, headers=headers)

    assert first.status_code == 200
    assert first.json()["applied"] is True
    assert second.status_code == 200
    assert len(await _purchase_entries(session, tenant.id)) == 1
    assert await ledger.get_balance(session, tenant.id) == 100


@pytest.mark.asyncio
async def test_webhook_unknown_reference_acknowledged(client: AsyncClient):
    raw, headers = _signed({"reference": "SMS-unknown", "outcome": "success"})
    resp = await client.post("/v1/payments/webhook", content=raw, headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "applied": False}


@pytest.mark.asyncio
async def test_webhook_with_garbage_amount_is_422(client: AsyncClient, session, make_tenant):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)
    reference, purchase_id = purchase.reference, purchase.id

    raw, headers = _signed({"event": "charge.success", "data": {"reference": reference, "amount": "abc"}})
    resp = await client.post("/v1/payments/webhook", content=raw, headers=headers)
    assert resp.status_code == 422

    purchase = await purchases.get_purchase(session, purchase_id)
    assert purchase.status == PurchaseStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_over_api_reports_failed(client: AsyncClient, session, make_tenant, auth_headers):
    tenant = await make_tenant()
    package = await _package(session)
    purchase = await _gateway_purchase(session, tenant, package)

    resp = await client.post(f"/v1/purchases/{purchase.id}/cancel", headers=auth_headers(tenant.id))
    assert resp.status_code == 200
    assert resp.json()["status"] == "failed"
    assert resp.json()["failure_reason"] == "Cancelled by user"


# ── Package catalog ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_package_requires_superuser(client: AsyncClient, make_tenant, auth_headers):
    tenant = await make_tenant()
    resp = await client.post(
        "/v1/credit-packages",
        json={"slug": f"pack-{uuid.uuid4().hex[:8]}", "name": "Starter", "credits": 100, "price": "20.00"},
        headers=auth_headers(tenant.id),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_create_and_list_packages(client: AsyncClient, make_tenant, superuser_headers):
    tenant = await make_tenant()
    headers = superuser_headers(tenant.id)
    slug = f"pack-{uuid.uuid4().hex[:8]}"

    resp = await client.post(
        "/v1/credit-packages",
        json={"slug": slug, "name": "Bulk", "credits": 1000, "price": "150.00", "discount_percent": 10},
        headers=headers,
    )
    assert resp.status_code == 201
    assert Decimal(resp.json()["discounted_price"]) == Decimal("135.00")

    resp = await client.post(
        "/v1/credit-packages",
        json={"slug": slug, "name": "Bulk again", "credits": 10, "price": "1.00"},
        headers=headers,
    )
    assert resp.status_code == 409

    resp = await client.get("/v1/credit-packages", headers=headers)
    assert resp.status_code == 200
    assert slug in [p["slug"] for p in resp.json()]
