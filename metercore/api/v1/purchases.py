"""Credit purchases and the payment gateway webhook."""

import json
import logging
import uuid

from fastapi import APIRouter, HTTPException, Query, Request, status

from metercore.api.deps import Auth, Entitlements, Session
from metercore.core.config import get_settings
from metercore.core.errors import GatewaySignatureInvalid, InvalidStateTransition, NotFound
from metercore.core.security import verify_signature
from metercore.models.purchase import PurchaseCreate, PurchaseRead
from metercore.models.tenant import Tenant
from metercore.services import purchases
from metercore.services.entitlements import FEATURE_SMS_CREDITS
from metercore.services.payment_gateway import parse_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["purchases"])

SIGNATURE_HEADER = "X-Gateway-Signature"


@router.post("/purchases", response_model=PurchaseRead, status_code=status.HTTP_201_CREATED)
async def create_purchase(
    body: PurchaseCreate,
    auth: Auth,
    session: Session,
    entitlements: Entitlements,
) -> PurchaseRead:
    entitlements.require_feature(FEATURE_SMS_CREDITS)

    email = body.email
    if not email:
        tenant = await session.get(Tenant, auth.tenant_id)
        email = tenant.email if tenant else ""

    purchase = await purchases.initiate(
        session,
        auth.tenant_id,
        body.package_id,
        body.rail,
        email=email,
        initiated_by=auth.user_id,
    )
    return purchases.purchase_to_read(purchase)


@router.get("/purchases", response_model=list[PurchaseRead])
async def list_purchases(
    auth: Auth,
    session: Session,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[PurchaseRead]:
    items = await purchases.list_purchases(session, auth.tenant_id, limit=limit, offset=offset)
    return [purchases.purchase_to_read(p) for p in items]


@router.get("/purchases/{reference}/verify", response_model=PurchaseRead)
async def verify_purchase(reference: str, auth: Auth, session: Session) -> PurchaseRead:
    purchase = await purchases.verify(session, auth.tenant_id, reference)
    return purchases.purchase_to_read(purchase)


@router.post("/purchases/{purchase_id}/confirm-wallet", response_model=PurchaseRead)
async def confirm_wallet(purchase_id: uuid.UUID, auth: Auth, session: Session) -> PurchaseRead:
    purchase = await purchases.confirm_wallet(session, auth.tenant_id, purchase_id)
    return purchases.purchase_to_read(purchase)


@router.post("/purchases/{purchase_id}/cancel", response_model=PurchaseRead)
async def cancel_purchase(purchase_id: uuid.UUID, auth: Auth, session: Session) -> PurchaseRead:
    purchase = await purchases.cancel(session, auth.tenant_id, purchase_id)
    return purchases.purchase_to_read(purchase)


@router.post("/payments/webhook")
async def gateway_webhook(request: Request, session: Session) -> dict:
    """Gateway → MeterCore outcome notification.

    Signed with HMAC-SHA512 of the raw body. Unknown references and
    outcomes for already-settled purchases are acknowledged, not errors,
    so the gateway stops redelivering them.
    """
    raw = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not verify_signature(get_settings().gateway_secret_key, raw, signature):
        logger.warning("Rejected gateway webhook with bad signature")
        raise GatewaySignatureInvalid("Invalid webhook signature")

    try:
        reference, outcome, amount = parse_webhook(json.loads(raw))
    except (ValueError, AttributeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Malformed webhook body: {exc}",
        ) from exc

    try:
        purchase = await purchases.confirm_gateway(session, reference, outcome, amount)
    except NotFound:
        logger.warning("Webhook for unknown purchase reference %s", reference)
        return {"received": True, "applied": False}
    except InvalidStateTransition as exc:
        logger.info("Webhook for %s absorbed: %s", reference, exc.message)
        return {"received": True, "applied": False}

    return {"received": True, "applied": True, "status": purchase.status}
