"""Credit purchases over the wallet and gateway rails.

Both rails end in :func:`_complete`, which moves the purchase to
``completed`` with a compare-and-set and then credits the ledger under the
purchase id. The ledger's ``(purchase, purchase.id)`` idempotency key is what
guarantees at-most-once crediting, however many confirmations race in.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.core.errors import InvalidStateTransition, NotFound, PaymentRailFailure
from metercore.models.base import dump_json, load_json, new_reference, utcnow
from metercore.models.credit import TransactionKind
from metercore.models.credit_package import (
    CreditPackage,
    CreditPackageCreate,
    CreditPackageRead,
)
from metercore.models.purchase import PaymentRail, Purchase, PurchaseRead, PurchaseStatus
from metercore.services import ledger
from metercore.services.payment_gateway import (
    OUTCOME_FAILED,
    OUTCOME_SUCCESS,
    GatewayError,
    initialize_transaction,
    to_minor_units,
    verify_transaction,
)
from metercore.services.wallet import debit_wallet

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "SMS"


# ── Package catalog ──────────────────────────────────────────

async def list_packages(session: AsyncSession) -> list[CreditPackage]:
    stmt = (
        select(CreditPackage)
        .where(CreditPackage.is_active.is_(True))  # type: ignore[union-attr]
        .order_by(CreditPackage.is_primary.desc(), CreditPackage.credits.asc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_package(session: AsyncSession, body: CreditPackageCreate) -> CreditPackage:
    package = CreditPackage(**body.model_dump())
    package.currency = package.currency.upper()
    session.add(package)
    await session.commit()
    await session.refresh(package)
    logger.info("Published credit package %s (%d credits)", package.slug, package.credits)
    return package


def package_to_read(package: CreditPackage) -> CreditPackageRead:
    return CreditPackageRead(
        id=package.id,
        slug=package.slug,
        name=package.name,
        credits=package.credits,
        price=package.price,
        discounted_price=package.amount_due,
        currency=package.currency,
        discount_percent=package.discount_percent,
        is_primary=package.is_primary,
        created_at=package.created_at,
    )


# ── Purchases ────────────────────────────────────────────────

def purchase_to_read(purchase: Purchase) -> PurchaseRead:
    return PurchaseRead(
        id=purchase.id,
        tenant_id=purchase.tenant_id,
        package_id=purchase.package_id,
        rail=purchase.rail,
        status=purchase.status,
        reference=purchase.reference,
        credits=purchase.credits,
        amount=purchase.amount,
        currency=purchase.currency,
        credits_added=purchase.credits_added,
        session_data=load_json(purchase.session_data) or {},
        failure_reason=purchase.failure_reason,
        completed_at=purchase.completed_at,
        created_at=purchase.created_at,
        updated_at=purchase.updated_at,
    )


async def get_purchase(
    session: AsyncSession, purchase_id: uuid.UUID, tenant_id: uuid.UUID | None = None
) -> Purchase:
    stmt = select(Purchase).where(Purchase.id == purchase_id)
    if tenant_id is not None:
        stmt = stmt.where(Purchase.tenant_id == tenant_id)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    purchase = result.scalar_one_or_none()
    if purchase is None:
        raise NotFound("Purchase not found", purchase_id=str(purchase_id))
    return purchase


async def get_purchase_by_reference(
    session: AsyncSession, reference: str, tenant_id: uuid.UUID | None = None
) -> Purchase:
    stmt = select(Purchase).where(Purchase.reference == reference)
    if tenant_id is not None:
        stmt = stmt.where(Purchase.tenant_id == tenant_id)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    purchase = result.scalar_one_or_none()
    if purchase is None:
        raise NotFound("Purchase not found", reference=reference)
    return purchase


async def list_purchases(
    session: AsyncSession, tenant_id: uuid.UUID, limit: int = 50, offset: int = 0
) -> list[Purchase]:
    stmt = (
        select(Purchase)
        .where(Purchase.tenant_id == tenant_id)
        .order_by(Purchase.created_at.desc())  # type: ignore[union-attr]
        .limit(min(limit, 100))
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def initiate(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    package_id: uuid.UUID,
    rail: PaymentRail,
    *,
    email: str = "",
    initiated_by: uuid.UUID | None = None,
) -> Purchase:
    """Create a pending purchase; for the gateway rail also open a payment session."""
    package = await session.get(CreditPackage, package_id)
    if package is None or not package.is_active:
        raise NotFound("Credit package not found", package_id=str(package_id))

    purchase = Purchase(
        tenant_id=tenant_id,
        package_id=package.id,
        initiated_by=initiated_by,
        rail=rail,
        reference=new_reference(REFERENCE_PREFIX),
        credits=package.credits,
        amount=package.amount_due,
        currency=package.currency,
    )
    session.add(purchase)
    await session.commit()
    await session.refresh(purchase)
    logger.info(
        "Purchase %s initiated: tenant=%s package=%s rail=%s ref=%s",
        purchase.id,
        tenant_id,
        package.slug,
        rail,
        purchase.reference,
    )

    if rail == PaymentRail.GATEWAY:
        try:
            gateway_session = await initialize_transaction(
                purchase.reference,
                purchase.amount,
                purchase.currency,
                email,
                metadata={
                    "purchase_id": str(purchase.id),
                    "tenant_id": str(tenant_id),
                    "package": package.slug,
                    "credits": package.credits,
                },
            )
        except GatewayError as exc:
            await _fail(session, purchase, f"Payment gateway unavailable: {exc}")
            raise PaymentRailFailure(
                "Payment gateway unavailable, please try again",
                rail="gateway",
                purchase_id=str(purchase.id),
            ) from exc

        purchase.session_data = dump_json(
            {
                "authorization_url": gateway_session.authorization_url,
                "access_code": gateway_session.access_code,
                "amount_minor": to_minor_units(purchase.amount),
            }
        )
        purchase.updated_at = utcnow()
        session.add(purchase)
        await session.commit()

    return purchase


async def confirm_wallet(
    session: AsyncSession, tenant_id: uuid.UUID, purchase_id: uuid.UUID
) -> Purchase:
    """Pay a pending wallet-rail purchase from the tenant's wallet and credit it."""
    purchase = await get_purchase(session, purchase_id, tenant_id)
    if purchase.rail != PaymentRail.WALLET:
        raise InvalidStateTransition(
            "purchase", purchase.id, f"{purchase.status} ({purchase.rail})", "completed (wallet)"
        )
    if purchase.status == PurchaseStatus.FAILED:
        raise InvalidStateTransition("purchase", purchase.id, purchase.status, PurchaseStatus.COMPLETED)
    if purchase.status == PurchaseStatus.COMPLETED and purchase.credits_added:
        return purchase

    try:
        await debit_wallet(
            session,
            tenant_id,
            Decimal(purchase.amount),
            reference=purchase.reference,
            description=f"SMS credits: {purchase.credits}",
        )
    except PaymentRailFailure as exc:
        purchase = await get_purchase(session, purchase_id)
        await _fail(session, purchase, exc.message)
        exc.detail["purchase_id"] = str(purchase_id)
        raise

    purchase = await get_purchase(session, purchase_id)
    return await _complete(session, purchase, source="wallet")


async def confirm_gateway(
    session: AsyncSession,
    reference: str,
    outcome: str,
    amount: int | None = None,
) -> Purchase:
    """Apply a gateway outcome for ``reference``; safe to call any number of times."""
    purchase = await get_purchase_by_reference(session, reference)
    if purchase.rail != PaymentRail.GATEWAY:
        raise InvalidStateTransition(
            "purchase", purchase.id, f"{purchase.status} ({purchase.rail})", "completed (gateway)"
        )
    return await _apply_gateway_outcome(session, purchase, outcome, amount)


async def verify(session: AsyncSession, tenant_id: uuid.UUID, reference: str) -> Purchase:
    """Client-polled confirmation. Leaves the purchase pending if the gateway is unreachable."""
    purchase = await get_purchase_by_reference(session, reference, tenant_id)
    if purchase.status == PurchaseStatus.COMPLETED:
        if not purchase.credits_added:
            return await _complete(session, purchase, source="verify")
        return purchase
    if purchase.status == PurchaseStatus.FAILED or purchase.rail != PaymentRail.GATEWAY:
        return purchase

    try:
        verification = await verify_transaction(reference)
    except GatewayError:
        logger.warning("Purchase %s left pending: gateway verification unavailable", purchase.id)
        return purchase
    return await _apply_gateway_outcome(session, purchase, verification.outcome, verification.amount)


async def cancel(session: AsyncSession, tenant_id: uuid.UUID, purchase_id: uuid.UUID) -> Purchase:
    purchase = await get_purchase(session, purchase_id, tenant_id)
    if purchase.status == PurchaseStatus.FAILED:
        return purchase
    if purchase.rail != PaymentRail.GATEWAY or purchase.status != PurchaseStatus.PENDING:
        raise InvalidStateTransition("purchase", purchase.id, purchase.status, PurchaseStatus.FAILED)
    won = await _fail(session, purchase, "Cancelled by user")
    purchase = await get_purchase(session, purchase_id, tenant_id)
    if not won and purchase.status != PurchaseStatus.FAILED:
        raise InvalidStateTransition("purchase", purchase.id, purchase.status, PurchaseStatus.FAILED)
    return purchase


# ── Internals ────────────────────────────────────────────────

async def _apply_gateway_outcome(
    session: AsyncSession, purchase: Purchase, outcome: str, amount: int | None
) -> Purchase:
    if outcome == OUTCOME_SUCCESS:
        expected = to_minor_units(purchase.amount)
        if amount is not None and int(amount) < expected:
            logger.error(
                "Purchase %s paid %s minor units, expected %s", purchase.id, amount, expected
            )
            if purchase.status == PurchaseStatus.PENDING:
                await _fail(session, purchase, f"Amount mismatch: paid {amount}, expected {expected}")
            return await get_purchase(session, purchase.id)
        return await _complete(session, purchase, source="gateway")

    if outcome == OUTCOME_FAILED:
        if purchase.status == PurchaseStatus.PENDING:
            await _fail(session, purchase, "Payment declined by gateway")
        else:
            logger.info("Ignoring gateway failure for %s purchase %s", purchase.status, purchase.id)
        return await get_purchase(session, purchase.id)

    logger.debug("Gateway outcome %r for purchase %s leaves it unchanged", outcome, purchase.id)
    return purchase


async def _transition(
    session: AsyncSession, purchase_id: uuid.UUID, target: PurchaseStatus, **values
) -> bool:
    """Compare-and-set ``pending -> target``. Returns False if another caller won."""
    stmt = (
        update(Purchase)
        .where(Purchase.id == purchase_id, Purchase.status == PurchaseStatus.PENDING)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def _fail(session: AsyncSession, purchase: Purchase, reason: str) -> bool:
    won = await _transition(session, purchase.id, PurchaseStatus.FAILED, failure_reason=reason[:500])
    if won:
        logger.info("Purchase %s failed: %s", purchase.id, reason)
    return won


async def _complete(session: AsyncSession, purchase: Purchase, source: str) -> Purchase:
    if purchase.status == PurchaseStatus.PENDING:
        won = await _transition(
            session, purchase.id, PurchaseStatus.COMPLETED, completed_at=utcnow()
        )
        if won:
            logger.info("Purchase %s completed via %s", purchase.id, source)
        purchase = await get_purchase(session, purchase.id)

    if purchase.status != PurchaseStatus.COMPLETED:
        logger.warning(
            "Confirmation via %s for %s purchase %s rejected", source, purchase.status, purchase.id
        )
        raise InvalidStateTransition("purchase", purchase.id, purchase.status, PurchaseStatus.COMPLETED)

    if not purchase.credits_added:
        purchase_id = purchase.id
        result = await ledger.apply_transaction(
            session,
            purchase.tenant_id,
            TransactionKind.PURCHASE,
            purchase.credits,
            reference=str(purchase_id),
            description=f"Purchase {purchase.reference}",
        )
        if not result.created:
            logger.info("Purchase %s was already credited", purchase_id)
        await session.execute(
            update(Purchase)
            .where(Purchase.id == purchase_id)
            .values(credits_added=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        purchase = await get_purchase(session, purchase_id)

    return purchase
