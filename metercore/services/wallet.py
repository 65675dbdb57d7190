"""Internal wallet rail — debits a tenant's monetary balance for a purchase.

A debit is keyed by the purchase reference, so confirming the same purchase
twice moves money once.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.core.errors import PaymentRailFailure
from metercore.models.base import utcnow
from metercore.models.wallet import Wallet, WalletTransaction

logger = logging.getLogger(__name__)


async def get_wallet_balance(session: AsyncSession, tenant_id: uuid.UUID) -> Decimal:
    wallet = await session.get(Wallet, tenant_id, populate_existing=True)
    return wallet.balance if wallet is not None else Decimal("0.00")


async def find_debit(session: AsyncSession, reference: str) -> WalletTransaction | None:
    stmt = select(WalletTransaction).where(WalletTransaction.reference == reference)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def debit_wallet(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    amount: Decimal,
    reference: str,
    description: str = "",
) -> WalletTransaction:
    """Take ``amount`` from the tenant's wallet, at most once per reference.

    The balance guard is part of the UPDATE, so two debits cannot overdraw
    the wallet. Raises PaymentRailFailure when funds are insufficient.
    """
    existing = await find_debit(session, reference)
    if existing is not None:
        logger.info("Wallet debit %s already recorded", reference)
        return existing

    stmt = (
        update(Wallet)
        .where(Wallet.tenant_id == tenant_id, Wallet.balance >= amount)
        .values(balance=Wallet.balance - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        await session.rollback()
        available = await get_wallet_balance(session, tenant_id)
        logger.info(
            "Wallet debit %s refused for tenant %s: need %s, have %s",
            reference,
            tenant_id,
            amount,
            available,
        )
        raise PaymentRailFailure(
            "Insufficient wallet balance",
            rail="wallet",
            required=str(amount),
            available=str(available),
        )

    entry = WalletTransaction(
        tenant_id=tenant_id,
        amount=-amount,
        reference=reference,
        description=description,
    )
    session.add(entry)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent confirmation recorded the debit first; ours is rolled back
        await session.rollback()
        existing = await find_debit(session, reference)
        if existing is None:
            raise
        return existing

    logger.info("Wallet debited %s for tenant %s (ref=%s)", amount, tenant_id, reference)
    return entry
