"""Credit ledger — the only writer of CreditAccount balances.

Every mutation inserts exactly one CreditTransaction and moves the account
projection in the same database transaction. Writes to one tenant are
serialized by a compare-and-set on ``CreditAccount.version``; a losing
writer re-reads the account and retries, so two debits can never both pass
the balance check. ``(kind, reference)`` is unique, which makes a replayed
call a no-op that returns the original entry.

The ledger commits its own unit of work: callers must commit or discard
their pending changes before calling in.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.core.config import get_settings
from metercore.core.errors import IdempotencyConflict, InsufficientCredits, LedgerContention
from metercore.models.base import utcnow
from metercore.models.credit import (
    CreditAccount,
    CreditSummary,
    CreditTransaction,
    ReconciliationReport,
    TransactionKind,
)

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 8

_POSITIVE_KINDS = frozenset({TransactionKind.GRANT, TransactionKind.PURCHASE, TransactionKind.REFUND})


@dataclass(frozen=True)
class LedgerResult:
    transaction: CreditTransaction
    created: bool


@dataclass
class _Totals:
    plan_credits: int = 0
    purchased_credits: int = 0
    total_used: int = 0

    @property
    def balance(self) -> int:
        return self.plan_credits + self.purchased_credits - self.total_used

    def apply(self, kind: str, amount: int) -> int:
        """Move the totals by one entry and return the amount actually applied."""
        if kind == TransactionKind.GRANT:
            self.plan_credits += amount
        elif kind == TransactionKind.PURCHASE:
            self.purchased_credits += amount
        elif kind == TransactionKind.DEBIT:
            required = -amount
            if required > self.balance:
                raise InsufficientCredits(required=required, available=self.balance)
            self.total_used += required
        elif kind == TransactionKind.REFUND:
            amount = min(amount, self.total_used)
            self.total_used -= amount
        else:
            raise ValueError(f"Unknown transaction kind: {kind}")
        return amount

    def summary(self) -> CreditSummary:
        return CreditSummary(
            balance=self.balance,
            plan_credits=self.plan_credits,
            purchased_credits=self.purchased_credits,
            total_added=self.plan_credits + self.purchased_credits,
            total_used=self.total_used,
        )


def _validate_amount(kind: TransactionKind, amount: int) -> None:
    if kind == TransactionKind.DEBIT:
        if amount >= 0:
            raise ValueError("debit amounts must be negative")
    elif kind in _POSITIVE_KINDS:
        if amount <= 0:
            raise ValueError(f"{kind} amounts must be positive")
    else:
        raise ValueError(f"Unknown transaction kind: {kind}")


# ── Reads ────────────────────────────────────────────────────

async def get_account(session: AsyncSession, tenant_id: uuid.UUID) -> CreditAccount:
    """Return the tenant's account, creating an empty one on first use."""
    account = await session.get(CreditAccount, tenant_id, populate_existing=True)
    if account is not None:
        return account

    session.add(CreditAccount(tenant_id=tenant_id))
    try:
        await session.commit()
    except IntegrityError:
        # Another writer created it first
        await session.rollback()
    account = await session.get(CreditAccount, tenant_id, populate_existing=True)
    if account is None:
        raise RuntimeError(f"Credit account for tenant {tenant_id} could not be created")
    return account


async def get_balance(session: AsyncSession, tenant_id: uuid.UUID) -> int:
    return (await get_account(session, tenant_id)).balance


async def get_summary(session: AsyncSession, tenant_id: uuid.UUID) -> CreditSummary:
    account = await get_account(session, tenant_id)
    return CreditSummary(
        balance=account.balance,
        plan_credits=account.plan_credits,
        purchased_credits=account.purchased_credits,
        total_added=account.total_added,
        total_used=account.total_used,
        low_balance=account.balance < get_settings().low_credit_threshold,
    )


async def find_transaction(
    session: AsyncSession, kind: TransactionKind, reference: str
) -> CreditTransaction | None:
    stmt = select(CreditTransaction).where(
        CreditTransaction.kind == kind,
        CreditTransaction.reference == reference,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_transactions(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[CreditTransaction]:
    stmt = (
        select(CreditTransaction)
        .where(CreditTransaction.tenant_id == tenant_id)
        .order_by(CreditTransaction.created_at.desc())  # type: ignore[union-attr]
        .limit(min(limit, 200))
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ── Writes ───────────────────────────────────────────────────

async def apply_transaction(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    kind: TransactionKind,
    amount: int,
    reference: str,
    description: str = "",
) -> LedgerResult:
    """Apply one idempotent ledger entry.

    Raises:
        InsufficientCredits: a debit would take the balance below zero.
        IdempotencyConflict: ``(kind, reference)`` exists for another tenant.
        LedgerContention: the compare-and-set kept losing to other writers.
    """
    kind = TransactionKind(kind)
    _validate_amount(kind, amount)

    existing = await find_transaction(session, kind, reference)
    if existing is not None:
        return _replayed(existing, tenant_id)

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        account = await get_account(session, tenant_id)
        totals = _Totals(account.plan_credits, account.purchased_credits, account.total_used)
        applied = totals.apply(kind, amount)

        stmt = (
            update(CreditAccount)
            .where(
                CreditAccount.tenant_id == tenant_id,
                CreditAccount.version == account.version,
            )
            .values(
                plan_credits=totals.plan_credits,
                purchased_credits=totals.purchased_credits,
                total_used=totals.total_used,
                version=account.version + 1,
                updated_at=utcnow(),
            )
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await session.rollback()
            logger.debug(
                "Credit account %s changed under us (attempt %d), retrying", tenant_id, attempt
            )
            continue

        entry = CreditTransaction(
            tenant_id=tenant_id,
            kind=kind,
            amount=applied,
            reference=reference,
            balance_after=totals.balance,
            description=description,
        )
        session.add(entry)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            existing = await find_transaction(session, kind, reference)
            if existing is None:
                raise
            logger.info("Ledger %s:%s already applied by a concurrent writer", kind, reference)
            return _replayed(existing, tenant_id)

        logger.info(
            "Ledger %s %+d for tenant %s (ref=%s, balance=%d)",
            kind,
            applied,
            tenant_id,
            reference,
            totals.balance,
        )
        return LedgerResult(transaction=entry, created=True)

    raise LedgerContention(
        "Credit account is busy, please retry", tenant_id=str(tenant_id), reference=reference
    )


def _replayed(existing: CreditTransaction, tenant_id: uuid.UUID) -> LedgerResult:
    if existing.tenant_id != tenant_id:
        raise IdempotencyConflict(
            "Idempotency key belongs to a different tenant",
            kind=str(existing.kind),
            reference=existing.reference,
        )
    logger.info("Ledger replay of %s:%s ignored", existing.kind, existing.reference)
    return LedgerResult(transaction=existing, created=False)


async def debit(
    session: AsyncSession, tenant_id: uuid.UUID, credits: int, reference: str, description: str = ""
) -> LedgerResult:
    return await apply_transaction(
        session, tenant_id, TransactionKind.DEBIT, -credits, reference, description
    )


async def refund(
    session: AsyncSession, tenant_id: uuid.UUID, credits: int, reference: str, description: str = ""
) -> LedgerResult:
    return await apply_transaction(
        session, tenant_id, TransactionKind.REFUND, credits, reference, description
    )


# ── Reconciliation ───────────────────────────────────────────

async def reconcile(session: AsyncSession, tenant_id: uuid.UUID) -> ReconciliationReport:
    """Replay the transaction log and compare it with the stored projection."""
    stmt = (
        select(CreditTransaction)
        .where(CreditTransaction.tenant_id == tenant_id)
        .order_by(CreditTransaction.created_at.asc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    entries = list(result.scalars().all())

    totals = _Totals()
    for entry in entries:
        if entry.kind == TransactionKind.DEBIT:
            totals.total_used += -entry.amount
        elif entry.kind == TransactionKind.REFUND:
            totals.total_used -= entry.amount
        else:
            totals.apply(entry.kind, entry.amount)

    account = await get_account(session, tenant_id)
    stored = _Totals(account.plan_credits, account.purchased_credits, account.total_used).summary()
    replayed = totals.summary()
    consistent = stored == replayed
    if not consistent:
        logger.error("Ledger drift for tenant %s: stored=%s replayed=%s", tenant_id, stored, replayed)

    return ReconciliationReport(
        tenant_id=tenant_id,
        transaction_count=len(entries),
        stored=stored,
        replayed=replayed,
        consistent=consistent,
    )
