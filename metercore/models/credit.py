"""Credit account projection and its append-only transaction log."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import String, UniqueConstraint
from sqlmodel import Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid, utcnow


class TransactionKind(StrEnum):
    GRANT = "grant"
    PURCHASE = "purchase"
    DEBIT = "debit"
    REFUND = "refund"


class CreditAccount(TimestampMixin, SQLModel, table=True):
    """Materialized projection of a tenant's CreditTransaction rows.

    Only ``metercore.services.ledger`` writes to this table. ``version`` is
    bumped on every mutation and used as the compare-and-set guard.
    """

    __tablename__ = "credit_accounts"

    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", primary_key=True)
    plan_credits: int = Field(default=0, nullable=False)
    purchased_credits: int = Field(default=0, nullable=False)
    total_used: int = Field(default=0, nullable=False)
    version: int = Field(default=0, nullable=False)

    @property
    def total_added(self) -> int:
        return self.plan_credits + self.purchased_credits

    @property
    def balance(self) -> int:
        return self.plan_credits + self.purchased_credits - self.total_used


class CreditTransaction(SQLModel, table=True):
    """Ledger entry. Rows are inserted once and never updated or deleted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("kind", "reference", name="uq_credit_transactions_kind_reference"),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    kind: TransactionKind = Field(sa_type=String(20), nullable=False)
    amount: int = Field(nullable=False)  # signed
    reference: str = Field(max_length=255, nullable=False)
    balance_after: int = Field(nullable=False)
    description: str = Field(default="", max_length=500)
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)


# ── Pydantic schemas ─────────────────────────────────────────

class CreditSummary(SQLModel):
    balance: int
    plan_credits: int
    purchased_credits: int
    total_added: int
    total_used: int
    low_balance: bool = False


class CreditTransactionRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    kind: TransactionKind
    amount: int
    reference: str
    balance_after: int
    description: str
    created_at: datetime


class ReconciliationReport(SQLModel):
    tenant_id: uuid.UUID
    transaction_count: int
    stored: CreditSummary
    replayed: CreditSummary
    consistent: bool
