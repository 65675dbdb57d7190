"""Internal monetary wallet — the funding source of the wallet rail."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlmodel import Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid, utcnow


class Wallet(TimestampMixin, SQLModel, table=True):
    __tablename__ = "wallets"

    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", primary_key=True)
    balance: Decimal = Field(default=Decimal("0.00"), max_digits=14, decimal_places=2)
    currency: str = Field(default="GHS", max_length=3)


class WalletTransaction(SQLModel, table=True):
    """Wallet movement; ``reference`` makes a debit for a purchase unique."""

    __tablename__ = "wallet_transactions"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    amount: Decimal = Field(max_digits=14, decimal_places=2)  # signed
    reference: str = Field(max_length=64, unique=True, nullable=False)
    description: str = Field(default="", max_length=500)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
