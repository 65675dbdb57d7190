"""Purchase model — one attempt to buy a credit package over one rail."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import EmailStr
from sqlalchemy import String, Text
from sqlmodel import Column, Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid


class PaymentRail(StrEnum):
    WALLET = "wallet"
    GATEWAY = "gateway"


class PurchaseStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Purchase(TimestampMixin, SQLModel, table=True):
    __tablename__ = "purchases"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    package_id: uuid.UUID = Field(foreign_key="credit_packages.id", nullable=False)
    initiated_by: uuid.UUID | None = Field(default=None)

    rail: PaymentRail = Field(sa_type=String(20), nullable=False)
    status: PurchaseStatus = Field(default=PurchaseStatus.PENDING, sa_type=String(20), index=True)
    reference: str = Field(max_length=64, unique=True, nullable=False, index=True)

    # Snapshot of the package at initiation time
    credits: int = Field(nullable=False)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(max_length=3)

    credits_added: bool = Field(default=False)
    # Gateway session data (authorization_url, access_code) as JSON text
    session_data: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    failure_reason: str | None = Field(default=None, max_length=500)
    completed_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class PurchaseCreate(SQLModel):
    package_id: uuid.UUID
    rail: PaymentRail
    email: EmailStr | None = None  # payer email for the gateway; defaults to the tenant's


class PurchaseRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    package_id: uuid.UUID
    rail: PaymentRail
    status: PurchaseStatus
    reference: str
    credits: int
    amount: Decimal
    currency: str
    credits_added: bool
    session_data: dict
    failure_reason: str | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
