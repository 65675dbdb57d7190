"""Tenant model — a merchant and its current subscription."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    slug: str = Field(max_length=100, unique=True, nullable=False, index=True)
    email: str = Field(default="", max_length=320)
    is_active: bool = Field(default=True)

    # Subscription: a reference to one published plan version
    plan_id: uuid.UUID | None = Field(default=None, foreign_key="plans.id", nullable=True)
    plan_assigned_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class SubscriptionUpdate(SQLModel):
    plan_id: uuid.UUID


class SubscriptionRead(SQLModel):
    tenant_id: uuid.UUID
    plan_id: uuid.UUID | None
    plan_slug: str | None = None
    plan_version: int | None = None
    plan_assigned_at: datetime | None = None
    granted_credits: int = 0
