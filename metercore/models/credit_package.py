"""CreditPackage model — a purchasable bundle of SMS credits."""

import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid

TWO_PLACES = Decimal("0.01")


def discounted_price(price: Decimal, discount_percent: int) -> Decimal:
    factor = (Decimal(100) - Decimal(discount_percent)) / Decimal(100)
    return (price * factor).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class CreditPackage(TimestampMixin, SQLModel, table=True):
    __tablename__ = "credit_packages"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    slug: str = Field(max_length=100, unique=True, nullable=False, index=True)
    name: str = Field(max_length=255, nullable=False)
    credits: int = Field(nullable=False, gt=0)
    price: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    currency: str = Field(default="GHS", max_length=3)
    discount_percent: int = Field(default=0, ge=0, le=100)
    is_primary: bool = Field(default=False)
    is_active: bool = Field(default=True)

    @property
    def amount_due(self) -> Decimal:
        """What the tenant actually pays, after the package discount."""
        return discounted_price(self.price, self.discount_percent)


# ── Pydantic schemas ─────────────────────────────────────────

class CreditPackageCreate(SQLModel):
    slug: str = Field(max_length=100)
    name: str = Field(max_length=255)
    credits: int = Field(gt=0)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="GHS", min_length=3, max_length=3)
    discount_percent: int = Field(default=0, ge=0, le=100)
    is_primary: bool = False


class CreditPackageRead(SQLModel):
    id: uuid.UUID
    slug: str
    name: str
    credits: int
    price: Decimal
    discounted_price: Decimal
    currency: str
    discount_percent: int
    is_primary: bool
    created_at: datetime
