"""Plan model — an immutable, versioned feature and limit matrix."""

import uuid
from datetime import datetime

from pydantic import BaseModel
from pydantic import Field as PydanticField
from sqlalchemy import Text, UniqueConstraint
from sqlmodel import Column, Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid


class Plan(TimestampMixin, SQLModel, table=True):
    __tablename__ = "plans"
    __table_args__ = (UniqueConstraint("slug", "version", name="uq_plans_slug_version"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    slug: str = Field(max_length=100, nullable=False, index=True)
    version: int = Field(default=1, nullable=False)
    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=1000)

    # JSON object: feature key -> bool
    features: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    # JSON object: limit key -> int, or null for "no ceiling"
    limits: str = Field(default="{}", sa_column=Column(Text, nullable=False))


# ── Pydantic schemas ─────────────────────────────────────────

class PlanCreate(BaseModel):
    slug: str = PydanticField(max_length=100, pattern=r"^[a-z0-9\-]+$")
    name: str = PydanticField(max_length=255)
    description: str = PydanticField(default="", max_length=1000)
    features: dict[str, bool] = PydanticField(default_factory=dict)
    limits: dict[str, int | None] = PydanticField(
        default_factory=dict,
        description="Integer ceiling per limit key; null means no ceiling",
    )


class PlanRead(SQLModel):
    id: uuid.UUID
    slug: str
    version: int
    name: str
    description: str
    features: dict[str, bool]
    limits: dict[str, int | None]
    created_at: datetime
