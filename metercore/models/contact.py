"""Contact model — read-only view of the tenant's member directory.

Rows are owned by the member-directory service; MeterCore only reads them
to resolve group / all-members recipient selectors.
"""

import uuid

from sqlmodel import Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid


class Contact(TimestampMixin, SQLModel, table=True):
    __tablename__ = "contacts"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    name: str = Field(default="", max_length=255)
    phone: str = Field(max_length=32, nullable=False)
    group: str | None = Field(default=None, max_length=100, index=True)
    is_active: bool = Field(default=True)
