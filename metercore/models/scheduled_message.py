"""ScheduledMessage model — an SMS queued for a future dispatch time."""

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import field_validator, model_validator
from sqlalchemy import String, Text
from sqlmodel import Column, Field, SQLModel

from metercore.models.base import TimestampMixin, as_naive_utc, new_uuid


class MessageStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_MESSAGE_STATES = frozenset(
    {MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED}
)


class RecipientSelector(SQLModel):
    """Exactly one of: explicit phones, a contact group, or every contact."""

    phones: list[str] | None = None
    group: str | None = None
    all_contacts: bool = False

    @model_validator(mode="after")
    def _exactly_one(self) -> "RecipientSelector":
        chosen = sum([bool(self.phones), bool(self.group), self.all_contacts])
        if chosen != 1:
            raise ValueError("Specify exactly one of phones, group or all_contacts")
        return self


class ScheduledMessage(TimestampMixin, SQLModel, table=True):
    __tablename__ = "scheduled_messages"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    created_by: uuid.UUID | None = Field(default=None)

    body: str = Field(sa_column=Column(Text, nullable=False))
    recipients: str = Field(sa_column=Column(Text, nullable=False))  # RecipientSelector JSON
    category: str = Field(default="general", max_length=50)
    scheduled_at: datetime = Field(nullable=False, index=True)

    status: MessageStatus = Field(default=MessageStatus.PENDING, sa_type=String(20), index=True)
    # Dispatcher claim; set atomically while status is still pending
    claimed_by: str | None = Field(default=None, max_length=255)
    claimed_at: datetime | None = Field(default=None)

    estimated_credits: int = Field(default=0)
    credits_used: int = Field(default=0)
    execution_error: str | None = Field(default=None, max_length=2000)
    sent_at: datetime | None = Field(default=None)
    message_log_id: uuid.UUID | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class ScheduledMessageCreate(SQLModel):
    body: str = Field(min_length=1, max_length=2000)
    recipients: RecipientSelector
    scheduled_at: datetime
    category: str = Field(default="general", max_length=50)

    @field_validator("scheduled_at")
    @classmethod
    def _normalise(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class ScheduledMessageRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    body: str
    recipients: dict
    category: str
    scheduled_at: datetime
    status: MessageStatus
    claimed: bool
    estimated_credits: int
    credits_used: int
    execution_error: str | None
    sent_at: datetime | None
    message_log_id: uuid.UUID | None
    created_at: datetime
