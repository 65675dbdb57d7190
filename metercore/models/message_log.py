"""MessageLog model — one dispatched batch with per-recipient delivery state."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import String, Text
from sqlmodel import Column, Field, SQLModel

from metercore.models.base import TimestampMixin, new_uuid, utcnow


class MessageType(StrEnum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class OverallStatus(StrEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    PARTIAL = "partial"


class RecipientStatus(StrEnum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


# Position in the delivery progression; a status may only move forward.
RECIPIENT_STATUS_RANK: dict[RecipientStatus, int] = {
    RecipientStatus.PENDING: 0,
    RecipientStatus.SUBMITTED: 1,
    RecipientStatus.SENT: 2,
    RecipientStatus.DELIVERED: 3,
    RecipientStatus.FAILED: 3,
}
TERMINAL_RECIPIENT_STATES = frozenset({RecipientStatus.DELIVERED, RecipientStatus.FAILED})


class MessageLog(TimestampMixin, SQLModel, table=True):
    __tablename__ = "message_logs"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    scheduled_message_id: uuid.UUID | None = Field(default=None, index=True)
    message_type: MessageType = Field(sa_type=String(20), nullable=False)
    category: str = Field(default="general", max_length=50)
    body: str = Field(sa_column=Column(Text, nullable=False))
    sender_id: str = Field(default="", max_length=20)

    total_recipients: int = Field(default=0)
    successful_deliveries: int = Field(default=0)
    failed_deliveries: int = Field(default=0)
    credits_used: int = Field(default=0)
    overall_status: OverallStatus = Field(default=OverallStatus.PENDING, sa_type=String(20))
    error_message: str | None = Field(default=None, max_length=2000)


class MessageRecipient(TimestampMixin, SQLModel, table=True):
    __tablename__ = "message_recipients"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    log_id: uuid.UUID = Field(foreign_key="message_logs.id", nullable=False, index=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False)
    phone: str = Field(max_length=32, nullable=False)
    provider_message_id: str | None = Field(default=None, max_length=255, index=True)
    status: RecipientStatus = Field(default=RecipientStatus.PENDING, sa_type=String(20))
    failure_reason: str | None = Field(default=None, max_length=500)
    submitted_at: datetime | None = Field(default=None)
    sent_at: datetime | None = Field(default=None)
    delivered_at: datetime | None = Field(default=None)
    failed_at: datetime | None = Field(default=None)


class DeliveryEvent(SQLModel, table=True):
    """Every status callback received, applied or not, kept for audit."""

    __tablename__ = "delivery_events"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    recipient_id: uuid.UUID = Field(foreign_key="message_recipients.id", nullable=False, index=True)
    log_id: uuid.UUID = Field(foreign_key="message_logs.id", nullable=False)
    status: RecipientStatus = Field(sa_type=String(20), nullable=False)
    applied: bool = Field(default=False)
    reason: str | None = Field(default=None, max_length=500)
    payload: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    received_at: datetime = Field(default_factory=utcnow, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class RecipientRead(SQLModel):
    id: uuid.UUID
    phone: str
    status: RecipientStatus
    provider_message_id: str | None
    failure_reason: str | None
    submitted_at: datetime | None
    sent_at: datetime | None
    delivered_at: datetime | None
    failed_at: datetime | None


class MessageLogRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    scheduled_message_id: uuid.UUID | None
    message_type: MessageType
    category: str
    body: str
    sender_id: str
    total_recipients: int
    successful_deliveries: int
    failed_deliveries: int
    credits_used: int
    overall_status: OverallStatus
    error_message: str | None
    created_at: datetime


class MessageLogDetail(MessageLogRead):
    recipients: list[RecipientRead] = Field(default_factory=list)


class SendMessageRequest(SQLModel):
    body: str = Field(min_length=1, max_length=2000)
    phones: list[str] = Field(min_length=1)
    category: str = Field(default="general", max_length=50)


class DeliveryReport(SQLModel):
    provider_message_id: str
    status: RecipientStatus
    reason: str | None = None
    payload: dict = Field(default_factory=dict)
