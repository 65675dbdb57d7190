"""Delivery status tracking for dispatched batches.

Carrier callbacks arrive late, duplicated and out of order. A recipient's
status only moves forward along pending → submitted → sent → delivered|failed,
the first terminal status wins, and every callback is stored as a
DeliveryEvent whether or not it changed anything. Log counters are always
recomputed from recipient rows, so concurrent callbacks cannot drift them.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.models.base import dump_json, utcnow
from metercore.models.message_log import (
    RECIPIENT_STATUS_RANK,
    TERMINAL_RECIPIENT_STATES,
    DeliveryEvent,
    MessageLog,
    MessageRecipient,
    OverallStatus,
    RecipientStatus,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_FIELD = {
    RecipientStatus.SUBMITTED: "submitted_at",
    RecipientStatus.SENT: "sent_at",
    RecipientStatus.DELIVERED: "delivered_at",
    RecipientStatus.FAILED: "failed_at",
}


def can_advance(current: str, target: str) -> bool:
    current, target = RecipientStatus(current), RecipientStatus(target)
    if current in TERMINAL_RECIPIENT_STATES:
        return False
    return RECIPIENT_STATUS_RANK[target] > RECIPIENT_STATUS_RANK[current]


async def advance_recipient(
    session: AsyncSession,
    recipient: MessageRecipient,
    target: RecipientStatus,
    *,
    reason: str | None = None,
    provider_message_id: str | None = None,
    at: datetime | None = None,
) -> bool:
    """Compare-and-set one recipient forward. Returns False if the move is stale.

    Does not commit.
    """
    values: dict = {"status": target}
    field = _TIMESTAMP_FIELD.get(target)
    if field:
        values[field] = at or utcnow()
    if reason is not None:
        values["failure_reason"] = reason[:500]
    if provider_message_id is not None:
        values["provider_message_id"] = provider_message_id

    current = recipient.status
    while can_advance(current, target):
        stmt = (
            update(MessageRecipient)
            .where(
                MessageRecipient.id == recipient.id,
                MessageRecipient.status == current,
            )
            .values(updated_at=utcnow(), **values)
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            return True
        # Another callback moved it first; re-read and check again
        fresh = await session.get(MessageRecipient, recipient.id, populate_existing=True)
        if fresh is None or fresh.status == current:
            return False
        current = fresh.status
    return False


async def refresh_log_status(session: AsyncSession, log_id: uuid.UUID) -> MessageLog:
    """Recompute counters and overall status from recipient rows. Does not commit."""
    stmt = (
        select(MessageRecipient.status, func.count())
        .where(MessageRecipient.log_id == log_id)
        .group_by(MessageRecipient.status)
    )
    result = await session.execute(stmt)
    counts = {RecipientStatus(status): n for status, n in result.all()}

    total = sum(counts.values())
    delivered = counts.get(RecipientStatus.DELIVERED, 0)
    failed = counts.get(RecipientStatus.FAILED, 0)

    if total == 0 or delivered + failed < total:
        overall = OverallStatus.PENDING
    elif failed == 0:
        overall = OverallStatus.DELIVERED
    elif delivered == 0:
        overall = OverallStatus.FAILED
    else:
        overall = OverallStatus.PARTIAL

    await session.execute(
        update(MessageLog)
        .where(MessageLog.id == log_id)
        .values(
            successful_deliveries=delivered,
            failed_deliveries=failed,
            overall_status=overall,
            updated_at=utcnow(),
        )
    )
    log = await session.get(MessageLog, log_id, populate_existing=True)
    if log is None:
        raise RuntimeError(f"Message log {log_id} disappeared")
    return log


async def find_recipient(session: AsyncSession, provider_message_id: str) -> MessageRecipient | None:
    stmt = select(MessageRecipient).where(MessageRecipient.provider_message_id == provider_message_id)
    result = await session.execute(stmt)
    return result.scalars().first()


async def ingest_report(
    session: AsyncSession,
    provider_message_id: str,
    status: RecipientStatus,
    *,
    reason: str | None = None,
    payload: dict | None = None,
) -> DeliveryEvent | None:
    """Record one carrier callback and apply it if it moves the recipient forward.

    Returns None when the provider id matches no recipient.
    """
    recipient = await find_recipient(session, provider_message_id)
    if recipient is None:
        logger.warning("Delivery report for unknown provider id %s", provider_message_id)
        return None

    applied = await advance_recipient(session, recipient, RecipientStatus(status), reason=reason)
    event = DeliveryEvent(
        recipient_id=recipient.id,
        log_id=recipient.log_id,
        status=status,
        applied=applied,
        reason=reason,
        payload=dump_json(payload or {}),
    )
    session.add(event)
    if applied:
        await refresh_log_status(session, recipient.log_id)
    await session.commit()

    if applied:
        logger.info("Recipient %s -> %s", recipient.id, status)
    else:
        logger.debug("Ignored stale %s report for recipient %s", status, recipient.id)
    return event
