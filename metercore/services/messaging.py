"""Immediate SMS sends, batch delivery and message history.

Credits are debited before the carrier is called and the debit's reference
is the batch id, so a replayed send never charges twice. When the carrier
refuses the whole batch, or rejects every recipient in it, the debit is
refunded under the same reference. Partial rejections are not refunded.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.core.config import get_settings
from metercore.core.errors import DispatchTransientFailure, NotFound
from metercore.core.sms_pricing import credits_for
from metercore.models.base import new_uuid, utcnow
from metercore.models.message_log import (
    MessageLog,
    MessageLogDetail,
    MessageLogRead,
    MessageRecipient,
    MessageType,
    OverallStatus,
    RecipientRead,
    RecipientStatus,
)
from metercore.services import ledger
from metercore.services.delivery import advance_recipient, refresh_log_status
from metercore.services.recipients import normalize_phones
from metercore.services.sms_carrier import send_sms_batch

logger = logging.getLogger(__name__)


def estimate_credits(body: str, recipient_count: int) -> int:
    return credits_for(body, recipient_count, get_settings().sms_credits_per_page)


async def deliver_batch(session: AsyncSession, log: MessageLog, phones: list[str]) -> MessageLog:
    """Hand one logged batch to the carrier and record per-recipient receipts.

    Raises DispatchTransientFailure after marking every recipient failed when
    the carrier rejects the batch as a whole or accepts none of it. The
    caller owns the refund.
    """
    recipients = [
        MessageRecipient(log_id=log.id, tenant_id=log.tenant_id, phone=phone) for phone in phones
    ]
    session.add_all(recipients)
    await session.commit()

    try:
        receipts = await send_sms_batch(log.sender_id, log.body, phones)
    except DispatchTransientFailure as exc:
        for recipient in recipients:
            await advance_recipient(session, recipient, RecipientStatus.FAILED, reason=exc.message)
        log = await refresh_log_status(session, log.id)
        log.error_message = exc.message
        await session.commit()
        raise

    by_phone = {receipt.phone: receipt for receipt in receipts}
    now = utcnow()
    accepted = 0
    for recipient in recipients:
        receipt = by_phone.get(recipient.phone)
        if receipt is not None and receipt.accepted:
            accepted += 1
            await advance_recipient(
                session,
                recipient,
                RecipientStatus.SUBMITTED,
                provider_message_id=receipt.message_id,
                at=now,
            )
        else:
            reason = receipt.reason if receipt is not None else "No receipt from carrier"
            await advance_recipient(
                session, recipient, RecipientStatus.FAILED, reason=reason or "Rejected by carrier", at=now
            )

    log = await refresh_log_status(session, log.id)
    if not accepted:
        log.error_message = "SMS carrier rejected every recipient"
        await session.commit()
        logger.warning("Batch %s: carrier accepted none of %d recipients", log.id, len(recipients))
        raise DispatchTransientFailure(log.error_message)

    await session.commit()
    logger.info(
        "Batch %s submitted: %d recipients, %d rejected",
        log.id,
        log.total_recipients,
        log.failed_deliveries,
    )
    return log


async def send_now(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    body: str,
    raw_phones: list[str],
    category: str = "general",
) -> MessageLog:
    """Debit, log and dispatch an immediate message.

    Raises:
        ValueError: no valid phone numbers.
        InsufficientCredits: nothing is logged or sent.
        DispatchTransientFailure: the debit has been refunded.
    """
    phones = normalize_phones(raw_phones)
    if not phones:
        raise ValueError("At least one valid phone number is required")

    log_id = new_uuid()
    credits = estimate_credits(body, len(phones))
    await ledger.debit(session, tenant_id, credits, reference=str(log_id), description="SMS send")

    log = MessageLog(
        id=log_id,
        tenant_id=tenant_id,
        message_type=MessageType.IMMEDIATE,
        category=category,
        body=body,
        sender_id=get_settings().sms_sender_id,
        total_recipients=len(phones),
        credits_used=credits,
    )
    session.add(log)
    await session.commit()

    try:
        return await deliver_batch(session, log, phones)
    except DispatchTransientFailure:
        await ledger.refund(
            session, tenant_id, credits, reference=str(log_id), description="SMS send refund"
        )
        await _clear_credits(session, log_id)
        raise


async def _clear_credits(session: AsyncSession, log_id: uuid.UUID) -> None:
    log = await session.get(MessageLog, log_id, populate_existing=True)
    if log is not None:
        log.credits_used = 0
        await session.commit()


# ── History ──────────────────────────────────────────────────

async def get_log(session: AsyncSession, tenant_id: uuid.UUID, log_id: uuid.UUID) -> MessageLog:
    log = await session.get(MessageLog, log_id)
    if log is None or log.tenant_id != tenant_id:
        raise NotFound("Message not found", log_id=str(log_id))
    return log


async def list_logs(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    status: OverallStatus | None = None,
    message_type: MessageType | None = None,
    since: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[MessageLog]:
    stmt = select(MessageLog).where(MessageLog.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(MessageLog.overall_status == status)
    if message_type is not None:
        stmt = stmt.where(MessageLog.message_type == message_type)
    if since is not None:
        stmt = stmt.where(MessageLog.created_at >= since)
    stmt = (
        stmt.order_by(MessageLog.created_at.desc())  # type: ignore[union-attr]
        .limit(min(limit, 200))
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def log_detail(session: AsyncSession, log: MessageLog) -> MessageLogDetail:
    stmt = (
        select(MessageRecipient)
        .where(MessageRecipient.log_id == log.id)
        .order_by(MessageRecipient.created_at.asc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    recipients = [RecipientRead.model_validate(r, from_attributes=True) for r in result.scalars().all()]
    return MessageLogDetail(
        **MessageLogRead.model_validate(log, from_attributes=True).model_dump(),
        recipients=recipients,
    )


async def statistics(session: AsyncSession, tenant_id: uuid.UUID) -> dict:
    """Aggregate counters across every batch the tenant has sent."""
    stmt = select(
        func.count(MessageLog.id),
        func.coalesce(func.sum(MessageLog.total_recipients), 0),
        func.coalesce(func.sum(MessageLog.successful_deliveries), 0),
        func.coalesce(func.sum(MessageLog.failed_deliveries), 0),
        func.coalesce(func.sum(MessageLog.credits_used), 0),
    ).where(MessageLog.tenant_id == tenant_id)
    result = await session.execute(stmt)
    messages, recipients, delivered, failed, credits = result.one()

    finished = delivered + failed
    return {
        "total_messages": messages,
        "total_recipients": recipients,
        "delivered": delivered,
        "failed": failed,
        "pending": recipients - finished,
        "credits_used": credits,
        "delivery_rate": round(delivered / finished * 100, 1) if finished else 0.0,
    }
