"""Scheduled messages: creation, cancellation and claimed execution.

A message leaves ``pending`` exactly once. The dispatcher first claims it
(``claimed_by`` set while still pending and unclaimed), and only the
claimant may move it to ``sent`` or ``failed``. Cancellation is the same
compare-and-set against an unclaimed pending row, so a cancel racing a
claim has exactly one winner.

A claim is a lease. If its worker dies before finishing, a later tick takes
the claim over once it is older than ``scheduler_claim_lease_seconds`` and
fails the message, refunding any debit already taken.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.core.config import get_settings
from metercore.core.errors import (
    DispatchTransientFailure,
    InsufficientCredits,
    InvalidStateTransition,
    NotFound,
)
from metercore.models.base import dump_json, load_json, utcnow
from metercore.models.credit import TransactionKind
from metercore.models.message_log import MessageLog, MessageType
from metercore.models.scheduled_message import (
    MessageStatus,
    RecipientSelector,
    ScheduledMessage,
    ScheduledMessageCreate,
    ScheduledMessageRead,
)
from metercore.services import ledger
from metercore.services.messaging import deliver_batch, estimate_credits
from metercore.services.recipients import normalize_phones, resolve_recipients

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return get_settings().worker_id or f"{socket.gethostname()}:{os.getpid()}"


def to_read(message: ScheduledMessage) -> ScheduledMessageRead:
    data = message.model_dump()
    data["recipients"] = load_json(message.recipients)
    data["claimed"] = message.claimed_by is not None
    return ScheduledMessageRead(**data)


# ── Tenant operations ────────────────────────────────────────

async def create_scheduled(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    body: ScheduledMessageCreate,
    created_by: uuid.UUID | None = None,
) -> ScheduledMessage:
    """Queue a message for later dispatch.

    Raises ValueError when the time is not in the future or no recipient resolves.
    """
    if body.scheduled_at <= utcnow():
        raise ValueError("scheduled_at must be in the future")

    selector = body.recipients
    if selector.phones:
        selector = RecipientSelector(phones=normalize_phones(selector.phones))
    phones = await resolve_recipients(session, tenant_id, selector)
    if not phones:
        raise ValueError("No valid recipients for this message")

    message = ScheduledMessage(
        tenant_id=tenant_id,
        created_by=created_by,
        body=body.body,
        recipients=dump_json(selector.model_dump(exclude_defaults=True)),
        category=body.category,
        scheduled_at=body.scheduled_at,
        estimated_credits=estimate_credits(body.body, len(phones)),
    )
    session.add(message)
    await session.commit()
    await session.refresh(message)
    logger.info("Scheduled message %s for %s (%d recipients)", message.id, message.scheduled_at, len(phones))
    return message


async def get_scheduled(
    session: AsyncSession, tenant_id: uuid.UUID, message_id: uuid.UUID
) -> ScheduledMessage:
    message = await session.get(ScheduledMessage, message_id, populate_existing=True)
    if message is None or message.tenant_id != tenant_id:
        raise NotFound("Scheduled message not found", message_id=str(message_id))
    return message


async def list_scheduled(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    status: MessageStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ScheduledMessage]:
    stmt = select(ScheduledMessage).where(ScheduledMessage.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(ScheduledMessage.status == status)
    stmt = (
        stmt.order_by(ScheduledMessage.scheduled_at.asc())  # type: ignore[union-attr]
        .limit(min(limit, 200))
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def cancel_scheduled(
    session: AsyncSession, tenant_id: uuid.UUID, message_id: uuid.UUID
) -> ScheduledMessage:
    """Cancel a message that no dispatcher has claimed yet."""
    message = await get_scheduled(session, tenant_id, message_id)
    stmt = (
        update(ScheduledMessage)
        .where(
            ScheduledMessage.id == message_id,
            ScheduledMessage.status == MessageStatus.PENDING,
            ScheduledMessage.claimed_by.is_(None),  # type: ignore[union-attr]
        )
        .values(status=MessageStatus.CANCELLED, updated_at=utcnow())
    )
    result = await session.execute(stmt)
    await session.commit()

    message = await get_scheduled(session, tenant_id, message_id)
    if result.rowcount != 1:
        current = "claimed" if message.status == MessageStatus.PENDING else str(message.status)
        raise InvalidStateTransition("scheduled message", message_id, current, MessageStatus.CANCELLED)
    logger.info("Cancelled scheduled message %s", message_id)
    return message


# ── Dispatcher operations ────────────────────────────────────

async def find_due(session: AsyncSession, now: datetime, limit: int) -> list[uuid.UUID]:
    stmt = (
        select(ScheduledMessage.id)
        .where(
            ScheduledMessage.status == MessageStatus.PENDING,
            ScheduledMessage.claimed_by.is_(None),  # type: ignore[union-attr]
            ScheduledMessage.scheduled_at <= now,
        )
        .order_by(ScheduledMessage.scheduled_at.asc())  # type: ignore[union-attr]
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def claim(session: AsyncSession, message_id: uuid.UUID, worker_id: str) -> bool:
    stmt = (
        update(ScheduledMessage)
        .where(
            ScheduledMessage.id == message_id,
            ScheduledMessage.status == MessageStatus.PENDING,
            ScheduledMessage.claimed_by.is_(None),  # type: ignore[union-attr]
        )
        .values(claimed_by=worker_id, claimed_at=utcnow(), updated_at=utcnow())
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def find_expired_claims(session: AsyncSession, cutoff: datetime, limit: int) -> list[uuid.UUID]:
    """Pending messages whose claim was taken before ``cutoff`` and never finished."""
    stmt = (
        select(ScheduledMessage.id)
        .where(
            ScheduledMessage.status == MessageStatus.PENDING,
            ScheduledMessage.claimed_by.is_not(None),  # type: ignore[union-attr]
            ScheduledMessage.claimed_at < cutoff,  # type: ignore[operator]
        )
        .order_by(ScheduledMessage.claimed_at.asc())  # type: ignore[union-attr]
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def take_over_claim(
    session: AsyncSession, message_id: uuid.UUID, worker_id: str, cutoff: datetime
) -> bool:
    """Move an expired claim to ``worker_id``. False if it finished or was taken over already."""
    stmt = (
        update(ScheduledMessage)
        .where(
            ScheduledMessage.id == message_id,
            ScheduledMessage.status == MessageStatus.PENDING,
            ScheduledMessage.claimed_by.is_not(None),  # type: ignore[union-attr]
            ScheduledMessage.claimed_at < cutoff,  # type: ignore[operator]
        )
        .values(claimed_by=worker_id, claimed_at=utcnow(), updated_at=utcnow())
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def _finish(
    session: AsyncSession,
    message_id: uuid.UUID,
    worker_id: str,
    status: MessageStatus,
    **values,
) -> ScheduledMessage:
    stmt = (
        update(ScheduledMessage)
        .where(
            ScheduledMessage.id == message_id,
            ScheduledMessage.status == MessageStatus.PENDING,
            ScheduledMessage.claimed_by == worker_id,
        )
        .values(status=status, updated_at=utcnow(), **values)
    )
    result = await session.execute(stmt)
    await session.commit()
    message = await session.get(ScheduledMessage, message_id, populate_existing=True)
    if result.rowcount != 1:
        raise InvalidStateTransition("scheduled message", message_id, str(message.status), status)
    return message


async def execute_claimed(
    session: AsyncSession, message_id: uuid.UUID, worker_id: str
) -> ScheduledMessage:
    """Debit, dispatch and finalise a message this worker has claimed."""
    message = await session.get(ScheduledMessage, message_id, populate_existing=True)
    if message is None or message.claimed_by != worker_id:
        raise InvalidStateTransition("scheduled message", message_id, "unclaimed", "sent")

    selector = RecipientSelector(**load_json(message.recipients))
    phones = await resolve_recipients(session, message.tenant_id, selector)
    if not phones:
        return await _finish(
            session, message_id, worker_id, MessageStatus.FAILED, execution_error="No recipients resolved"
        )

    tenant_id, body, category = message.tenant_id, message.body, message.category
    credits = estimate_credits(body, len(phones))
    reference = str(message_id)
    try:
        await ledger.debit(session, tenant_id, credits, reference=reference, description="Scheduled SMS")
    except InsufficientCredits as exc:
        logger.info("Scheduled message %s failed: %s", message_id, exc.message)
        return await _finish(session, message_id, worker_id, MessageStatus.FAILED, execution_error=exc.message)

    log = MessageLog(
        tenant_id=tenant_id,
        scheduled_message_id=message_id,
        message_type=MessageType.SCHEDULED,
        category=category,
        body=body,
        sender_id=get_settings().sms_sender_id,
        total_recipients=len(phones),
        credits_used=credits,
    )
    session.add(log)
    await session.commit()

    log_id = log.id
    try:
        await deliver_batch(session, log, phones)
    except DispatchTransientFailure as exc:
        await ledger.refund(session, tenant_id, credits, reference=reference, description="Scheduled SMS refund")
        await session.execute(update(MessageLog).where(MessageLog.id == log_id).values(credits_used=0))
        await session.commit()
        logger.warning("Scheduled message %s failed to dispatch: %s", message_id, exc.message)
        return await _finish(
            session,
            message_id,
            worker_id,
            MessageStatus.FAILED,
            execution_error=exc.message,
            message_log_id=log_id,
        )

    logger.info("Scheduled message %s sent (%d recipients, %d credits)", message_id, len(phones), credits)
    return await _finish(
        session,
        message_id,
        worker_id,
        MessageStatus.SENT,
        credits_used=credits,
        sent_at=utcnow(),
        message_log_id=log_id,
    )


async def fail_claimed(
    session: AsyncSession, message_id: uuid.UUID, worker_id: str, error: str
) -> ScheduledMessage | None:
    """Fail a claimed message after an unexpected error, refunding any debit taken."""
    await session.rollback()
    message = await session.get(ScheduledMessage, message_id, populate_existing=True)
    if message is None or message.status != MessageStatus.PENDING or message.claimed_by != worker_id:
        return message

    tenant_id = message.tenant_id
    debit = await ledger.find_transaction(session, TransactionKind.DEBIT, str(message_id))
    if debit is not None:
        await ledger.refund(
            session,
            tenant_id,
            -debit.amount,
            reference=str(message_id),
            description="Scheduled SMS refund",
        )
        await session.execute(
            update(MessageLog)
            .where(MessageLog.scheduled_message_id == message_id)
            .values(credits_used=0, updated_at=utcnow())
        )
        await session.commit()

    result = await session.execute(
        select(MessageLog.id).where(MessageLog.scheduled_message_id == message_id)
    )
    log_id = result.scalars().first()
    return await _finish(
        session,
        message_id,
        worker_id,
        MessageStatus.FAILED,
        execution_error=error[:2000],
        message_log_id=log_id,
    )
