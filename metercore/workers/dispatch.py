"""Periodic job: claim due scheduled messages and dispatch them."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from metercore.core.config import get_settings
from metercore.core.database import async_session_factory
from metercore.models.base import utcnow
from metercore.models.scheduled_message import MessageStatus
from metercore.services import scheduling

logger = logging.getLogger(__name__)

CLAIM_EXPIRED_ERROR = "Dispatcher claim expired before the message was sent"


async def _fail_expired_claims(worker_id: str, batch_size: int, lease_seconds: int) -> int:
    """Take over claims older than the lease and fail them, refunding any debit."""
    cutoff = utcnow() - timedelta(seconds=lease_seconds)
    async with async_session_factory() as session:
        expired = await scheduling.find_expired_claims(session, cutoff, batch_size)

    failed = 0
    for message_id in expired:
        async with async_session_factory() as session:
            if not await scheduling.take_over_claim(session, message_id, worker_id, cutoff):
                continue
            logger.warning("Dispatcher %s took over expired claim on %s", worker_id, message_id)
            message = await scheduling.fail_claimed(session, message_id, worker_id, CLAIM_EXPIRED_ERROR)
        if message is not None and message.status == MessageStatus.FAILED:
            failed += 1
    return failed


async def _dispatch_one(message_id: uuid.UUID, worker_id: str) -> str | None:
    """Claim and execute one message. Returns its final status, or None if the claim was lost."""
    async with async_session_factory() as session:
        if not await scheduling.claim(session, message_id, worker_id):
            logger.info("Dispatcher %s lost claim on %s", worker_id, message_id)
            return None
        logger.info("Dispatcher %s claimed %s", worker_id, message_id)

        try:
            message = await scheduling.execute_claimed(session, message_id, worker_id)
        except Exception as exc:
            logger.exception("Dispatch of scheduled message %s crashed", message_id)
            message = await scheduling.fail_claimed(session, message_id, worker_id, str(exc))

    return str(message.status) if message is not None else MessageStatus.FAILED


async def dispatch_due_messages(ctx: dict) -> dict:
    """One dispatcher tick.

    Each due message is claimed before anything else happens to it; a lost
    claim means another worker (or a cancel) got there first and the message
    is skipped. Claims left behind by a dead worker are failed once their
    lease runs out. ``ctx["worker_id"]`` overrides the configured worker id.
    """
    settings = get_settings()
    worker_id = ctx.get("worker_id") or scheduling.default_worker_id()

    expired = await _fail_expired_claims(
        worker_id, settings.scheduler_batch_size, settings.scheduler_claim_lease_seconds
    )

    async with async_session_factory() as session:
        due = await scheduling.find_due(session, utcnow(), settings.scheduler_batch_size)

    if not due:
        logger.debug("Dispatcher %s: nothing due", worker_id)
        return {"due": 0, "sent": 0, "failed": 0, "skipped": 0, "expired": expired}

    sent = failed = skipped = 0
    for message_id in due:
        status = await _dispatch_one(message_id, worker_id)
        if status is None:
            skipped += 1
        elif status == MessageStatus.SENT:
            sent += 1
        else:
            failed += 1

    logger.info(
        "Dispatcher %s: %d due, %d sent, %d failed, %d skipped, %d expired",
        worker_id,
        len(due),
        sent,
        failed,
        skipped,
        expired,
    )
    return {"due": len(due), "sent": sent, "failed": failed, "skipped": skipped, "expired": expired}
