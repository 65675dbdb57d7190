"""Periodic job: grant each subscribed tenant its plan allowance for the month."""

from __future__ import annotations

import logging

from metercore.core.database import async_session_factory
from metercore.services.subscriptions import grant_all_period_credits

logger = logging.getLogger(__name__)


async def grant_period_credits(ctx: dict) -> dict:
    """Idempotent per period, so running it daily only credits once a month.

    ``ctx["period"]`` (``YYYY-MM``) overrides the current month.
    """
    async with async_session_factory() as session:
        return await grant_all_period_credits(session, ctx.get("period"))
