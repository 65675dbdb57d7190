"""Recipient selector resolution against the tenant's contact directory."""

from __future__ import annotations

import re
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.models.contact import Contact
from metercore.models.scheduled_message import RecipientSelector

_PHONE = re.compile(r"^\+?\d{7,15}$")
_SEPARATORS = re.compile(r"[\s\-().]")


def normalize_phone(raw: str) -> str:
    """Strip formatting characters; raise ValueError if what remains is not a number."""
    phone = _SEPARATORS.sub("", raw or "")
    if phone.startswith("00"):
        phone = "+" + phone[2:]
    if not _PHONE.match(phone):
        raise ValueError(f"Invalid phone number: {raw!r}")
    return phone


def normalize_phones(raw_phones: list[str]) -> list[str]:
    """Normalise and de-duplicate, keeping first-seen order."""
    seen: dict[str, None] = {}
    for raw in raw_phones:
        if raw and raw.strip():
            seen.setdefault(normalize_phone(raw), None)
    return list(seen)


async def resolve_recipients(
    session: AsyncSession, tenant_id: uuid.UUID, selector: RecipientSelector
) -> list[str]:
    if selector.phones:
        return normalize_phones(selector.phones)

    stmt = select(Contact.phone).where(
        Contact.tenant_id == tenant_id,
        Contact.is_active.is_(True),  # type: ignore[union-attr]
    )
    if selector.group:
        stmt = stmt.where(Contact.group == selector.group)
    result = await session.execute(stmt.order_by(Contact.created_at.asc()))  # type: ignore[union-attr]

    phones: list[str] = []
    for raw in result.scalars().all():
        try:
            phones.append(normalize_phone(raw))
        except ValueError:
            continue
    return list(dict.fromkeys(phones))
