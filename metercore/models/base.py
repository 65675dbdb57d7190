"""Shared base fields and helpers for all models."""

import json
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to the naive-UTC form stored in the DB."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def new_reference(prefix: str) -> str:
    """Unique, URL-safe payment reference such as ``SMS-3f9c...``."""
    return f"{prefix}-{secrets.token_hex(12)}"


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def load_json(value: str | dict | list | None) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class TimestampMixin(SQLModel):
    """Created / updated timestamps injected into every mutable table."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)
