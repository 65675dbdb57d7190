"""Scheduled messages — all queries scoped to tenant_id."""

import uuid

from fastapi import APIRouter, HTTPException, Query, status

from metercore.api.deps import Auth, Entitlements, Session
from metercore.models.scheduled_message import (
    MessageStatus,
    ScheduledMessageCreate,
    ScheduledMessageRead,
)
from metercore.services import scheduling
from metercore.services.entitlements import FEATURE_SMS_SEND

router = APIRouter(prefix="/scheduled-messages", tags=["scheduled-messages"])


@router.post("", response_model=ScheduledMessageRead, status_code=status.HTTP_201_CREATED)
async def create_scheduled_message(
    body: ScheduledMessageCreate,
    auth: Auth,
    session: Session,
    entitlements: Entitlements,
) -> ScheduledMessageRead:
    entitlements.require_feature(FEATURE_SMS_SEND)
    try:
        message = await scheduling.create_scheduled(session, auth.tenant_id, body, auth.user_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    return scheduling.to_read(message)


@router.get("", response_model=list[ScheduledMessageRead])
async def list_scheduled_messages(
    auth: Auth,
    session: Session,
    message_status: MessageStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[ScheduledMessageRead]:
    messages = await scheduling.list_scheduled(
        session, auth.tenant_id, status=message_status, limit=limit, offset=offset
    )
    return [scheduling.to_read(m) for m in messages]


@router.get("/{message_id}", response_model=ScheduledMessageRead)
async def get_scheduled_message(
    message_id: uuid.UUID, auth: Auth, session: Session
) -> ScheduledMessageRead:
    message = await scheduling.get_scheduled(session, auth.tenant_id, message_id)
    return scheduling.to_read(message)


@router.delete("/{message_id}", response_model=ScheduledMessageRead)
async def cancel_scheduled_message(
    message_id: uuid.UUID, auth: Auth, session: Session
) -> ScheduledMessageRead:
    message = await scheduling.cancel_scheduled(session, auth.tenant_id, message_id)
    return scheduling.to_read(message)
