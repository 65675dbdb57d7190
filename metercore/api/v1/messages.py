"""Immediate sends, message history and carrier delivery reports."""

import uuid
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from metercore.api.deps import Auth, Entitlements, Session
from metercore.models.base import as_naive_utc
from metercore.models.message_log import (
    DeliveryReport,
    MessageLogDetail,
    MessageLogRead,
    MessageType,
    OverallStatus,
    SendMessageRequest,
)
from metercore.services import delivery, messaging
from metercore.services.entitlements import FEATURE_SMS_HISTORY, FEATURE_SMS_SEND

router = APIRouter(prefix="/messages", tags=["messages"])


class MessageStatistics(BaseModel):
    total_messages: int
    total_recipients: int
    delivered: int
    failed: int
    pending: int
    credits_used: int
    delivery_rate: float


class DeliveryReportAck(BaseModel):
    received: bool
    applied: bool


@router.post("", response_model=MessageLogDetail, status_code=status.HTTP_201_CREATED)
async def send_message(
    body: SendMessageRequest,
    auth: Auth,
    session: Session,
    entitlements: Entitlements,
) -> MessageLogDetail:
    entitlements.require_feature(FEATURE_SMS_SEND)
    try:
        log = await messaging.send_now(session, auth.tenant_id, body.body, body.phones, body.category)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    return await messaging.log_detail(session, log)


@router.get("", response_model=list[MessageLogRead])
async def list_messages(
    auth: Auth,
    session: Session,
    entitlements: Entitlements,
    overall_status: OverallStatus | None = None,
    message_type: MessageType | None = None,
    since: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[MessageLogRead]:
    entitlements.require_feature(FEATURE_SMS_HISTORY)
    logs = await messaging.list_logs(
        session,
        auth.tenant_id,
        status=overall_status,
        message_type=message_type,
        since=as_naive_utc(since) if since else None,
        limit=limit,
        offset=offset,
    )
    return [MessageLogRead.model_validate(log, from_attributes=True) for log in logs]


@router.get("/statistics", response_model=MessageStatistics)
async def message_statistics(
    auth: Auth, session: Session, entitlements: Entitlements
) -> MessageStatistics:
    entitlements.require_feature(FEATURE_SMS_HISTORY)
    return MessageStatistics(**await messaging.statistics(session, auth.tenant_id))


@router.post("/delivery-reports", response_model=DeliveryReportAck)
async def delivery_report(body: DeliveryReport, session: Session) -> DeliveryReportAck:
    """Carrier status callback. Stale, duplicate and unknown reports are acknowledged."""
    event = await delivery.ingest_report(
        session,
        body.provider_message_id,
        body.status,
        reason=body.reason,
        payload=body.payload,
    )
    return DeliveryReportAck(received=True, applied=bool(event and event.applied))


@router.get("/{log_id}", response_model=MessageLogDetail)
async def get_message(
    log_id: uuid.UUID, auth: Auth, session: Session, entitlements: Entitlements
) -> MessageLogDetail:
    entitlements.require_feature(FEATURE_SMS_HISTORY)
    log = await messaging.get_log(session, auth.tenant_id, log_id)
    return await messaging.log_detail(session, log)
