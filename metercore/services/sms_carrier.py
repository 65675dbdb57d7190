"""Outbound SMS carrier client.

The carrier accepts one batch per request and answers with a receipt per
recipient. Anything that stops the batch as a whole (timeout, connection
error, non-2xx, unreadable body) surfaces as DispatchTransientFailure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from metercore.core.config import get_settings
from metercore.core.errors import DispatchTransientFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CarrierReceipt:
    phone: str
    accepted: bool
    message_id: str | None = None
    reason: str | None = None


async def send_sms_batch(sender_id: str, body: str, phones: list[str]) -> list[CarrierReceipt]:
    settings = get_settings()
    request = {"sender": sender_id, "message": body, "recipients": phones}
    try:
        async with httpx.AsyncClient(timeout=settings.sms_timeout_seconds) as client:
            resp = await client.post(
                settings.sms_api_url,
                json=request,
                headers={"Authorization": f"Bearer {settings.sms_api_key}"},
            )
            resp.raise_for_status()
            payload = resp.json()
    except httpx.HTTPStatusError as exc:
        logger.warning("Carrier rejected batch of %d: HTTP %s", len(phones), exc.response.status_code)
        raise DispatchTransientFailure(
            f"SMS carrier rejected the batch (HTTP {exc.response.status_code})"
        ) from exc
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Carrier unreachable for batch of %d: %s", len(phones), exc)
        raise DispatchTransientFailure(f"SMS carrier unreachable: {exc}") from exc

    if not isinstance(payload, dict):
        logger.warning("Carrier returned an unexpected body for batch of %d", len(phones))
        raise DispatchTransientFailure("SMS carrier returned an unreadable response")

    receipts: list[CarrierReceipt] = []
    for item in payload.get("messages") or []:
        if not isinstance(item, dict):
            continue
        status = str(item.get("status", "")).lower()
        receipts.append(
            CarrierReceipt(
                phone=str(item.get("to", "")),
                accepted=status in ("submitted", "queued", "accepted", "sent"),
                message_id=item.get("message_id"),
                reason=item.get("reason"),
            )
        )
    return receipts
