"""Credit balance, transaction log and reconciliation."""

import uuid

from fastapi import APIRouter, Query

from metercore.api.deps import Auth, Session, require_superuser
from metercore.models.credit import CreditSummary, CreditTransactionRead, ReconciliationReport
from metercore.services import ledger

router = APIRouter(prefix="/credits", tags=["credits"])


class CreditOverview(CreditSummary):
    recent_transactions: list[CreditTransactionRead] = []


@router.get("", response_model=CreditOverview)
async def get_credits(auth: Auth, session: Session) -> CreditOverview:
    summary = await ledger.get_summary(session, auth.tenant_id)
    recent = await ledger.list_transactions(session, auth.tenant_id, limit=10)
    return CreditOverview(
        **summary.model_dump(),
        recent_transactions=[CreditTransactionRead.model_validate(t, from_attributes=True) for t in recent],
    )


@router.get("/transactions", response_model=list[CreditTransactionRead])
async def list_transactions(
    auth: Auth,
    session: Session,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CreditTransactionRead]:
    entries = await ledger.list_transactions(session, auth.tenant_id, limit=limit, offset=offset)
    return [CreditTransactionRead.model_validate(t, from_attributes=True) for t in entries]


@router.get("/reconcile", response_model=ReconciliationReport)
async def reconcile(
    auth: Auth,
    session: Session,
    tenant_id: uuid.UUID | None = None,
) -> ReconciliationReport:
    require_superuser(auth)
    return await ledger.reconcile(session, tenant_id or auth.tenant_id)
