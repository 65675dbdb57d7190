"""Plan catalog and tenant subscriptions (platform administrators only)."""

import uuid

from fastapi import APIRouter, HTTPException, status

from metercore.api.deps import Auth, Session, require_superuser
from metercore.models.plan import PlanCreate, PlanRead
from metercore.models.tenant import SubscriptionRead, SubscriptionUpdate
from metercore.services import subscriptions

router = APIRouter(tags=["plans"])


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
async def publish_plan(body: PlanCreate, auth: Auth, session: Session) -> PlanRead:
    require_superuser(auth)
    try:
        plan = await subscriptions.publish_plan(session, body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    return subscriptions.plan_to_read(plan)


@router.get("/plans", response_model=list[PlanRead])
async def list_plans(auth: Auth, session: Session, slug: str | None = None) -> list[PlanRead]:
    require_superuser(auth)
    plans = await subscriptions.list_plans(session, slug)
    return [subscriptions.plan_to_read(p) for p in plans]


@router.get("/tenants/{tenant_id}/subscription", response_model=SubscriptionRead)
async def get_subscription(tenant_id: uuid.UUID, auth: Auth, session: Session) -> SubscriptionRead:
    if tenant_id != auth.tenant_id:
        require_superuser(auth)
    return await subscriptions.get_subscription(session, tenant_id)


@router.put("/tenants/{tenant_id}/subscription", response_model=SubscriptionRead)
async def assign_plan(
    tenant_id: uuid.UUID,
    body: SubscriptionUpdate,
    auth: Auth,
    session: Session,
) -> SubscriptionRead:
    require_superuser(auth)
    return await subscriptions.assign_plan(session, tenant_id, body.plan_id)
