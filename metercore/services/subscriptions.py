"""Plan catalog and tenant subscriptions.

Plans are immutable: publishing under an existing slug creates the next
version. Each subscribed tenant receives its plan's ``smsCredits`` allowance
once per calendar month as an idempotent ledger grant.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from metercore.core.errors import NotFound
from metercore.models.base import dump_json, load_json, utcnow
from metercore.models.credit import TransactionKind
from metercore.models.plan import Plan, PlanCreate, PlanRead
from metercore.models.tenant import SubscriptionRead, Tenant
from metercore.services import ledger
from metercore.services.entitlements import LIMIT_SMS_CREDITS, invalidate_plan_snapshot

logger = logging.getLogger(__name__)


def current_period(now: datetime | None = None) -> str:
    return (now or utcnow()).strftime("%Y-%m")


def grant_reference(tenant_id: uuid.UUID, plan_id: uuid.UUID, period: str) -> str:
    return f"plan:{tenant_id}:{plan_id}:{period}"


def plan_to_read(plan: Plan) -> PlanRead:
    data = plan.model_dump()
    data["features"] = load_json(plan.features) or {}
    data["limits"] = load_json(plan.limits) or {}
    return PlanRead(**data)


# ── Plan catalog ─────────────────────────────────────────────

async def publish_plan(session: AsyncSession, body: PlanCreate) -> Plan:
    """Publish ``body`` as the next version of its slug.

    Raises ValueError for negative ceilings or a non-finite credit allowance.
    """
    for key, value in body.limits.items():
        if value is not None and value < 0:
            raise ValueError(f"Limit {key} cannot be negative")
    if LIMIT_SMS_CREDITS in body.limits and body.limits[LIMIT_SMS_CREDITS] is None:
        raise ValueError(f"{LIMIT_SMS_CREDITS} must be a finite allowance")

    result = await session.execute(
        select(func.max(Plan.version)).where(Plan.slug == body.slug)
    )
    latest = result.scalar_one_or_none() or 0

    plan = Plan(
        slug=body.slug,
        version=latest + 1,
        name=body.name,
        description=body.description,
        features=dump_json(body.features),
        limits=dump_json(body.limits),
    )
    session.add(plan)
    await session.commit()
    await session.refresh(plan)
    logger.info("Published plan %s v%d (%s)", plan.slug, plan.version, plan.id)
    return plan


async def list_plans(session: AsyncSession, slug: str | None = None) -> list[Plan]:
    stmt = select(Plan)
    if slug:
        stmt = stmt.where(Plan.slug == slug)
    result = await session.execute(stmt.order_by(Plan.slug, Plan.version.desc()))  # type: ignore[union-attr]
    return list(result.scalars().all())


async def get_plan(session: AsyncSession, plan_id: uuid.UUID) -> Plan:
    plan = await session.get(Plan, plan_id)
    if plan is None:
        raise NotFound("Plan not found", plan_id=str(plan_id))
    return plan


# ── Subscriptions ────────────────────────────────────────────

async def get_tenant(session: AsyncSession, tenant_id: uuid.UUID) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFound("Tenant not found", tenant_id=str(tenant_id))
    return tenant


async def grant_plan_credits(
    session: AsyncSession, tenant_id: uuid.UUID, plan: Plan, period: str | None = None
) -> int:
    """Grant the plan's monthly allowance. Returns credits newly granted (0 on replay)."""
    plan_id, plan_name = plan.id, plan.name
    allowance = (load_json(plan.limits) or {}).get(LIMIT_SMS_CREDITS)
    if not isinstance(allowance, int) or allowance <= 0:
        return 0

    period = period or current_period()
    result = await ledger.apply_transaction(
        session,
        tenant_id,
        TransactionKind.GRANT,
        allowance,
        reference=grant_reference(tenant_id, plan_id, period),
        description=f"{plan_name} allowance for {period}",
    )
    return allowance if result.created else 0


async def assign_plan(
    session: AsyncSession, tenant_id: uuid.UUID, plan_id: uuid.UUID
) -> SubscriptionRead:
    tenant = await get_tenant(session, tenant_id)
    plan = await get_plan(session, plan_id)

    assigned_at = utcnow()
    tenant.plan_id = plan.id
    tenant.plan_assigned_at = assigned_at
    tenant.updated_at = assigned_at
    session.add(tenant)
    await session.commit()
    invalidate_plan_snapshot(tenant_id)
    logger.info("Tenant %s moved to plan %s v%d", tenant_id, plan.slug, plan.version)

    subscription = SubscriptionRead(
        tenant_id=tenant_id,
        plan_id=plan.id,
        plan_slug=plan.slug,
        plan_version=plan.version,
        plan_assigned_at=assigned_at,
    )
    subscription.granted_credits = await grant_plan_credits(session, tenant_id, plan)
    return subscription


async def get_subscription(session: AsyncSession, tenant_id: uuid.UUID) -> SubscriptionRead:
    tenant = await get_tenant(session, tenant_id)
    plan = await session.get(Plan, tenant.plan_id) if tenant.plan_id else None
    return SubscriptionRead(
        tenant_id=tenant.id,
        plan_id=tenant.plan_id,
        plan_slug=plan.slug if plan else None,
        plan_version=plan.version if plan else None,
        plan_assigned_at=tenant.plan_assigned_at,
    )


async def grant_all_period_credits(session: AsyncSession, period: str | None = None) -> dict:
    """Grant the current period's allowance to every active subscribed tenant."""
    period = period or current_period()
    stmt = select(Tenant, Plan).join(Plan, Tenant.plan_id == Plan.id).where(Tenant.is_active.is_(True))  # type: ignore[arg-type,union-attr]
    result = await session.execute(stmt)
    pairs = [(tenant.id, plan.id) for tenant, plan in result.all()]

    granted = 0
    total_credits = 0
    for tenant_id, plan_id in pairs:
        plan = await get_plan(session, plan_id)
        credits = await grant_plan_credits(session, tenant_id, plan, period)
        if credits:
            granted += 1
            total_credits += credits
    logger.info(
        "Period %s grants: %d/%d tenants credited (%d credits)", period, granted, len(pairs), total_credits
    )
    return {"period": period, "tenants": len(pairs), "granted": granted, "credits": total_credits}
