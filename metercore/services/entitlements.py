"""Entitlement resolution — feature gates and numeric ceilings per tenant.

Decisions are a pure function of (plan snapshot, role). A feature or limit
key absent from the plan grants nothing: features resolve to ``False`` and
limits to :data:`NO_ACCESS`, never to :data:`UNLIMITED`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import ClassVar

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from metercore.core import cache
from metercore.core.config import get_settings
from metercore.core.errors import FeatureNotEntitled, LimitExceeded
from metercore.core.security import SUPERUSER_ROLE
from metercore.models.base import load_json
from metercore.models.plan import Plan
from metercore.models.tenant import Tenant

logger = logging.getLogger(__name__)

FEATURE_SMS_SEND = "smsSend"
FEATURE_SMS_HISTORY = "smsHistory"
FEATURE_SMS_CREDITS = "smsCredits"

LIMIT_SMS_CREDITS = "smsCredits"

KNOWN_FEATURES: tuple[str, ...] = (
    "memberManagement",
    "branchManagement",
    "departmentManagement",
    "eventManagement",
    "attendanceTracking",
    "financialManagement",
    "financeWallet",
    "emailCommunications",
    "smsCommunications",
    "bulkMessaging",
    "smsAutomation",
    FEATURE_SMS_SEND,
    FEATURE_SMS_HISTORY,
    "smsAnalytics",
    "smsTemplates",
    FEATURE_SMS_CREDITS,
    "smsSenderId",
    "advancedReports",
    "dataExport",
    "apiAccess",
    "customBranding",
    "socialMedia",
)

KNOWN_LIMITS: tuple[str, ...] = (
    "members",
    "branches",
    "events",
    "sermons",
    "storage",
    "users",
    "departments",
    LIMIT_SMS_CREDITS,
    "emailCredits",
)

NEAR_LIMIT_PERCENT = 60


# ── Limit values ─────────────────────────────────────────────

@dataclass(frozen=True)
class Bounded:
    """A finite ceiling. ``configured=False`` marks a key missing from the plan."""

    ceiling: int
    configured: bool = True
    is_unlimited: ClassVar[bool] = False

    def permits(self, current: int, requested: int = 1) -> bool:
        return current + requested <= self.ceiling


@dataclass(frozen=True)
class Unlimited:
    is_unlimited: ClassVar[bool] = True

    def permits(self, current: int, requested: int = 1) -> bool:
        return True


UNLIMITED = Unlimited()
NO_ACCESS = Bounded(0, configured=False)

Limit = Bounded | Unlimited


class LimitUsage(BaseModel):
    key: str
    limit: int | None
    is_unlimited: bool
    configured: bool
    current: int
    remaining: int | None
    percentage_used: int
    is_near_limit: bool
    can_create: bool


def limit_usage(key: str, limit: Limit, current: int) -> LimitUsage:
    """Usage meter for ``current`` units against ``limit``."""
    if isinstance(limit, Unlimited):
        return LimitUsage(
            key=key,
            limit=None,
            is_unlimited=True,
            configured=True,
            current=current,
            remaining=None,
            percentage_used=0,
            is_near_limit=False,
            can_create=True,
        )
    ceiling = limit.ceiling
    percentage = round(current / ceiling * 100) if ceiling > 0 else 100
    return LimitUsage(
        key=key,
        limit=ceiling,
        is_unlimited=False,
        configured=limit.configured,
        current=current,
        remaining=max(0, ceiling - current),
        percentage_used=percentage,
        is_near_limit=percentage >= NEAR_LIMIT_PERCENT,
        can_create=current < ceiling,
    )


# ── Plan snapshots ───────────────────────────────────────────

@dataclass(frozen=True)
class PlanSnapshot:
    plan_id: uuid.UUID | None = None
    slug: str | None = None
    version: int | None = None
    features: Mapping[str, bool] = field(default_factory=dict)
    limits: Mapping[str, int | None] = field(default_factory=dict)

    @classmethod
    def from_plan(cls, plan: Plan) -> PlanSnapshot:
        return cls(
            plan_id=plan.id,
            slug=plan.slug,
            version=plan.version,
            features=dict(load_json(plan.features) or {}),
            limits=dict(load_json(plan.limits) or {}),
        )


NO_PLAN = PlanSnapshot()


def _cache_key(tenant_id: uuid.UUID) -> tuple[str, uuid.UUID]:
    return ("plan_snapshot", tenant_id)


async def load_plan_snapshot(session: AsyncSession, tenant_id: uuid.UUID) -> PlanSnapshot:
    """Return the tenant's plan snapshot, served from cache when fresh."""
    ttl = get_settings().plan_cache_ttl_seconds
    cached = cache.get(_cache_key(tenant_id), ttl=ttl)
    if cached is not None:
        return cached

    snapshot = NO_PLAN
    tenant = await session.get(Tenant, tenant_id, populate_existing=True)
    if tenant is not None and tenant.plan_id is not None:
        plan = await session.get(Plan, tenant.plan_id)
        if plan is not None:
            snapshot = PlanSnapshot.from_plan(plan)
    cache.put(_cache_key(tenant_id), snapshot)
    return snapshot


def invalidate_plan_snapshot(tenant_id: uuid.UUID) -> None:
    cache.invalidate(_cache_key(tenant_id))


# ── Resolver ─────────────────────────────────────────────────

class EntitlementResolver:
    """Answers feature and limit questions for one tenant and acting role."""

    def __init__(self, snapshot: PlanSnapshot, role: str) -> None:
        self.snapshot = snapshot
        self.role = role

    @property
    def is_superuser(self) -> bool:
        return self.role == SUPERUSER_ROLE

    def has_feature(self, feature: str) -> bool:
        if self.is_superuser:
            return True
        return self.snapshot.features.get(feature) is True

    def limit_for(self, key: str) -> Limit:
        if self.is_superuser:
            return UNLIMITED
        if key not in self.snapshot.limits:
            return NO_ACCESS
        value = self.snapshot.limits[key]
        if value is None:
            return UNLIMITED
        return Bounded(int(value))

    def features(self) -> dict[str, bool]:
        keys = set(KNOWN_FEATURES) | set(self.snapshot.features)
        return {key: self.has_feature(key) for key in sorted(keys)}

    def limits(self, usage: Mapping[str, int] | None = None) -> list[LimitUsage]:
        usage = usage or {}
        keys = set(KNOWN_LIMITS) | set(self.snapshot.limits)
        return [limit_usage(key, self.limit_for(key), usage.get(key, 0)) for key in sorted(keys)]

    def require_feature(self, feature: str) -> None:
        if not self.has_feature(feature):
            logger.info(
                "Feature %s denied for plan %s (role=%s)", feature, self.snapshot.slug, self.role
            )
            raise FeatureNotEntitled(feature, plan=self.snapshot.slug)

    def check_limit(self, key: str, current: int, requested: int = 1) -> LimitUsage:
        limit = self.limit_for(key)
        if not limit.permits(current, requested):
            raise LimitExceeded(key, ceiling=limit.ceiling, current=current, requested=requested)
        return limit_usage(key, limit, current)


async def resolve(session: AsyncSession, tenant_id: uuid.UUID, role: str) -> EntitlementResolver:
    snapshot = await load_plan_snapshot(session, tenant_id)
    return EntitlementResolver(snapshot, role)
