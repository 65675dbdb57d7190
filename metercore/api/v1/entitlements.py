"""Entitlement queries for the caller's tenant."""

import uuid

from fastapi import APIRouter
from pydantic import BaseModel, Field

from metercore.api.deps import Entitlements
from metercore.services.entitlements import LimitUsage

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class FeatureMatrix(BaseModel):
    plan_id: uuid.UUID | None
    plan_slug: str | None
    plan_version: int | None
    is_superuser: bool
    features: dict[str, bool]


class LimitCheck(BaseModel):
    current: int = Field(ge=0)
    requested: int = Field(default=1, ge=1)


@router.get("/features", response_model=FeatureMatrix)
async def get_features(entitlements: Entitlements) -> FeatureMatrix:
    snapshot = entitlements.snapshot
    return FeatureMatrix(
        plan_id=snapshot.plan_id,
        plan_slug=snapshot.slug,
        plan_version=snapshot.version,
        is_superuser=entitlements.is_superuser,
        features=entitlements.features(),
    )


@router.get("/limits", response_model=list[LimitUsage])
async def get_limits(entitlements: Entitlements) -> list[LimitUsage]:
    """Ceilings for every known limit key, metered against zero usage."""
    return entitlements.limits()


@router.post("/limits/{key}/check", response_model=LimitUsage)
async def check_limit(key: str, body: LimitCheck, entitlements: Entitlements) -> LimitUsage:
    """Gate a create in the caller's own resource layer; 403 when over the ceiling."""
    return entitlements.check_limit(key, body.current, body.requested)
