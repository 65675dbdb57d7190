"""Tests for entitlement resolution and the entitlement endpoints."""

import uuid
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from httpx import AsyncClient
from sqlalchemy import update

from metercore.core import cache
from metercore.core.config import get_settings
from metercore.core.errors import FeatureNotEntitled, LimitExceeded
from metercore.core.security import SUPERUSER_ROLE
from metercore.models.base import dump_json
from metercore.models.plan import Plan
from metercore.models.tenant import Tenant
from metercore.services.entitlements import (
    NO_ACCESS,
    NO_PLAN,
    UNLIMITED,
    Bounded,
    EntitlementResolver,
    PlanSnapshot,
    limit_usage,
    resolve,
)


def _resolver(features=None, limits=None, role="member") -> EntitlementResolver:
    snapshot = PlanSnapshot(
        plan_id=uuid.uuid4(),
        slug="starter",
        version=1,
        features=features or {},
        limits=limits or {},
    )
    return EntitlementResolver(snapshot, role)


# ── Resolver ─────────────────────────────────────────────────

def test_missing_feature_key_is_denied():
    resolver = _resolver(features={"smsSend": True})
    assert resolver.has_feature("smsSend") is True
    assert resolver.has_feature("smsCredits") is False


def test_truthy_non_bool_feature_value_is_denied():
    resolver = _resolver(features={"smsSend": "yes"})
    assert resolver.has_feature("smsSend") is False


def test_missing_limit_key_is_no_access_not_unlimited():
    resolver = _resolver(limits={"members": 100})
    limit = resolver.limit_for("branches")
    assert limit == NO_ACCESS
    assert limit.is_unlimited is False
    assert limit.configured is False
    assert not limit.permits(0, 1)


def test_null_limit_is_unlimited_and_integer_is_bounded():
    resolver = _resolver(limits={"members": None, "branches": 3})
    assert resolver.limit_for("members") is UNLIMITED
    assert resolver.limit_for("branches") == Bounded(3)


def test_superuser_bypasses_everything():
    resolver = EntitlementResolver(NO_PLAN, SUPERUSER_ROLE)
    assert resolver.has_feature("anythingAtAll") is True
    assert resolver.limit_for("members") is UNLIMITED
    resolver.require_feature("smsCredits")


def test_require_feature_raises_with_upgrade_hint():
    resolver = _resolver(features={"smsSend": False})
    with pytest.raises(FeatureNotEntitled) as exc_info:
        resolver.require_feature("smsSend")
    body = exc_info.value.to_dict()
    assert body["feature"] == "smsSend"
    assert body["upgrade_required"] is True
    assert body["plan"] == "starter"


def test_check_limit_allows_up_to_ceiling():
    resolver = _resolver(limits={"members": 10})
    usage = resolver.check_limit("members", current=9, requested=1)
    assert usage.remaining == 1
    with pytest.raises(LimitExceeded):
        resolver.check_limit("members", current=10, requested=1)


def test_limit_usage_meter():
    usage = limit_usage("members", Bounded(10), 6)
    assert usage.percentage_used == 60
    assert usage.is_near_limit is True
    assert usage.can_create is True

    usage = limit_usage("members", Bounded(10), 5)
    assert usage.is_near_limit is False

    usage = limit_usage("members", UNLIMITED, 5000)
    assert usage.is_unlimited is True
    assert usage.remaining is None
    assert usage.can_create is True

    usage = limit_usage("branches", NO_ACCESS, 0)
    assert usage.can_create is False
    assert usage.configured is False


@pytest.mark.asyncio
async def test_tenant_without_plan_gets_nothing(session, make_tenant):
    tenant = await make_tenant(with_plan=False)
    resolver = await resolve(session, tenant.id, "member")
    assert resolver.snapshot == NO_PLAN
    assert resolver.has_feature("smsSend") is False
    assert resolver.limit_for("smsCredits") == NO_ACCESS


# ── API ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_uninvalidated_snapshot_expires_after_ttl(session, make_tenant):
    """A plan change made by another process is picked up once the cached snapshot ages out."""
    tenant = await make_tenant(features={"smsSend": False})
    tenant_id = tenant.id
    cache.clear()
    clock = {"now": 1000.0}

    with patch("metercore.core.cache.time", SimpleNamespace(monotonic=lambda: clock["now"])):
        assert (await resolve(session, tenant_id, "member")).has_feature("smsSend") is False

        upgraded = Plan(slug=f"up-{uuid.uuid4().hex[:8]}", name="Up", features=dump_json({"smsSend": True}))
        session.add(upgraded)
        await session.flush()
        await session.execute(update(Tenant).where(Tenant.id == tenant_id).values(plan_id=upgraded.id))
        await session.commit()

        assert (await resolve(session, tenant_id, "member")).has_feature("smsSend") is False

        clock["now"] += get_settings().plan_cache_ttl_seconds + 1
        assert (await resolve(session, tenant_id, "member")).has_feature("smsSend") is True
    cache.clear()


@pytest.mark.asyncio
async def test_features_endpoint(client: AsyncClient, make_tenant, auth_headers):
    tenant = await make_tenant(features={"smsSend": True, "smsHistory": False})

    resp = await client.get("/v1/entitlements/features", headers=auth_headers(tenant.id))
    assert resp.status_code == 200
    data = resp.json()
    assert data["features"]["smsSend"] is True
    assert data["features"]["smsHistory"] is False
    assert data["features"]["smsCredits"] is False
    assert data["is_superuser"] is False


@pytest.mark.asyncio
async def test_limit_check_endpoint(client: AsyncClient, make_tenant, auth_headers):
    tenant = await make_tenant(limits={"members": 5})
    headers = auth_headers(tenant.id)

    resp = await client.post("/v1/entitlements/limits/members/check", json={"current": 3}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["remaining"] == 2

    resp = await client.post("/v1/entitlements/limits/members/check", json={"current": 5}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"] == "limit_exceeded"
    assert resp.json()["upgrade_required"] is True

    resp = await client.post("/v1/entitlements/limits/branches/check", json={"current": 0}, headers=headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_limits_endpoint_lists_known_keys(client: AsyncClient, make_tenant, auth_headers):
    tenant = await make_tenant(limits={"members": None})

    resp = await client.get("/v1/entitlements/limits", headers=auth_headers(tenant.id))
    assert resp.status_code == 200
    by_key = {item["key"]: item for item in resp.json()}
    assert by_key["members"]["is_unlimited"] is True
    assert by_key["branches"]["configured"] is False


@pytest.mark.asyncio
async def test_missing_token_rejected(client: AsyncClient):
    resp = await client.get("/v1/entitlements/features")
    assert resp.status_code in (401, 403)


@pytest.mark.asyncio
async def test_garbage_token_rejected(client: AsyncClient):
    resp = await client.get(
        "/v1/entitlements/features", headers={"Authorization": "Bearer not.a.jwt"}
    )
    assert resp.status_code == 401
