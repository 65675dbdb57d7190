"""Shared test fixtures — async SQLite in-memory DB, test client, tenant factory."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("GATEWAY_SECRET_KEY", "test-gateway-secret")
os.environ.setdefault("SMS_API_URL", "https://carrier.test/v1/sms")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import metercore.models  # noqa: F401, E402
from metercore.core import cache  # noqa: E402
from metercore.core.database import get_session  # noqa: E402
from metercore.core.security import SUPERUSER_ROLE, create_jwt  # noqa: E402
from metercore.main import app  # noqa: E402
from metercore.models.base import dump_json  # noqa: E402
from metercore.models.credit import TransactionKind  # noqa: E402
from metercore.models.plan import Plan  # noqa: E402
from metercore.models.tenant import Tenant  # noqa: E402
from metercore.models.wallet import Wallet  # noqa: E402
from metercore.services import ledger  # noqa: E402

SMS_FEATURES = {"smsSend": True, "smsHistory": True, "smsCredits": True}


@pytest.fixture(scope="session")
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture(scope="session")
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
async def client(session) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session override."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    cache.clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    cache.clear()


@pytest.fixture
def make_tenant(session):
    """Factory: a tenant on a fresh plan, optionally seeded with credits and wallet funds."""

    async def _make(
        *,
        features: dict | None = None,
        limits: dict | None = None,
        credits: int = 0,
        wallet: str | None = None,
        with_plan: bool = True,
    ) -> Tenant:
        suffix = uuid.uuid4().hex[:10]
        plan = None
        if with_plan:
            plan = Plan(
                slug=f"plan-{suffix}",
                name=f"Plan {suffix}",
                features=dump_json(SMS_FEATURES if features is None else features),
                limits=dump_json(limits or {}),
            )
            session.add(plan)
            await session.flush()

        tenant = Tenant(
            name=f"Tenant {suffix}",
            slug=f"tenant-{suffix}",
            email=f"billing@{suffix}.example.com",
            plan_id=plan.id if plan else None,
        )
        session.add(tenant)
        if wallet is not None:
            session.add(Wallet(tenant_id=tenant.id, balance=Decimal(wallet)))
        await session.commit()

        if credits:
            await ledger.apply_transaction(
                session, tenant.id, TransactionKind.GRANT, credits, reference=f"seed:{tenant.id}"
            )
        return tenant

    return _make


@pytest.fixture
def auth_headers():
    """Factory: bearer headers for a user of ``tenant_id``."""

    def _headers(tenant_id: uuid.UUID, role: str = "member") -> dict:
        token = create_jwt(str(uuid.uuid4()), str(tenant_id), role=role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def superuser_headers(auth_headers):
    def _headers(tenant_id: uuid.UUID) -> dict:
        return auth_headers(tenant_id, role=SUPERUSER_ROLE)

    return _headers
