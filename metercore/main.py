"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from metercore import __version__
from metercore.api.v1 import v1_router
from metercore.core.config import get_settings
from metercore.core.database import init_db
from metercore.core.errors import (
    DispatchTransientFailure,
    FeatureNotEntitled,
    GatewaySignatureInvalid,
    IdempotencyConflict,
    InsufficientCredits,
    InvalidStateTransition,
    LedgerContention,
    MeterCoreError,
    NotFound,
    PaymentRailFailure,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases
_STATUS_CODES: list[tuple[type[MeterCoreError], int]] = [
    (FeatureNotEntitled, 403),
    (InsufficientCredits, 402),
    (PaymentRailFailure, 402),
    (InvalidStateTransition, 409),
    (IdempotencyConflict, 409),
    (NotFound, 404),
    (GatewaySignatureInvalid, 400),
    (DispatchTransientFailure, 503),
    (LedgerContention, 503),
]


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: ensure tables exist (use Alembic in production)
    await init_db()
    yield


app = FastAPI(
    title="MeterCore",
    version=__version__,
    description="Entitlements, SMS credit ledger, purchases and scheduled dispatch",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
_settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Domain errors ────────────────────────────────────────────

def status_code_for(exc: MeterCoreError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 400


@app.exception_handler(MeterCoreError)
async def meter_core_error_handler(request: Request, exc: MeterCoreError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.warning("%s %s -> %d: %s", request.method, request.url.path, code, exc.message)
    return JSONResponse(status_code=code, content=exc.to_dict())


# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
