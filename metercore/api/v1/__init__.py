"""V1 API router aggregation."""

from fastapi import APIRouter

from metercore.api.v1.credit_packages import router as credit_packages_router
from metercore.api.v1.credits import router as credits_router
from metercore.api.v1.entitlements import router as entitlements_router
from metercore.api.v1.messages import router as messages_router
from metercore.api.v1.plans import router as plans_router
from metercore.api.v1.purchases import router as purchases_router
from metercore.api.v1.scheduled_messages import router as scheduled_messages_router
from metercore.api.v1.system import router as system_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(entitlements_router)
v1_router.include_router(credits_router)
v1_router.include_router(credit_packages_router)
v1_router.include_router(purchases_router)
v1_router.include_router(messages_router)
v1_router.include_router(scheduled_messages_router)
v1_router.include_router(plans_router)
v1_router.include_router(system_router)
