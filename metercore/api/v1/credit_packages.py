"""Credit package catalog."""

from fastapi import APIRouter, HTTPException, status
from sqlmodel import select

from metercore.api.deps import Auth, Session, require_superuser
from metercore.models.credit_package import CreditPackage, CreditPackageCreate, CreditPackageRead
from metercore.services import purchases

router = APIRouter(prefix="/credit-packages", tags=["credits"])


@router.get("", response_model=list[CreditPackageRead])
async def list_packages(auth: Auth, session: Session) -> list[CreditPackageRead]:
    packages = await purchases.list_packages(session)
    return [purchases.package_to_read(p) for p in packages]


@router.post("", response_model=CreditPackageRead, status_code=status.HTTP_201_CREATED)
async def create_package(
    body: CreditPackageCreate,
    auth: Auth,
    session: Session,
) -> CreditPackageRead:
    require_superuser(auth)

    existing = await session.execute(select(CreditPackage).where(CreditPackage.slug == body.slug))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A credit package with this slug already exists",
        )

    package = await purchases.create_package(session, body)
    return purchases.package_to_read(package)
