"""FastAPI dependencies for authentication, tenant and entitlement resolution.

Sessions are issued by the identity service; this API only verifies the
bearer JWT and reads ``sub`` (user), ``tid`` (tenant) and ``role`` from it.
"""

import uuid
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from metercore.core.database import get_session
from metercore.core.security import SUPERUSER_ROLE, decode_jwt
from metercore.services.entitlements import EntitlementResolver, resolve

bearer_scheme = HTTPBearer()


class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("tenant_id", "user_id", "user_role")

    def __init__(self, tenant_id: uuid.UUID, user_id: uuid.UUID, user_role: str) -> None:
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.user_role = user_role

    @property
    def is_superuser(self) -> bool:
        return self.user_role == SUPERUSER_ROLE


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> AuthContext:
    """Decode the bearer JWT and extract tenant, user and role."""
    try:
        payload = decode_jwt(credentials.credentials)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc

    try:
        return AuthContext(
            tenant_id=uuid.UUID(payload["tid"]),
            user_id=uuid.UUID(payload["sub"]),
            user_role=payload.get("role", "member"),
        )
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        ) from exc


def require_superuser(auth: AuthContext) -> None:
    """Raise 403 unless the caller is a platform super admin."""
    if not auth.is_superuser:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only platform administrators can perform this action",
        )


async def get_entitlements(
    auth: Annotated[AuthContext, Depends(get_auth_context)],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> EntitlementResolver:
    return await resolve(session, auth.tenant_id, auth.user_role)


# Typed shorthand for use in route signatures
Auth = Annotated[AuthContext, Depends(get_auth_context)]
Session = Annotated[AsyncSession, Depends(get_session)]
Entitlements = Annotated[EntitlementResolver, Depends(get_entitlements)]
