"""
FastAPI dependencies for the permission engine's HTTP adapter.

Implements:
- Caller authentication from a bearer JWT
- Engine/service providers (overridable in tests)
- The one place the adapter reads the clock
"""
from datetime import datetime, timezone
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core import config
from permission_service.core.database.engine import get_db
from permission_service.core.database.types import ensure_utc
from permission_service.features.governance.enforcer import GovernanceEnforcer
from permission_service.features.governance.service import GrantService
from permission_service.features.permissions.engine import EffectivePermissionEngine
from permission_service.features.permissions.point_in_time import PointInTimeQueryService
from permission_service.features.revocation.cascade import CascadingRevocationEngine
from permission_service.features.users.models import User
from permission_service.features.users.service import get_user_by_external_id
from permission_service.utils import get_logger


log = get_logger(__name__)

security = HTTPBearer()

_engine = EffectivePermissionEngine()
_enforcer = GovernanceEnforcer(_engine)
_grant_service = GrantService(_enforcer)
_cascade = CascadingRevocationEngine(_enforcer)
_point_in_time = PointInTimeQueryService(_engine)


def get_engine() -> EffectivePermissionEngine:
    return _engine


def get_grant_service() -> GrantService:
    return _grant_service


def get_cascade() -> CascadingRevocationEngine:
    return _cascade


def get_point_in_time() -> PointInTimeQueryService:
    return _point_in_time


def resolve_instant(at: Optional[datetime]) -> datetime:
    """Default a request's instant to now. The engine itself never reads the clock."""
    if at is None:
        return datetime.now(timezone.utc)
    return ensure_utc(at)


def decode_token(token: str) -> dict:
    """
    Verify a bearer JWT and return its payload.

    Raises:
        HTTPException: If the token is invalid, expired, or no secret is configured
    """
    if not config.JWT_SECRET:
        log.error("JWT_SECRET is not configured; rejecting bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Resolve the authenticated caller to a live user.

    The token's ``sub`` claim is the identity provider's user id.
    """
    payload = decode_token(credentials.credentials)
    external_id = payload.get("sub")
    if not external_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await get_user_by_external_id(db, external_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown or deleted user",
        )
    return user


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
