"""
Identity-provider sync.

The identity provider owns user accounts; this module only mirrors them into
the ``users`` table so grants have a stable subject id.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.errors import NotFoundError
from permission_service.features.users.models import User
from permission_service.utils import get_logger


log = get_logger(__name__)


async def sync_user(
    db: AsyncSession,
    external_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> User:
    """
    Create or update the live user mirroring ``external_id``.

    A soft-deleted user is never revived: a returning identity gets a new row.
    The caller commits.
    """
    user = await get_user_by_external_id(db, external_id)
    if user is None:
        user = User(external_id=external_id, email=email, name=name)
        db.add(user)
        await db.flush()
        log.info(f"Synced new user {user.id} for external id {external_id}")
        return user

    if email is not None:
        user.email = email
    if name is not None:
        user.name = name
    await db.flush()
    return user


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> Optional[User]:
    stmt = select(User).where(User.external_id == external_id, User.not_deleted())
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_live_user(db: AsyncSession, user_id: str) -> User:
    """Fetch a non-deleted user or raise NotFoundError."""
    stmt = select(User).where(User.id == user_id, User.not_deleted())
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("user", user_id)
    return user
