"""
Temporal Assignment Store.

Query shapes the engine needs over the temporal tables:
- active-grant lookup by subject at an instant
- open (non-revoked) row lookup by unique key
- insert with "at most one open row per key" discipline
- single-row revoke and bulk revoke by referencing column

Nothing here commits. Callers wrap mutations in ``atomic``; the partial unique
indexes on each table reject a racing second open row at flush time, which
``atomic`` reports as ConflictError.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.database.base import TemporalGrantMixin
from permission_service.core.errors import ConflictError, InvariantViolationError, NotFoundError
from permission_service.features.delegations.models import Delegation
from permission_service.features.permissions.models import (
    Permission,
    ResourceGrant,
    Role,
    RoleGrant,
    RoleParentLink,
    UserRoleGrant,
)
from permission_service.utils import get_logger


log = get_logger(__name__)


# Columns that identify "the same assignment". At most one open row per key.
GRANT_KEYS: Dict[Type[TemporalGrantMixin], Tuple[str, ...]] = {
    RoleGrant: ("role_id", "permission_id"),
    UserRoleGrant: ("user_id", "role_id", "scope_id"),
    ResourceGrant: ("user_id", "resource_type", "resource_id", "action"),
    Delegation: ("delegator_id", "delegatee_id", "scope", "resource_type"),
    RoleParentLink: ("role_id",),
}

# Public names used by the transport and the audit log
GRANT_KINDS: Dict[str, Type[TemporalGrantMixin]] = {
    "role_grant": RoleGrant,
    "user_role_grant": UserRoleGrant,
    "resource_grant": ResourceGrant,
    "delegation": Delegation,
}


# Parent links change through set_role_parent, never through a plain revoke
_TEMPORAL_KINDS: Dict[str, Type[TemporalGrantMixin]] = {**GRANT_KINDS, "role_parent_link": RoleParentLink}


def grant_kind(model: Type[TemporalGrantMixin]) -> str:
    for kind, candidate in _TEMPORAL_KINDS.items():
        if candidate is model:
            return kind
    raise InvariantViolationError(f"{model.__name__} is not a temporal grant model")


# ============================================================================
# Definitions
# ============================================================================

async def get_live_role(db: AsyncSession, role_id: str) -> Role:
    stmt = select(Role).where(Role.id == role_id, Role.not_deleted())
    result = await db.execute(stmt)
    role = result.scalar_one_or_none()
    if role is None:
        raise NotFoundError("role", role_id)
    return role


async def get_live_permission(db: AsyncSession, permission_id: str) -> Permission:
    stmt = select(Permission).where(Permission.id == permission_id, Permission.not_deleted())
    result = await db.execute(stmt)
    permission = result.scalar_one_or_none()
    if permission is None:
        raise NotFoundError("permission", permission_id)
    return permission


async def get_role_by_name(db: AsyncSession, name: str) -> Optional[Role]:
    stmt = select(Role).where(Role.name == name, Role.not_deleted())
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_permission_by_name(db: AsyncSession, resource_type: str, action: str) -> Optional[Permission]:
    stmt = select(Permission).where(
        Permission.resource_type == resource_type,
        Permission.action == action,
        Permission.not_deleted(),
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def role_ancestry(db: AsyncSession, role_id: str, at: datetime) -> List[str]:
    """
    Return ``role_id`` followed by its ancestors as of ``at``, nearest first.

    Parent links are read as they stood at ``at``. The walk stops at a role
    that was already soft-deleted at ``at``, so a deleted role neither confers
    nor passes on permissions from then on.

    Raises InvariantViolationError if the stored parent chain loops; writes
    are supposed to make that impossible.
    """
    chain: List[str] = []
    seen = set()
    current: Optional[str] = role_id
    while current is not None:
        if current in seen:
            raise InvariantViolationError(f"Role hierarchy cycle detected at role {current}")
        seen.add(current)
        result = await db.execute(select(Role.deleted_at).where(Role.id == current))
        deleted_at = result.scalar_one_or_none()
        if deleted_at is not None and deleted_at <= at:
            break
        chain.append(current)
        result = await db.execute(
            select(RoleParentLink.parent_id).where(RoleParentLink.role_id == current, RoleParentLink.active_at(at))
        )
        current = result.scalar_one_or_none()
    return chain


async def current_parent_link(db: AsyncSession, role_id: str) -> Optional[RoleParentLink]:
    return await open_grant(db, RoleParentLink, {"role_id": role_id})


# ============================================================================
# Active-grant lookups
# ============================================================================

async def active_user_role_grants(db: AsyncSession, user_id: str, at: datetime) -> Sequence[UserRoleGrant]:
    stmt = (
        select(UserRoleGrant)
        .where(UserRoleGrant.user_id == user_id, UserRoleGrant.active_at(at))
        .order_by(UserRoleGrant.granted_at, UserRoleGrant.id)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


async def active_role_permissions(
    db: AsyncSession,
    role_ids: Sequence[str],
    at: datetime,
) -> Sequence[Tuple[RoleGrant, Permission]]:
    """RoleGrants active at ``at`` for any of ``role_ids``, with their permissions."""
    if not role_ids:
        return []
    stmt = (
        select(RoleGrant, Permission)
        .join(Permission, Permission.id == RoleGrant.permission_id)
        .where(RoleGrant.role_id.in_(list(role_ids)), RoleGrant.active_at(at))
        .order_by(RoleGrant.granted_at, RoleGrant.id)
    )
    result = await db.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def active_resource_grants(
    db: AsyncSession,
    user_id: str,
    at: datetime,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
) -> Sequence[ResourceGrant]:
    stmt = select(ResourceGrant).where(ResourceGrant.user_id == user_id, ResourceGrant.active_at(at))
    if resource_type is not None:
        stmt = stmt.where(ResourceGrant.resource_type == resource_type)
    if resource_id is not None:
        stmt = stmt.where(ResourceGrant.resource_id == resource_id)
    if action is not None:
        stmt = stmt.where(ResourceGrant.action == action)
    stmt = stmt.order_by(ResourceGrant.granted_at, ResourceGrant.id)
    result = await db.execute(stmt)
    return result.scalars().all()


async def active_delegations_to(db: AsyncSession, delegatee_id: str, at: datetime) -> Sequence[Delegation]:
    stmt = (
        select(Delegation)
        .where(Delegation.delegatee_id == delegatee_id, Delegation.active_at(at))
        .order_by(Delegation.valid_from, Delegation.id)
    )
    result = await db.execute(stmt)
    return result.scalars().all()


# ============================================================================
# Mutations
# ============================================================================

async def open_grant(
    db: AsyncSession,
    model: Type[TemporalGrantMixin],
    key: Dict[str, Any],
) -> Optional[TemporalGrantMixin]:
    """The non-revoked row for ``key``, if any (it may be expired or future-dated)."""
    stmt = select(model).where(model.revoked_at.is_(None))
    for column in GRANT_KEYS[model]:
        stmt = stmt.where(getattr(model, column) == key[column])
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def insert_grant(
    db: AsyncSession,
    model: Type[TemporalGrantMixin],
    key: Dict[str, Any],
    *,
    at: datetime,
    actor_id: Optional[str],
    **attributes: Any,
) -> TemporalGrantMixin:
    """
    Create a new grant row for ``key`` starting at ``at``.

    An open row that has already expired is closed first so the key can be
    reused. An open row that is active or still pending raises ConflictError.
    """
    existing = await open_grant(db, model, key)
    if existing is not None:
        expiry = existing.valid_until()
        if expiry is None or expiry > at:
            raise ConflictError(
                f"An active {grant_kind(model)} already exists for {key}"
            )
        existing.revoked_at = at
        existing.revoked_by_id = actor_id
        await db.flush()
        log.debug(f"Closed expired {grant_kind(model)} {existing.id} before re-grant")

    grant = model(**key, **attributes, granted_at=at, granted_by_id=actor_id)
    db.add(grant)
    await db.flush()
    log.info(f"Granted {grant_kind(model)} {grant.id} {key} by {actor_id}")
    return grant


async def get_grant(db: AsyncSession, model: Type[TemporalGrantMixin], grant_id: str) -> TemporalGrantMixin:
    grant = await db.get(model, grant_id)
    if grant is None:
        raise NotFoundError(grant_kind(model), grant_id)
    return grant


async def revoke_grant(
    db: AsyncSession,
    model: Type[TemporalGrantMixin],
    grant_id: str,
    *,
    at: datetime,
    actor_id: Optional[str],
) -> TemporalGrantMixin:
    """
    Set ``revoked_at``/``revoked_by`` on an open grant.

    Raises NotFoundError if the grant does not exist or is already revoked,
    InvariantViolationError if ``at`` precedes the grant.
    """
    grant = await get_grant(db, model, grant_id)
    if not grant.is_open():
        raise NotFoundError(f"open {grant_kind(model)}", grant_id)
    if at < grant.granted_at:
        raise InvariantViolationError(
            f"Cannot revoke {grant_kind(model)} {grant_id} at {at.isoformat()}, "
            f"before it was granted at {grant.granted_at.isoformat()}"
        )
    grant.revoked_at = at
    grant.revoked_by_id = actor_id
    await db.flush()
    log.info(f"Revoked {grant_kind(model)} {grant_id} by {actor_id}")
    return grant


async def revoke_referencing(
    db: AsyncSession,
    model: Type[TemporalGrantMixin],
    column: str,
    value: str,
    *,
    at: datetime,
    actor_id: Optional[str],
) -> int:
    """Bulk-revoke every open, unexpired row whose ``column`` equals ``value``."""
    stmt = select(model).where(getattr(model, column) == value, model.open_and_unexpired(at))
    result = await db.execute(stmt)
    rows = result.scalars().all()
    for row in rows:
        row.revoked_at = at
        row.revoked_by_id = actor_id
    await db.flush()
    return len(rows)
