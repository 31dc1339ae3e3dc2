"""Shared fixtures: a fresh SQLite database per test and helpers to seed it directly."""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from permission_service.core import config
from permission_service.core.database.engine import create_all
from permission_service.features.delegations.models import Delegation, DelegationScope
from permission_service.features.governance.enforcer import Capability, GovernanceEnforcer
from permission_service.features.governance.service import GrantService
from permission_service.features.permissions import store
from permission_service.features.permissions.engine import EffectivePermissionEngine
from permission_service.features.permissions.models import (
    WILDCARD,
    GovernanceTier,
    Permission,
    ResourceGrant,
    Role,
    RoleGrant,
    RoleParentLink,
    UserRoleGrant,
)
from permission_service.features.permissions.point_in_time import PointInTimeQueryService
from permission_service.features.revocation.cascade import CascadingRevocationEngine
from permission_service.features.users.models import User
from permission_service.features.users.service import sync_user


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
BEFORE = T0 - timedelta(days=30)


def day(n: int) -> datetime:
    """``n`` days after T0."""
    return T0 + timedelta(days=n)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture()
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'permissions.db'}", poolclass=NullPool)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

class Seeder:
    """Writes straight to the store, bypassing governance, the way the seed script does."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def user(self, external_id: str) -> User:
        user = await sync_user(self.db, external_id, email=f"{external_id}@example.com")
        await self.db.commit()
        return user

    async def role(
        self,
        name: str,
        *,
        tier: GovernanceTier = GovernanceTier.BASIC,
        parent: Optional[Role] = None,
    ) -> Role:
        role = Role(name=name, tier=tier)
        self.db.add(role)
        await self.db.commit()
        if parent is not None:
            await self.parent_link(role, parent)
        return role

    async def permission(
        self,
        resource_type: str,
        action: str,
        *,
        tier: GovernanceTier = GovernanceTier.BASIC,
    ) -> Permission:
        permission = Permission(resource_type=resource_type, action=action, tier=tier)
        self.db.add(permission)
        await self.db.commit()
        return permission

    async def _grant(self, model, key, at, **attributes):
        grant = await store.insert_grant(self.db, model, key, at=at, actor_id=None, **attributes)
        await self.db.commit()
        return grant

    async def parent_link(self, role: Role, parent: Role, at: datetime = BEFORE) -> RoleParentLink:
        return await self._grant(RoleParentLink, {"role_id": role.id}, at, parent_id=parent.id)

    async def role_grant(self, role: Role, permission: Permission, at: datetime = BEFORE) -> RoleGrant:
        return await self._grant(RoleGrant, {"role_id": role.id, "permission_id": permission.id}, at)

    async def user_role(
        self,
        user: User,
        role: Role,
        at: datetime = BEFORE,
        *,
        scope_id: str = "",
        expires_at: Optional[datetime] = None,
    ) -> UserRoleGrant:
        key = {"user_id": user.id, "role_id": role.id, "scope_id": scope_id}
        return await self._grant(UserRoleGrant, key, at, expires_at=expires_at)

    async def resource_grant(
        self,
        user: User,
        resource_type: str,
        resource_id: str,
        action: str,
        at: datetime = BEFORE,
        *,
        expires_at: Optional[datetime] = None,
    ) -> ResourceGrant:
        key = {"user_id": user.id, "resource_type": resource_type, "resource_id": resource_id, "action": action}
        return await self._grant(ResourceGrant, key, at, expires_at=expires_at)

    async def delegation(
        self,
        delegator: User,
        delegatee: User,
        scope: DelegationScope = DelegationScope.FULL,
        at: datetime = BEFORE,
        *,
        valid_until: Optional[datetime] = None,
        resource_type: Optional[str] = None,
        resource_ids: Optional[List[str]] = None,
    ) -> Delegation:
        key = {
            "delegator_id": delegator.id,
            "delegatee_id": delegatee.id,
            "scope": scope,
            "resource_type": resource_type,
        }
        return await self._grant(
            Delegation, key, at,
            valid_from=at, valid_until=valid_until, resource_ids=resource_ids,
        )

    async def role_with(self, name: str, *permissions: Permission, **kwargs) -> Role:
        role = await self.role(name, **kwargs)
        for permission in permissions:
            await self.role_grant(role, permission)
        return role


@pytest.fixture()
def seed(db) -> Seeder:
    return Seeder(db)


@pytest.fixture()
async def governance_permissions(seed):
    """One Permission per governance capability."""
    return {
        capability: await seed.permission("governance", capability.value, tier=GovernanceTier.ELEVATED)
        for capability in Capability
    }


@pytest.fixture()
async def admin(seed, governance_permissions) -> User:
    """Holds every governance capability plus audit:read."""
    user = await seed.user("admin")
    audit_read = await seed.permission("audit", "read")
    role = await seed.role_with(
        "governance_admin", *governance_permissions.values(), audit_read, tier=GovernanceTier.ELEVATED
    )
    await seed.user_role(user, role)
    return user


@pytest.fixture()
async def basic_admin(seed, governance_permissions) -> User:
    """Can assign basic-tier roles only."""
    user = await seed.user("basic-admin")
    role = await seed.role_with("basic_assigner", governance_permissions[Capability.ASSIGN_BASIC])
    await seed.user_role(user, role)
    return user


@pytest.fixture()
async def root_role(seed) -> Role:
    everything = await seed.permission(WILDCARD, WILDCARD, tier=GovernanceTier.PROTECTED)
    return await seed.role_with(config.ROOT_ROLE_NAME, everything, tier=GovernanceTier.PROTECTED)


@pytest.fixture()
async def superuser(seed, root_role) -> User:
    """Holds the root role, and therefore *:*."""
    user = await seed.user("root")
    await seed.user_role(user, root_role)
    return user


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine() -> EffectivePermissionEngine:
    return EffectivePermissionEngine(max_delegation_depth=1)


@pytest.fixture()
def enforcer(engine) -> GovernanceEnforcer:
    return GovernanceEnforcer(engine)


@pytest.fixture()
def grants(enforcer) -> GrantService:
    return GrantService(enforcer)


@pytest.fixture()
def cascade(enforcer) -> CascadingRevocationEngine:
    return CascadingRevocationEngine(enforcer)


@pytest.fixture()
def point_in_time(engine) -> PointInTimeQueryService:
    return PointInTimeQueryService(engine)
