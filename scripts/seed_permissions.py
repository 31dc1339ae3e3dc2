"""
Seed script to populate the governance permissions and the root role.

The root role is protected: no call through the service can grant, revoke or
modify it, so this script is the only way it comes to exist. Run it after
database initialization to create:
- The governance capability permissions (governance:assign_basic, ...)
- The audit:read permission
- The protected root role holding *:*
- Optionally, a bootstrap user holding the root role

Usage:
    python -m scripts.seed_permissions
    python -m scripts.seed_permissions --bootstrap-user <external-id> --email admin@example.com
"""
import argparse
import asyncio
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core import config
from permission_service.core.database.engine import AsyncSessionLocal, atomic, init_db
from permission_service.features.audit import writer as audit_writer
from permission_service.features.audit.models import Decision
from permission_service.features.governance.enforcer import GOVERNANCE_RESOURCE, Capability
from permission_service.features.permissions import store
from permission_service.features.permissions.models import (
    WILDCARD,
    GovernanceTier,
    Permission,
    Role,
    RoleGrant,
    UserRoleGrant,
)
from permission_service.features.users.service import sync_user
from permission_service.utils import get_logger


log = get_logger(__name__)


DEFAULT_PERMISSIONS = [
    (GOVERNANCE_RESOURCE, Capability.ASSIGN_BASIC.value, GovernanceTier.ELEVATED,
     "Grant and revoke basic-tier roles and permissions"),
    (GOVERNANCE_RESOURCE, Capability.ASSIGN_ELEVATED.value, GovernanceTier.ELEVATED,
     "Grant and revoke elevated-tier roles and permissions, and delegate for others"),
    (GOVERNANCE_RESOURCE, Capability.DEFINE_ROLES.value, GovernanceTier.ELEVATED,
     "Define roles and permissions and change role inheritance"),
    (GOVERNANCE_RESOURCE, Capability.MANAGE_USERS.value, GovernanceTier.ELEVATED,
     "Soft-delete users"),
    ("audit", "read", GovernanceTier.BASIC, "View audit logs and other users' permissions"),
    (WILDCARD, WILDCARD, GovernanceTier.PROTECTED, "Every action on every resource"),
]


async def seed_permissions(db: AsyncSession) -> Dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}

    for resource_type, action, tier, description in DEFAULT_PERMISSIONS:
        existing = await store.get_permission_by_name(db, resource_type, action)
        if existing:
            log.debug(f"Permission '{existing.name}' already exists, skipping")
            permissions_map[existing.name] = existing
            continue

        permission = Permission(
            resource_type=resource_type,
            action=action,
            description=description,
            tier=tier,
        )
        db.add(permission)
        await db.flush()
        permissions_map[permission.name] = permission
        log.info(f"Created permission: {permission.name}")

    return permissions_map


async def seed_root_role(db: AsyncSession, permissions_map: Dict[str, Permission], at: datetime) -> Role:
    """Create the protected root role and grant it *:*."""
    role = await store.get_role_by_name(db, config.ROOT_ROLE_NAME)
    if role is None:
        role = Role(
            name=config.ROOT_ROLE_NAME,
            description="Reserved root role with every permission",
            tier=GovernanceTier.PROTECTED,
        )
        db.add(role)
        await db.flush()
        log.info(f"Created root role: {role.name}")
    else:
        log.debug(f"Root role '{role.name}' already exists")

    everything = permissions_map[f"{WILDCARD}:{WILDCARD}"]
    key = {"role_id": role.id, "permission_id": everything.id}
    if await store.open_grant(db, RoleGrant, key) is None:
        await store.insert_grant(db, RoleGrant, key, at=at, actor_id=None)
    return role


async def seed_bootstrap_user(
    db: AsyncSession,
    role: Role,
    external_id: str,
    at: datetime,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> None:
    """Give one identity the root role so it can administer everything else."""
    user = await sync_user(db, external_id, email=email, name=name)
    key = {"user_id": user.id, "role_id": role.id, "scope_id": ""}
    if await store.open_grant(db, UserRoleGrant, key) is not None:
        log.debug(f"User {user.id} already holds {role.name}")
        return
    await store.insert_grant(db, UserRoleGrant, key, at=at, actor_id=None)
    log.info(f"Granted {role.name} to bootstrap user {user.id} ({external_id})")


async def main(bootstrap_user: Optional[str] = None, email: Optional[str] = None, name: Optional[str] = None):
    """Main seeding function."""
    log.info("Starting permission seeding...")
    await init_db()

    at = datetime.now(timezone.utc)
    async with AsyncSessionLocal() as db:
        async with atomic(db):
            permissions_map = await seed_permissions(db)
            role = await seed_root_role(db, permissions_map, at)
            if bootstrap_user:
                await seed_bootstrap_user(db, role, bootstrap_user, at, email=email, name=name)
            await audit_writer.record(
                db,
                occurred_at=at,
                actor_id=None,
                action="seed",
                resource_type="role",
                resource_id=role.id,
                decision=Decision.GRANTED,
                context={
                    "permissions": sorted(permissions_map),
                    "bootstrap_user": bootstrap_user,
                },
            )

    log.info("Permission seeding completed successfully!")
    log.info(f"Created/verified {len(permissions_map)} permissions and the {config.ROOT_ROLE_NAME} role")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--bootstrap-user", help="Identity-provider id of the first administrator")
    parser.add_argument("--email")
    parser.add_argument("--name")
    args = parser.parse_args()
    asyncio.run(main(args.bootstrap_user, email=args.email, name=args.name))
