"""
Cascading Revocation Engine.

Soft-deleting a User, Role or Permission revokes every open assignment that
references it, in the same transaction as the deletion and its audit record.
Which assignments depend on which entity is data (``CASCADE_RULES``), so a new
cascading relationship is one more table row.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.database.base import SoftDeleteMixin, TemporalGrantMixin
from permission_service.core.database.types import ensure_utc
from permission_service.core.errors import NotFoundError
from permission_service.features.audit import writer as audit_writer
from permission_service.features.delegations.models import Delegation
from permission_service.features.governance.enforcer import GovernanceEnforcer, GovernanceTarget, Operation
from permission_service.features.governance.service import MutationResult, run_mutation
from permission_service.features.permissions import store
from permission_service.features.permissions.models import (
    Permission,
    ResourceGrant,
    Role,
    RoleGrant,
    RoleParentLink,
    UserRoleGrant,
)
from permission_service.features.users.models import User
from permission_service.utils import get_logger


log = get_logger(__name__)


class EntityKind(str, enum.Enum):
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"


@dataclass(frozen=True)
class CascadeRule:
    """Revoke open ``model`` rows whose ``column`` references the deleted entity."""
    model: Type[TemporalGrantMixin]
    column: str

    @property
    def label(self) -> str:
        return f"{store.grant_kind(self.model)}.{self.column}"


ENTITY_MODELS: Dict[EntityKind, Type[SoftDeleteMixin]] = {
    EntityKind.USER: User,
    EntityKind.ROLE: Role,
    EntityKind.PERMISSION: Permission,
}

CASCADE_RULES: Dict[EntityKind, Tuple[CascadeRule, ...]] = {
    EntityKind.USER: (
        CascadeRule(UserRoleGrant, "user_id"),
        CascadeRule(ResourceGrant, "user_id"),
        CascadeRule(Delegation, "delegator_id"),
        CascadeRule(Delegation, "delegatee_id"),
    ),
    EntityKind.ROLE: (
        CascadeRule(UserRoleGrant, "role_id"),
        CascadeRule(RoleGrant, "role_id"),
        CascadeRule(RoleParentLink, "role_id"),
        CascadeRule(RoleParentLink, "parent_id"),
    ),
    EntityKind.PERMISSION: (
        CascadeRule(RoleGrant, "permission_id"),
    ),
}


class CascadingRevocationEngine:
    """
    Usage:
        cascade = CascadingRevocationEngine()
        result = await cascade.soft_delete(db, EntityKind.ROLE, role_id, actor_id, at)
        result.revoked_count  # dependents revoked in the same transaction
    """

    def __init__(self, enforcer: Optional[GovernanceEnforcer] = None):
        self.enforcer = enforcer or GovernanceEnforcer()

    async def _load_live(self, db: AsyncSession, kind: EntityKind, entity_id: str) -> SoftDeleteMixin:
        model = ENTITY_MODELS[kind]
        stmt = select(model).where(model.id == entity_id, model.not_deleted())
        result = await db.execute(stmt)
        entity = result.scalar_one_or_none()
        if entity is None:
            raise NotFoundError(kind.value, entity_id)
        return entity

    def _target(self, kind: EntityKind, entity: SoftDeleteMixin) -> GovernanceTarget:
        if kind is EntityKind.ROLE:
            return GovernanceTarget.for_role(entity)
        if kind is EntityKind.PERMISSION:
            return GovernanceTarget.for_permission(entity)
        return GovernanceTarget.for_user(entity.id)

    async def revoke_dependents(
        self,
        db: AsyncSession,
        kind: EntityKind,
        entity_id: str,
        *,
        actor_id: Optional[str],
        at: datetime,
    ) -> Dict[str, int]:
        """Apply every cascade rule for ``kind``. Returns revoked-row counts per rule."""
        counts: Dict[str, int] = {}
        for rule in CASCADE_RULES[kind]:
            counts[rule.label] = await store.revoke_referencing(
                db, rule.model, rule.column, entity_id, at=at, actor_id=actor_id
            )
        return counts

    async def soft_delete(
        self,
        db: AsyncSession,
        kind: EntityKind,
        entity_id: str,
        actor_id: str,
        at: datetime,
        *,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        """
        Soft-delete an entity and revoke its dependents atomically.

        ``revoked_count`` on the result is the number of assignments revoked.
        Raises NotFoundError if the entity is unknown or already deleted.
        """
        kind = EntityKind(kind)
        at = ensure_utc(at)
        request = {"entity_kind": kind.value, "entity_id": entity_id}
        if idempotency_key is not None:
            # The entity is already gone on a retry, so replay before loading it
            prior = await audit_writer.find_replay(
                db, idempotency_key, action="soft_delete", actor_id=actor_id, request=request
            )
            if prior is not None:
                return MutationResult.replay(prior)
        entity = await self._load_live(db, kind, entity_id)

        async def apply():
            counts = await self.revoke_dependents(db, kind, entity_id, actor_id=actor_id, at=at)
            entity.deleted_at = at
            entity.deleted_by_id = actor_id
            await db.flush()
            revoked_count = sum(counts.values())
            log.info(f"Soft-deleted {kind.value} {entity_id}, revoked {revoked_count} dependent grant(s): {counts}")
            return entity, entity_id, {"revoked": counts, "revoked_count": revoked_count}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=self._target(kind, entity),
            operation=Operation.DELETE, action="soft_delete", resource_type=kind.value,
            apply=apply, request=request, idempotency_key=idempotency_key,
        )
