"""
Governed mutations.

Every grant, revoke and definition change runs as one transaction:

    governance check -> store mutation -> audit record -> commit

A failure at any step rolls all three back. A governance denial is a decision,
not an error: its audit record is committed and the result says DENIED.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.database.engine import atomic
from permission_service.core.database.types import ensure_utc
from permission_service.core.errors import ConflictError
from permission_service.features.audit import writer as audit_writer
from permission_service.features.audit.models import AuditRecord, Decision
from permission_service.features.delegations.models import Delegation, DelegationScope
from permission_service.features.governance.enforcer import (
    GovernanceEnforcer,
    GovernanceTarget,
    Operation,
)
from permission_service.features.permissions import store
from permission_service.features.permissions.models import (
    GovernanceTier,
    Permission,
    ResourceGrant,
    Role,
    RoleGrant,
    RoleParentLink,
    UserRoleGrant,
)
from permission_service.features.users.service import get_live_user
from permission_service.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class MutationResult:
    """
    Outcome of a governed mutation.

    ``subject_id`` is the id of the row created, revoked or deleted. ``subject``
    is the row itself, absent when the result is replayed from the audit log.
    """
    decision: Decision
    audit_record_id: str
    reason: Optional[str] = None
    subject_id: Optional[str] = None
    subject: Any = None
    revoked_count: int = 0
    replayed: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.GRANTED

    @classmethod
    def replay(cls, audit_record: AuditRecord) -> "MutationResult":
        context = audit_record.context or {}
        return cls(
            decision=audit_record.decision,
            audit_record_id=audit_record.id,
            reason=audit_record.reason,
            subject_id=audit_record.resource_id,
            revoked_count=int(context.get("revoked_count", 0)),
            replayed=True,
        )


# apply() returns (subject row, subject id, extra audit context)
Apply = Callable[[], Awaitable[Tuple[Any, Optional[str], Dict[str, Any]]]]


async def run_mutation(
    db: AsyncSession,
    enforcer: GovernanceEnforcer,
    *,
    actor_id: str,
    at: datetime,
    target: GovernanceTarget,
    operation: Operation,
    action: str,
    resource_type: str,
    apply: Apply,
    request: Dict[str, Any],
    context: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> MutationResult:
    """
    Run ``apply`` under governance and audit, atomically.

    ``request`` names what is being changed (JSON values only); a retry with an
    ``idempotency_key`` that already committed for the same request returns the
    recorded outcome without touching the store again.

    ``at`` is the transaction's own instant. Governance reads the actor's
    capabilities as of ``at``, and ``at`` may not precede the latest recorded
    mutation, so history that is already recorded is never rewritten.
    """
    audit_context = dict(context or {})
    audit_context["at"] = at.isoformat()
    audit_context["request"] = request

    async with atomic(db):
        if idempotency_key is not None:
            prior = await audit_writer.find_replay(
                db, idempotency_key, action=action, actor_id=actor_id, request=request
            )
            if prior is not None:
                log.info(f"Replaying {action} for idempotency key {idempotency_key}")
                return MutationResult.replay(prior)

        latest = await audit_writer.latest_mutation_at(db)
        if latest is not None and at < latest:
            raise ConflictError(
                f"Cannot {action} at {at.isoformat()}: a mutation is already recorded at {latest.isoformat()}"
            )

        decision = await enforcer.authorize_grant(db, actor_id, target, operation, at)
        if not decision.allowed:
            audit_record = await audit_writer.record(
                db,
                occurred_at=at,
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                resource_id=target.target_id,
                decision=Decision.DENIED,
                reason=decision.reason.value,
                context=audit_context,
                idempotency_key=idempotency_key,
            )
            return MutationResult(
                decision=Decision.DENIED,
                audit_record_id=audit_record.id,
                reason=decision.reason.value,
                subject_id=target.target_id,
            )

        subject, subject_id, extra = await apply()
        audit_context.update(extra)
        audit_record = await audit_writer.record(
            db,
            occurred_at=at,
            actor_id=actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=subject_id,
            decision=Decision.GRANTED,
            context=audit_context,
            idempotency_key=idempotency_key,
        )

    return MutationResult(
        decision=Decision.GRANTED,
        audit_record_id=audit_record.id,
        subject_id=subject_id,
        subject=subject,
        revoked_count=int(extra.get("revoked_count", 0)),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class GrantService:
    """
    Governed grant, revoke and definition operations.

    Usage:
        service = GrantService()
        result = await service.grant_user_role(db, actor_id, user_id, role_id, at)
        if not result.allowed:
            ...  # result.reason is a stable code such as "protected_role"
    """

    def __init__(self, enforcer: Optional[GovernanceEnforcer] = None):
        self.enforcer = enforcer or GovernanceEnforcer()

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def _parent_target(
        self,
        db: AsyncSession,
        target: GovernanceTarget,
        parent_id: Optional[str],
    ) -> GovernanceTarget:
        """Inheriting from the root role is as protected as being it."""
        if parent_id is None:
            return target
        parent = await store.get_live_role(db, parent_id)
        if GovernanceTarget.for_role(parent).is_protected:
            return replace(target, tier=GovernanceTier.PROTECTED)
        return target

    async def define_role(
        self,
        db: AsyncSession,
        actor_id: str,
        name: str,
        at: datetime,
        *,
        description: Optional[str] = None,
        parent_id: Optional[str] = None,
        tier: GovernanceTier = GovernanceTier.BASIC,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        at = ensure_utc(at)
        target = GovernanceTarget.for_role_definition(name, tier, parent_id=parent_id)
        target = await self._parent_target(db, target, parent_id)

        async def apply():
            role = Role(name=name, description=description, tier=tier)
            db.add(role)
            await db.flush()
            if parent_id is not None:
                await store.insert_grant(
                    db, RoleParentLink, {"role_id": role.id}, at=at, actor_id=actor_id, parent_id=parent_id
                )
            return role, role.id, {"parent_id": parent_id}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=target, operation=Operation.DEFINE,
            action="define_role", resource_type="role", apply=apply,
            request={"name": name, "parent_id": parent_id},
            context={"name": name, "tier": tier.value},
            idempotency_key=idempotency_key,
        )

    async def set_role_parent(
        self,
        db: AsyncSession,
        actor_id: str,
        role_id: str,
        parent_id: Optional[str],
        at: datetime,
        *,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        """
        Re-parent a role from ``at`` on, or detach it when ``parent_id`` is None.

        The open parent link is closed at ``at`` and a new one opened, so
        queries for earlier instants still see the old parent. A parent that
        would close a cycle is denied as ``cyclic_role_parent``.
        """
        at = ensure_utc(at)
        role = await store.get_live_role(db, role_id)
        target = await self._parent_target(db, GovernanceTarget.for_role(role, parent_id=parent_id), parent_id)
        current = await store.current_parent_link(db, role_id)
        previous_parent_id = current.parent_id if current is not None else None

        async def apply():
            if current is not None:
                await store.revoke_grant(db, RoleParentLink, current.id, at=at, actor_id=actor_id)
            if parent_id is not None:
                await store.insert_grant(
                    db, RoleParentLink, {"role_id": role_id}, at=at, actor_id=actor_id, parent_id=parent_id
                )
            return role, role.id, {"previous_parent_id": previous_parent_id}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=target, operation=Operation.MODIFY,
            action="set_role_parent", resource_type="role", apply=apply,
            request={"role_id": role_id, "parent_id": parent_id},
            context={"parent_id": parent_id},
            idempotency_key=idempotency_key,
        )

    async def define_permission(
        self,
        db: AsyncSession,
        actor_id: str,
        resource_type: str,
        action: str,
        at: datetime,
        *,
        description: Optional[str] = None,
        tier: GovernanceTier = GovernanceTier.BASIC,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        at = ensure_utc(at)
        target = GovernanceTarget.for_permission_definition(tier)

        async def apply():
            permission = Permission(
                resource_type=resource_type,
                action=action,
                description=description,
                tier=tier,
            )
            db.add(permission)
            await db.flush()
            return permission, permission.id, {}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=target, operation=Operation.DEFINE,
            action="define_permission", resource_type="permission", apply=apply,
            request={"resource_type": resource_type, "action": action},
            context={"name": f"{resource_type}:{action}", "tier": tier.value},
            idempotency_key=idempotency_key,
        )

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def grant_role_permission(
        self,
        db: AsyncSession,
        actor_id: str,
        role_id: str,
        permission_id: str,
        at: datetime,
        *,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        at = ensure_utc(at)
        role = await store.get_live_role(db, role_id)
        permission = await store.get_live_permission(db, permission_id)
        key = {"role_id": role_id, "permission_id": permission_id}

        async def apply():
            grant = await store.insert_grant(db, RoleGrant, key, at=at, actor_id=actor_id)
            return grant, grant.id, {}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=GovernanceTarget.for_role_grant(role, permission),
            operation=Operation.GRANT, action="grant_role_permission", resource_type="role_grant",
            apply=apply, request=key, context={**key, "permission": permission.name},
            idempotency_key=idempotency_key,
        )

    async def grant_user_role(
        self,
        db: AsyncSession,
        actor_id: str,
        user_id: str,
        role_id: str,
        at: datetime,
        *,
        scope_id: str = "",
        expires_at: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        at = ensure_utc(at)
        expires_at = ensure_utc(expires_at) if expires_at is not None else None
        await get_live_user(db, user_id)
        role = await store.get_live_role(db, role_id)
        key = {"user_id": user_id, "role_id": role_id, "scope_id": scope_id}

        async def apply():
            grant = await store.insert_grant(
                db, UserRoleGrant, key, at=at, actor_id=actor_id, expires_at=expires_at
            )
            return grant, grant.id, {}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=GovernanceTarget.for_user_role_grant(role, user_id),
            operation=Operation.GRANT, action="grant_user_role", resource_type="user_role_grant",
            apply=apply, request=key, context={**key, "role": role.name, "expires_at": _iso(expires_at)},
            idempotency_key=idempotency_key,
        )

    async def grant_resource(
        self,
        db: AsyncSession,
        actor_id: str,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        at: datetime,
        *,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        at = ensure_utc(at)
        expires_at = ensure_utc(expires_at) if expires_at is not None else None
        await get_live_user(db, user_id)
        key = {
            "user_id": user_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
        }

        async def apply():
            grant = await store.insert_grant(
                db, ResourceGrant, key, at=at, actor_id=actor_id, expires_at=expires_at, reason=reason
            )
            return grant, grant.id, {}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=GovernanceTarget.for_resource_grant(user_id),
            operation=Operation.GRANT, action="grant_resource", resource_type="resource_grant",
            apply=apply, request=key, context={**key, "expires_at": _iso(expires_at), "reason": reason},
            idempotency_key=idempotency_key,
        )

    async def delegate(
        self,
        db: AsyncSession,
        actor_id: str,
        delegator_id: str,
        delegatee_id: str,
        scope: DelegationScope,
        at: datetime,
        *,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        resource_type: Optional[str] = None,
        resource_ids: Optional[List[str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        at = ensure_utc(at)
        valid_from = ensure_utc(valid_from) if valid_from is not None else at
        valid_until = ensure_utc(valid_until) if valid_until is not None else None
        await get_live_user(db, delegator_id)
        await get_live_user(db, delegatee_id)
        key = {
            "delegator_id": delegator_id,
            "delegatee_id": delegatee_id,
            "scope": scope,
            "resource_type": resource_type,
        }

        async def apply():
            delegation = await store.insert_grant(
                db, Delegation, key, at=at, actor_id=actor_id,
                valid_from=valid_from, valid_until=valid_until, resource_ids=resource_ids,
            )
            return delegation, delegation.id, {}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=GovernanceTarget.for_delegation(delegator_id, delegatee_id),
            operation=Operation.GRANT, action="delegate", resource_type="delegation",
            apply=apply, request={**key, "scope": scope.value},
            context={
                "delegator_id": delegator_id,
                "delegatee_id": delegatee_id,
                "scope": scope.value,
                "valid_from": _iso(valid_from),
                "valid_until": _iso(valid_until),
                "resource_type": resource_type,
                "resource_ids": resource_ids,
            },
            idempotency_key=idempotency_key,
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def _revocation_target(self, db: AsyncSession, grant: Any) -> GovernanceTarget:
        if isinstance(grant, RoleGrant):
            role = await db.get(Role, grant.role_id)
            permission = await db.get(Permission, grant.permission_id)
            return GovernanceTarget.for_role_grant(role, permission)
        if isinstance(grant, UserRoleGrant):
            role = await db.get(Role, grant.role_id)
            return GovernanceTarget.for_user_role_grant(role, grant.user_id)
        if isinstance(grant, ResourceGrant):
            return GovernanceTarget.for_resource_grant(grant.user_id)
        return GovernanceTarget.for_delegation(grant.delegator_id, grant.delegatee_id)

    async def revoke(
        self,
        db: AsyncSession,
        actor_id: str,
        kind: str,
        grant_id: str,
        at: datetime,
        *,
        idempotency_key: Optional[str] = None,
    ) -> MutationResult:
        """
        Revoke one grant by id. ``kind`` is one of ``store.GRANT_KINDS``.

        The row keeps its history: ``revoked_at``/``revoked_by`` are set, and a
        later grant for the same key creates a new row.
        """
        at = ensure_utc(at)
        model = store.GRANT_KINDS.get(kind)
        if model is None:
            raise ValueError(f"Unknown grant kind {kind!r}")
        grant = await store.get_grant(db, model, grant_id)
        target = await self._revocation_target(db, grant)

        async def apply():
            revoked = await store.revoke_grant(db, model, grant_id, at=at, actor_id=actor_id)
            return revoked, revoked.id, {}

        return await run_mutation(
            db, self.enforcer,
            actor_id=actor_id, at=at, target=replace(target, target_id=grant_id),
            operation=Operation.REVOKE, action=f"revoke_{kind}", resource_type=kind,
            apply=apply, request={"kind": kind, "grant_id": grant_id},
            idempotency_key=idempotency_key,
        )
