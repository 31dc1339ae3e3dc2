"""
Governance Enforcer.

Decides whether an actor may grant, revoke, define, modify or delete a role,
permission, assignment or user. Decisions depend only on the actor's own
effective permissions at the operation instant and on the target's tier:

- protected: the reserved root role. Never mutable through this interface,
  whatever the actor holds; it is seeded directly into the store.
- elevated: needs ``governance:assign_elevated``
- basic: needs ``governance:assign_basic`` (or the elevated capability)

Defining roles and permissions needs ``governance:define_roles``; deleting users
needs ``governance:manage_users``.

The actor's capabilities are read through the caller's session, inside the
transaction that performs the mutation.
"""
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core import config
from permission_service.features.permissions import store
from permission_service.features.permissions.engine import EffectivePermissionEngine
from permission_service.features.permissions.models import WILDCARD, GovernanceTier, Permission, Role
from permission_service.utils import get_logger


log = get_logger(__name__)

GOVERNANCE_RESOURCE = "governance"


class Capability(str, enum.Enum):
    ASSIGN_BASIC = "assign_basic"
    ASSIGN_ELEVATED = "assign_elevated"
    DEFINE_ROLES = "define_roles"
    MANAGE_USERS = "manage_users"

    @property
    def permission_name(self) -> str:
        return f"{GOVERNANCE_RESOURCE}:{self.value}"


class Operation(str, enum.Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    DEFINE = "define"
    MODIFY = "modify"
    DELETE = "delete"


class DenialReason(str, enum.Enum):
    PROTECTED_ROLE = "protected_role"
    INSUFFICIENT_CAPABILITY = "insufficient_capability"
    CYCLIC_ROLE_PARENT = "cyclic_role_parent"
    SELF_DELEGATION = "self_delegation"


@dataclass(frozen=True)
class GovernanceDecision:
    allowed: bool
    reason: Optional[DenialReason] = None

    @classmethod
    def ok(cls) -> "GovernanceDecision":
        return cls(allowed=True)

    @classmethod
    def denied(cls, reason: DenialReason) -> "GovernanceDecision":
        return cls(allowed=False, reason=reason)


@dataclass(frozen=True)
class GovernanceTarget:
    """
    What a mutation touches, reduced to what governance needs to know.

    Build with the ``for_*`` constructors rather than directly.
    """
    kind: str
    tier: GovernanceTier
    target_id: Optional[str] = None
    # Role-parent changes: the role being re-parented and its proposed parent
    parent_id: Optional[str] = None
    # Delegations: whose access is being lent, and to whom
    delegator_id: Optional[str] = None
    delegatee_id: Optional[str] = None

    @property
    def is_protected(self) -> bool:
        return self.tier is GovernanceTier.PROTECTED

    @classmethod
    def for_role(cls, role: Role, parent_id: Optional[str] = None) -> "GovernanceTarget":
        tier = GovernanceTier.PROTECTED if _is_root(role.name) else role.tier
        return cls(kind="role", tier=tier, target_id=role.id, parent_id=parent_id)

    @classmethod
    def for_role_definition(
        cls,
        name: str,
        tier: GovernanceTier,
        parent_id: Optional[str] = None,
    ) -> "GovernanceTarget":
        if _is_root(name):
            tier = GovernanceTier.PROTECTED
        return cls(kind="role", tier=tier, parent_id=parent_id)

    @classmethod
    def for_permission(cls, permission: Permission) -> "GovernanceTarget":
        return cls(kind="permission", tier=permission.tier, target_id=permission.id)

    @classmethod
    def for_permission_definition(cls, tier: GovernanceTier) -> "GovernanceTarget":
        return cls(kind="permission", tier=tier)

    @classmethod
    def for_role_grant(cls, role: Role, permission: Permission) -> "GovernanceTarget":
        role_tier = cls.for_role(role).tier
        return cls(kind="role_grant", tier=GovernanceTier.strictest(role_tier, permission.tier), target_id=role.id)

    @classmethod
    def for_user_role_grant(cls, role: Role, user_id: str) -> "GovernanceTarget":
        return cls(kind="user_role_grant", tier=cls.for_role(role).tier, target_id=user_id)

    @classmethod
    def for_resource_grant(cls, user_id: str) -> "GovernanceTarget":
        return cls(kind="resource_grant", tier=GovernanceTier.BASIC, target_id=user_id)

    @classmethod
    def for_delegation(cls, delegator_id: str, delegatee_id: str) -> "GovernanceTarget":
        return cls(
            kind="delegation",
            tier=GovernanceTier.BASIC,
            target_id=delegatee_id,
            delegator_id=delegator_id,
            delegatee_id=delegatee_id,
        )

    @classmethod
    def for_user(cls, user_id: str) -> "GovernanceTarget":
        return cls(kind="user", tier=GovernanceTier.BASIC, target_id=user_id)


def _is_root(role_name: str) -> bool:
    return role_name == config.ROOT_ROLE_NAME


_DEFINITION_KINDS = {"role", "permission"}
_ASSIGNMENT_KINDS = {"role_grant", "user_role_grant", "resource_grant"}


class GovernanceEnforcer:
    """
    Usage:
        enforcer = GovernanceEnforcer()
        decision = await enforcer.authorize_grant(db, actor_id, GovernanceTarget.for_user_role_grant(role, user_id), Operation.GRANT, at)
        if not decision.allowed:
            ...  # audit and stop
    """

    def __init__(self, engine: Optional[EffectivePermissionEngine] = None):
        self.engine = engine or EffectivePermissionEngine()

    async def capabilities(self, db: AsyncSession, actor_id: str, at: datetime) -> FrozenSet[Capability]:
        """
        Governance capabilities the actor holds directly at ``at``.

        Delegated entries are ignored: governance power is never lent.
        """
        permissions = await self.engine.effective_permissions(db, actor_id, at)
        held = set()
        for entry in permissions.entries:
            if entry.via_delegation_id is not None or entry.resource_id is not None:
                continue
            if entry.resource_type not in (WILDCARD, GOVERNANCE_RESOURCE):
                continue
            for capability in Capability:
                if entry.action in (WILDCARD, capability.value):
                    held.add(capability)
        return frozenset(held)

    async def _creates_cycle(self, db: AsyncSession, role_id: str, parent_id: str, at: datetime) -> bool:
        if role_id == parent_id:
            return True
        return role_id in await store.role_ancestry(db, parent_id, at)

    async def authorize_grant(
        self,
        db: AsyncSession,
        actor_id: str,
        target: GovernanceTarget,
        operation: Operation,
        at: datetime,
    ) -> GovernanceDecision:
        decision = await self._decide(db, actor_id, target, operation, at)
        if not decision.allowed:
            log.info(
                f"Governance denied {operation.value} on {target.kind}:{target.target_id} "
                f"for actor {actor_id}: {decision.reason.value}"
            )
        return decision

    async def _decide(
        self,
        db: AsyncSession,
        actor_id: str,
        target: GovernanceTarget,
        operation: Operation,
        at: datetime,
    ) -> GovernanceDecision:
        if target.is_protected:
            return GovernanceDecision.denied(DenialReason.PROTECTED_ROLE)

        if target.kind == "delegation":
            if target.delegator_id == target.delegatee_id:
                return GovernanceDecision.denied(DenialReason.SELF_DELEGATION)
            if actor_id == target.delegator_id:
                return GovernanceDecision.ok()
            if operation is Operation.REVOKE and actor_id == target.delegatee_id:
                return GovernanceDecision.ok()

        capabilities = await self.capabilities(db, actor_id, at)

        if target.kind in _DEFINITION_KINDS:
            if Capability.DEFINE_ROLES not in capabilities:
                return GovernanceDecision.denied(DenialReason.INSUFFICIENT_CAPABILITY)
            if target.parent_id is not None and target.target_id is not None:
                if await self._creates_cycle(db, target.target_id, target.parent_id, at):
                    return GovernanceDecision.denied(DenialReason.CYCLIC_ROLE_PARENT)
            return GovernanceDecision.ok()

        if target.kind == "user":
            if Capability.MANAGE_USERS not in capabilities:
                return GovernanceDecision.denied(DenialReason.INSUFFICIENT_CAPABILITY)
            return GovernanceDecision.ok()

        if target.kind == "delegation":
            # Lending someone else's access
            if Capability.ASSIGN_ELEVATED not in capabilities:
                return GovernanceDecision.denied(DenialReason.INSUFFICIENT_CAPABILITY)
            return GovernanceDecision.ok()

        if target.kind in _ASSIGNMENT_KINDS:
            if target.tier is GovernanceTier.ELEVATED:
                required = {Capability.ASSIGN_ELEVATED}
            else:
                required = {Capability.ASSIGN_BASIC, Capability.ASSIGN_ELEVATED}
            if not capabilities & required:
                return GovernanceDecision.denied(DenialReason.INSUFFICIENT_CAPABILITY)
            return GovernanceDecision.ok()

        log.warning(f"Unknown governance target kind {target.kind!r}, denying")
        return GovernanceDecision.denied(DenialReason.INSUFFICIENT_CAPABILITY)
