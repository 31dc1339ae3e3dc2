"""
Effective Permission Engine.

Computes what a user can do at an instant by merging three sources:

1. Role-based: active user->role grants, expanded through the parent links
   active at the same instant (stopping at deleted roles), joined to
   role->permission grants active at that instant
2. Resource-specific: active user->resource-instance grants
3. Delegated: active delegations to the user, re-derived from the delegator's
   own sources 1 and 2 (never from the delegator's own delegations)

The listing call and the decision call share one code path; only the decision
call writes an audit record. No function here reads the clock: every instant
is a parameter.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core import config
from permission_service.core.database.engine import atomic
from permission_service.core.database.types import ensure_utc
from permission_service.features.audit import writer as audit_writer
from permission_service.features.audit.models import Decision
from permission_service.features.delegations.models import READ_ONLY_ACTIONS, Delegation, DelegationScope
from permission_service.features.permissions import store
from permission_service.features.permissions.models import WILDCARD
from permission_service.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class PermissionEntry:
    """
    One capability a user holds at an instant, and the grant that carries it.

    ``resource_id`` None means every instance of ``resource_type``. ``*`` in
    ``resource_type`` or ``action`` matches anything.
    """
    resource_type: str
    action: str
    kind: str
    grant_id: str
    resource_id: Optional[str] = None
    via_role_id: Optional[str] = None
    via_user_role_grant_id: Optional[str] = None
    via_delegation_id: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.resource_type}:{self.action}"

    def allows(self, resource_type: str, resource_id: Optional[str], action: str) -> bool:
        if self.resource_type not in (WILDCARD, resource_type):
            return False
        if self.action not in (WILDCARD, action):
            return False
        return self.resource_id is None or self.resource_id == resource_id

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "grant_id": self.grant_id,
            "permission": self.name,
            "resource_id": self.resource_id,
            "via_role_id": self.via_role_id,
            "via_user_role_grant_id": self.via_user_role_grant_id,
            "via_delegation_id": self.via_delegation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionEntry":
        """Inverse of :meth:`as_dict`, for entries stored on audit records."""
        resource_type, _, action = data["permission"].partition(":")
        return cls(
            resource_type=resource_type,
            action=action,
            kind=data["kind"],
            grant_id=data["grant_id"],
            resource_id=data.get("resource_id"),
            via_role_id=data.get("via_role_id"),
            via_user_role_grant_id=data.get("via_user_role_grant_id"),
            via_delegation_id=data.get("via_delegation_id"),
        )


@dataclass(frozen=True)
class EffectivePermissions:
    """The union of everything ``user_id`` may do at ``at``."""
    user_id: str
    at: datetime
    entries: Tuple[PermissionEntry, ...] = ()

    @property
    def names(self) -> FrozenSet[str]:
        """``resource:action`` names that apply to every instance of the resource type."""
        return frozenset(entry.name for entry in self.entries if entry.resource_id is None)

    @property
    def resource_permissions(self) -> FrozenSet[Tuple[str, str, str]]:
        """(resource_type, resource_id, action) triples limited to one instance."""
        return frozenset(
            (entry.resource_type, entry.resource_id, entry.action)
            for entry in self.entries
            if entry.resource_id is not None
        )

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def __len__(self) -> int:
        return len(self.entries)

    def matching(self, resource_type: str, resource_id: Optional[str], action: str) -> List[PermissionEntry]:
        return [entry for entry in self.entries if entry.allows(resource_type, resource_id, action)]


@dataclass(frozen=True)
class Evaluation:
    """Outcome of an access decision."""
    decision: Decision
    contributing_grants: Tuple[PermissionEntry, ...] = field(default_factory=tuple)
    audit_record_id: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.decision is Decision.GRANTED


def _narrow_to_delegation(entry: PermissionEntry, delegation: Delegation) -> List[PermissionEntry]:
    """
    Restrict one of the delegator's entries to what ``delegation`` carries.

    A wildcard is replaced by the delegation's narrowing so the delegatee never
    receives more than the delegation names.
    """
    actions: Iterable[str]
    if delegation.scope is DelegationScope.READ_ONLY:
        if entry.action == WILDCARD:
            actions = sorted(READ_ONLY_ACTIONS)
        elif entry.action in READ_ONLY_ACTIONS:
            actions = [entry.action]
        else:
            return []
    else:
        actions = [entry.action]

    resource_type = entry.resource_type
    if delegation.resource_type is not None:
        if resource_type not in (WILDCARD, delegation.resource_type):
            return []
        resource_type = delegation.resource_type

    if delegation.resource_ids is None:
        resource_ids: List[Optional[str]] = [entry.resource_id]
    elif entry.resource_id is None:
        resource_ids = [str(resource_id) for resource_id in delegation.resource_ids]
    elif entry.resource_id in delegation.resource_ids:
        resource_ids = [entry.resource_id]
    else:
        return []

    return [
        replace(
            entry,
            resource_type=resource_type,
            action=action,
            resource_id=resource_id,
            via_delegation_id=delegation.id,
        )
        for action in actions
        for resource_id in resource_ids
    ]


class EffectivePermissionEngine:
    """
    Decides GRANTED or DENIED for (user, resource, action, instant).

    Usage:
        engine = EffectivePermissionEngine()
        evaluation = await engine.evaluate(db, user_id, "transactions", "tx-1", "approve", at)
        if evaluation.granted:
            ...
    """

    def __init__(self, max_delegation_depth: Optional[int] = None):
        if max_delegation_depth is None:
            max_delegation_depth = config.MAX_DELEGATION_DEPTH
        self.max_delegation_depth = max_delegation_depth

    async def _own_entries(self, db: AsyncSession, user_id: str, at: datetime) -> List[PermissionEntry]:
        entries: List[PermissionEntry] = []

        user_role_grants = await store.active_user_role_grants(db, user_id, at)
        ancestry: Dict[str, List[str]] = {}
        for user_role_grant in user_role_grants:
            if user_role_grant.role_id not in ancestry:
                ancestry[user_role_grant.role_id] = await store.role_ancestry(db, user_role_grant.role_id, at)

        all_roles = {role_id for chain in ancestry.values() for role_id in chain}
        by_role: Dict[str, List[Tuple[Any, Any]]] = {}
        for role_grant, permission in await store.active_role_permissions(db, sorted(all_roles), at):
            by_role.setdefault(role_grant.role_id, []).append((role_grant, permission))

        for user_role_grant in user_role_grants:
            scope = user_role_grant.scope_id or None
            for role_id in ancestry[user_role_grant.role_id]:
                for role_grant, permission in by_role.get(role_id, []):
                    entries.append(PermissionEntry(
                        resource_type=permission.resource_type,
                        action=permission.action,
                        kind="role_grant",
                        grant_id=role_grant.id,
                        resource_id=scope,
                        via_role_id=role_id,
                        via_user_role_grant_id=user_role_grant.id,
                    ))

        for resource_grant in await store.active_resource_grants(db, user_id, at):
            entries.append(PermissionEntry(
                resource_type=resource_grant.resource_type,
                action=resource_grant.action,
                kind="resource_grant",
                grant_id=resource_grant.id,
                resource_id=resource_grant.resource_id,
            ))

        return entries

    async def _collect(
        self,
        db: AsyncSession,
        user_id: str,
        at: datetime,
        depth: int,
        visited: FrozenSet[str],
    ) -> List[PermissionEntry]:
        entries = await self._own_entries(db, user_id, at)
        if depth >= self.max_delegation_depth:
            return entries

        visited = visited | {user_id}
        for delegation in await store.active_delegations_to(db, user_id, at):
            if delegation.delegator_id in visited:
                log.debug(f"Skipping delegation cycle {delegation.id} back to {delegation.delegator_id}")
                continue
            delegator_entries = await self._collect(db, delegation.delegator_id, at, depth + 1, visited)
            for entry in delegator_entries:
                entries.extend(_narrow_to_delegation(entry, delegation))
        return entries

    async def effective_permissions(self, db: AsyncSession, user_id: str, at: datetime) -> EffectivePermissions:
        """
        Read-only listing of a user's permissions at ``at``. Writes no audit record.

        A user with no grants gets an empty set, not an error.
        """
        at = ensure_utc(at)
        entries = await self._collect(db, user_id, at, depth=0, visited=frozenset())
        return EffectivePermissions(user_id=user_id, at=at, entries=tuple(entries))

    async def check(
        self,
        db: AsyncSession,
        user_id: str,
        resource_type: str,
        resource_id: Optional[str],
        action: str,
        at: datetime,
    ) -> Evaluation:
        """Decide without auditing. Used for governance capability checks and compliance replays."""
        permissions = await self.effective_permissions(db, user_id, at)
        contributing = tuple(permissions.matching(resource_type, resource_id, action))
        decision = Decision.GRANTED if contributing else Decision.DENIED
        return Evaluation(decision=decision, contributing_grants=contributing)

    async def evaluate(
        self,
        db: AsyncSession,
        user_id: str,
        resource_type: str,
        resource_id: Optional[str],
        action: str,
        at: datetime,
        *,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Evaluation:
        """
        Access decision for ``user_id`` doing ``action`` on a resource at ``at``.

        Writes exactly one audit record. A retry carrying an ``idempotency_key``
        that is already recorded returns the recorded decision and grants
        without a second record. Reusing a key for a different request raises
        IdempotencyKeyReusedError.
        """
        at = ensure_utc(at)
        actor_id = actor_id or user_id
        request = {
            "user_id": user_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "action": action,
        }
        async with atomic(db):
            if idempotency_key is not None:
                prior = await audit_writer.find_replay(
                    db, idempotency_key, action=audit_writer.EVALUATE_ACTION, actor_id=actor_id, request=request
                )
                if prior is not None:
                    log.debug(f"Evaluation {idempotency_key} already recorded as {prior.id}")
                    recorded = (prior.context or {}).get("contributing_grants", [])
                    return Evaluation(
                        decision=prior.decision,
                        contributing_grants=tuple(PermissionEntry.from_dict(entry) for entry in recorded),
                        audit_record_id=prior.id,
                    )

            evaluation = await self.check(db, user_id, resource_type, resource_id, action, at)

            audit_context = dict(context or {})
            audit_context.update({
                "user_id": user_id,
                "requested_action": action,
                "at": at.isoformat(),
                "request": request,
                "contributing_grants": [entry.as_dict() for entry in evaluation.contributing_grants],
            })
            audit_record = await audit_writer.record(
                db,
                occurred_at=at,
                actor_id=actor_id,
                action=audit_writer.EVALUATE_ACTION,
                resource_type=resource_type,
                resource_id=resource_id,
                decision=evaluation.decision,
                reason=None if evaluation.granted else "no_matching_grant",
                context=audit_context,
                idempotency_key=idempotency_key,
            )

        log.debug(
            f"User {user_id} {evaluation.decision.value} {action} on {resource_type}:{resource_id} "
            f"with {len(evaluation.contributing_grants)} contributing grant(s)"
        )
        return replace(evaluation, audit_record_id=audit_record.id)
