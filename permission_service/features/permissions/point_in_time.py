"""
Point-in-Time Query Service.

Reconstructs authorization state as of an arbitrary past instant for
compliance and audit. Same code path as the live engine with the instant
fixed by the caller; nothing here writes an audit record.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.database.base import TemporalGrantMixin
from permission_service.core.database.types import ensure_utc
from permission_service.features.delegations.models import Delegation
from permission_service.features.permissions.engine import (
    EffectivePermissionEngine,
    EffectivePermissions,
    Evaluation,
)
from permission_service.features.permissions.models import ResourceGrant, UserRoleGrant
from permission_service.features.permissions.store import grant_kind


@dataclass(frozen=True)
class AssignmentInterval:
    """One row of a user's assignment history."""
    kind: str
    grant_id: str
    granted_at: datetime
    granted_by_id: Optional[str]
    ends_at: Optional[datetime]
    revoked_at: Optional[datetime]
    revoked_by_id: Optional[str]

    @classmethod
    def from_grant(cls, grant: TemporalGrantMixin) -> "AssignmentInterval":
        return cls(
            kind=grant_kind(type(grant)),
            grant_id=grant.id,
            granted_at=grant.granted_at,
            granted_by_id=grant.granted_by_id,
            ends_at=grant.valid_until(),
            revoked_at=grant.revoked_at,
            revoked_by_id=grant.revoked_by_id,
        )


class PointInTimeQueryService:
    """
    Usage:
        service = PointInTimeQueryService()
        permissions = await service.effective_permissions_at(db, user_id, datetime(2024, 3, 1, tzinfo=timezone.utc))
        "transactions:approve" in permissions
    """

    def __init__(self, engine: Optional[EffectivePermissionEngine] = None):
        self.engine = engine or EffectivePermissionEngine()

    async def effective_permissions_at(self, db: AsyncSession, user_id: str, at: datetime) -> EffectivePermissions:
        return await self.engine.effective_permissions(db, user_id, ensure_utc(at))

    async def decision_at(
        self,
        db: AsyncSession,
        user_id: str,
        resource_type: str,
        resource_id: Optional[str],
        action: str,
        at: datetime,
    ) -> Evaluation:
        """What the engine would have decided at ``at``. Not an access decision, so not audited."""
        return await self.engine.check(db, user_id, resource_type, resource_id, action, ensure_utc(at))

    async def assignment_history(self, db: AsyncSession, user_id: str) -> List[AssignmentInterval]:
        """
        Every role, resource and delegation row naming ``user_id``, revoked or not,
        ordered by grant instant.
        """
        grants: List[TemporalGrantMixin] = []

        result = await db.execute(select(UserRoleGrant).where(UserRoleGrant.user_id == user_id))
        grants.extend(result.scalars().all())

        result = await db.execute(select(ResourceGrant).where(ResourceGrant.user_id == user_id))
        grants.extend(result.scalars().all())

        result = await db.execute(
            select(Delegation).where(
                or_(Delegation.delegator_id == user_id, Delegation.delegatee_id == user_id)
            )
        )
        grants.extend(result.scalars().all())

        grants.sort(key=lambda grant: (grant.granted_at, grant.id))
        return [AssignmentInterval.from_grant(grant) for grant in grants]
