"""
User-to-user delegation.

A delegator lends the delegatee a scoped subset of their own access for a
validity window. Delegated access is always re-derived from the delegator's
grants at evaluation time; it is never copied.
"""
import enum
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import JSON, Enum, ForeignKey, Index, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from permission_service.core.database.base import Base, TemporalGrantMixin, generate_ulid
from permission_service.core.database.types import UTCDateTime


_ACTIVE_ONLY = text("revoked_at IS NULL")


class DelegationScope(str, enum.Enum):
    """Which of the delegator's actions a delegation carries."""
    FULL = "full"
    READ_ONLY = "read_only"

    def permits(self, action: str) -> bool:
        if self is DelegationScope.FULL:
            return True
        return action in READ_ONLY_ACTIONS


READ_ONLY_ACTIONS = frozenset({"read", "list", "view"})


class Delegation(Base, TemporalGrantMixin):
    """
    Delegator grants delegatee access between ``valid_from`` and ``valid_until``.

    ``resource_type`` and ``resource_ids`` optionally narrow the delegation to a
    resource type, or to specific instances of it. One open delegation per
    (delegator, delegatee, scope, resource_type), so the same pair can hold
    read-only delegations for several resource types at once.
    """
    __tablename__ = "delegations"
    __valid_from__ = "valid_from"
    __valid_until__ = "valid_until"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    delegator_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    delegatee_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    scope: Mapped[DelegationScope] = mapped_column(
        Enum(
            DelegationScope,
            native_enum=False,
            length=20,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    resource_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resource_ids: Mapped[Optional[List[Any]]] = mapped_column(JSON, nullable=True)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def covers(self, resource_type: str, resource_id: Optional[str], action: str) -> bool:
        """True if this delegation's scope and target narrowing admit the request."""
        if not self.scope.permits(action):
            return False
        if self.resource_type is not None and self.resource_type != resource_type:
            return False
        if self.resource_ids is not None and resource_id not in self.resource_ids:
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"<Delegation(id={self.id}, delegator={self.delegator_id}, "
            f"delegatee={self.delegatee_id}, scope={self.scope.value})>"
        )


# resource_type is nullable; coalesce so an unnarrowed delegation is one key too
Index(
    "uq_delegations_active",
    Delegation.delegator_id,
    Delegation.delegatee_id,
    Delegation.scope,
    func.coalesce(Delegation.resource_type, ""),
    unique=True,
    sqlite_where=_ACTIVE_ONLY,
    postgresql_where=_ACTIVE_ONLY,
)
