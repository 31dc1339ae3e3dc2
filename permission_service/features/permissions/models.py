"""
Role, Permission and temporal grant models.

This module implements the RBAC half of the store:
- Roles, and time-scoped parent links (a role inherits its ancestors' permissions)
- Permissions as atomic ``resource_type:action`` capabilities
- Time-scoped grants: role -> permission, user -> role, user -> resource instance

Every grant table carries ``granted_at/by`` and ``revoked_at/by``; a partial
unique index allows at most one non-revoked row per key.
"""
import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from permission_service.core.database.base import (
    Base,
    SoftDeleteMixin,
    TemporalGrantMixin,
    TimestampMixin,
    generate_ulid,
)
from permission_service.core.database.types import UTCDateTime


WILDCARD = "*"

_ACTIVE_ONLY = text("revoked_at IS NULL")
_LIVE_ONLY = text("deleted_at IS NULL")


class GovernanceTier(str, enum.Enum):
    """Who may grant or revoke a role or permission."""
    PROTECTED = "protected"
    ELEVATED = "elevated"
    BASIC = "basic"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def strictest(cls, *tiers: "GovernanceTier") -> "GovernanceTier":
        return max(tiers, key=lambda tier: tier.rank)


_TIER_RANK = {
    GovernanceTier.BASIC: 0,
    GovernanceTier.ELEVATED: 1,
    GovernanceTier.PROTECTED: 2,
}


def _tier_column():
    return mapped_column(
        Enum(
            GovernanceTier,
            native_enum=False,
            length=20,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
        default=GovernanceTier.BASIC,
    )


# ============================================================================
# Definitions
# ============================================================================

class Permission(Base, TimestampMixin, SoftDeleteMixin):
    """
    Atomic capability on a resource type.

    Examples:
    - resource_type="transactions", action="approve"
    - resource_type="budgets", action="read"
    - resource_type="governance", action="assign_basic"

    ``*`` in either field matches any value at evaluation time.
    """
    __tablename__ = "permissions"
    __table_args__ = (
        Index(
            "uq_permissions_resource_action_live",
            "resource_type",
            "action",
            unique=True,
            sqlite_where=_LIVE_ONLY,
            postgresql_where=_LIVE_ONLY,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier: Mapped[GovernanceTier] = _tier_column()

    @property
    def name(self) -> str:
        return f"{self.resource_type}:{self.action}"

    def matches(self, resource_type: str, action: str) -> bool:
        return (
            self.resource_type in (WILDCARD, resource_type)
            and self.action in (WILDCARD, action)
        )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, tier={self.tier.value})>"


class Role(Base, TimestampMixin, SoftDeleteMixin):
    """
    Named bundle of permissions.

    Inheritance lives in ``RoleParentLink`` rows so it can be read as of any
    instant. The parent graph is kept acyclic at write time.
    Examples: SYSTEM_ADMIN, MANAGER, ACCOUNTANT, VIEWER
    """
    __tablename__ = "roles"
    __table_args__ = (
        Index(
            "uq_roles_name_live",
            "name",
            unique=True,
            sqlite_where=_LIVE_ONLY,
            postgresql_where=_LIVE_ONLY,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tier: Mapped[GovernanceTier] = _tier_column()

    @property
    def is_protected(self) -> bool:
        return self.tier is GovernanceTier.PROTECTED

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, tier={self.tier.value})>"


# ============================================================================
# Temporal grants
# ============================================================================

class RoleParentLink(Base, TemporalGrantMixin):
    """
    Role inherits from ``parent_id`` while the link is open.

    At most one open link per role. Re-parenting closes the open link and opens
    a new one, so inheritance as of a past instant is never rewritten.
    """
    __tablename__ = "role_parent_links"
    __table_args__ = (
        Index(
            "uq_role_parent_links_active",
            "role_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id"), nullable=False, index=True)
    parent_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id"), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<RoleParentLink(id={self.id}, role={self.role_id}, parent={self.parent_id})>"


class RoleGrant(Base, TemporalGrantMixin):
    """Role has permission, within a validity window."""
    __tablename__ = "role_grants"
    __table_args__ = (
        Index(
            "uq_role_grants_active",
            "role_id",
            "permission_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id"), nullable=False, index=True)
    permission_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permissions.id"), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<RoleGrant(id={self.id}, role={self.role_id}, permission={self.permission_id})>"


class UserRoleGrant(Base, TemporalGrantMixin):
    """
    User holds role, optionally scoped and optionally self-expiring.

    ``scope_id`` narrows where the role applies (e.g. a single budget); the
    empty string means unscoped so the active-key index treats it as a value.
    """
    __tablename__ = "user_role_grants"
    __table_args__ = (
        Index(
            "uq_user_role_grants_active",
            "user_id",
            "role_id",
            "scope_id",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )
    __valid_until__ = "expires_at"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id"), nullable=False, index=True)
    scope_id: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<UserRoleGrant(id={self.id}, user={self.user_id}, role={self.role_id})>"


class ResourceGrant(Base, TemporalGrantMixin):
    """User may perform ``action`` on one specific resource instance."""
    __tablename__ = "resource_grants"
    __table_args__ = (
        Index(
            "uq_resource_grants_active",
            "user_id",
            "resource_type",
            "resource_id",
            "action",
            unique=True,
            sqlite_where=_ACTIVE_ONLY,
            postgresql_where=_ACTIVE_ONLY,
        ),
    )
    __valid_until__ = "expires_at"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ResourceGrant(id={self.id}, user={self.user_id}, "
            f"target={self.resource_type}:{self.resource_id}, action={self.action})>"
        )
