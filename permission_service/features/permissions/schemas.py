"""
Pydantic schemas for the permission engine's HTTP adapter.

Request and response models for evaluation, point-in-time queries, governed
mutations and audit logs. Evaluations may name a past instant; mutations
always take effect at the moment the adapter handles them, so their request
models forbid unknown fields such as ``at``.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from permission_service.features.audit.models import Decision
from permission_service.features.delegations.models import DelegationScope
from permission_service.features.permissions.models import GovernanceTier


# ============================================================================
# Evaluation Schemas
# ============================================================================

class EvaluateRequest(BaseModel):
    """Schema for an access decision."""
    user_id: str = Field(..., description="User whose access is being decided")
    resource_type: str = Field(..., min_length=1, max_length=100, description="Resource type (e.g., 'transactions')")
    resource_id: Optional[str] = Field(None, max_length=100, description="Resource instance, or '*' for type-level access")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'approve')")
    at: Optional[datetime] = Field(None, description="Decision instant (defaults to now)")
    idempotency_key: Optional[str] = Field(None, max_length=100)
    context: Optional[Dict[str, Any]] = Field(None, description="Extra details stored on the audit record")

    @field_validator('action')
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is lowercase."""
        return v.lower()


class ContributingGrantResponse(BaseModel):
    kind: str
    grant_id: str
    permission: str
    resource_id: Optional[str] = None
    via_role_id: Optional[str] = None
    via_user_role_grant_id: Optional[str] = None
    via_delegation_id: Optional[str] = None


class EvaluateResponse(BaseModel):
    decision: Decision
    contributing_grants: List[ContributingGrantResponse] = []
    audit_record_id: Optional[str] = None


class ResourcePermissionResponse(BaseModel):
    resource_type: str
    resource_id: str
    action: str


class EffectivePermissionsResponse(BaseModel):
    """Schema for a user's permissions at an instant."""
    user_id: str
    at: datetime
    permissions: List[str] = []
    resource_permissions: List[ResourcePermissionResponse] = []
    grants: List[ContributingGrantResponse] = []


# ============================================================================
# Definition Schemas
# ============================================================================

class MutationRequest(BaseModel):
    """Fields shared by governed mutations. There is no instant: mutations happen now."""
    idempotency_key: Optional[str] = Field(None, max_length=100)

    model_config = ConfigDict(extra="forbid")


class RoleCreate(MutationRequest):
    """Schema for defining a new role."""
    name: str = Field(..., min_length=1, max_length=50, description="Role name, unique among live roles")
    description: Optional[str] = Field(None, max_length=1000)
    parent_id: Optional[str] = Field(None, description="Role to inherit permissions from")
    tier: GovernanceTier = GovernanceTier.BASIC

    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, underscores, and hyphens')
        return v


class RoleParentUpdate(MutationRequest):
    parent_id: Optional[str] = Field(None, description="New parent role, or null to detach")


class PermissionCreate(MutationRequest):
    """Schema for defining a new permission."""
    resource_type: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    tier: GovernanceTier = GovernanceTier.BASIC

    @field_validator('action')
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is lowercase."""
        return v.lower()


# ============================================================================
# Grant Schemas
# ============================================================================

class GrantRolePermission(MutationRequest):
    role_id: str
    permission_id: str


class GrantUserRole(MutationRequest):
    user_id: str
    role_id: str
    scope_id: str = Field("", max_length=100, description="Optional scope; empty for unscoped")
    expires_at: Optional[datetime] = None


class GrantResource(MutationRequest):
    user_id: str
    resource_type: str = Field(..., min_length=1, max_length=100)
    resource_id: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=50)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=1000)


class GrantDelegation(MutationRequest):
    delegator_id: str
    delegatee_id: str
    scope: DelegationScope
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    resource_type: Optional[str] = Field(None, max_length=100)
    resource_ids: Optional[List[str]] = None


class RevokeRequest(MutationRequest):
    """Optional body of a revoke."""


class MutationResponse(BaseModel):
    """Outcome of a governed mutation."""
    decision: Decision
    reason: Optional[str] = None
    subject_id: Optional[str] = None
    audit_record_id: str
    revoked_count: int = 0
    replayed: bool = False

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    occurred_at: datetime
    actor_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    decision: Decision
    reason: Optional[str]
    context: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    skip: int
    limit: int
