"""
Permission engine API routes.

Thin adapter over the four engine entry points: evaluate, governed mutation,
soft-delete, and point-in-time query. Errors from the engine are mapped to
HTTP status codes by the handlers in ``permission_service.main``.

This is the only place that reads the clock. Mutations always run at now;
only reads may name a past instant.
"""
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.database.engine import get_db
from permission_service.features.audit import writer as audit_writer
from permission_service.features.audit.models import Decision
from permission_service.features.governance.service import GrantService, MutationResult
from permission_service.features.permissions.dependencies import (
    get_cascade,
    get_current_actor,
    get_engine,
    get_grant_service,
    get_point_in_time,
    resolve_instant,
)
from permission_service.features.permissions.engine import EffectivePermissionEngine, EffectivePermissions
from permission_service.features.permissions.point_in_time import PointInTimeQueryService
from permission_service.features.permissions.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    ContributingGrantResponse,
    EffectivePermissionsResponse,
    EvaluateRequest,
    EvaluateResponse,
    GrantDelegation,
    GrantResource,
    GrantRolePermission,
    GrantUserRole,
    MutationResponse,
    PermissionCreate,
    ResourcePermissionResponse,
    RevokeRequest,
    RoleCreate,
    RoleParentUpdate,
)
from permission_service.features.revocation.cascade import CascadingRevocationEngine, EntityKind
from permission_service.features.users.models import User
from permission_service.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

Db = Annotated[AsyncSession, Depends(get_db)]
Actor = Annotated[User, Depends(get_current_actor)]


def _mutation_response(result: MutationResult) -> MutationResponse:
    """Denials are committed decisions; report them as 403 with the audit reference."""
    response = MutationResponse.model_validate(result)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=response.model_dump(mode="json"),
        )
    return response


def _permissions_response(permissions: EffectivePermissions) -> EffectivePermissionsResponse:
    return EffectivePermissionsResponse(
        user_id=permissions.user_id,
        at=permissions.at,
        permissions=sorted(permissions.names),
        resource_permissions=[
            ResourcePermissionResponse(resource_type=resource_type, resource_id=resource_id, action=action)
            for resource_type, resource_id, action in sorted(permissions.resource_permissions)
        ],
        grants=[ContributingGrantResponse(**entry.as_dict()) for entry in permissions.entries],
    )


async def _require_audit_reader(db: AsyncSession, engine: EffectivePermissionEngine, actor: User) -> None:
    evaluation = await engine.check(db, actor.id, "audit", None, "read", resolve_instant(None))
    if not evaluation.granted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Permission denied: read on audit",
        )


# ============================================================================
# Evaluation Routes
# ============================================================================

@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate(
    request: EvaluateRequest,
    db: Db,
    actor: Actor,
    engine: Annotated[EffectivePermissionEngine, Depends(get_engine)],
):
    """Decide whether a user may perform an action on a resource. Always audited."""
    if request.user_id != actor.id:
        await _require_audit_reader(db, engine, actor)
    evaluation = await engine.evaluate(
        db,
        request.user_id,
        request.resource_type,
        request.resource_id,
        request.action,
        resolve_instant(request.at),
        actor_id=actor.id,
        idempotency_key=request.idempotency_key,
        context=request.context,
    )
    return EvaluateResponse(
        decision=evaluation.decision,
        contributing_grants=[ContributingGrantResponse(**entry.as_dict()) for entry in evaluation.contributing_grants],
        audit_record_id=evaluation.audit_record_id,
    )


@router.get("/users/{user_id}/effective", response_model=EffectivePermissionsResponse)
async def effective_permissions(
    user_id: str,
    db: Db,
    actor: Actor,
    engine: Annotated[EffectivePermissionEngine, Depends(get_engine)],
    point_in_time: Annotated[PointInTimeQueryService, Depends(get_point_in_time)],
    at: Optional[datetime] = None,
):
    """List a user's permissions now, or as of ``at``. Not audited."""
    if user_id != actor.id:
        await _require_audit_reader(db, engine, actor)
    permissions = await point_in_time.effective_permissions_at(db, user_id, resolve_instant(at))
    return _permissions_response(permissions)


# ============================================================================
# Definition Routes
# ============================================================================

@router.post("/roles", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def define_role(
    role: RoleCreate,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    """Define a new role (requires governance:define_roles)."""
    result = await service.define_role(
        db, actor.id, role.name, resolve_instant(None),
        description=role.description,
        parent_id=role.parent_id,
        tier=role.tier,
        idempotency_key=role.idempotency_key,
    )
    return _mutation_response(result)


@router.put("/roles/{role_id}/parent", response_model=MutationResponse)
async def set_role_parent(
    role_id: str,
    update: RoleParentUpdate,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    """Change which role a role inherits from."""
    result = await service.set_role_parent(
        db, actor.id, role_id, update.parent_id, resolve_instant(None),
        idempotency_key=update.idempotency_key,
    )
    return _mutation_response(result)


@router.post("/definitions", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def define_permission(
    permission: PermissionCreate,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    """Define a new permission (requires governance:define_roles)."""
    result = await service.define_permission(
        db, actor.id, permission.resource_type, permission.action, resolve_instant(None),
        description=permission.description,
        tier=permission.tier,
        idempotency_key=permission.idempotency_key,
    )
    return _mutation_response(result)


# ============================================================================
# Grant Routes
# ============================================================================

@router.post("/grants/role-permission", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def grant_role_permission(
    grant: GrantRolePermission,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    result = await service.grant_role_permission(
        db, actor.id, grant.role_id, grant.permission_id, resolve_instant(None),
        idempotency_key=grant.idempotency_key,
    )
    return _mutation_response(result)


@router.post("/grants/user-role", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def grant_user_role(
    grant: GrantUserRole,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    result = await service.grant_user_role(
        db, actor.id, grant.user_id, grant.role_id, resolve_instant(None),
        scope_id=grant.scope_id,
        expires_at=grant.expires_at,
        idempotency_key=grant.idempotency_key,
    )
    return _mutation_response(result)


@router.post("/grants/resource", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def grant_resource(
    grant: GrantResource,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    result = await service.grant_resource(
        db, actor.id, grant.user_id, grant.resource_type, grant.resource_id, grant.action.lower(),
        resolve_instant(None),
        expires_at=grant.expires_at,
        reason=grant.reason,
        idempotency_key=grant.idempotency_key,
    )
    return _mutation_response(result)


@router.post("/grants/delegation", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
async def delegate(
    grant: GrantDelegation,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
):
    result = await service.delegate(
        db, actor.id, grant.delegator_id, grant.delegatee_id, grant.scope, resolve_instant(None),
        valid_from=grant.valid_from,
        valid_until=grant.valid_until,
        resource_type=grant.resource_type,
        resource_ids=grant.resource_ids,
        idempotency_key=grant.idempotency_key,
    )
    return _mutation_response(result)


@router.delete("/grants/{kind}/{grant_id}", response_model=MutationResponse)
async def revoke_grant(
    kind: str,
    grant_id: str,
    db: Db,
    actor: Actor,
    service: Annotated[GrantService, Depends(get_grant_service)],
    request: Optional[RevokeRequest] = None,
):
    """Revoke a grant. ``kind`` is role_grant, user_role_grant, resource_grant or delegation."""
    request = request or RevokeRequest()
    try:
        result = await service.revoke(
            db, actor.id, kind, grant_id, resolve_instant(None),
            idempotency_key=request.idempotency_key,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _mutation_response(result)


# ============================================================================
# Soft-delete Routes
# ============================================================================

@router.delete("/entities/{entity_kind}/{entity_id}", response_model=MutationResponse)
async def soft_delete(
    entity_kind: EntityKind,
    entity_id: str,
    db: Db,
    actor: Actor,
    cascade: Annotated[CascadingRevocationEngine, Depends(get_cascade)],
    idempotency_key: Optional[str] = None,
):
    """Soft-delete a user, role or permission and revoke everything that depends on it."""
    result = await cascade.soft_delete(
        db, entity_kind, entity_id, actor.id, resolve_instant(None),
        idempotency_key=idempotency_key,
    )
    return _mutation_response(result)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    db: Db,
    actor: Actor,
    engine: Annotated[EffectivePermissionEngine, Depends(get_engine)],
    skip: int = 0,
    limit: int = 50,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    decision: Optional[Decision] = None,
):
    """List audit records with optional filtering (requires audit:read)."""
    await _require_audit_reader(db, engine, actor)
    records = await audit_writer.list_records(
        db,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        decision=decision,
        skip=skip,
        limit=limit,
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(record) for record in records],
        skip=skip,
        limit=limit,
    )
