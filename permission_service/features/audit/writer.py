"""
Audit Log Writer.

``record`` is the only write operation. It adds the record to the caller's
transaction and flushes, so the record commits (or rolls back) together with
the mutation or decision it describes.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from permission_service.core.database.types import ensure_utc
from permission_service.core.errors import IdempotencyKeyReusedError
from permission_service.features.audit.models import AuditRecord, Decision
from permission_service.utils import get_logger


log = get_logger(__name__)

EVALUATE_ACTION = "evaluate"


async def record(
    db: AsyncSession,
    *,
    occurred_at: datetime,
    actor_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    decision: Decision,
    reason: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> AuditRecord:
    """
    Append an audit record inside the current transaction.

    Args:
        db: Database session (the caller owns the transaction)
        occurred_at: Operation instant, never the wall clock
        actor_id: User performing the action (None for system operations)
        action: What was attempted (e.g. "evaluate", "grant_user_role", "soft_delete")
        resource_type: Type of the target (e.g. "user_role_grant", "role", "transactions")
        resource_id: ID of the target
        decision: GRANTED or DENIED
        reason: Stable reason code for denials
        context: Additional JSON-serialisable details
        idempotency_key: Caller-supplied retry key; unique across the log

    Returns:
        The flushed AuditRecord
    """
    audit_record = AuditRecord(
        occurred_at=occurred_at,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        decision=decision,
        reason=reason,
        context=context,
        idempotency_key=idempotency_key,
    )
    db.add(audit_record)
    await db.flush()

    log.info(
        "Audit: actor=%s action=%s resource=%s:%s decision=%s reason=%s",
        actor_id, action, resource_type, resource_id, decision.value, reason,
    )
    return audit_record


async def find_by_idempotency_key(db: AsyncSession, idempotency_key: str) -> Optional[AuditRecord]:
    stmt = select(AuditRecord).where(AuditRecord.idempotency_key == idempotency_key)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_replay(
    db: AsyncSession,
    idempotency_key: str,
    *,
    action: str,
    actor_id: Optional[str],
    request: Dict[str, Any],
) -> Optional[AuditRecord]:
    """
    The record to replay for a retried request, or None on first use.

    ``request`` identifies the operation and is stored under the record's
    ``request`` context key. Raises IdempotencyKeyReusedError if the key was
    recorded for a different action, actor or request.
    """
    prior = await find_by_idempotency_key(db, idempotency_key)
    if prior is None:
        return None
    recorded = (prior.context or {}).get("request")
    if prior.action != action or prior.actor_id != actor_id or recorded != request:
        raise IdempotencyKeyReusedError(
            f"Idempotency key {idempotency_key!r} was recorded for {prior.action} {recorded}, "
            f"not {action} {request}"
        )
    return prior


async def latest_mutation_at(db: AsyncSession) -> Optional[datetime]:
    """Instant of the most recent recorded mutation. Evaluations are excluded."""
    stmt = select(func.max(AuditRecord.occurred_at)).where(AuditRecord.action != EVALUATE_ACTION)
    result = await db.execute(stmt)
    latest = result.scalar_one_or_none()
    return ensure_utc(latest) if latest is not None else None


async def list_records(
    db: AsyncSession,
    *,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    decision: Optional[Decision] = None,
    skip: int = 0,
    limit: int = 50,
) -> Sequence[AuditRecord]:
    """List audit records, newest first, with optional filtering."""
    stmt = select(AuditRecord)

    if actor_id:
        stmt = stmt.where(AuditRecord.actor_id == actor_id)
    if action:
        stmt = stmt.where(AuditRecord.action == action)
    if resource_type:
        stmt = stmt.where(AuditRecord.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditRecord.resource_id == resource_id)
    if decision:
        stmt = stmt.where(AuditRecord.decision == decision)

    stmt = stmt.order_by(AuditRecord.occurred_at.desc(), AuditRecord.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()
