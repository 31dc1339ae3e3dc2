"""
Append-only audit log.

Every access decision and every governance mutation (allowed or denied) writes
exactly one AuditRecord. Records are never updated or deleted; the ORM hooks
below turn any attempt into an InvariantViolationError.
"""
import enum
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Enum, Index, String, Text, event, func, text
from sqlalchemy.orm import Mapped, Session, mapped_column

from permission_service.core.database.base import Base, generate_ulid
from permission_service.core.database.types import UTCDateTime
from permission_service.core.errors import InvariantViolationError


class Decision(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"


class AuditRecord(Base):
    """
    Who did what, to which resource, when, with what outcome and why.

    ``occurred_at`` is the operation instant supplied by the caller;
    ``created_at`` is the wall-clock insert time kept for bookkeeping.
    """
    __tablename__ = "audit_records"
    __table_args__ = (
        Index("ix_audit_records_actor_time", "actor_id", "occurred_at"),
        Index("ix_audit_records_resource", "resource_type", "resource_id", "occurred_at"),
        Index(
            "uq_audit_records_idempotency_key",
            "idempotency_key",
            unique=True,
            sqlite_where=text("idempotency_key IS NOT NULL"),
            postgresql_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Actor (no foreign key: records outlive anything they mention)
    actor_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decision: Mapped[Decision] = mapped_column(
        Enum(
            Decision,
            native_enum=False,
            length=10,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AuditRecord(id={self.id}, actor={self.actor_id}, action={self.action}, "
            f"resource={self.resource_type}:{self.resource_id}, decision={self.decision.value})>"
        )


@event.listens_for(AuditRecord, "before_update")
def _refuse_update(mapper, connection, target: AuditRecord) -> None:
    raise InvariantViolationError(f"Audit record {target.id} is immutable")


@event.listens_for(AuditRecord, "before_delete")
def _refuse_delete(mapper, connection, target: AuditRecord) -> None:
    raise InvariantViolationError(f"Audit record {target.id} cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _refuse_bulk_mutation(orm_execute_state) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditRecord:
        raise InvariantViolationError("Audit records cannot be updated or deleted")
