"""
SQLAlchemy declarative base and common model utilities.

All SQLAlchemy models should inherit from Base.
"""
from datetime import datetime
from typing import ClassVar, Optional

from sqlalchemy import DateTime, ForeignKey, String, and_, func, or_
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql.elements import ColumnElement
from ulid import ULID

from permission_service.core.database.types import UTCDateTime


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        from permission_service.core.database.base import Base

        class User(Base):
            __tablename__ = "users"

            id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    """
    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.

    These are bookkeeping columns only; no authorization logic reads them.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """
    Soft-delete flag for Users, Roles and Permissions.

    Rows are never hard-deleted. Unique constraints on these tables are partial
    indexes over ``deleted_at IS NULL`` so a deleted name can be reused.
    """
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    deleted_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def not_deleted(cls) -> ColumnElement[bool]:
        return cls.deleted_at.is_(None)


class TemporalGrantMixin:
    """
    Validity window shared by every temporal assignment.

    A grant is active at instant T iff::

        granted_at <= T
        and (revoked_at is null or revoked_at > T)
        and (expiry is null or expiry > T)

    Subclasses name their optional start/expiry columns through
    ``__valid_from__`` and ``__valid_until__``. ``revoked_at`` is set once and
    never cleared; a re-grant is a new row.
    """
    __valid_from__: ClassVar[Optional[str]] = None
    __valid_until__: ClassVar[Optional[str]] = None

    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    granted_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id"), nullable=True
    )
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id"), nullable=True
    )

    def valid_until(self) -> datetime | None:
        if self.__valid_until__ is None:
            return None
        return getattr(self, self.__valid_until__)

    def is_active_at(self, at: datetime) -> bool:
        if self.granted_at > at:
            return False
        if self.__valid_from__ is not None:
            start = getattr(self, self.__valid_from__)
            if start is not None and start > at:
                return False
        if self.revoked_at is not None and self.revoked_at <= at:
            return False
        until = self.valid_until()
        if until is not None and until <= at:
            return False
        return True

    def is_open(self) -> bool:
        """Not revoked. Says nothing about expiry."""
        return self.revoked_at is None

    @classmethod
    def active_at(cls, at: datetime) -> ColumnElement[bool]:
        """SQL form of :meth:`is_active_at`."""
        clauses = [
            cls.granted_at <= at,
            or_(cls.revoked_at.is_(None), cls.revoked_at > at),
        ]
        if cls.__valid_from__ is not None:
            start = getattr(cls, cls.__valid_from__)
            clauses.append(or_(start.is_(None), start <= at))
        if cls.__valid_until__ is not None:
            until = getattr(cls, cls.__valid_until__)
            clauses.append(or_(until.is_(None), until > at))
        return and_(*clauses)

    @classmethod
    def open_and_unexpired(cls, at: datetime) -> ColumnElement[bool]:
        """
        Rows that are still pending or active at ``at``.

        Used by revocation: a future-dated grant must be closed too, otherwise
        it would become active later for a deleted entity.
        """
        clauses = [cls.revoked_at.is_(None)]
        if cls.__valid_until__ is not None:
            until = getattr(cls, cls.__valid_until__)
            clauses.append(or_(until.is_(None), until > at))
        return and_(*clauses)
