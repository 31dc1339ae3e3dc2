"""
User model with ULID primary keys.
"""
from sqlalchemy import Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from permission_service.core.database.base import Base, SoftDeleteMixin, TimestampMixin, generate_ulid


class User(Base, TimestampMixin, SoftDeleteMixin):
    """
    Authorization subject.

    Created on first sync from the identity provider and soft-deleted, never
    hard-deleted. Uses ULID instead of auto-incrementing integers for better
    distributed systems support.
    """
    __tablename__ = "users"
    __table_args__ = (
        Index(
            "uq_users_external_id_live",
            "external_id",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Identity provider subject (stable across syncs)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # User information
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, external_id={self.external_id!r})>"
