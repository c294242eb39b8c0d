"""Audit log model."""

from typing import Any

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from centelhas.models.base import Base, CreatedAtMixin, IdMixin


class AuditLog(Base, IdMixin, CreatedAtMixin):
    """Append-only record of a privileged (admin) action."""

    __tablename__ = "audit_logs"

    # Actor (external admin directory)
    admin_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    event_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("events.id", ondelete="SET NULL"),
        nullable=True,
    )

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    """
    Action examples:
    - event.create
    - ledger.adjust
    - ledger.withdraw_prize
    - table.rollback
    - table.void
    """

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    details_json: Mapped[dict[str, Any] | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )

    __table_args__ = (
        Index("idx_audit_logs_event_time", "event_id", "created_at"),
        Index("idx_audit_logs_admin_time", "admin_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.id} {self.action} by={self.admin_id}>"
