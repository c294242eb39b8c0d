"""Event model."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from centelhas.models.base import Base, IdMixin, TimestampMixin

if TYPE_CHECKING:
    from centelhas.models.player import EventPlayer
    from centelhas.models.table import Table


class Event(Base, IdMixin, TimestampMixin):
    """A time-boxed game period with its own centelhas pool."""

    __tablename__ = "events"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    starts_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Allotment credited to every membership on join
    initial_centelhas: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Centelhas granted to each player on joining the event",
    )

    # External admin directory reference
    created_by_admin_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Relationships
    memberships: Mapped[list["EventPlayer"]] = relationship(
        "EventPlayer",
        back_populates="event",
        passive_deletes=True,
    )
    tables: Mapped[list["Table"]] = relationship(
        "Table",
        back_populates="event",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("initial_centelhas >= 0", name="initial_centelhas_check"),
        CheckConstraint(
            "ends_at IS NULL OR ends_at >= starts_at",
            name="dates_check",
        ),
        Index("idx_events_dates", "starts_at", "ends_at"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.id} {self.name!r} initial={self.initial_centelhas}>"
