"""Table and table participant models."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from centelhas.models.base import Base, IdMixin, TimestampMixin
from centelhas.utils.clock import utcnow

if TYPE_CHECKING:
    from centelhas.models.event import Event
    from centelhas.models.player import EventPlayer


class TableStatus(str, Enum):
    """Table lifecycle status."""

    DRAFT = "draft"  # Accepting joins
    STARTED = "started"  # Game in progress
    FINISHED = "finished"  # Scoop paid out
    ROLLED_BACK = "rolled_back"  # All entries reversed
    VOID = "void"  # Administrative abort

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TableStatus.FINISHED, TableStatus.ROLLED_BACK, TableStatus.VOID}
)


class Table(Base, IdMixin, TimestampMixin):
    """One elimination sub-game inside an event."""

    __tablename__ = "tables"

    event_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_by_player_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("players.id"),
        nullable=False,
    )

    status: Mapped[TableStatus] = mapped_column(
        SQLEnum(
            TableStatus,
            name="table_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        default=TableStatus.DRAFT,
        nullable=False,
    )

    # Lifecycle timestamps
    bet_locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    rolled_back_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    event: Mapped["Event"] = relationship("Event", back_populates="tables")
    participants: Mapped[list["TablePlayer"]] = relationship(
        "TablePlayer",
        back_populates="table",
        order_by="TablePlayer.id",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "(status = 'draft' AND started_at IS NULL) "
            "OR (status = 'started' AND started_at IS NOT NULL) "
            "OR (status = 'finished' AND finished_at IS NOT NULL) "
            "OR (status = 'rolled_back' AND rolled_back_at IS NOT NULL) "
            "OR (status = 'void')",
            name="status_check",
        ),
        Index("idx_tables_event_status", "event_id", "status"),
        Index("idx_tables_event_created", "event_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Table {self.id} event={self.event_id} status={self.status.value}>"

    @property
    def is_bet_locked(self) -> bool:
        return self.bet_locked_at is not None


class TablePlayer(Base, IdMixin):
    """A membership's participation (session) in one table."""

    __tablename__ = "table_players"

    table_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("tables.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_player_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("event_players.id", ondelete="CASCADE"),
        nullable=False,
    )

    commander_name: Mapped[str] = mapped_column(String(255), nullable=False)
    bet_centelhas: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Same-table participant that eliminated this one (identifier, resolved on read)
    eliminator_table_player_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("table_players.id"),
        nullable=True,
    )
    is_scoop: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    eliminated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    table: Mapped["Table"] = relationship("Table", back_populates="participants")
    event_player: Mapped["EventPlayer"] = relationship(
        "EventPlayer",
        back_populates="table_sessions",
    )

    __table_args__ = (
        CheckConstraint("bet_centelhas > 0", name="bet_centelhas_check"),
        CheckConstraint(
            "eliminator_table_player_id IS NULL OR eliminator_table_player_id <> id",
            name="eliminator_check",
        ),
        UniqueConstraint(
            "table_id", "event_player_id", name="uq_table_players_table_event_player"
        ),
        Index("idx_table_players_table", "table_id"),
        Index("idx_table_players_event_player", "event_player_id"),
        Index("idx_table_players_eliminator", "eliminator_table_player_id"),
    )

    def __repr__(self) -> str:
        state = "active" if self.is_active else "out"
        return (
            f"<TablePlayer {self.id} table={self.table_id} "
            f"member={self.event_player_id} bet={self.bet_centelhas} {state}>"
        )

    @property
    def is_active(self) -> bool:
        """Still in contention (not eliminated, forfeited or withdrawn)."""
        return self.eliminated_at is None
