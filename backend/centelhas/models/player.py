"""Player and event membership models."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from centelhas.models.base import Base, CreatedAtMixin, IdMixin
from centelhas.utils.clock import utcnow

if TYPE_CHECKING:
    from centelhas.models.event import Event
    from centelhas.models.table import TablePlayer


class Player(Base, IdMixin, CreatedAtMixin):
    """A person who may join events."""

    __tablename__ = "players"

    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    memberships: Mapped[list["EventPlayer"]] = relationship(
        "EventPlayer",
        back_populates="player",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_players_display_name", "display_name"),)

    def __repr__(self) -> str:
        return f"<Player {self.id} {self.display_name!r}>"


class EventPlayer(Base, IdMixin):
    """A player's membership in one event.

    ``current_balance`` is the balance cache: a projection of the ledger that is
    only ever written by the ledger engine, in the same transaction as the
    entry that changes it.
    """

    __tablename__ = "event_players"

    event_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    player_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("players.id", ondelete="CASCADE"),
        nullable=False,
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        server_default=true(),
        nullable=False,
    )

    current_balance: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Cached sum of ledger deltas for this membership",
    )

    # Relationships
    event: Mapped["Event"] = relationship("Event", back_populates="memberships")
    player: Mapped["Player"] = relationship("Player", back_populates="memberships")
    table_sessions: Mapped[list["TablePlayer"]] = relationship(
        "TablePlayer",
        back_populates="event_player",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint("event_id", "player_id", name="uq_event_players_event_player"),
        Index("idx_event_players_event", "event_id"),
        Index("idx_event_players_player", "player_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<EventPlayer {self.id} event={self.event_id} "
            f"player={self.player_id} balance={self.current_balance}>"
        )
