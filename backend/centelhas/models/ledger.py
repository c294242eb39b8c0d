"""Ledger entry model.

The ledger is the single source of truth for balances. Rows are insert-only:
storage triggers (see ``centelhas.models.guards``) reject UPDATE and DELETE.
"""

from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from centelhas.models.base import Base, CreatedAtMixin, IdMixin

if TYPE_CHECKING:
    from centelhas.models.player import EventPlayer


class LedgerSourceType(str, Enum):
    """What caused a balance movement."""

    # Event membership
    EVENT_INITIAL_BALANCE = "event_initial_balance"

    # Table gameplay (source_id = table_players.id)
    TABLE_BUY_IN = "table_buy_in"
    ELIMINATION_TRANSFER = "elimination_transfer"
    SCOOP_TRANSFER = "scoop_transfer"
    TABLE_ROLLBACK = "table_rollback"

    # Outside the game
    BANK_PURCHASE = "bank_purchase"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    PRIZE_WITHDRAWAL = "prize_withdrawal"

    @property
    def is_table_source(self) -> bool:
        return self in TABLE_SOURCE_TYPES


TABLE_SOURCE_TYPES = frozenset(
    {
        LedgerSourceType.TABLE_BUY_IN,
        LedgerSourceType.ELIMINATION_TRANSFER,
        LedgerSourceType.SCOOP_TRANSFER,
        LedgerSourceType.TABLE_ROLLBACK,
    }
)

# Entries that move currency across the event boundary
EXTERNAL_SOURCE_TYPES = frozenset(
    {
        LedgerSourceType.EVENT_INITIAL_BALANCE,
        LedgerSourceType.BANK_PURCHASE,
        LedgerSourceType.ADMIN_ADJUSTMENT,
        LedgerSourceType.PRIZE_WITHDRAWAL,
    }
)


class LedgerEntry(Base, IdMixin, CreatedAtMixin):
    """Immutable, atomic balance movement."""

    __tablename__ = "ledger_entries"

    event_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_player_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("event_players.id", ondelete="CASCADE"),
        nullable=False,
    )

    source_type: Mapped[LedgerSourceType] = mapped_column(
        SQLEnum(
            LedgerSourceType,
            name="ledger_source_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    source_id: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Originating row (table_players.id for table entries)",
    )

    delta_centelhas: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Signed movement (+credit/-debit)",
    )
    balance_after: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Membership balance once this entry is applied",
    )

    created_by_admin_id: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )

    event_player: Mapped["EventPlayer"] = relationship("EventPlayer")

    __table_args__ = (
        CheckConstraint("delta_centelhas <> 0", name="delta_check"),
        Index("idx_ledger_event_player_time", "event_player_id", "created_at"),
        Index("idx_ledger_event_time", "event_id", "created_at"),
        Index("idx_ledger_source", "source_type", "source_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.id} member={self.event_player_id} "
            f"{self.source_type.value} {self.delta_centelhas:+} -> {self.balance_after}>"
        )
