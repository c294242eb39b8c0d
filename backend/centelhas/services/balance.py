"""Balance cache over event_players.current_balance.

The cache is a projection of the ledger. It is written only by
``LedgerEngine.append`` in the same transaction as the entry, through a
compare-and-swap on the previous value, and is verified against the ledger on
demand. Drift is a correctness bug: it is reported as an integrity fault and
never corrected silently.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from centelhas.errors import ConflictError, IntegrityFaultError, NotFoundError
from centelhas.models.ledger import LedgerEntry
from centelhas.models.player import EventPlayer

logger = logging.getLogger(__name__)


@dataclass
class BalanceDrift:
    """A membership whose cached balance disagrees with its ledger."""

    event_player_id: int
    cached: int | None
    ledger: int

    def to_dict(self) -> dict:
        return {
            "event_player_id": self.event_player_id,
            "cached": self.cached,
            "ledger": self.ledger,
        }


@dataclass
class BalanceReport:
    """Result of reconciling every membership of an event."""

    event_id: int
    memberships_checked: int = 0
    total_cached: int = 0
    total_ledger: int = 0
    drifts: list[BalanceDrift] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.drifts

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "memberships_checked": self.memberships_checked,
            "total_cached": self.total_cached,
            "total_ledger": self.total_ledger,
            "drifts": [d.to_dict() for d in self.drifts],
        }


async def sum_ledger_deltas(
    session: AsyncSession,
    event_player_ids: Iterable[int],
) -> dict[int, int]:
    """Sum of all ledger deltas per membership (0 for memberships with no entries)."""
    ids = list(event_player_ids)
    totals = {ep_id: 0 for ep_id in ids}
    if not ids:
        return totals

    result = await session.execute(
        select(
            LedgerEntry.event_player_id,
            func.coalesce(func.sum(LedgerEntry.delta_centelhas), 0),
        )
        .where(LedgerEntry.event_player_id.in_(ids))
        .group_by(LedgerEntry.event_player_id)
    )
    for ep_id, total in result.all():
        totals[ep_id] = int(total)
    return totals


class BalanceCache:
    """Read-mostly balance projection."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_membership(self, event_player_id: int) -> EventPlayer:
        membership = await self.session.get(EventPlayer, event_player_id)
        if membership is None:
            raise NotFoundError("EventPlayer", event_player_id)
        return membership

    async def get_balance(self, event_player_id: int) -> int:
        """Cached balance, without re-summing the ledger."""
        membership = await self.get_membership(event_player_id)
        return membership.current_balance or 0

    async def lock_memberships(self, event_player_ids: Iterable[int]) -> dict[int, EventPlayer]:
        """Lock membership rows in ascending id order and return them fresh.

        A fixed lock order keeps multi-membership operations (eliminations,
        scoops, reversals) from deadlocking each other. ``FOR UPDATE`` is a
        no-op on SQLite, where the compare-and-swap in :meth:`apply` is the
        only guard.
        """
        ids = sorted(set(event_player_ids))
        if not ids:
            return {}

        result = await self.session.execute(
            select(EventPlayer)
            .where(EventPlayer.id.in_(ids))
            .order_by(EventPlayer.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        memberships = {m.id: m for m in result.scalars().all()}

        missing = [ep_id for ep_id in ids if ep_id not in memberships]
        if missing:
            raise NotFoundError("EventPlayer", missing[0])
        return memberships

    async def apply(self, membership: EventPlayer, expected: int | None, new_balance: int) -> None:
        """Swap the cached balance from ``expected`` to ``new_balance``.

        Raises:
            ConflictError: If another transaction changed the balance since it was read
        """
        condition = (
            EventPlayer.current_balance.is_(None)
            if expected is None
            else EventPlayer.current_balance == expected
        )
        result = await self.session.execute(
            update(EventPlayer)
            .where(EventPlayer.id == membership.id, condition)
            .values(current_balance=new_balance)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Balance CAS lost: member=%s expected=%s new=%s",
                membership.id,
                expected,
                new_balance,
            )
            raise ConflictError(
                details={"eventPlayerId": membership.id, "expectedBalance": expected}
            )

        set_committed_value(membership, "current_balance", new_balance)

    async def find_drift(self, event_player_ids: Iterable[int]) -> list[BalanceDrift]:
        ids = list(event_player_ids)
        result = await self.session.execute(
            select(EventPlayer.id, EventPlayer.current_balance).where(EventPlayer.id.in_(ids))
        )
        cached = dict(result.all())
        totals = await sum_ledger_deltas(self.session, cached.keys())

        return [
            BalanceDrift(event_player_id=ep_id, cached=cached[ep_id], ledger=totals[ep_id])
            for ep_id in sorted(cached)
            if (cached[ep_id] or 0) != totals[ep_id]
        ]

    async def verify_membership(self, event_player_id: int) -> int:
        """Return the balance after checking the cache against the ledger.

        Raises:
            IntegrityFaultError: If the cache has drifted
        """
        membership = await self.get_membership(event_player_id)
        drifts = await self.find_drift([membership.id])
        if drifts:
            drift = drifts[0]
            logger.error(
                "Balance drift: member=%s cached=%s ledger=%s",
                drift.event_player_id,
                drift.cached,
                drift.ledger,
            )
            raise IntegrityFaultError(
                f"Cached balance of membership {event_player_id} diverges from ledger",
                details=drift.to_dict(),
            )
        return membership.current_balance or 0

    async def reconcile_event(self, event_id: int) -> BalanceReport:
        """Compare every membership of an event with its ledger (no raise)."""
        result = await self.session.execute(
            select(EventPlayer.id, EventPlayer.current_balance).where(
                EventPlayer.event_id == event_id
            )
        )
        cached = dict(result.all())
        totals = await sum_ledger_deltas(self.session, cached.keys())

        report = BalanceReport(event_id=event_id, memberships_checked=len(cached))
        for ep_id in sorted(cached):
            report.total_cached += cached[ep_id] or 0
            report.total_ledger += totals[ep_id]
            if (cached[ep_id] or 0) != totals[ep_id]:
                report.drifts.append(
                    BalanceDrift(event_player_id=ep_id, cached=cached[ep_id], ledger=totals[ep_id])
                )
        return report

    async def verify_event(self, event_id: int) -> BalanceReport:
        """Reconcile an event and raise on any drift.

        Raises:
            IntegrityFaultError: If any membership has drifted
        """
        report = await self.reconcile_event(event_id)
        if not report.is_consistent:
            logger.error(
                "Balance drift in event %s: %d membership(s)",
                event_id,
                len(report.drifts),
            )
            raise IntegrityFaultError(
                f"Cached balances diverge from ledger in event {event_id}",
                details=report.to_dict(),
            )
        return report
