"""Centelhas engine: the transactional entry point for every operation.

Each public coroutine runs in its own database transaction through
``run_in_transaction`` so a multi-entry operation (elimination, scoop,
rollback) is all-or-nothing and concurrent-modification conflicts are
retried with backoff. Table-scoped operations additionally hold the
per-table lock for the whole attempt, commit included.

Usage:
    engine = CentelhasEngine.from_settings()
    await engine.create_schema()
    event = await engine.create_event("Friday Night", starts_at, 1000, admin_id=1)
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from centelhas.config import Settings, get_settings
from centelhas.errors import NotFoundError
from centelhas.logging_config import configure_logging, get_logger, operation_context
from centelhas.models.audit import AuditLog
from centelhas.models.event import Event
from centelhas.models.ledger import LedgerEntry, LedgerSourceType
from centelhas.models.player import EventPlayer, Player
from centelhas.models.table import Table, TablePlayer
from centelhas.services.audit import AuditRecorder
from centelhas.services.balance import BalanceReport
from centelhas.services.ledger import LedgerEngine
from centelhas.services.membership import EventMembershipService, PlayerRegistry
from centelhas.services.table_lifecycle import ReversalSummary, TableLifecycle
from centelhas.services.table_session import (
    EliminationResult,
    ScoopResult,
    TableSessionService,
)
from centelhas.utils.db import (
    create_engine,
    create_schema,
    create_session_factory,
    run_in_transaction,
    run_once,
)
from centelhas.utils.locks import (
    LocalTableLockManager,
    RedisTableLockManager,
    TableLockManager,
)

logger = get_logger(__name__)

T = TypeVar("T")


class CentelhasEngine:
    """Ledger-backed economy engine for one deployment."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        lock_manager: TableLockManager | None = None,
        db_engine: AsyncEngine | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.db_engine = db_engine

        acquire_timeout_ms = int(self.settings.lock_timeout_seconds * 1000)
        self.locks = lock_manager or LocalTableLockManager(acquire_timeout_ms=acquire_timeout_ms)

        # table_id -> event_id (a table never moves between events)
        self._table_events: dict[int, int] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CentelhasEngine":
        """Build the engine, session factory and lock manager from settings.

        Also configures logging, the way an application entry point would.

        Redis table locks are used when ``redis_url`` is configured,
        in-process locks otherwise.
        """
        settings = settings or get_settings()
        configure_logging(settings.log_level, settings.json_logs, settings.app_env)
        db_engine = create_engine(settings)
        acquire_timeout_ms = int(settings.lock_timeout_seconds * 1000)

        lock_manager: TableLockManager
        if settings.redis_url:
            lock_manager = RedisTableLockManager(
                redis.from_url(settings.redis_url),
                lock_timeout_ms=acquire_timeout_ms * 2,
                acquire_timeout_ms=acquire_timeout_ms,
            )
        else:
            lock_manager = LocalTableLockManager(acquire_timeout_ms=acquire_timeout_ms)

        return cls(
            create_session_factory(db_engine),
            settings=settings,
            lock_manager=lock_manager,
            db_engine=db_engine,
        )

    async def create_schema(self) -> None:
        if self.db_engine is None:
            raise RuntimeError("Engine was built without a database engine")
        await create_schema(self.db_engine)

    async def close(self) -> None:
        if isinstance(self.locks, RedisTableLockManager):
            await self.locks.redis.aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _write(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await run_in_transaction(
            self.session_factory,
            operation,
            max_attempts=self.settings.ledger_max_attempts,
            wait_min=self.settings.retry_wait_min_seconds,
            wait_max=self.settings.retry_wait_max_seconds,
            lock_timeout_seconds=self.settings.lock_timeout_seconds,
        )

    async def _read(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await run_once(self.session_factory, operation)

    async def _event_of_table(self, table_id: int) -> int:
        if table_id not in self._table_events:
            async def load(session: AsyncSession) -> int:
                event_id = await session.scalar(select(Table.event_id).where(Table.id == table_id))
                if event_id is None:
                    raise NotFoundError("Table", table_id)
                return event_id

            self._table_events[table_id] = await self._read(load)
        return self._table_events[table_id]

    async def _write_table(
        self,
        table_id: int,
        action: str,
        operation: Callable[[AsyncSession], Awaitable[T]],
        *,
        closes_table: bool = False,
    ) -> T:
        """Run a table-scoped write under the per-table lock."""
        event_id = await self._event_of_table(table_id)
        with operation_context(event_id=event_id, table_id=table_id):
            result = await run_in_transaction(
                self.session_factory,
                operation,
                max_attempts=self.settings.ledger_max_attempts,
                wait_min=self.settings.retry_wait_min_seconds,
                wait_max=self.settings.retry_wait_max_seconds,
                lock_timeout_seconds=self.settings.lock_timeout_seconds,
                guard=lambda: self.locks.lock(event_id, table_id),
            )
            logger.info("table_operation", action=action)
        if closes_table:
            self._forget_table(table_id)
        return result

    def _forget_table(self, table_id: int) -> None:
        """Release per-table bookkeeping once a table is terminal."""
        event_id = self._table_events.pop(table_id, None)
        if event_id is not None and isinstance(self.locks, LocalTableLockManager):
            self.locks.discard(event_id, table_id)

    def _lifecycle(self, session: AsyncSession) -> TableLifecycle:
        return TableLifecycle(session, min_players=self.settings.min_table_players)

    def _table_sessions(self, session: AsyncSession) -> TableSessionService:
        return TableSessionService(session, self._lifecycle(session))

    # ------------------------------------------------------------------
    # Players, events and memberships
    # ------------------------------------------------------------------

    async def register_player(self, display_name: str, email: str | None = None) -> Player:
        return await self._write(lambda s: PlayerRegistry(s).register(display_name, email))

    async def create_event(
        self,
        name: str,
        starts_at: datetime,
        initial_centelhas: int,
        admin_id: int,
        *,
        ends_at: datetime | None = None,
        player_ids: list[int] | None = None,
    ) -> Event:
        event = await self._write(
            lambda s: EventMembershipService(s).create_event(
                name,
                starts_at,
                initial_centelhas,
                admin_id,
                ends_at=ends_at,
                player_ids=player_ids,
            )
        )
        logger.info("event_created", event_id=event.id, admin_id=admin_id)
        return event

    async def join_event(self, event_id: int, player_id: int) -> EventPlayer:
        return await self._write(lambda s: EventMembershipService(s).join_event(event_id, player_id))

    async def set_membership_active(
        self,
        event_player_id: int,
        is_active: bool,
        admin_id: int,
    ) -> EventPlayer:
        return await self._write(
            lambda s: EventMembershipService(s).set_active(event_player_id, is_active, admin_id)
        )

    async def list_members(self, event_id: int, *, active_only: bool = False) -> list[EventPlayer]:
        return await self._read(
            lambda s: EventMembershipService(s).list_members(event_id, active_only=active_only)
        )

    # ------------------------------------------------------------------
    # Ledger operations outside tables
    # ------------------------------------------------------------------

    async def purchase(
        self,
        event_player_id: int,
        amount: int,
        *,
        source_id: int | None = None,
    ) -> LedgerEntry:
        return await self._write(
            lambda s: EventMembershipService(s).purchase(event_player_id, amount, source_id=source_id)
        )

    async def adjust(
        self,
        event_player_id: int,
        delta: int,
        admin_id: int,
        *,
        reason: str | None = None,
    ) -> LedgerEntry:
        return await self._write(
            lambda s: EventMembershipService(s).adjust(event_player_id, delta, admin_id, reason=reason)
        )

    async def withdraw_prize(
        self,
        event_player_id: int,
        amount: int,
        *,
        admin_id: int | None = None,
    ) -> LedgerEntry:
        return await self._write(
            lambda s: EventMembershipService(s).withdraw_prize(event_player_id, amount, admin_id=admin_id)
        )

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def create_table(self, event_id: int, player_id: int) -> Table:
        table = await self._write(lambda s: self._lifecycle(s).create_table(event_id, player_id))
        self._table_events[table.id] = table.event_id
        return table

    async def join_table(
        self,
        table_id: int,
        event_player_id: int,
        bet_centelhas: int,
        commander_name: str,
    ) -> TablePlayer:
        return await self._write_table(
            table_id,
            "join",
            lambda s: self._table_sessions(s).join(
                table_id, event_player_id, bet_centelhas, commander_name
            ),
        )

    async def leave_table(self, table_id: int, table_player_id: int) -> LedgerEntry:
        return await self._write_table(
            table_id,
            "leave",
            lambda s: self._table_sessions(s).leave(table_id, table_player_id),
        )

    async def lock_bets(self, table_id: int, *, admin_id: int | None = None) -> Table:
        return await self._write_table(
            table_id,
            "lock_bets",
            lambda s: self._lifecycle(s).lock_bets(table_id, admin_id=admin_id),
        )

    async def start_table(self, table_id: int, *, admin_id: int | None = None) -> Table:
        return await self._write_table(
            table_id,
            "start",
            lambda s: self._lifecycle(s).start(table_id, admin_id=admin_id),
        )

    async def eliminate(
        self,
        table_id: int,
        eliminator_id: int,
        eliminated_id: int,
    ) -> EliminationResult:
        return await self._write_table(
            table_id,
            "eliminate",
            lambda s: self._table_sessions(s).eliminate(table_id, eliminator_id, eliminated_id),
        )

    async def forfeit(self, table_id: int, table_player_id: int) -> TablePlayer:
        return await self._write_table(
            table_id,
            "forfeit",
            lambda s: self._table_sessions(s).forfeit(table_id, table_player_id),
        )

    async def scoop(self, table_id: int, winner_id: int) -> ScoopResult:
        return await self._write_table(
            table_id,
            "scoop",
            lambda s: self._table_sessions(s).scoop(table_id, winner_id),
        )

    async def finish_table(self, table_id: int, *, admin_id: int | None = None) -> Table:
        return await self._write_table(
            table_id,
            "finish",
            lambda s: self._lifecycle(s).finish(table_id, admin_id=admin_id),
            closes_table=True,
        )

    async def rollback_table(
        self,
        table_id: int,
        admin_id: int,
        *,
        reason: str | None = None,
    ) -> ReversalSummary:
        return await self._write_table(
            table_id,
            "rollback",
            lambda s: self._lifecycle(s).rollback(table_id, admin_id=admin_id, reason=reason),
            closes_table=True,
        )

    async def void_table(
        self,
        table_id: int,
        admin_id: int,
        *,
        reason: str | None = None,
    ) -> ReversalSummary:
        return await self._write_table(
            table_id,
            "void",
            lambda s: self._lifecycle(s).void(table_id, admin_id=admin_id, reason=reason),
            closes_table=True,
        )

    async def get_table(self, table_id: int) -> Table:
        return await self._read(lambda s: self._lifecycle(s).get_table(table_id))

    async def get_participants(self, table_id: int) -> list[TablePlayer]:
        return await self._read(lambda s: self._lifecycle(s).get_participants(table_id))

    async def get_pot(self, table_id: int) -> dict[int, int]:
        """Stake each table session still has in the pot."""
        return await self._read(lambda s: self._lifecycle(s).stakes_in_pot(table_id))

    async def get_table_history(self, table_id: int) -> list[LedgerEntry]:
        async def load(session: AsyncSession) -> list[LedgerEntry]:
            lifecycle = self._lifecycle(session)
            await lifecycle.get_table(table_id)
            return await lifecycle.get_table_entries(await lifecycle.get_participants(table_id))

        return await self._read(load)

    # ------------------------------------------------------------------
    # Balances and history
    # ------------------------------------------------------------------

    async def get_balance(self, event_player_id: int) -> int:
        return await self._read(lambda s: LedgerEngine(s).balances.get_balance(event_player_id))

    async def recompute_balance(self, event_player_id: int) -> int:
        async def load(session: AsyncSession) -> int:
            ledger = LedgerEngine(session)
            await ledger.balances.get_membership(event_player_id)
            return await ledger.recompute_balance(event_player_id)

        return await self._read(load)

    async def verify_membership(self, event_player_id: int) -> int:
        return await self._read(lambda s: LedgerEngine(s).balances.verify_membership(event_player_id))

    async def reconcile_event(self, event_id: int) -> BalanceReport:
        return await self._read(lambda s: LedgerEngine(s).balances.reconcile_event(event_id))

    async def verify_event(self, event_id: int) -> BalanceReport:
        return await self._read(lambda s: LedgerEngine(s).balances.verify_event(event_id))

    async def event_totals(self, event_id: int) -> dict[LedgerSourceType, int]:
        return await self._read(lambda s: LedgerEngine(s).event_totals(event_id))

    async def get_history(
        self,
        event_player_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        source_type: LedgerSourceType | None = None,
    ) -> list[LedgerEntry]:
        return await self._read(
            lambda s: LedgerEngine(s).get_entries(
                event_player_id, limit=limit, offset=offset, source_type=source_type
            )
        )

    async def get_audit_log(
        self,
        event_id: int,
        *,
        limit: int = 100,
        action: str | None = None,
    ) -> list[AuditLog]:
        return await self._read(
            lambda s: AuditRecorder(s).get_event_log(event_id, limit=limit, action=action)
        )

