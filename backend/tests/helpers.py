"""Test helpers shared by fixtures and property tests."""

from dataclasses import dataclass
from datetime import timedelta

from centelhas.config import Settings
from centelhas.engine import CentelhasEngine
from centelhas.models import Event, EventPlayer, Player
from centelhas.utils.clock import utcnow

ADMIN_ID = 7
INITIAL_CENTELHAS = 1000


def make_test_settings(database_path, **overrides) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    values = {
        "app_env": "test",
        "database_url": f"sqlite+aiosqlite:///{database_path}",
        "ledger_max_attempts": 3,
        "retry_wait_min_seconds": 0.001,
        "retry_wait_max_seconds": 0.01,
        "lock_timeout_seconds": 2.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@dataclass
class SeededEvent:
    event: Event
    players: list[Player]
    members: list[EventPlayer]

    @property
    def event_id(self) -> int:
        return self.event.id

    @property
    def member_ids(self) -> list[int]:
        return [m.id for m in self.members]


async def seed_event(
    engine: CentelhasEngine,
    player_count: int = 4,
    initial_centelhas: int = INITIAL_CENTELHAS,
) -> SeededEvent:
    players = [
        await engine.register_player(f"Player {i}")
        for i in range(player_count)
    ]
    event = await engine.create_event(
        "Friday Night Commander",
        utcnow() - timedelta(hours=1),
        initial_centelhas,
        ADMIN_ID,
        player_ids=[p.id for p in players],
    )
    members = await engine.list_members(event.id)
    return SeededEvent(event=event, players=players, members=members)


async def open_table(engine, seeded, bets=(100, 100), *, lock=True, start=True):
    """Create a table, join the first len(bets) members, optionally lock and start."""
    table = await engine.create_table(seeded.event_id, seeded.players[0].id)
    sessions = [
        await engine.join_table(table.id, member.id, bet, f"Commander {i}")
        for i, (member, bet) in enumerate(zip(seeded.members, bets))
    ]
    if lock:
        await engine.lock_bets(table.id)
    if start:
        await engine.start_table(table.id)
    return await engine.get_table(table.id), sessions
