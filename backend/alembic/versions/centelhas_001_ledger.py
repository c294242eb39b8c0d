"""Centelhas economy: events, memberships, tables and the append-only ledger.

Revision ID: centelhas_001_ledger
Revises:
Create Date: 2026-10-17

This migration adds:
- events, players and event_players (membership with cached balance)
- tables and table_players (lifecycle + participant sessions)
- ledger_entries (append-only balance movements)
- audit_logs (append-only admin actions)
- prevent_update_delete() trigger function guarding the append-only tables
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "centelhas_001_ledger"
down_revision = None
branch_labels = None
depends_on = None

APPEND_ONLY_TABLES = ("ledger_entries", "audit_logs")


def upgrade() -> None:
    # ===========================================================
    # 1. Enum types
    # ===========================================================

    table_status_enum = postgresql.ENUM(
        "draft",
        "started",
        "finished",
        "rolled_back",
        "void",
        name="table_status",
        create_type=False,
    )
    table_status_enum.create(op.get_bind(), checkfirst=True)

    ledger_source_type_enum = postgresql.ENUM(
        "event_initial_balance",
        "table_buy_in",
        "elimination_transfer",
        "scoop_transfer",
        "table_rollback",
        "bank_purchase",
        "admin_adjustment",
        "prize_withdrawal",
        name="ledger_source_type",
        create_type=False,
    )
    ledger_source_type_enum.create(op.get_bind(), checkfirst=True)

    # ===========================================================
    # 2. Events, players and memberships
    # ===========================================================

    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "initial_centelhas",
            sa.BigInteger(),
            nullable=False,
            comment="Centelhas granted to each player on joining the event",
        ),
        sa.Column("created_by_admin_id", sa.BigInteger(), nullable=False),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("initial_centelhas >= 0", name="events_initial_centelhas_check"),
        sa.CheckConstraint(
            "ends_at IS NULL OR ends_at >= starts_at",
            name="events_dates_check",
        ),
    )
    op.create_index("idx_events_dates", "events", ["starts_at", "ends_at"])

    op.create_table(
        "players",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True, unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_players_display_name", "players", ["display_name"])

    op.create_table(
        "event_players",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "player_id",
            sa.BigInteger(),
            sa.ForeignKey("players.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "current_balance",
            sa.BigInteger(),
            nullable=True,
            comment="Cached sum of ledger deltas for this membership",
        ),
        sa.UniqueConstraint("event_id", "player_id", name="uq_event_players_event_player"),
    )
    op.create_index("idx_event_players_event", "event_players", ["event_id"])
    op.create_index("idx_event_players_player", "event_players", ["player_id"])

    # ===========================================================
    # 3. Tables and participant sessions
    # ===========================================================

    op.create_table(
        "tables",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "created_by_player_id",
            sa.BigInteger(),
            sa.ForeignKey("players.id"),
            nullable=False,
        ),
        sa.Column("status", table_status_enum, nullable=False, server_default="draft"),
        # Lifecycle timestamps
        sa.Column("bet_locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "(status = 'draft' AND started_at IS NULL) "
            "OR (status = 'started' AND started_at IS NOT NULL) "
            "OR (status = 'finished' AND finished_at IS NOT NULL) "
            "OR (status = 'rolled_back' AND rolled_back_at IS NOT NULL) "
            "OR (status = 'void')",
            name="tables_status_check",
        ),
    )
    op.create_index("idx_tables_event_status", "tables", ["event_id", "status"])
    op.create_index("idx_tables_event_created", "tables", ["event_id", "created_at"])

    op.create_table(
        "table_players",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "table_id",
            sa.BigInteger(),
            sa.ForeignKey("tables.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "event_player_id",
            sa.BigInteger(),
            sa.ForeignKey("event_players.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("commander_name", sa.String(255), nullable=False),
        sa.Column("bet_centelhas", sa.BigInteger(), nullable=False),
        sa.Column(
            "eliminator_table_player_id",
            sa.BigInteger(),
            sa.ForeignKey("table_players.id"),
            nullable=True,
        ),
        sa.Column("is_scoop", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("eliminated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("bet_centelhas > 0", name="table_players_bet_centelhas_check"),
        sa.CheckConstraint(
            "eliminator_table_player_id IS NULL OR eliminator_table_player_id <> id",
            name="table_players_eliminator_check",
        ),
        sa.UniqueConstraint(
            "table_id", "event_player_id", name="uq_table_players_table_event_player"
        ),
    )
    op.create_index("idx_table_players_table", "table_players", ["table_id"])
    op.create_index("idx_table_players_event_player", "table_players", ["event_player_id"])
    op.create_index(
        "idx_table_players_eliminator", "table_players", ["eliminator_table_player_id"]
    )

    # ===========================================================
    # 4. Ledger and audit log (append-only)
    # ===========================================================

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "event_player_id",
            sa.BigInteger(),
            sa.ForeignKey("event_players.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_type", ledger_source_type_enum, nullable=False),
        sa.Column(
            "source_id",
            sa.BigInteger(),
            nullable=True,
            comment="Originating row (table_players.id for table entries)",
        ),
        sa.Column(
            "delta_centelhas",
            sa.BigInteger(),
            nullable=False,
            comment="Signed movement (+credit/-debit)",
        ),
        sa.Column(
            "balance_after",
            sa.BigInteger(),
            nullable=True,
            comment="Membership balance once this entry is applied",
        ),
        sa.Column("created_by_admin_id", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("delta_centelhas <> 0", name="ledger_entries_delta_check"),
    )
    op.create_index(
        "idx_ledger_event_player_time",
        "ledger_entries",
        ["event_player_id", "created_at"],
        postgresql_using="btree",
    )
    op.create_index(
        "idx_ledger_event_time",
        "ledger_entries",
        ["event_id", "created_at"],
        postgresql_using="btree",
    )
    op.create_index("idx_ledger_source", "ledger_entries", ["source_type", "source_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("admin_id", sa.BigInteger(), nullable=False),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("events.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=True),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_audit_logs_event_time", "audit_logs", ["event_id", "created_at"])
    op.create_index("idx_audit_logs_admin_time", "audit_logs", ["admin_id", "created_at"])

    # ===========================================================
    # 5. Append-only triggers
    # ===========================================================

    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_update_delete() RETURNS trigger AS $$
        BEGIN
          RAISE EXCEPTION 'updates and deletes are not allowed on append-only tables';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    for table_name in APPEND_ONLY_TABLES:
        op.execute(
            f"""
            CREATE TRIGGER {table_name}_append_only
            BEFORE UPDATE OR DELETE ON {table_name}
            FOR EACH ROW EXECUTE FUNCTION prevent_update_delete();
            """
        )


def downgrade() -> None:
    for table_name in APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table_name}_append_only ON {table_name}")
    op.execute("DROP FUNCTION IF EXISTS prevent_update_delete()")

    # Drop tables in reverse order
    op.drop_table("audit_logs")
    op.drop_table("ledger_entries")
    op.drop_table("table_players")
    op.drop_table("tables")
    op.drop_table("event_players")
    op.drop_table("players")
    op.drop_table("events")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS ledger_source_type")
    op.execute("DROP TYPE IF EXISTS table_status")
