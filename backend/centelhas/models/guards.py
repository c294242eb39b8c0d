"""Append-only enforcement for ledger_entries and audit_logs.

The storage layer itself refuses UPDATE and DELETE on these tables:

- PostgreSQL: a PL/pgSQL trigger function raising on BEFORE UPDATE OR DELETE
- SQLite: BEFORE UPDATE / BEFORE DELETE triggers with RAISE(ABORT)

The triggers are attached to ``metadata.create_all`` through ``after_create``
DDL events and are also created by the alembic migration. The ORM hooks below
reject the same operations earlier with a typed error, before any SQL runs.
"""

from sqlalchemy import DDL, event
from sqlalchemy.orm import ORMExecuteState, Session

from centelhas.errors import AppendOnlyViolationError
from centelhas.models.audit import AuditLog
from centelhas.models.ledger import LedgerEntry

APPEND_ONLY_MODELS = (LedgerEntry, AuditLog)

APPEND_ONLY_MESSAGE = "updates and deletes are not allowed on append-only tables"

PG_GUARD_FUNCTION = DDL(
    "CREATE OR REPLACE FUNCTION prevent_update_delete() RETURNS trigger AS $$\n"
    "BEGIN\n"
    f"  RAISE EXCEPTION '{APPEND_ONLY_MESSAGE}';\n"
    "END;\n"
    "$$ LANGUAGE plpgsql;"
)


def _pg_trigger(table_name: str) -> DDL:
    return DDL(
        f"CREATE TRIGGER {table_name}_append_only\n"
        f"BEFORE UPDATE OR DELETE ON {table_name}\n"
        "FOR EACH ROW EXECUTE FUNCTION prevent_update_delete();"
    )


def _sqlite_trigger(table_name: str, operation: str) -> DDL:
    return DDL(
        f"CREATE TRIGGER {table_name}_append_only_{operation.lower()}\n"
        f"BEFORE {operation} ON {table_name}\n"
        "BEGIN\n"
        f"  SELECT RAISE(ABORT, '{APPEND_ONLY_MESSAGE}');\n"
        "END;"
    )


def _attach_storage_guards() -> None:
    for model in APPEND_ONLY_MODELS:
        table = model.__table__
        event.listen(
            table,
            "after_create",
            PG_GUARD_FUNCTION.execute_if(dialect="postgresql"),
        )
        event.listen(
            table,
            "after_create",
            _pg_trigger(table.name).execute_if(dialect="postgresql"),
        )
        for operation in ("UPDATE", "DELETE"):
            event.listen(
                table,
                "after_create",
                _sqlite_trigger(table.name, operation).execute_if(dialect="sqlite"),
            )


_attach_storage_guards()


def is_append_only_violation(exc: BaseException) -> bool:
    """Whether a database error was raised by one of the storage triggers."""
    return APPEND_ONLY_MESSAGE in str(exc)


@event.listens_for(Session, "before_flush")
def reject_append_only_changes(session: Session, flush_context, instances) -> None:
    for instance in session.dirty:
        if isinstance(instance, APPEND_ONLY_MODELS) and session.is_modified(
            instance, include_collections=False
        ):
            raise AppendOnlyViolationError(instance.__tablename__, "UPDATE")

    for instance in session.deleted:
        if isinstance(instance, APPEND_ONLY_MODELS):
            raise AppendOnlyViolationError(instance.__tablename__, "DELETE")


@event.listens_for(Session, "do_orm_execute")
def reject_append_only_statements(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return

    mapper = orm_execute_state.bind_mapper
    if mapper is not None and issubclass(mapper.class_, APPEND_ONLY_MODELS):
        operation = "UPDATE" if orm_execute_state.is_update else "DELETE"
        raise AppendOnlyViolationError(mapper.local_table.name, operation)
