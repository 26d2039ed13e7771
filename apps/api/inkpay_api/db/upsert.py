"""Dialect-aware INSERT for ON CONFLICT upserts.

PostgreSQL is the production store; SQLite backs the test suite. Both accept
the same ``on_conflict_do_update`` / ``on_conflict_do_nothing`` API, so the
reconcilers build one statement and let the bound dialect compile it.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


class UnsupportedDialectError(RuntimeError):
    """Raised when the session is bound to a database without ON CONFLICT support."""

    pass


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def dialect_insert(db: Session, table: Any) -> Any:
    """Return ``insert(table)`` for the session's dialect.

    Raises:
        UnsupportedDialectError: If the bound dialect is neither postgresql nor sqlite.
    """
    name = dialect_name(db)
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise UnsupportedDialectError(f"Upsert not supported for dialect '{name}'")
