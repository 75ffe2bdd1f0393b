"""
Additive schema migrations.

create_all() never alters an existing table, so a column added to a model
after a database was first created must be listed in MIGRATIONS as
(table, column, SQL type). Each migration is idempotent: columns are only
added if absent. The current models match the initial schema, so the list is
empty.

Called automatically from get_engine() after create_all().
"""
from typing import Sequence, Tuple

from sqlalchemy import inspect, text

MIGRATIONS: Tuple[Tuple[str, str, str], ...] = ()


def run_migrations(engine, migrations: Sequence[Tuple[str, str, str]] = MIGRATIONS) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Uses the SQLAlchemy inspector so it works on
    SQLite and Postgres alike.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
        migrations: (table, column, SQL type) triples, in order.
    """
    with engine.connect() as conn:
        for table, column, col_type in migrations:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name as created by SQLModel (lower-cased class name).
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "VARCHAR".
    """
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {c["name"] for c in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
