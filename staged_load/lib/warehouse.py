"""Warehouse connection holding the target, staging and control tables.

The warehouse is a DuckDB database (a file, or ``:memory:`` for tests)
opened through the Ibis DuckDB backend. Source reads go through Ibis
expressions; DML on the target and on the control tables runs as plain SQL
on the backend's DuckDB connection so it can be wrapped in an explicit
transaction.

Control tables:
    int_etl_cutoff  one row per (source, target) pair with the last
                    successfully processed change timestamp
    int_lineage     one row per synchronization attempt
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import ibis

from staged_load.lib.models import quote_ident, split_name

logger = logging.getLogger(__name__)

__all__ = ["CONTROL_TABLES_DDL", "MEMORY", "Warehouse"]

MEMORY = ":memory:"

CONTROL_TABLES_DDL = {
    "int_etl_cutoff": """
    CREATE TABLE IF NOT EXISTS int_etl_cutoff (
        src_table_name VARCHAR NOT NULL,
        tgt_table_name VARCHAR NOT NULL,
        cutoff_time TIMESTAMP,
        updated_at TIMESTAMP
    )
    """,
    "int_lineage": """
    CREATE TABLE IF NOT EXISTS int_lineage (
        lineage_key VARCHAR NOT NULL,
        data_load_started TIMESTAMP NOT NULL,
        src_table_name VARCHAR NOT NULL,
        tgt_table_name VARCHAR NOT NULL,
        data_load_completed TIMESTAMP,
        was_successful BOOLEAN NOT NULL DEFAULT false,
        source_sys_cutoff_time TIMESTAMP,
        upper_bound TIMESTAMP,
        rows_staged BIGINT,
        rows_inserted BIGINT,
        rows_updated BIGINT,
        rows_unchanged BIGINT,
        error_message VARCHAR
    )
    """,
}


class Warehouse:
    """A DuckDB warehouse connection.

    Args:
        database: Path to the DuckDB file, or ``:memory:``
        read_only: Open the database read-only (status/history commands)

    Example:
        >>> wh = Warehouse("./warehouse.duckdb")
        >>> wh.ensure_control_tables()
        >>> with wh.transaction():
        ...     wh.execute("DELETE FROM fact_order_detail WHERE detail_id = ?", ["42"])
    """

    def __init__(self, database: str = MEMORY, *, read_only: bool = False):
        self.database = str(database)
        self.read_only = read_only
        self.backend = ibis.duckdb.connect(database=self.database, read_only=read_only)
        # Naive timestamps compare against TIMESTAMPTZ source columns as UTC
        self.con.execute("SET TimeZone = 'UTC'")
        self._tx_depth = 0
        self._tx_lock = threading.RLock()
        logger.debug("Opened warehouse %s (read_only=%s)", self.database, read_only)

    @property
    def con(self) -> Any:
        """The underlying DuckDB connection."""
        return self.backend.con

    @property
    def in_memory(self) -> bool:
        return self.database == MEMORY

    def clone(self) -> "Warehouse":
        """Open another connection to the same database file."""
        if self.in_memory:
            raise ValueError("An in-memory warehouse cannot be shared across connections")
        return Warehouse(self.database, read_only=self.read_only)

    def close(self) -> None:
        self.backend.disconnect()
        logger.debug("Closed warehouse %s", self.database)

    def __enter__(self) -> "Warehouse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- SQL helpers --------------------------------------------------

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        if params is None:
            return self.con.execute(sql)
        return self.con.execute(sql, list(params))

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Tuple[Any, ...]]:
        return self.execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Tuple[Any, ...]]:
        return self.execute(sql, params).fetchone()

    def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        row = self.fetchone(sql, params)
        return row[0] if row else None

    @contextmanager
    def transaction(self) -> Iterator["Warehouse"]:
        """Run the enclosed statements in one transaction.

        Nested use joins the outer transaction; only the outermost block
        commits or rolls back.
        """
        with self._tx_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self.execute("BEGIN TRANSACTION")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._tx_depth = 0
                self.execute("ROLLBACK")
                logger.debug("Rolled back transaction on %s", self.database)
                raise
            else:
                self._tx_depth = 0
                self.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    # -- catalog helpers ----------------------------------------------

    def ensure_control_tables(self) -> None:
        """Create the cutoff and lineage tables if they do not exist."""
        # No catalog write when the tables exist
        for table_name, ddl in CONTROL_TABLES_DDL.items():
            if not self.table_exists(table_name):
                self.execute(ddl)

    def ensure_schema(self, table_name: str) -> None:
        parts = split_name(table_name)
        if len(parts) == 2:
            self.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(parts[0])}")

    def table_exists(self, table_name: str) -> bool:
        parts = split_name(table_name)
        schema, name = (parts[0], parts[1]) if len(parts) == 2 else ("main", parts[0])
        count = self.scalar(
            "SELECT count(*) FROM information_schema.tables "
            "WHERE table_schema = ? AND table_name = ?",
            [schema, name],
        )
        return bool(count)

    def table_columns(self, table_name: str) -> List[str]:
        parts = split_name(table_name)
        schema, name = (parts[0], parts[1]) if len(parts) == 2 else ("main", parts[0])
        rows = self.fetchall(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = ? AND table_name = ? ORDER BY ordinal_position",
            [schema, name],
        )
        return [row[0] for row in rows]

    def drop_table(self, table_name: str) -> None:
        self.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")

    def __repr__(self) -> str:
        return f"Warehouse({self.database!r})"
