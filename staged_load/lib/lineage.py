"""Lineage (audit trail) of synchronization runs.

Every run attempt gets exactly one row in ``int_lineage``: opened when the
run starts, closed exactly once when it ends. An entry that stays open
means the run crashed or is still running; it blocks new runs of the same
pair until an operator abandons it, and is never reused.
"""

from __future__ import annotations

import logging
import threading
import uuid
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from staged_load.lib.errors import ConcurrentRunConflict, LineageFailure
from staged_load.lib.time_utils import utc_now
from staged_load.lib.warehouse import Warehouse

logger = logging.getLogger(__name__)

__all__ = ["LineageEntry", "LineageRecorder", "RunStats"]

_SELECT_COLUMNS = (
    "lineage_key, data_load_started, src_table_name, tgt_table_name, "
    "data_load_completed, was_successful, source_sys_cutoff_time, upper_bound, "
    "rows_staged, rows_inserted, rows_updated, rows_unchanged, error_message"
)

# Serializes the open-entry check and insert per pair within this process.
# Across processes DuckDB allows a single writer per database file.
# An entry lives only while some caller holds its lock.
_pair_locks: "weakref.WeakValueDictionary[Tuple[str, str, str], threading.Lock]" = (
    weakref.WeakValueDictionary()
)
_pair_locks_guard = threading.Lock()


def _pair_lock(database: str, source: str, target: str) -> threading.Lock:
    key = (database, source, target)
    with _pair_locks_guard:
        lock = _pair_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _pair_locks[key] = lock
        return lock


@dataclass
class RunStats:
    """Row counts recorded on a closed lineage entry."""

    staged: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0


@dataclass
class LineageEntry:
    """One synchronization attempt."""

    run_id: str
    started_at: datetime
    source: str
    target: str
    completed_at: Optional[datetime]
    succeeded: bool
    watermark_used: Optional[datetime]
    upper_bound: Optional[datetime] = None
    rows_staged: Optional[int] = None
    rows_inserted: Optional[int] = None
    rows_updated: Optional[int] = None
    rows_unchanged: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None

    @property
    def status(self) -> str:
        if self.is_open:
            return "open"
        return "succeeded" if self.succeeded else "failed"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status
        return data


class LineageRecorder:
    """Open, close and query lineage entries.

    Example:
        >>> lineage = LineageRecorder(warehouse)
        >>> run_id = lineage.open("raw_orders", "fact_orders", watermark=None)
        >>> lineage.close(run_id, succeeded=True)
    """

    def __init__(self, warehouse: Warehouse, *, clock: Callable[[], datetime] = utc_now):
        self.warehouse = warehouse
        self.clock = clock

    def open(
        self,
        source: str,
        target: str,
        watermark: Optional[datetime],
        upper_bound: Optional[datetime] = None,
    ) -> str:
        """Start a lineage entry for a new run and return its run id.

        Raises:
            ConcurrentRunConflict: If the pair already has an open entry
            LineageFailure: If the entry could not be written
        """
        run_id = str(uuid.uuid4())

        with _pair_lock(self.warehouse.database, source, target):
            open_ids = [
                row[0]
                for row in self.warehouse.fetchall(
                    "SELECT lineage_key FROM int_lineage "
                    "WHERE src_table_name = ? AND tgt_table_name = ? "
                    "AND data_load_completed IS NULL ORDER BY data_load_started",
                    [source, target],
                )
            ]
            if open_ids:
                raise ConcurrentRunConflict(
                    "Another run of this pair is still open",
                    source=source,
                    target=target,
                    open_run_ids=open_ids,
                )

            try:
                with self.warehouse.transaction():
                    self.warehouse.execute(
                        "INSERT INTO int_lineage (lineage_key, data_load_started, "
                        "src_table_name, tgt_table_name, data_load_completed, "
                        "was_successful, source_sys_cutoff_time, upper_bound) "
                        "VALUES (?, ?, ?, ?, NULL, false, ?, ?)",
                        [run_id, self.clock(), source, target, watermark, upper_bound],
                    )
            except Exception as exc:
                raise LineageFailure(
                    "Could not open lineage entry",
                    source=source,
                    target=target,
                    run_id=run_id,
                    cause=exc,
                ) from exc

        logger.info(
            "Opened lineage %s for %s -> %s (watermark %s, upper bound %s)",
            run_id,
            source,
            target,
            watermark,
            upper_bound,
        )
        return run_id

    def close(
        self,
        run_id: str,
        succeeded: bool,
        *,
        stats: Optional[RunStats] = None,
        error: Optional[str] = None,
    ) -> LineageEntry:
        """Close an open lineage entry exactly once.

        When called inside ``warehouse.transaction()`` the close commits or
        rolls back together with the enclosing work.

        Raises:
            LineageFailure: If the entry is unknown, already closed, or the
                update fails
        """
        entry = self.get(run_id)
        if entry is None:
            raise LineageFailure("Unknown lineage entry", run_id=run_id)
        if not entry.is_open:
            raise LineageFailure(
                f"Lineage entry already closed ({entry.status})",
                source=entry.source,
                target=entry.target,
                run_id=run_id,
            )

        stats = stats or RunStats()
        try:
            self.warehouse.execute(
                "UPDATE int_lineage SET data_load_completed = ?, was_successful = ?, "
                "rows_staged = ?, rows_inserted = ?, rows_updated = ?, "
                "rows_unchanged = ?, error_message = ? "
                "WHERE lineage_key = ? AND data_load_completed IS NULL",
                [
                    self.clock(),
                    succeeded,
                    stats.staged,
                    stats.inserted,
                    stats.updated,
                    stats.unchanged,
                    error,
                    run_id,
                ],
            )
        except Exception as exc:
            raise LineageFailure(
                "Could not close lineage entry",
                source=entry.source,
                target=entry.target,
                run_id=run_id,
                cause=exc,
            ) from exc

        closed = self.get(run_id)
        logger.info(
            "Closed lineage %s for %s -> %s: %s",
            run_id,
            entry.source,
            entry.target,
            "succeeded" if succeeded else "failed",
        )
        return closed  # type: ignore[return-value]

    def abandon(self, run_id: str, reason: str = "abandoned by operator") -> LineageEntry:
        """Close an orphaned open entry as failed so the pair can run again."""
        with self.warehouse.transaction():
            entry = self.close(run_id, succeeded=False, error=reason)
        logger.warning("Abandoned lineage %s: %s", run_id, reason)
        return entry

    def get(self, run_id: str) -> Optional[LineageEntry]:
        row = self.warehouse.fetchone(
            f"SELECT {_SELECT_COLUMNS} FROM int_lineage WHERE lineage_key = ?",
            [run_id],
        )
        return LineageEntry(*row) if row else None

    def history(
        self,
        source: Optional[str] = None,
        target: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LineageEntry]:
        """Return lineage entries, most recent first."""
        clauses = []
        params: List[Any] = []
        if source is not None:
            clauses.append("src_table_name = ?")
            params.append(source)
        if target is not None:
            clauses.append("tgt_table_name = ?")
            params.append(target)

        sql = f"SELECT {_SELECT_COLUMNS} FROM int_lineage"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY data_load_started DESC, lineage_key"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"

        return [LineageEntry(*row) for row in self.warehouse.fetchall(sql, params)]

    def open_entries(self, older_than: Optional[timedelta] = None) -> List[LineageEntry]:
        """Return unclosed entries, optionally only those older than a threshold.

        An unclosed entry signals a crashed or still-running synchronization
        and should be surfaced to operators.
        """
        sql = f"SELECT {_SELECT_COLUMNS} FROM int_lineage WHERE data_load_completed IS NULL"
        params: List[Any] = []
        if older_than is not None:
            sql += " AND data_load_started < ?"
            params.append(self.clock() - older_than)
        sql += " ORDER BY data_load_started"
        return [LineageEntry(*row) for row in self.warehouse.fetchall(sql, params)]
