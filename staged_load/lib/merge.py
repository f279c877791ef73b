"""Reconcile a staged batch into the target table.

One merge runs in a single warehouse transaction:

1. Deduplicate the staged rows per natural key (latest change timestamp
   wins, ties go to the row staged last).
2. Insert keys missing from the target.
3. Update keys whose compare columns differ (null-safe).
4. Leave keys with identical compare columns untouched.
5. Advance the cutoff to the largest staged change timestamp.
6. Close the lineage entry as succeeded.

Any failure rolls all of it back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import ibis

from staged_load.lib.cancellation import RunDeadline
from staged_load.lib.cutoff import CutoffStore
from staged_load.lib.errors import LineageFailure, MergeFailure, RunCancelled
from staged_load.lib.extract import STAGING_SEQ_COLUMN, StagingArea
from staged_load.lib.lineage import LineageRecorder, RunStats
from staged_load.lib.models import SyncSpec, quote_ident
from staged_load.lib.time_utils import utc_now
from staged_load.lib.warehouse import Warehouse

logger = logging.getLogger(__name__)

__all__ = ["MergeResult", "Merger", "dedupe_latest"]


@dataclass
class MergeResult:
    """Outcome of a committed merge."""

    inserted: int
    updated: int
    unchanged: int
    staged: int
    watermark: Optional[datetime]

    def to_stats(self) -> RunStats:
        return RunStats(
            staged=self.staged,
            inserted=self.inserted,
            updated=self.updated,
            unchanged=self.unchanged,
        )


def dedupe_latest(t: ibis.Table, keys: List[str], order_by: List[str]) -> ibis.Table:
    """Keep only the latest record per natural key combination.

    Rows are ranked by ``order_by`` columns, all descending; the first one
    wins.

    Example:
        >>> staged = backend.table("stg_fact_order_detail_1f0c")
        >>> latest = dedupe_latest(staged, ["detail_id"], ["update_date", "_stg_seq"])
    """
    original_cols = t.columns
    window = ibis.window(group_by=keys, order_by=[ibis.desc(c) for c in order_by])
    return (
        t.mutate(_rn=ibis.row_number().over(window))
        .filter(lambda tbl: tbl._rn == 0)  # row_number() starts at 0
        .select(*original_cols)
    )


class Merger:
    """Applies staged rows to the target and advances the cutoff.

    Example:
        >>> merger = Merger(warehouse, sync, cutoffs, lineage)
        >>> result = merger.merge(staging, run_id=run_id, prior_watermark=last)
    """

    def __init__(
        self,
        warehouse: Warehouse,
        sync: SyncSpec,
        cutoffs: CutoffStore,
        lineage: LineageRecorder,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.warehouse = warehouse
        self.sync = sync
        self.cutoffs = cutoffs
        self.lineage = lineage
        self.clock = clock

    # -- SQL building -------------------------------------------------

    def _latest_sql(self, staging: StagingArea) -> str:
        staged = self.warehouse.backend.table(staging.table_name)
        latest = dedupe_latest(
            staged,
            list(self.sync.natural_keys),
            [self.sync.change_timestamp, STAGING_SEQ_COLUMN],
        )
        return ibis.to_sql(latest, dialect="duckdb")

    def _key_match(self, left: str, right: str) -> str:
        return " AND ".join(
            f"{left}.{quote_ident(k)} = {right}.{quote_ident(k)}"
            for k in self.sync.natural_keys
        )

    def _diff(self, compare: List[str], left: str, right: str) -> str:
        return "(" + " OR ".join(
            f"{left}.{quote_ident(c)} IS DISTINCT FROM {right}.{quote_ident(c)}"
            for c in compare
        ) + ")"

    # -- target table -------------------------------------------------

    def ensure_target(self, staging: StagingArea) -> None:
        """Create the target table from the staged shape if it is missing."""
        target = self.sync.target
        payload = self.sync.payload_columns(staging.columns)

        if self.warehouse.table_exists(target):
            existing = set(self.warehouse.table_columns(target))
            missing = [
                c
                for c in payload + [self.sync.created_at_column, self.sync.updated_at_column]
                if c not in existing
            ]
            if missing:
                raise MergeFailure(
                    "Target table is missing staged or audit columns",
                    source=self.sync.source.name,
                    target=target,
                    run_id=staging.run_id,
                    details={"missing": missing},
                    suggestion="Align the target schema with the staged columns.",
                )
            return

        self.warehouse.ensure_schema(target)
        select_list = ", ".join(quote_ident(c) for c in payload)
        self.warehouse.execute(
            f"CREATE TABLE {quote_ident(target)} AS SELECT {select_list}, "
            f"CAST(NULL AS TIMESTAMP) AS {quote_ident(self.sync.created_at_column)}, "
            f"CAST(NULL AS TIMESTAMP) AS {quote_ident(self.sync.updated_at_column)} "
            f"FROM {quote_ident(staging.table_name)} WHERE false"
        )
        logger.info("Created target table %s", target)

    # -- merge steps --------------------------------------------------

    def _count(self, latest_sql: str, compare: List[str]) -> Tuple[int, int, int]:
        tgt = quote_ident(self.sync.target)
        total = self.warehouse.scalar(f"SELECT count(*) FROM ({latest_sql}) AS m")
        inserted = self.warehouse.scalar(
            f"SELECT count(*) FROM ({latest_sql}) AS m WHERE NOT EXISTS "
            f"(SELECT 1 FROM {tgt} AS t WHERE {self._key_match('t', 'm')})"
        )
        if not compare:
            return total, inserted, 0
        updated = self.warehouse.scalar(
            f"SELECT count(*) FROM ({latest_sql}) AS m JOIN {tgt} AS t "
            f"ON {self._key_match('t', 'm')} WHERE {self._diff(compare, 't', 'm')}"
        )
        return total, inserted, updated

    def _apply_updates(
        self,
        latest_sql: str,
        payload: List[str],
        compare: List[str],
        now: datetime,
    ) -> None:
        keys = set(self.sync.natural_keys)
        assignments = [
            f"{quote_ident(c)} = m.{quote_ident(c)}" for c in payload if c not in keys
        ]
        assignments.append(f"{quote_ident(self.sync.updated_at_column)} = ?")
        self.warehouse.execute(
            f"UPDATE {quote_ident(self.sync.target)} AS t SET {', '.join(assignments)} "
            f"FROM ({latest_sql}) AS m "
            f"WHERE {self._key_match('t', 'm')} AND {self._diff(compare, 't', 'm')}",
            [now],
        )

    def _apply_inserts(self, latest_sql: str, payload: List[str], now: datetime) -> None:
        tgt = quote_ident(self.sync.target)
        columns = payload + [self.sync.created_at_column, self.sync.updated_at_column]
        self.warehouse.execute(
            f"INSERT INTO {tgt} ({', '.join(quote_ident(c) for c in columns)}) "
            f"SELECT {', '.join('m.' + quote_ident(c) for c in payload)}, ?, NULL "
            f"FROM ({latest_sql}) AS m WHERE NOT EXISTS "
            f"(SELECT 1 FROM {tgt} AS t WHERE {self._key_match('t', 'm')})",
            [now],
        )

    def merge(
        self,
        staging: StagingArea,
        *,
        run_id: str,
        prior_watermark: Optional[datetime],
        deadline: Optional[RunDeadline] = None,
    ) -> MergeResult:
        """Merge the staged batch and close the run's lineage entry.

        Raises:
            MergeFailure: The transaction was rolled back
            LineageFailure: Closing the lineage entry failed (rolled back)
            RunCancelled: The deadline tripped before commit (rolled back)
        """
        payload = self.sync.payload_columns(staging.columns)
        compare = self.sync.resolve_compare_columns(staging.columns)
        missing = [c for c in compare if c not in payload]
        if missing:
            raise MergeFailure(
                "Compare columns are not staged",
                source=self.sync.source.name,
                target=self.sync.target,
                run_id=run_id,
                details={"missing": missing, "staged_columns": payload},
            )

        try:
            latest_sql = self._latest_sql(staging)
            with self.warehouse.transaction():
                self.ensure_target(staging)
                now = self.clock()

                total, inserted, updated = self._count(latest_sql, compare)
                if compare:
                    self._apply_updates(latest_sql, payload, compare, now)
                self._apply_inserts(latest_sql, payload, now)

                result = MergeResult(
                    inserted=inserted,
                    updated=updated,
                    unchanged=total - inserted - updated,
                    staged=staging.row_count,
                    watermark=prior_watermark,
                )

                if staging.row_count:
                    result.watermark = self.cutoffs.set(
                        self.sync.source.name,
                        self.sync.target,
                        staging.max_value(self.sync.change_timestamp),
                    )

                if deadline is not None:
                    deadline.check("merge")

                self.lineage.close(run_id, True, stats=result.to_stats())
        except (MergeFailure, LineageFailure, RunCancelled):
            raise
        except Exception as exc:
            raise MergeFailure(
                "Merge into target failed; transaction rolled back",
                source=self.sync.source.name,
                target=self.sync.target,
                run_id=run_id,
                cause=exc,
                details={"staging_table": staging.table_name},
            ) from exc

        logger.info(
            "Merged %s: %d inserted, %d updated, %d unchanged (cutoff %s)",
            self.sync.pair,
            result.inserted,
            result.updated,
            result.unchanged,
            result.watermark,
        )
        return result
