"""Extraction of a change window from the source, and per-run staging.

The extractor reads source rows whose change timestamp falls in
``[lower_bound, upper_bound)`` and streams them as Arrow record batches. The
lower bound is the pair's last cutoff (inclusive, so rows sharing the cutoff
instant are re-read and reconciled as unchanged), or the configured backfill
origin when the pair was never synchronized. The upper bound is exclusive so
rows stamped at the instant the run was triggered are left for the next run.

Staged rows land in a table owned by a single run
(``stg_<target>_<run id>``), never in a shared staging table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

import ibis
import pyarrow as pa

from staged_load.lib.cancellation import RunDeadline
from staged_load.lib.errors import ExtractionFailure, SyncError
from staged_load.lib.models import SourceType, SyncSpec, quote_ident, split_name
from staged_load.lib.time_utils import parse_timestamp
from staged_load.lib.warehouse import Warehouse

logger = logging.getLogger(__name__)

__all__ = ["ExtractedBatches", "Extractor", "STAGING_SEQ_COLUMN", "StagingArea"]

# Arrival order of a staged row; breaks ties between duplicate keys
STAGING_SEQ_COLUMN = "_stg_seq"


class ExtractedBatches:
    """Lazy, finite stream of extracted record batches.

    Iterating pulls batches from the source one at a time, checking the
    run deadline between batches. Source errors surface as
    ``ExtractionFailure``.
    """

    def __init__(
        self,
        reader: pa.RecordBatchReader,
        sync: SyncSpec,
        deadline: Optional[RunDeadline] = None,
    ):
        self._reader = reader
        self.sync = sync
        self.deadline = deadline
        self.rows_read = 0

    @property
    def schema(self) -> pa.Schema:
        return self._reader.schema

    def __iter__(self) -> Iterator[pa.RecordBatch]:
        while True:
            if self.deadline is not None:
                self.deadline.check("extract")
            try:
                batch = self._reader.read_next_batch()
            except StopIteration:
                return
            except Exception as exc:
                raise ExtractionFailure(
                    "Failed while reading source rows",
                    source=self.sync.source.name,
                    target=self.sync.target,
                    cause=exc,
                    details={"rows_read": self.rows_read},
                ) from exc
            self.rows_read += batch.num_rows
            yield batch


@dataclass
class StagingArea:
    """The staging table of one run."""

    warehouse: Warehouse
    table_name: str
    run_id: str
    columns: List[str]
    row_count: int = 0

    def max_value(self, column: str) -> Optional[datetime]:
        """Largest value of a date or timestamp column as a naive UTC datetime."""
        data_type = self.warehouse.scalar(
            "SELECT data_type FROM information_schema.columns "
            "WHERE table_name = ? AND column_name = ?",
            [self.table_name, column],
        )
        expr = f"max({quote_ident(column)})"
        if data_type == "TIMESTAMP WITH TIME ZONE":
            expr = f"timezone('UTC', {expr})"
        elif data_type == "DATE":
            expr = f"CAST({expr} AS TIMESTAMP)"
        return parse_timestamp(
            self.warehouse.scalar(f"SELECT {expr} FROM {quote_ident(self.table_name)}")
        )

    def drop(self) -> None:
        self.warehouse.drop_table(self.table_name)
        logger.debug("Dropped staging table %s", self.table_name)


class Extractor:
    """Reads a change window of a source into a per-run staging table.

    Example:
        >>> extractor = Extractor(warehouse, sync)
        >>> batches = extractor.extract(last_cutoff, upper_bound)
        >>> staging = extractor.stage(run_id, batches)
    """

    def __init__(self, warehouse: Warehouse, sync: SyncSpec):
        self.warehouse = warehouse
        self.sync = sync

    def _failure(self, message: str, **kwargs) -> ExtractionFailure:
        return ExtractionFailure(
            message,
            source=self.sync.source.name,
            target=self.sync.target,
            **kwargs,
        )

    def source_table(self) -> ibis.Table:
        """Open the source as an Ibis table."""
        source = self.sync.source
        backend = self.warehouse.backend
        try:
            if source.source_type == SourceType.CSV:
                return backend.read_csv(source.location, **source.options)
            if source.source_type == SourceType.PARQUET:
                return backend.read_parquet(source.location, **source.options)

            parts = split_name(source.location)
            if len(parts) == 2:
                return backend.table(parts[1], database=parts[0])
            return backend.table(parts[0])
        except Exception as exc:
            raise self._failure(
                f"Could not open {source.source_type.value} source '{source.location}'",
                cause=exc,
                suggestion="Check that the source table or file exists and is readable.",
            ) from exc

    def build_expression(
        self,
        lower_bound: Optional[datetime],
        upper_bound: datetime,
    ) -> ibis.Table:
        """Projection, renaming and change-window filter over the source."""
        t = self.source_table()

        selected = list(self.sync.columns) if self.sync.columns else list(t.columns)
        missing = [c for c in selected if c not in t.columns]
        if missing:
            raise self._failure(
                "Source is missing configured columns",
                details={"missing": missing, "available": list(t.columns)},
            )

        staged_names = [self.sync.staged_name(c) for c in selected]
        required = list(self.sync.natural_keys) + [self.sync.change_timestamp]
        absent = [c for c in required if c not in staged_names]
        if absent:
            raise self._failure(
                "Staged rows would lack key or change timestamp columns",
                details={"absent": absent, "staged_columns": staged_names},
                suggestion="Keys and change_timestamp use the names after rename.",
            )

        t = t.select(*[t[c].name(self.sync.staged_name(c)) for c in selected])

        ts = t[self.sync.change_timestamp]
        ts_type = ts.type()
        if not (ts_type.is_timestamp() or ts_type.is_date()):
            raise self._failure(
                "Change timestamp column is not a date or timestamp",
                details={"column": self.sync.change_timestamp, "type": str(ts_type)},
                suggestion="Cast the column in the source, or declare its type in source.options.",
            )
        try:
            predicate = ts < upper_bound
            if lower_bound is not None:
                predicate = predicate & (ts >= lower_bound)
            return t.filter(predicate)
        except Exception as exc:
            raise self._failure(
                "Could not build the change window filter",
                cause=exc,
                details={"column": self.sync.change_timestamp, "type": str(ts_type)},
            ) from exc

    def _check_change_timestamps(self) -> None:
        """Rows without a change timestamp can never fall in a window."""
        t = self.source_table()
        column = next(
            (c for c in t.columns if self.sync.staged_name(c) == self.sync.change_timestamp),
            None,
        )
        if column is None:
            return
        try:
            missing = t.filter(t[column].isnull()).count().execute()
        except Exception as exc:
            raise self._failure("Source query failed", cause=exc) from exc
        if missing:
            raise self._failure(
                "Malformed source records: NULL change timestamp",
                details={"malformed_rows": int(missing), "column": column},
                suggestion="Fix the source rows; they would never be synchronized.",
            )

    def effective_lower_bound(self, last_cutoff: Optional[datetime]) -> Optional[datetime]:
        return last_cutoff if last_cutoff is not None else self.sync.backfill_origin

    def extract(
        self,
        last_cutoff: Optional[datetime],
        upper_bound: datetime,
        *,
        deadline: Optional[RunDeadline] = None,
    ) -> ExtractedBatches:
        """Select source rows changed in ``[last_cutoff, upper_bound)``.

        Does not mutate the source, the target or any control table.
        """
        lower_bound = self.effective_lower_bound(last_cutoff)
        if lower_bound is not None and lower_bound >= upper_bound:
            logger.warning(
                "Empty change window for %s: lower bound %s >= upper bound %s",
                self.sync.pair,
                lower_bound,
                upper_bound,
            )

        expr = self.build_expression(lower_bound, upper_bound)
        self._check_change_timestamps()
        logger.info(
            "Extracting %s from %s (window [%s, %s))",
            self.sync.target,
            self.sync.source.name,
            lower_bound or "beginning",
            upper_bound,
        )

        try:
            reader = expr.to_pyarrow_batches(chunk_size=self.sync.batch_size)
        except Exception as exc:
            raise self._failure("Source query failed", cause=exc) from exc

        return ExtractedBatches(reader, self.sync, deadline)

    def staging_table_name(self, run_id: str) -> str:
        target = split_name(self.sync.target)[-1]
        return f"stg_{target}_{run_id.replace('-', '')}"

    def stage(self, run_id: str, batches: ExtractedBatches) -> StagingArea:
        """Write the extracted batches into this run's staging table.

        Rows get a ``_stg_seq`` arrival number. Staged rows with a NULL
        natural key are malformed and fail the run.
        """
        table_name = self.staging_table_name(run_id)
        quoted = quote_ident(table_name)
        schema = batches.schema.append(pa.field(STAGING_SEQ_COLUMN, pa.int64()))
        staging = StagingArea(
            warehouse=self.warehouse,
            table_name=table_name,
            run_id=run_id,
            columns=[f.name for f in batches.schema],
        )

        # The source reader streams over the main connection; staging writes
        # go through a cursor so they do not invalidate it.
        cur = self.warehouse.con.cursor()
        try:
            cur.register("_stg_batch", schema.empty_table())
            cur.execute(f"CREATE TABLE {quoted} AS SELECT * FROM _stg_batch")
            cur.unregister("_stg_batch")

            for batch in batches:
                if batch.num_rows == 0:
                    continue
                seq = pa.array(
                    range(staging.row_count, staging.row_count + batch.num_rows),
                    type=pa.int64(),
                )
                chunk = pa.Table.from_batches([batch]).append_column(STAGING_SEQ_COLUMN, seq)
                cur.register("_stg_batch", chunk)
                cur.execute(f"INSERT INTO {quoted} SELECT * FROM _stg_batch")
                cur.unregister("_stg_batch")
                staging.row_count += batch.num_rows
                logger.debug("Staged %d rows into %s", staging.row_count, table_name)
        except SyncError:
            raise
        except Exception as exc:
            raise self._failure(
                "Failed to write staging table",
                run_id=run_id,
                cause=exc,
                details={"staging_table": table_name, "rows_staged": staging.row_count},
            ) from exc
        finally:
            cur.close()

        null_keys = self.warehouse.scalar(
            f"SELECT count(*) FROM {quoted} WHERE "
            + " OR ".join(f"{quote_ident(k)} IS NULL" for k in self.sync.natural_keys)
        )
        if null_keys:
            raise self._failure(
                "Malformed source records: NULL natural key",
                run_id=run_id,
                details={"malformed_rows": null_keys, "staging_table": table_name},
            )

        logger.info("Staged %d rows for run %s into %s", staging.row_count, run_id, table_name)
        return staging
