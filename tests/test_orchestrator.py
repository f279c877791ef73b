"""Tests for the run state machine and multi-sync runs."""

from __future__ import annotations

import dataclasses
import itertools
import threading
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pandas as pd
import pytest

from staged_load.lib.errors import (
    ConcurrentRunConflict,
    ExtractionFailure,
    LineageFailure,
    RunCancelled,
)
from staged_load.lib.extract import Extractor
from staged_load.lib.lineage import LineageRecorder
from staged_load.lib.merge import Merger
from staged_load.lib.models import SourceSpec, SourceType, SyncSpec
from staged_load.lib.orchestrator import RunState, SyncJob, run_many
from staged_load.lib.resilience import RetryConfig
from staged_load.lib.warehouse import Warehouse
from tests.helpers import FakeClock, SourceFeed, target_rows, ts


def staging_tables(warehouse) -> list:
    rows = warehouse.fetchall(
        "SELECT table_name FROM information_schema.tables WHERE table_name LIKE 'stg_%'"
    )
    return [row[0] for row in rows]


@pytest.fixture
def job(warehouse, sync, clock) -> SyncJob:
    return SyncJob(warehouse, sync, clock=clock)


class TestSuccessfulRuns:
    def test_two_runs_with_advancing_upper_bound(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(10))
        feed.add("B", "paid", 20.0, ts(20))

        first = job.run(ts(15))
        assert first.succeeded
        assert (first.staged, first.inserted) == (1, 1)
        assert first.watermark_after == ts(10)

        second = job.run(ts(25))
        assert second.succeeded
        assert second.lower_bound == ts(10)
        assert second.inserted == 1
        assert second.watermark_after == ts(20)

        assert sorted(target_rows(job.warehouse)) == ["A", "B"]
        assert job.warehouse.scalar("SELECT count(*) FROM fact_orders") == 2

    def test_rerun_without_new_data_is_idempotent(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        feed.add("B", "open", 20.0, ts(2))
        job.run(ts(10))
        before = target_rows(job.warehouse)

        again = job.run(ts(10))

        assert (again.inserted, again.updated) == (0, 0)
        assert again.watermark_after == again.watermark_before == ts(2)
        assert target_rows(job.warehouse) == before

    def test_cutoff_never_decreases(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(5))
        job.run(ts(10))

        # A late record older than the cutoff is outside every later window
        feed.add("Z", "paid", 1.0, ts(1))
        result = job.run(ts(20))

        assert result.watermark_after == ts(5)
        assert "Z" not in target_rows(job.warehouse)

    def test_no_loss_between_consecutive_runs(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "open", 10.0, ts(1))
        feed.add("B", "open", 20.0, ts(2))
        job.run(ts(3))

        feed.modify("A", ts(4), status="paid")
        feed.add("C", "open", 30.0, ts(5))
        feed.add("D", "open", 40.0, ts(9))
        result = job.run(ts(8))

        assert (result.inserted, result.updated) == (1, 1)
        rows = target_rows(job.warehouse)
        assert rows["A"]["status"] == "paid"
        assert "C" in rows
        assert "D" not in rows

    def test_no_new_rows_keeps_cutoff(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        job.run(ts(5))

        result = job.run(ts(6))

        assert result.succeeded
        # The inclusive lower bound re-reads A, which reconciles as unchanged
        assert (result.staged, result.unchanged, result.inserted) == (1, 1, 0)
        assert result.watermark_after == ts(1)

    def test_lineage_records_window_and_counts(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        result = job.run(ts(5))

        entry = job.lineage.get(result.run_id)
        assert entry.succeeded
        assert entry.watermark_used is None
        assert entry.upper_bound == ts(5)
        assert (entry.rows_staged, entry.rows_inserted) == (1, 1)

    def test_upper_bound_defaults_to_clock(self, job: SyncJob, feed: SourceFeed, clock: FakeClock) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        result = job.run()
        assert result.upper_bound == clock.now
        assert result.inserted == 1

    def test_staging_table_is_dropped(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        job.run(ts(5))
        assert staging_tables(job.warehouse) == []

    def test_keep_staging(self, warehouse, sync, clock, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        job = SyncJob(warehouse, dataclasses.replace(sync, keep_staging=True), clock=clock)

        result = job.run(ts(5))

        assert staging_tables(warehouse) == [job.extractor.staging_table_name(result.run_id)]

    def test_result_to_dict(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        data = job.run(ts(5)).to_dict()
        assert data["state"] == "closed_success"
        assert data["succeeded"] is True
        assert data["watermark_after"] == ts(1).isoformat()
        assert data["error"] is None
        assert set(data["phase_seconds"]) == {"extract", "merge"}


class TestChangeTimestampTypes:
    """The cutoff is stored as a naive UTC timestamp whatever the source column type."""

    def test_date_column(self, warehouse, clock) -> None:
        warehouse.execute(
            "CREATE TABLE raw_days (id VARCHAR, status VARCHAR, amount DOUBLE, updated_at DATE)"
        )
        warehouse.execute("INSERT INTO raw_days VALUES ('A', 'paid', 10.0, DATE '2025-09-14')")
        sync = SyncSpec(
            name="days",
            source=SourceSpec(name="raw_days"),
            target="fact_days",
            natural_keys=["id"],
            change_timestamp="updated_at",
        )
        job = SyncJob(warehouse, sync, clock=clock)

        first = job.run(datetime(2025, 9, 15))
        assert first.watermark_after == datetime(2025, 9, 14)
        assert type(first.watermark_after) is datetime

        warehouse.execute("INSERT INTO raw_days VALUES ('B', 'paid', 20.0, DATE '2025-09-15')")
        second = job.run(datetime(2025, 9, 16))

        assert second.succeeded
        assert (second.inserted, second.unchanged) == (1, 1)
        assert job.cutoffs.get("raw_days", "fact_days") == datetime(2025, 9, 15)

    def test_timezone_aware_parquet(self, warehouse, clock, tmp_path: Path) -> None:
        parquet_path = tmp_path / "orders.parquet"
        pd.DataFrame(
            {
                "id": ["A", "B"],
                "status": ["paid", "open"],
                "amount": [10.0, 20.0],
                "updated_at": pd.to_datetime(
                    ["2025-09-15T03:00:00+02:00", "2025-09-15T05:00:00+02:00"], utc=True
                ),
            }
        ).to_parquet(parquet_path)
        sync = SyncSpec(
            name="orders",
            source=SourceSpec(
                name="orders_parquet",
                source_type=SourceType.PARQUET,
                location=str(parquet_path),
            ),
            target="fact_orders",
            natural_keys=["id"],
            change_timestamp="updated_at",
        )
        job = SyncJob(warehouse, sync, clock=clock)

        first = job.run(ts(2))
        assert first.inserted == 1
        assert first.watermark_after == ts(1)
        assert first.watermark_after.tzinfo is None

        second = job.run(ts(5))
        assert second.succeeded
        assert (second.inserted, second.unchanged) == (1, 1)
        assert second.watermark_after == ts(3)


class TestFailedRuns:
    def test_extraction_failure_closes_lineage_failed(self, job: SyncJob) -> None:
        # No source table exists
        result = job.run(ts(5), raise_on_failure=False)

        assert result.state == RunState.CLOSED_FAILED
        assert isinstance(result.error, ExtractionFailure)
        entry = job.lineage.get(result.run_id)
        assert entry.status == "failed"
        assert entry.error_message.startswith("ExtractionFailure:")
        assert job.cutoffs.get("raw_orders", "fact_orders") is None

    def test_failure_is_raised_by_default(self, job: SyncJob) -> None:
        with pytest.raises(ExtractionFailure):
            job.run(ts(5))
        assert job.lineage.open_entries() == []

    def test_merge_failure_leaves_cutoff_and_target(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "open", 10.0, ts(1))
        job.run(ts(5))
        feed.modify("A", ts(6), status="paid")
        feed.add("B", "open", 20.0, ts(7))
        before = target_rows(job.warehouse)

        with patch.object(Merger, "_apply_inserts", side_effect=RuntimeError("disk full")):
            result = job.run(ts(10), raise_on_failure=False)

        assert result.state == RunState.CLOSED_FAILED
        assert result.watermark_after == ts(1)
        assert target_rows(job.warehouse) == before
        assert job.cutoffs.get("raw_orders", "fact_orders") == ts(1)
        assert staging_tables(job.warehouse) == []

    def test_failed_stage_drops_partial_table(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add(None, "open", 10.0, ts(1))

        result = job.run(ts(5), raise_on_failure=False)

        assert result.state == RunState.CLOSED_FAILED
        assert staging_tables(job.warehouse) == []

    def test_next_run_recovers_after_failure(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        with patch.object(Merger, "_apply_inserts", side_effect=RuntimeError("disk full")):
            job.run(ts(5), raise_on_failure=False)

        result = job.run(ts(5))

        assert result.succeeded
        assert result.inserted == 1

    def test_open_run_is_a_conflict(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        other = job.lineage.open("raw_orders", "fact_orders", None)

        result = job.run(ts(5), raise_on_failure=False)

        assert result.state == RunState.IDLE
        assert result.run_id is None
        assert isinstance(result.error, ConcurrentRunConflict)
        assert result.error.open_run_ids == [other]
        assert not job.warehouse.table_exists("fact_orders")

    def test_cancelled_run(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))
        cancel = threading.Event()
        cancel.set()

        result = job.run(ts(5), cancel=cancel, raise_on_failure=False)

        assert result.state == RunState.CLOSED_FAILED
        assert isinstance(result.error, RunCancelled)
        assert not job.warehouse.table_exists("fact_orders")
        assert job.lineage.get(result.run_id).error_message.startswith("RunCancelled:")

    def test_timeout(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))

        with patch("staged_load.lib.cancellation.time") as fake_time:
            fake_time.monotonic.side_effect = itertools.chain([0.0], itertools.repeat(100.0))
            result = job.run(ts(5), timeout=10, raise_on_failure=False)

        assert isinstance(result.error, RunCancelled)
        assert result.error.details["timeout_seconds"] == 10
        assert job.cutoffs.get("raw_orders", "fact_orders") is None

    def test_interrupt_closes_lineage_and_propagates(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))

        with patch.object(Merger, "merge", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                job.run(ts(5), raise_on_failure=False)

        [entry] = job.lineage.history()
        assert entry.status == "failed"
        assert entry.error_message.startswith("KeyboardInterrupt")

    def test_error_without_message_closes_lineage(self, job: SyncJob, feed: SourceFeed) -> None:
        feed.add("A", "paid", 10.0, ts(1))

        with patch.object(Merger, "merge", side_effect=RuntimeError()):
            result = job.run(ts(5), raise_on_failure=False)

        assert result.state == RunState.CLOSED_FAILED
        assert type(result.error) is RuntimeError
        assert result.to_dict()["error"] == "RuntimeError"
        assert job.lineage.open_entries() == []

        # The pair is not blocked by a leftover open entry
        assert job.run(ts(5)).succeeded

    def test_lineage_close_failure_surfaces(self, job: SyncJob) -> None:
        with patch.object(
            LineageRecorder, "close", side_effect=LineageFailure("audit store unavailable")
        ):
            with pytest.raises(LineageFailure) as exc_info:
                job.run(ts(5), raise_on_failure=False)

        assert isinstance(exc_info.value.__cause__, ExtractionFailure)


def make_sync(name: str) -> SyncSpec:
    return SyncSpec(
        name=name,
        source=SourceSpec(name=f"raw_{name}"),
        target=f"fact_{name}",
        natural_keys=["id"],
        change_timestamp="updated_at",
    )


class TestRunMany:
    def test_sequential_on_memory_warehouse(self, warehouse, clock) -> None:
        for name in ("orders", "refunds"):
            SourceFeed(warehouse, f"raw_{name}").add("A", "paid", 1.0, ts(1))

        results = run_many(warehouse, [make_sync("orders"), make_sync("refunds")], clock=clock)

        assert [r.sync for r in results] == ["orders", "refunds"]
        assert all(r.succeeded for r in results)

    def test_parallel_on_file_warehouse(self, tmp_path, clock) -> None:
        names = ["orders", "refunds", "payouts"]
        with Warehouse(str(tmp_path / "wh.duckdb")) as wh:
            wh.ensure_control_tables()
            for i, name in enumerate(names):
                feed = SourceFeed(wh, f"raw_{name}")
                for j in range(i + 1):
                    feed.add(f"K{j}", "paid", 1.0, ts(j))

            results = run_many(wh, [make_sync(n) for n in names], max_workers=3, clock=clock)

            assert [r.inserted for r in results] == [1, 2, 3]
            assert all(r.succeeded for r in results)
            assert wh.scalar("SELECT count(*) FROM int_lineage WHERE data_load_completed IS NOT NULL") == 3

    def test_failures_are_returned(self, warehouse, clock) -> None:
        SourceFeed(warehouse, "raw_orders").add("A", "paid", 1.0, ts(1))

        results = run_many(warehouse, [make_sync("orders"), make_sync("missing")], clock=clock)

        assert results[0].succeeded
        assert isinstance(results[1].error, ExtractionFailure)

    def test_repeated_pair_rejected(self, warehouse) -> None:
        with pytest.raises(ValueError, match="pair repeats"):
            run_many(warehouse, [make_sync("orders"), make_sync("orders")])

    def test_transient_failure_retried(self, warehouse, clock) -> None:
        SourceFeed(warehouse, "raw_orders").add("A", "paid", 1.0, ts(1))
        original = Extractor.extract
        calls = []

        def flaky(self, *args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ExtractionFailure("connection reset")
            return original(self, *args, **kwargs)

        retry = RetryConfig(max_attempts=3, backoff_seconds=0, jitter=False)
        with patch.object(Extractor, "extract", autospec=True, side_effect=flaky):
            [result] = run_many(warehouse, [make_sync("orders")], retry_config=retry, clock=clock)

        assert result.succeeded
        assert len(calls) == 2
        assert warehouse.scalar("SELECT count(*) FROM int_lineage") == 2

    def test_conflict_not_retried(self, warehouse, clock) -> None:
        SourceFeed(warehouse, "raw_orders").add("A", "paid", 1.0, ts(1))
        LineageRecorder(warehouse).open("raw_orders", "fact_orders", None)

        retry = RetryConfig(max_attempts=3, backoff_seconds=0, jitter=False)
        [result] = run_many(warehouse, [make_sync("orders")], retry_config=retry, clock=clock)

        assert isinstance(result.error, ConcurrentRunConflict)
        assert warehouse.scalar("SELECT count(*) FROM int_lineage") == 1
