"""Run state machine for one (source, target) synchronization.

States::

    IDLE -> LINEAGE_OPENED -> EXTRACTED -> MERGED -> CLOSED_SUCCESS
                  |               |
                  +---------------+-----------------> CLOSED_FAILED

A run opens its lineage entry first; every failure after that closes the
entry as failed and leaves the cutoff where it was. On success the entry is
closed inside the merge transaction. Runs never retry internally.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from staged_load.lib.cancellation import RunDeadline
from staged_load.lib.cutoff import CutoffStore
from staged_load.lib.errors import LineageFailure, SyncError, error_headline
from staged_load.lib.extract import Extractor, StagingArea
from staged_load.lib.lineage import LineageRecorder
from staged_load.lib.merge import Merger
from staged_load.lib.models import SyncSpec
from staged_load.lib.observability import RunMetrics, get_sync_logger
from staged_load.lib.resilience import RetryConfig, is_retryable, retry_operation
from staged_load.lib.time_utils import utc_now
from staged_load.lib.warehouse import Warehouse

logger = logging.getLogger(__name__)

__all__ = ["RunResult", "RunState", "SyncJob", "run_many"]


class RunState(Enum):
    IDLE = "idle"
    LINEAGE_OPENED = "lineage_opened"
    EXTRACTED = "extracted"
    MERGED = "merged"
    CLOSED_SUCCESS = "closed_success"
    CLOSED_FAILED = "closed_failed"


@dataclass
class RunResult:
    """Structured result of one run."""

    sync: str
    source: str
    target: str
    run_id: Optional[str] = None
    state: RunState = RunState.IDLE
    lower_bound: Optional[datetime] = None
    upper_bound: Optional[datetime] = None
    watermark_before: Optional[datetime] = None
    watermark_after: Optional[datetime] = None
    staged: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    error: Optional[BaseException] = None
    phase_seconds: Dict[str, float] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.CLOSED_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "sync": self.sync,
            "source": self.source,
            "target": self.target,
            "run_id": self.run_id,
            "state": self.state.value,
            "succeeded": self.succeeded,
            "lower_bound": iso(self.lower_bound),
            "upper_bound": iso(self.upper_bound),
            "watermark_before": iso(self.watermark_before),
            "watermark_after": iso(self.watermark_after),
            "staged": self.staged,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "error": error_headline(self.error) if self.error is not None else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "phase_seconds": self.phase_seconds,
        }

    def __repr__(self) -> str:
        status = "SUCCESS" if self.succeeded else self.state.name
        return (
            f"RunResult({self.sync}: {status}, staged={self.staged}, "
            f"inserted={self.inserted}, updated={self.updated}, "
            f"unchanged={self.unchanged})"
        )


class SyncJob:
    """Runs one sync definition against a warehouse.

    Example:
        >>> job = SyncJob(warehouse, sync)
        >>> result = job.run()
        >>> print(result.inserted, result.watermark_after)
    """

    def __init__(
        self,
        warehouse: Warehouse,
        sync: SyncSpec,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.warehouse = warehouse
        self.sync = sync
        self.clock = clock
        self.cutoffs = CutoffStore(warehouse, clock=clock)
        self.lineage = LineageRecorder(warehouse, clock=clock)
        self.extractor = Extractor(warehouse, sync)
        self.merger = Merger(warehouse, sync, self.cutoffs, self.lineage, clock=clock)
        self.log = get_sync_logger(__name__)

    def run(
        self,
        upper_bound: Optional[datetime] = None,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        raise_on_failure: bool = True,
    ) -> RunResult:
        """Execute one run of the state machine.

        Args:
            upper_bound: Exclusive upper bound of the change window
                (default: now)
            timeout: Seconds after which the run is cancelled
            cancel: Event that cancels the run when set
            raise_on_failure: Re-raise the failure after the lineage entry
                is closed; otherwise return it on the result

        Returns:
            RunResult with the final state, counts and watermarks
        """
        source, target = self.sync.source.name, self.sync.target
        upper_bound = upper_bound or self.clock()
        deadline = RunDeadline(timeout=timeout, cancel_event=cancel)

        result = RunResult(sync=self.sync.name, source=source, target=target)
        result.upper_bound = upper_bound

        self.log.clear_context()
        self.log.set_context(source=source, target=target)

        try:
            self.warehouse.ensure_control_tables()
            prior = self.cutoffs.get(source, target)
            lower_bound = self.extractor.effective_lower_bound(prior)
            run_id = self.lineage.open(source, target, lower_bound, upper_bound)
        except SyncError as exc:
            # Nothing was opened, so there is nothing to close
            self.log.error("Run of %s not started: %s", self.sync.name, exc.message)
            result.error = exc
            if raise_on_failure:
                raise
            return result

        result.run_id = run_id
        result.state = RunState.LINEAGE_OPENED
        result.lower_bound = lower_bound
        result.watermark_before = prior
        result.watermark_after = prior
        self.log.set_context(run_id=run_id)

        metrics = RunMetrics(source, target, run_id)
        staging: Optional[StagingArea] = None
        try:
            with metrics.time_phase("extract"):
                batches = self.extractor.extract(prior, upper_bound, deadline=deadline)
                staging = self.extractor.stage(run_id, batches)
            result.state = RunState.EXTRACTED
            result.staged = staging.row_count
            metrics.count("staged", staging.row_count)

            deadline.check("stage")

            with metrics.time_phase("merge"):
                merged = self.merger.merge(
                    staging,
                    run_id=run_id,
                    prior_watermark=prior,
                    deadline=deadline,
                )
            result.state = RunState.MERGED
            result.inserted = merged.inserted
            result.updated = merged.updated
            result.unchanged = merged.unchanged
            result.watermark_after = merged.watermark
            metrics.count("inserted", merged.inserted)
            metrics.count("updated", merged.updated)
            metrics.count("unchanged", merged.unchanged)

            # The lineage entry was closed by the merge transaction
            result.state = RunState.CLOSED_SUCCESS
        except BaseException as exc:
            result.error = exc
            self._close_failed(result, exc)
            # Interrupts always propagate
            if raise_on_failure or not isinstance(exc, Exception):
                raise
        finally:
            self._discard_staging(run_id, staging)
            metrics.finish()
            result.phase_seconds = metrics.phase_seconds
            self.log.metrics(metrics)

        if result.succeeded:
            self.log.info(
                "Run of %s succeeded: %d staged, %d inserted, %d updated, %d unchanged",
                self.sync.name,
                result.staged,
                result.inserted,
                result.updated,
                result.unchanged,
            )
        return result

    def _close_failed(self, result: RunResult, exc: BaseException) -> None:
        message = exc.message if isinstance(exc, SyncError) else str(exc)
        try:
            self.lineage.close(
                result.run_id,  # type: ignore[arg-type]
                False,
                stats=None,
                error=f"{type(exc).__name__}: {message}",
            )
        except LineageFailure as close_exc:
            self.log.error(
                "Run of %s failed in state %s (%s); lineage entry %s could not be closed and stays open",
                self.sync.name,
                result.state.name,
                error_headline(exc),
                result.run_id,
            )
            raise close_exc from exc
        self.log.error(
            "Run of %s failed in state %s: %s",
            self.sync.name,
            result.state.name,
            error_headline(exc),
        )
        result.state = RunState.CLOSED_FAILED

    def _discard_staging(self, run_id: str, staging: Optional[StagingArea]) -> None:
        # A failed stage() leaves no StagingArea but may leave its table
        table_name = (
            staging.table_name if staging is not None else self.extractor.staging_table_name(run_id)
        )
        if self.sync.keep_staging:
            self.log.info("Keeping staging table %s", table_name)
            return
        try:
            if staging is not None:
                staging.drop()
            else:
                self.warehouse.drop_table(table_name)
        except Exception:
            self.log.warning("Could not drop staging table %s", table_name, exc_info=True)


def _run_job(
    warehouse: Warehouse,
    sync: SyncSpec,
    retry_config: RetryConfig,
    clock: Callable[[], datetime],
    run_kwargs: Dict[str, Any],
) -> RunResult:
    job = SyncJob(warehouse, sync, clock=clock)
    return retry_operation(
        lambda: job.run(raise_on_failure=False, **run_kwargs),
        retry_config,
        sync.name,
        retry_on_result=lambda r: is_retryable(r.error),
    )


def run_many(
    warehouse: Warehouse,
    syncs: Sequence[SyncSpec],
    *,
    max_workers: int = 4,
    retry_config: Optional[RetryConfig] = None,
    clock: Callable[[], datetime] = utc_now,
    **run_kwargs: Any,
) -> List[RunResult]:
    """Run independent syncs, in parallel when the warehouse allows it.

    Each parallel job gets its own connection to the warehouse file. An
    in-memory warehouse cannot be shared, so its jobs run one after the
    other. Run failures are returned on the results rather than raised.

    Returns:
        One RunResult per sync, in input order
    """
    retry_config = retry_config or RetryConfig.none()
    pairs = [(s.source.name, s.target) for s in syncs]
    if len(set(pairs)) != len(pairs):
        raise ValueError("run_many needs independent syncs; a (source, target) pair repeats")

    if warehouse.in_memory or max_workers <= 1 or len(syncs) <= 1:
        return [_run_job(warehouse, sync, retry_config, clock, run_kwargs) for sync in syncs]

    def run_on_own_connection(sync: SyncSpec) -> RunResult:
        with warehouse.clone() as conn:
            return _run_job(conn, sync, retry_config, clock, run_kwargs)

    logger.info("Running %d syncs with %d workers", len(syncs), max_workers)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(run_on_own_connection, syncs))
