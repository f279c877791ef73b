"""Staged incremental load library.

This package contains the building blocks of a watermark-based
synchronization: cutoff store, lineage recorder, extractor, merger and the
run orchestrator tying them together.
"""

from staged_load.lib.cancellation import RunDeadline
from staged_load.lib.config_loader import SyncConfig, load_config, validate_yaml_config
from staged_load.lib.cutoff import Cutoff, CutoffStore
from staged_load.lib.env import expand_env_vars, expand_options, load_env_file
from staged_load.lib.errors import (
    ConcurrentRunConflict,
    ConfigurationError,
    ExtractionFailure,
    LineageFailure,
    MergeFailure,
    RunCancelled,
    SyncError,
)
from staged_load.lib.extract import ExtractedBatches, Extractor, StagingArea
from staged_load.lib.lineage import LineageEntry, LineageRecorder, RunStats
from staged_load.lib.merge import MergeResult, Merger, dedupe_latest
from staged_load.lib.models import SourceSpec, SourceType, SyncSpec
from staged_load.lib.observability import (
    JSONFormatter,
    RunMetrics,
    SyncLogger,
    get_sync_logger,
    setup_logging,
)
from staged_load.lib.orchestrator import RunResult, RunState, SyncJob, run_many
from staged_load.lib.resilience import RetryConfig, is_retryable, retry_operation
from staged_load.lib.warehouse import Warehouse

__all__ = [
    # Configuration
    "SourceSpec",
    "SourceType",
    "SyncConfig",
    "SyncSpec",
    "load_config",
    "validate_yaml_config",
    "expand_env_vars",
    "expand_options",
    "load_env_file",
    # Storage
    "Warehouse",
    "Cutoff",
    "CutoffStore",
    "LineageEntry",
    "LineageRecorder",
    "RunStats",
    # Run phases
    "ExtractedBatches",
    "Extractor",
    "StagingArea",
    "MergeResult",
    "Merger",
    "dedupe_latest",
    "RunDeadline",
    "RunResult",
    "RunState",
    "SyncJob",
    "run_many",
    # Resilience
    "RetryConfig",
    "is_retryable",
    "retry_operation",
    # Errors
    "SyncError",
    "ExtractionFailure",
    "MergeFailure",
    "LineageFailure",
    "ConcurrentRunConflict",
    "RunCancelled",
    "ConfigurationError",
    # Observability
    "JSONFormatter",
    "RunMetrics",
    "SyncLogger",
    "get_sync_logger",
    "setup_logging",
]
