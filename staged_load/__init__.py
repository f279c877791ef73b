"""Watermark-based staged incremental loads into a DuckDB warehouse.

Each run extracts the rows a source changed since the last cutoff, stages
them in a per-run table, merges them into the target and records the
attempt in a lineage table.

Usage:
    staged-load init ./order_details.yaml
    staged-load run ./order_details.yaml --upper-bound 2025-09-17T00:00:00
    python -m staged_load status ./order_details.yaml
"""

from staged_load.lib.models import SourceSpec, SourceType, SyncSpec
from staged_load.lib.orchestrator import RunResult, SyncJob, run_many

__version__ = "0.1.0"

__all__ = [
    "SourceSpec",
    "SourceType",
    "SyncSpec",
    "SyncJob",
    "RunResult",
    "run_many",
]
