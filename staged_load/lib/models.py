"""Declarative definitions of a source feed and a (source, target) sync.

A ``SyncSpec`` describes everything a run needs to know about one pair:
where the source rows come from, which columns identify a record, which
column carries the change timestamp and which business fields decide
whether a record actually changed.

Column names used by ``natural_keys``, ``change_timestamp`` and
``compare_columns`` are the names rows have once staged, i.e. after
``rename`` has been applied to the source projection.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from staged_load.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["SourceSpec", "SourceType", "SyncSpec", "quote_ident", "split_name"]

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")


class SourceType(Enum):
    """Where the source rows are read from."""

    TABLE = "table"  # Table or view in the warehouse
    CSV = "csv"
    PARQUET = "parquet"


def split_name(name: str) -> List[str]:
    """Split an optionally schema-qualified name into its parts."""
    return [part for part in name.split(".") if part]


def quote_ident(name: str) -> str:
    """Quote a (possibly schema-qualified) identifier for DuckDB SQL.

    >>> quote_ident("Demo.fact_order_detail")
    '"Demo"."fact_order_detail"'
    """
    return ".".join('"' + part.replace('"', '""') + '"' for part in split_name(name))


def _valid_table_name(name: str) -> bool:
    parts = split_name(name)
    return 0 < len(parts) <= 2 and all(_IDENT_RE.match(p) for p in parts)


@dataclass
class SourceSpec:
    """A source feed.

    ``name`` identifies the feed in the cutoff and lineage tables.
    ``location`` is the warehouse table for ``TABLE`` sources (defaults to
    ``name``) or a file path / glob for ``CSV`` and ``PARQUET`` sources.
    ``options`` are passed to the Ibis file reader (e.g. CSV ``types``).
    """

    name: str
    source_type: SourceType = SourceType.TABLE
    location: str = ""
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.source_type, str):
            self.source_type = SourceType(self.source_type)
        if not self.location and self.source_type == SourceType.TABLE:
            self.location = self.name


@dataclass
class SyncSpec:
    """Declarative definition of one (source, target) synchronization.

    Example:
        sync = SyncSpec(
            name="order_details",
            source=SourceSpec(
                name="Demo.raw_shopify_order_items",
                source_type=SourceType.CSV,
                location="./data/raw_shopify_order_items.csv",
            ),
            target="fact_order_detail",
            natural_keys=["detail_id"],
            change_timestamp="update_date",
            rename={"id": "detail_id"},
            compare_columns=["financial_status", "fulfillment_status"],
        )
    """

    name: str
    source: SourceSpec
    target: str

    # Identity
    natural_keys: List[str]

    # Temporal
    change_timestamp: str

    # Shape of the staged rows
    columns: Optional[List[str]] = None  # Source projection (None = all)
    rename: Dict[str, str] = field(default_factory=dict)  # source -> staged name

    # Business fields deciding whether a matched record changed
    compare_columns: Optional[List[str]] = None  # None = every payload column

    # Lower bound used while the pair has never been synchronized
    backfill_origin: Optional[datetime] = None

    # Audit columns maintained on the target
    created_at_column: str = "created_at"
    updated_at_column: str = "last_updated_at"

    # Behavior
    keep_staging: bool = False
    batch_size: int = 100_000

    def __post_init__(self) -> None:
        """Validate configuration on instantiation."""
        errors = self._validate()
        if errors:
            raise ConfigurationError(
                f"Invalid sync definition '{self.name or '?'}'",
                issues=errors,
                source=self.source.name if self.source else None,
                target=self.target or None,
            )

    def _validate(self) -> List[str]:
        errors = []

        if not self.name:
            errors.append("name is required")

        if not self.source or not self.source.name:
            errors.append("source.name is required")
        elif not self.source.location:
            errors.append(
                f"source.location is required for {self.source.source_type.value} sources"
            )

        if not self.target:
            errors.append("target is required")
        elif not _valid_table_name(self.target):
            errors.append(
                f"target '{self.target}' must be a table name, optionally schema-qualified"
            )

        if not self.natural_keys:
            errors.append("natural_keys is required (what makes a record unique?)")

        if not self.change_timestamp:
            errors.append(
                "change_timestamp is required (when was the record last changed?)"
            )
        elif self.change_timestamp in (self.natural_keys or []):
            errors.append("change_timestamp cannot be part of natural_keys")

        audit = {self.created_at_column, self.updated_at_column}
        if len(audit) != 2:
            errors.append("created_at_column and updated_at_column must differ")

        staged = set(self.natural_keys or []) | {self.change_timestamp}
        clashing = sorted(audit & staged)
        if clashing:
            errors.append(f"audit columns clash with staged columns: {clashing}")

        if self.compare_columns is not None:
            if not self.compare_columns:
                errors.append("compare_columns cannot be empty (omit it to compare all)")
            excluded = set(self.natural_keys or []) | {self.change_timestamp} | audit
            bad = sorted(set(self.compare_columns) & excluded)
            if bad:
                errors.append(
                    f"compare_columns must be business fields, not keys or timestamps: {bad}"
                )

        renamed = list(self.rename.values())
        if len(renamed) != len(set(renamed)):
            errors.append("rename maps two source columns onto the same name")

        if self.columns is not None:
            unknown = sorted(set(self.rename) - set(self.columns))
            if unknown:
                errors.append(f"rename refers to columns not selected: {unknown}")

        if self.batch_size <= 0:
            errors.append("batch_size must be positive")

        return errors

    @property
    def pair(self) -> str:
        return f"{self.source.name} -> {self.target}"

    def staged_name(self, source_column: str) -> str:
        return self.rename.get(source_column, source_column)

    def payload_columns(self, staged_columns: List[str]) -> List[str]:
        """Columns carried to the target, in staged order."""
        return [c for c in staged_columns if not c.startswith("_stg_")]

    def resolve_compare_columns(self, staged_columns: List[str]) -> List[str]:
        """Business fields compared when a key already exists in the target."""
        if self.compare_columns is not None:
            return list(self.compare_columns)
        excluded = set(self.natural_keys) | {
            self.change_timestamp,
            self.created_at_column,
            self.updated_at_column,
        }
        return [c for c in self.payload_columns(staged_columns) if c not in excluded]
