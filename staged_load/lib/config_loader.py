"""YAML configuration loader for staged incremental loads.

A config file names the warehouse and lists the syncs to run against it.

Example YAML (order_details.yaml):
    warehouse: ${STAGED_LOAD_WAREHOUSE:-./warehouse.duckdb}
    syncs:
      - name: order_details
        source:
          name: Demo.raw_shopify_order_items
          type: csv
          path: ./data/raw_shopify_order_items.csv
        target: fact_order_detail
        natural_keys: [detail_id]
        change_timestamp: update_date
        rename: {id: detail_id}
        backfill_origin: "2025-09-01T00:00:00"

Usage:
    # Command line
    staged-load run ./order_details.yaml

    # Python API
    from staged_load.lib.config_loader import load_config
    config = load_config("./order_details.yaml")
    with config.open_warehouse() as warehouse:
        run_many(warehouse, config.syncs)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from staged_load.lib.env import expand_options
from staged_load.lib.errors import ConfigurationError
from staged_load.lib.models import SourceSpec, SourceType, SyncSpec
from staged_load.lib.time_utils import parse_timestamp
from staged_load.lib.warehouse import MEMORY, Warehouse

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_WAREHOUSE",
    "SyncConfig",
    "WAREHOUSE_ENV_VAR",
    "load_config",
    "load_sync_from_yaml",
    "validate_yaml_config",
]

WAREHOUSE_ENV_VAR = "STAGED_LOAD_WAREHOUSE"
DEFAULT_WAREHOUSE = "./warehouse.duckdb"

SYNC_KEYS = {
    "name",
    "source",
    "target",
    "natural_keys",
    "change_timestamp",
    "columns",
    "rename",
    "compare_columns",
    "backfill_origin",
    "created_at_column",
    "updated_at_column",
    "keep_staging",
    "batch_size",
}
SOURCE_KEYS = {"name", "type", "path", "table", "options"}

SOURCE_TYPE_MAP = {
    "table": SourceType.TABLE,
    "view": SourceType.TABLE,
    "csv": SourceType.CSV,
    "file_csv": SourceType.CSV,
    "parquet": SourceType.PARQUET,
    "file_parquet": SourceType.PARQUET,
}


@dataclass
class SyncConfig:
    """A parsed configuration file."""

    warehouse: str
    syncs: List[SyncSpec] = field(default_factory=list)
    config_path: Optional[Path] = None

    @property
    def sync_names(self) -> List[str]:
        return [s.name for s in self.syncs]

    def get(self, name: str) -> SyncSpec:
        for sync in self.syncs:
            if sync.name == name:
                return sync
        raise ConfigurationError(
            f"Unknown sync '{name}'",
            details={"available": ", ".join(self.sync_names)},
        )

    def select(self, names: Optional[Sequence[str]] = None) -> List[SyncSpec]:
        """The named syncs in the given order, or all of them."""
        if not names:
            return list(self.syncs)
        return [self.get(name) for name in names]

    def open_warehouse(self, *, read_only: bool = False) -> Warehouse:
        return Warehouse(self.warehouse, read_only=read_only)


def _resolve_path(path: str, config_dir: Path) -> str:
    """Resolve relative paths against the config file location.

    Absolute paths, URLs and ``:memory:`` are unchanged.
    """
    if not path or path == MEMORY:
        return path
    if "://" in path or os.path.isabs(path):
        return path
    return str((config_dir / path).resolve())


def _resolve_warehouse(value: Any, config_dir: Path) -> str:
    warehouse = str(value) if value else ""
    # An unexpanded reference means the variable is unset
    if not warehouse or "$" in warehouse:
        warehouse = os.environ.get(WAREHOUSE_ENV_VAR, DEFAULT_WAREHOUSE)
    return _resolve_path(warehouse, config_dir)


def _as_list(value: Any, key: str, issues: List[str]) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    issues.append(f"{key} must be a string or a list of strings")
    return None


def _load_source(config: Any, config_dir: Path, issues: List[str]) -> Optional[SourceSpec]:
    if isinstance(config, str):
        return SourceSpec(name=config)
    if not isinstance(config, dict):
        issues.append("source must be a table name or a mapping")
        return None

    unknown = sorted(set(config) - SOURCE_KEYS)
    if unknown:
        issues.append(f"source has unknown keys: {unknown}")

    type_name = str(config.get("type", "table")).lower()
    source_type = SOURCE_TYPE_MAP.get(type_name)
    if source_type is None:
        issues.append(
            f"source.type '{type_name}' is not one of {sorted(set(SOURCE_TYPE_MAP))}"
        )
        return None

    name = config.get("name") or config.get("table") or config.get("path")
    if not name:
        issues.append("source.name is required")
        return None

    if source_type == SourceType.TABLE:
        location = config.get("table") or name
    else:
        location = config.get("path")
        if not location:
            issues.append(f"source.path is required for {type_name} sources")
            return None
        location = _resolve_path(location, config_dir)

    options = config.get("options") or {}
    if not isinstance(options, dict):
        issues.append("source.options must be a mapping")
        options = {}
    elif options and source_type == SourceType.TABLE:
        issues.append("source.options only apply to csv and parquet sources")

    return SourceSpec(
        name=str(name),
        source_type=source_type,
        location=str(location),
        options=options,
    )


def load_sync_from_yaml(config: Dict[str, Any], config_dir: Path) -> SyncSpec:
    """Build one SyncSpec from its YAML mapping.

    Raises:
        ConfigurationError: Listing every problem found in the mapping
    """
    if not isinstance(config, dict):
        raise ConfigurationError("Each sync must be a mapping")

    issues: List[str] = []
    unknown = sorted(set(config) - SYNC_KEYS)
    if unknown:
        issues.append(f"unknown keys: {unknown}")

    source = _load_source(config.get("source"), config_dir, issues)
    natural_keys = _as_list(config.get("natural_keys"), "natural_keys", issues)
    columns = _as_list(config.get("columns"), "columns", issues)
    compare_columns = _as_list(config.get("compare_columns"), "compare_columns", issues)

    rename = config.get("rename") or {}
    if not isinstance(rename, dict):
        issues.append("rename must be a mapping of source column to target column")
        rename = {}

    try:
        backfill_origin = parse_timestamp(config.get("backfill_origin"))
    except ValueError as e:
        issues.append(f"backfill_origin: {e}")
        backfill_origin = None

    if issues or source is None:
        raise ConfigurationError(
            f"Invalid sync definition '{config.get('name', '?')}'",
            issues=issues or ["source is required"],
        )

    kwargs: Dict[str, Any] = {}
    for key in ("created_at_column", "updated_at_column", "batch_size"):
        if key in config:
            kwargs[key] = config[key]

    return SyncSpec(
        name=str(config.get("name") or ""),
        source=source,
        target=str(config.get("target") or ""),
        natural_keys=natural_keys or [],
        change_timestamp=str(config.get("change_timestamp") or ""),
        columns=columns,
        rename={str(k): str(v) for k, v in rename.items()},
        compare_columns=compare_columns,
        backfill_origin=backfill_origin,
        keep_staging=bool(config.get("keep_staging", False)),
        **kwargs,
    )


def load_config(config_path: Union[str, Path]) -> SyncConfig:
    """Load a sync configuration file.

    Raises:
        ConfigurationError: If the configuration is invalid
        FileNotFoundError: If the config file doesn't exist
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    config_dir = config_path.parent.resolve()

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

    if not raw:
        raise ConfigurationError(f"Empty configuration file: {config_path}")
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be a mapping with a 'syncs' list")

    raw = expand_options(raw)

    entries = raw.get("syncs")
    if not entries or not isinstance(entries, list):
        raise ConfigurationError("Configuration must have a non-empty 'syncs' list")

    issues: List[str] = []
    syncs: List[SyncSpec] = []
    for index, entry in enumerate(entries):
        label = entry.get("name", f"#{index}") if isinstance(entry, dict) else f"#{index}"
        try:
            syncs.append(load_sync_from_yaml(entry, config_dir))
        except ConfigurationError as e:
            issues.extend(f"syncs[{label}]: {issue}" for issue in (e.issues or [e.message]))

    names = [s.name for s in syncs]
    for name in sorted({n for n in names if names.count(n) > 1}):
        issues.append(f"duplicate sync name '{name}'")

    pairs = [(s.source.name, s.target) for s in syncs]
    for source, target in sorted({p for p in pairs if pairs.count(p) > 1}):
        issues.append(f"two syncs share the pair {source} -> {target}")

    if issues:
        raise ConfigurationError(f"Invalid configuration {config_path}", issues=issues)

    config = SyncConfig(
        warehouse=_resolve_warehouse(raw.get("warehouse"), config_dir),
        syncs=syncs,
        config_path=config_path,
    )
    logger.debug(
        "Loaded %d syncs from %s (warehouse %s)",
        len(syncs),
        config_path,
        config.warehouse,
    )
    return config


def validate_yaml_config(config_path: Union[str, Path]) -> List[str]:
    """Validate a configuration file without opening the warehouse.

    Returns:
        List of validation errors (empty if valid)
    """
    try:
        load_config(config_path)
    except ConfigurationError as e:
        return e.issues or [e.message]
    except FileNotFoundError as e:
        return [str(e)]
    return []
