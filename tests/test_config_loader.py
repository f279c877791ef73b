"""Tests for the YAML sync configuration loader."""

from datetime import datetime
from pathlib import Path

import pytest

from staged_load.lib.config_loader import (
    DEFAULT_WAREHOUSE,
    WAREHOUSE_ENV_VAR,
    load_config,
    validate_yaml_config,
)
from staged_load.lib.errors import ConfigurationError
from staged_load.lib.models import SourceType

MINIMAL = """
warehouse: ./wh.duckdb
syncs:
  - name: orders
    source: raw_orders
    target: fact_orders
    natural_keys: id
    change_timestamp: updated_at
"""


def write(tmp_path: Path, text: str, name: str = "syncs.yaml") -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_minimal_config(self, tmp_path):
        config = load_config(write(tmp_path, MINIMAL))

        [sync] = config.syncs
        assert sync.name == "orders"
        assert sync.source.source_type == SourceType.TABLE
        assert sync.source.location == "raw_orders"
        assert sync.natural_keys == ["id"]
        assert sync.compare_columns is None
        assert config.warehouse == str((tmp_path / "wh.duckdb").resolve())

    def test_full_sync_definition(self, tmp_path):
        config = load_config(
            write(
                tmp_path,
                """
syncs:
  - name: order_details
    source:
      name: Demo.raw_shopify_order_items
      type: csv
      path: data/items.csv
      options:
        types: {id: VARCHAR}
    target: Demo.fact_order_detail
    natural_keys: [detail_id]
    change_timestamp: update_date
    columns: [id, financial_status, update_date]
    rename: {id: detail_id}
    compare_columns: [financial_status]
    backfill_origin: "2025-09-01T00:00:00"
    created_at_column: dt_insert
    updated_at_column: dt_update
    keep_staging: true
    batch_size: 500
""",
            )
        )

        sync = config.get("order_details")
        assert sync.source.source_type == SourceType.CSV
        assert sync.source.location == str((tmp_path / "data" / "items.csv").resolve())
        assert sync.source.options == {"types": {"id": "VARCHAR"}}
        assert sync.target == "Demo.fact_order_detail"
        assert sync.rename == {"id": "detail_id"}
        assert sync.backfill_origin == datetime(2025, 9, 1)
        assert (sync.created_at_column, sync.updated_at_column) == ("dt_insert", "dt_update")
        assert sync.keep_staging is True
        assert sync.batch_size == 500

    def test_bundled_example_is_valid(self):
        example = Path(__file__).parent.parent / "staged_load" / "examples" / "order_details.yaml"
        assert validate_yaml_config(example) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(write(tmp_path, "syncs: [unclosed"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Empty"):
            load_config(write(tmp_path, ""))

    def test_syncs_required(self, tmp_path):
        with pytest.raises(ConfigurationError, match="syncs"):
            load_config(write(tmp_path, "warehouse: wh.duckdb\n"))


class TestValidation:
    def test_all_issues_reported_at_once(self, tmp_path):
        """Every broken sync is reported, prefixed with its name."""
        issues = validate_yaml_config(
            write(
                tmp_path,
                """
syncs:
  - name: first
    source: raw_a
    target: fact_a
    change_timestamp: updated_at
  - name: second
    source: {type: excel, name: raw_b}
    target: fact_b
    natural_keys: [id]
    change_timestamp: updated_at
""",
            )
        )

        assert any(i.startswith("syncs[first]: natural_keys is required") for i in issues)
        assert any(i.startswith("syncs[second]: source.type 'excel'") for i in issues)

    def test_unknown_keys(self, tmp_path):
        issues = validate_yaml_config(write(tmp_path, MINIMAL + "    primary_key: id\n"))
        assert issues == ["syncs[orders]: unknown keys: ['primary_key']"]

    def test_duplicate_names_and_pairs(self, tmp_path):
        second = MINIMAL.split("syncs:\n")[1]
        issues = validate_yaml_config(write(tmp_path, MINIMAL + second))

        assert "duplicate sync name 'orders'" in issues
        assert "two syncs share the pair raw_orders -> fact_orders" in issues

    def test_file_source_needs_path(self, tmp_path):
        issues = validate_yaml_config(
            write(tmp_path, MINIMAL.replace("source: raw_orders", "source: {name: raw, type: parquet}"))
        )
        assert issues == ["syncs[orders]: source.path is required for parquet sources"]

    def test_options_rejected_for_tables(self, tmp_path):
        issues = validate_yaml_config(
            write(
                tmp_path,
                MINIMAL.replace(
                    "source: raw_orders", "source: {name: raw, options: {header: true}}"
                ),
            )
        )
        assert issues == ["syncs[orders]: source.options only apply to csv and parquet sources"]

    def test_bad_backfill_origin(self, tmp_path):
        issues = validate_yaml_config(write(tmp_path, MINIMAL + "    backfill_origin: soon\n"))
        assert len(issues) == 1
        assert issues[0].startswith("syncs[orders]: backfill_origin")

    def test_compare_columns_cannot_include_keys(self, tmp_path):
        issues = validate_yaml_config(write(tmp_path, MINIMAL + "    compare_columns: [id, status]\n"))
        assert any("compare_columns must be business fields" in i for i in issues)


class TestWarehouseResolution:
    def test_env_reference_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SYNC_DATA_DIR", str(tmp_path / "data"))
        config = load_config(
            write(tmp_path, MINIMAL.replace("./wh.duckdb", "${SYNC_DATA_DIR}/wh.duckdb"))
        )
        assert config.warehouse == str(tmp_path / "data" / "wh.duckdb")

    def test_unset_reference_falls_back_to_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SYNC_DATA_DIR", raising=False)
        monkeypatch.setenv(WAREHOUSE_ENV_VAR, ":memory:")
        config = load_config(
            write(tmp_path, MINIMAL.replace("./wh.duckdb", "${SYNC_DATA_DIR}/wh.duckdb"))
        )
        assert config.warehouse == ":memory:"

    def test_default_warehouse(self, tmp_path, monkeypatch):
        monkeypatch.delenv(WAREHOUSE_ENV_VAR, raising=False)
        config = load_config(write(tmp_path, MINIMAL.replace("warehouse: ./wh.duckdb\n", "")))
        assert config.warehouse == str((tmp_path / DEFAULT_WAREHOUSE).resolve())


class TestSelect:
    def test_select_in_given_order(self, tmp_path):
        second = MINIMAL.split("syncs:\n")[1].replace("orders", "refunds")
        config = load_config(write(tmp_path, MINIMAL + second))

        assert config.sync_names == ["orders", "refunds"]
        assert [s.name for s in config.select(["refunds", "orders"])] == ["refunds", "orders"]
        assert config.select() == config.syncs

    def test_unknown_sync(self, tmp_path):
        config = load_config(write(tmp_path, MINIMAL))
        with pytest.raises(ConfigurationError, match="Unknown sync 'nope'"):
            config.get("nope")
