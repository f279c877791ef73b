"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from staged_load.lib.models import SourceSpec, SyncSpec  # noqa: E402
from staged_load.lib.warehouse import Warehouse  # noqa: E402
from tests.helpers import FakeClock, SourceFeed  # noqa: E402


@pytest.fixture
def warehouse():
    wh = Warehouse()
    wh.ensure_control_tables()
    yield wh
    wh.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def feed(warehouse: Warehouse) -> SourceFeed:
    return SourceFeed(warehouse)


@pytest.fixture
def sync() -> SyncSpec:
    return SyncSpec(
        name="orders",
        source=SourceSpec(name="raw_orders"),
        target="fact_orders",
        natural_keys=["id"],
        change_timestamp="updated_at",
        compare_columns=["status", "amount"],
    )
