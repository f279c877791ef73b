"""Shared test helpers: a fake clock, a mutable source feed and target readers."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pandas as pd

from staged_load.lib.warehouse import Warehouse

BASE_TIME = datetime(2025, 9, 15, 0, 0, 0)


def ts(hours: float) -> datetime:
    """Timestamp ``hours`` after the test epoch (2025-09-15 00:00)."""
    return BASE_TIME + timedelta(hours=hours)


class FakeClock:
    """Deterministic clock for audit columns and lineage timestamps."""

    def __init__(self, start: datetime = datetime(2025, 9, 20, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class SourceFeed:
    """A mutable source table of orders in the warehouse."""

    def __init__(self, warehouse: Warehouse, name: str = "raw_orders"):
        self.warehouse = warehouse
        self.name = name
        warehouse.execute(
            f"CREATE TABLE {name} ("
            "id VARCHAR, status VARCHAR, amount DOUBLE, updated_at TIMESTAMP)"
        )

    def add(self, id: Optional[str], status: str, amount: float, updated_at: Optional[datetime]) -> None:
        self.warehouse.execute(
            f"INSERT INTO {self.name} VALUES (?, ?, ?, ?)",
            [id, status, amount, updated_at],
        )

    def modify(self, id: str, updated_at: datetime, **changes: Any) -> None:
        assignments = [f"{column} = ?" for column in changes] + ["updated_at = ?"]
        params: List[Any] = list(changes.values()) + [updated_at, id]
        self.warehouse.execute(
            f"UPDATE {self.name} SET {', '.join(assignments)} WHERE id = ?",
            params,
        )


def read_target(warehouse: Warehouse, table: str = "fact_orders") -> pd.DataFrame:
    """The target table as a DataFrame ordered by key."""
    df = warehouse.backend.table(table).to_pandas()
    return df.sort_values("id").reset_index(drop=True)


def target_rows(warehouse: Warehouse, table: str = "fact_orders") -> Dict[str, Dict[str, Any]]:
    """Target rows keyed by id."""
    rows = warehouse.fetchall(
        f"SELECT id, status, amount, updated_at, created_at, last_updated_at FROM {table}"
    )
    columns = ["id", "status", "amount", "updated_at", "created_at", "last_updated_at"]
    return {row[0]: dict(zip(columns, row)) for row in rows}

