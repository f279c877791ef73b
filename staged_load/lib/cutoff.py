"""Cutoff (watermark) persistence for incremental synchronization.

Cutoffs track, per (source, target) pair, the last change timestamp known
to be fully merged into the target. The next run extracts from that value
onward. A missing row or a NULL cutoff means the pair has never been
synchronized and the next run performs a full backfill.

Cutoffs are stored in the ``int_etl_cutoff`` table of the warehouse so that
advancing the cutoff can share a transaction with the target mutation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from staged_load.lib.time_utils import utc_now
from staged_load.lib.warehouse import Warehouse

logger = logging.getLogger(__name__)

__all__ = ["Cutoff", "CutoffStore"]


@dataclass
class Cutoff:
    """One row of the cutoff table."""

    source: str
    target: str
    watermark: Optional[datetime]
    updated_at: Optional[datetime] = None


class CutoffStore:
    """Read and advance cutoffs in the warehouse.

    Example:
        >>> cutoffs = CutoffStore(warehouse)
        >>> last = cutoffs.get("Demo.raw_shopify_order_items", "fact_order_detail")
        >>> if last:
        ...     print(f"Resuming from {last}")
    """

    def __init__(self, warehouse: Warehouse, *, clock: Callable[[], datetime] = utc_now):
        self.warehouse = warehouse
        self.clock = clock

    def get(self, source: str, target: str) -> Optional[datetime]:
        """Return the last cutoff for the pair, or None if never synchronized."""
        row = self.warehouse.fetchone(
            "SELECT cutoff_time, updated_at FROM int_etl_cutoff "
            "WHERE src_table_name = ? AND tgt_table_name = ?",
            [source, target],
        )
        if row is None:
            logger.debug("No cutoff found for %s -> %s", source, target)
            return None

        logger.debug(
            "Found cutoff for %s -> %s: %s (updated %s)",
            source,
            target,
            row[0],
            row[1] or "never",
        )
        return row[0]

    def set(self, source: str, target: str, watermark: Optional[datetime]) -> Optional[datetime]:
        """Advance the cutoff for the pair.

        The stored value never moves backwards: the larger of the stored and
        the given watermark is kept. Callers that couple this with a target
        mutation must call it inside the same ``warehouse.transaction()``.

        Returns:
            The cutoff now stored.
        """
        with self.warehouse.transaction():
            row = self.warehouse.fetchone(
                "SELECT cutoff_time FROM int_etl_cutoff "
                "WHERE src_table_name = ? AND tgt_table_name = ?",
                [source, target],
            )
            previous = row[0] if row else None
            new_value = _max_watermark(previous, watermark)

            if previous is not None and watermark is not None and watermark < previous:
                logger.warning(
                    "Ignoring cutoff regression for %s -> %s: %s < %s",
                    source,
                    target,
                    watermark,
                    previous,
                )

            if row is None:
                self.warehouse.execute(
                    "INSERT INTO int_etl_cutoff "
                    "(src_table_name, tgt_table_name, cutoff_time, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    [source, target, new_value, self.clock()],
                )
            else:
                self.warehouse.execute(
                    "UPDATE int_etl_cutoff SET cutoff_time = ?, updated_at = ? "
                    "WHERE src_table_name = ? AND tgt_table_name = ?",
                    [new_value, self.clock(), source, target],
                )

        logger.info("Cutoff for %s -> %s: %s", source, target, new_value)
        return new_value

    def reset(self, source: str, target: str) -> bool:
        """Set the cutoff back to NULL to force a full backfill.

        This is the one operator action allowed to move a cutoff backwards.

        Returns:
            True if a cutoff row existed, False otherwise
        """
        with self.warehouse.transaction():
            existed = self.warehouse.fetchone(
                "SELECT 1 FROM int_etl_cutoff WHERE src_table_name = ? AND tgt_table_name = ?",
                [source, target],
            )
            if existed:
                self.warehouse.execute(
                    "UPDATE int_etl_cutoff SET cutoff_time = NULL, updated_at = ? "
                    "WHERE src_table_name = ? AND tgt_table_name = ?",
                    [self.clock(), source, target],
                )

        if existed:
            logger.info("Reset cutoff for %s -> %s", source, target)
        return bool(existed)

    def list(self) -> List[Cutoff]:
        """List all stored cutoffs."""
        rows = self.warehouse.fetchall(
            "SELECT src_table_name, tgt_table_name, cutoff_time, updated_at "
            "FROM int_etl_cutoff ORDER BY src_table_name, tgt_table_name"
        )
        return [Cutoff(*row) for row in rows]

    def age_hours(self, source: str, target: str) -> Optional[float]:
        """Hours since the cutoff of the pair was last written.

        Useful for monitoring and alerting on stale synchronizations.
        """
        updated_at = self.warehouse.scalar(
            "SELECT updated_at FROM int_etl_cutoff "
            "WHERE src_table_name = ? AND tgt_table_name = ?",
            [source, target],
        )
        if updated_at is None:
            return None
        return (self.clock() - updated_at).total_seconds() / 3600


def _max_watermark(
    current: Optional[datetime],
    candidate: Optional[datetime],
) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is None:
        return current
    return max(current, candidate)
