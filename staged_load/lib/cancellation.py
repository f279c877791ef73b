"""Timeout and cancellation checks for a single run."""

from __future__ import annotations

import threading
import time
from typing import Optional

from staged_load.lib.errors import RunCancelled

__all__ = ["RunDeadline"]


class RunDeadline:
    """A timeout plus an optional cancel event, checked between run phases.

    The extractor checks it between batches and the merger checks it before
    committing, so a tripped deadline always leaves the target and cutoff
    untouched.

    Example:
        >>> cancel = threading.Event()
        >>> deadline = RunDeadline(timeout=300, cancel_event=cancel)
        >>> deadline.check("extract")
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        self.timeout = timeout
        self.cancel_event = cancel_event
        self._expires_at = time.monotonic() + timeout if timeout is not None else None

    @property
    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check(self, phase: str) -> None:
        """Raise RunCancelled if the run was cancelled or ran out of time."""
        if self.cancelled:
            raise RunCancelled(f"Run cancelled during {phase}", details={"phase": phase})
        if self.expired:
            raise RunCancelled(
                f"Run exceeded its {self.timeout}s timeout during {phase}",
                details={"phase": phase, "timeout_seconds": self.timeout},
            )
