"""Structured exception hierarchy for synchronization runs.

Every failure mode of a run has its own exception type carrying the
(source, target) pair and the run id, so that the orchestrator can record it
on the lineage entry and operators get enough context to act on it.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "SyncError",
    "ExtractionFailure",
    "MergeFailure",
    "LineageFailure",
    "ConcurrentRunConflict",
    "RunCancelled",
    "ConfigurationError",
    "error_headline",
]


class SyncError(Exception):
    """Base exception for all synchronization errors.

    Provides structured error information for debugging.
    """

    # Whether re-invoking the whole run later can be expected to help
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        target: Optional[str] = None,
        run_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.source = source
        self.target = target
        self.run_id = run_id
        self.cause = cause
        self.details = dict(details or {})
        self.suggestion = suggestion

        if cause is not None:
            self.details.setdefault("cause", str(cause))
            self.details.setdefault("cause_type", type(cause).__name__)

        headline = message
        if source or target:
            headline = f"[{source or '?'} -> {target or '?'}] {headline}"
        if run_id:
            headline = f"{headline} (run {run_id})"

        parts = [headline]

        if self.details:
            parts.append("\nDetails:")
            parts.extend(f"  {k}: {v}" for k, v in self.details.items())

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source": self.source,
            "target": self.target,
            "run_id": self.run_id,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ExtractionFailure(SyncError):
    """Source unreachable or a malformed source record.

    Fatal to the run; the cutoff is untouched so the next trigger re-reads
    the same window.
    """

    retryable = True


class MergeFailure(SyncError):
    """Target write failed while reconciling the staged batch.

    The merge transaction has been rolled back: neither the target nor the
    cutoff reflect any part of the batch.
    """

    retryable = True


class LineageFailure(SyncError):
    """The audit trail could not be written or is inconsistent.

    A run whose lineage cannot be recorded is never considered successful.
    """

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "suggestion",
            "Check the int_lineage table; an operator may need to abandon "
            "the affected run before the pair can be synchronized again.",
        )
        super().__init__(message, **kwargs)


class ConcurrentRunConflict(SyncError):
    """Another run of the same (source, target) pair is still open."""

    def __init__(
        self,
        message: str,
        *,
        open_run_ids: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.open_run_ids = list(open_run_ids or [])
        details = kwargs.pop("details", {})
        if self.open_run_ids:
            details["open_run_ids"] = ", ".join(self.open_run_ids)
        kwargs.setdefault(
            "suggestion",
            "Wait for the running synchronization to finish. If it crashed, "
            "close it with `staged-load abandon <config> <run_id>`.",
        )
        super().__init__(message, details=details, **kwargs)


class RunCancelled(SyncError):
    """The run hit its timeout or was cancelled by the caller."""

    retryable = True


class ConfigurationError(SyncError):
    """Invalid or incomplete sync configuration."""

    def __init__(
        self,
        message: str,
        *,
        issues: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.issues = list(issues or [])

        details = kwargs.pop("details", {})
        if self.issues:
            details["issue_count"] = len(self.issues)
            issue_lines = "\n".join(f"  - {issue}" for issue in self.issues)
            message = f"{message}\n\nIssues found:\n{issue_lines}"

        super().__init__(message, details=details, **kwargs)


def error_headline(error: Any) -> str:
    """First line of an error's message, or its type name when the message is empty."""
    lines = str(error).splitlines()
    return lines[0] if lines else type(error).__name__
