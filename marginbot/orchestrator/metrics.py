"""Live status and rolling error counters for Marginbot.

:class:`StatusTracker` is the in-process status aggregator.  A running cycle
pushes updates into it as they happen (windows started, API and store
errors), and readers get a consistent JSON-serialisable view through
:meth:`StatusTracker.status` at any time without waiting for the cycle.

Rolling error counters persist across cycles.  The only reset is
``last_cycle_count``, which drops to zero when a new cycle starts and is set
to that cycle's count when it completes.

Two output paths exist:

1. **Log summary** — :meth:`~marginbot.orchestrator.pipeline.CycleSummary.format_cycle_report`
   is logged at the end of every cycle.
2. **JSON status file** — :func:`write_status_file` serialises a status
   snapshot to a file (default ``/tmp/marginbot_status.json``, see
   ``STATUS_PATH``).  Operators inspect it with
   ``cat /tmp/marginbot_status.json``.  Write errors are logged at WARNING
   level and never propagated.

Typical usage::

    from marginbot.orchestrator.metrics import StatusTracker, write_status_file

    tracker = StatusTracker()
    tracker.start_cycle("scheduler")
    tracker.record_api_error("GET /private-consignment/consult", 502, "Bad gateway")
    tracker.complete_cycle()
    write_status_file(tracker.status(), "/tmp/marginbot_status.json")
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = [
    "ErrorEvent",
    "ErrorCounter",
    "StatusTracker",
    "format_duration",
    "format_timestamp",
    "write_status_file",
]

logger = logging.getLogger(__name__)

#: Status code reported for failures that produced no HTTP status.
_DEFAULT_ERROR_STATUS = 500


def _utcnow() -> datetime:
    return datetime.now(UTC)


def format_duration(seconds: float) -> str:
    """Format a duration as ``hh:mm:ss`` (negative values clamp to zero).

    Hours are not wrapped: 90 000 s is ``"25:00:00"``.
    """
    total = max(0, int(seconds or 0))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_timestamp(moment: datetime) -> str:
    """Format *moment* as ``YYYY-MM-DD HH:MM:SS`` in UTC."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC)
    return moment.strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorEvent:
    """The most recent instance of an API or store error.

    Attributes:
        at: When the error was recorded (UTC).
        route: Originating call, e.g. ``"POST /private-consignment/consult"``
            or ``"store:update_by_document"``.
        status: HTTP status, or 500 for failures without one.
        message: Human-readable description.
    """

    at: datetime
    route: str
    status: int
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "at": format_timestamp(self.at),
            "route": self.route,
            "status": self.status,
            "message": self.message,
        }


@dataclass
class ErrorCounter:
    """Rolling counters for one error family (API or store)."""

    total_count: int = 0
    last_cycle_count: int = 0
    last: ErrorEvent | None = None
    had_errors_in_current_cycle: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "last_cycle_count": self.last_cycle_count,
            "last": self.last.as_dict() if self.last else None,
            "had_errors_in_current_cycle": self.had_errors_in_current_cycle,
        }


@dataclass
class _LiveCycle:
    source: str
    started_at: datetime
    api_errors: int = 0
    store_errors: int = 0
    windows_started: int = 0


@dataclass
class _CompletedCycle:
    source: str
    started_at: datetime
    completed_at: datetime
    api_errors: int
    store_errors: int
    windows_started: int

    def as_dict(self) -> dict[str, Any]:
        duration_s = (self.completed_at - self.started_at).total_seconds()
        return {
            "source": self.source,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "duration_s": round(duration_s, 3),
            "duration_hhmmss": format_duration(duration_s),
            "api_errors": self.api_errors,
            "store_errors": self.store_errors,
            "windows_started": self.windows_started,
            "had_api_errors": self.api_errors > 0,
            "had_store_errors": self.store_errors > 0,
        }


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


@dataclass
class StatusTracker:
    """Aggregates live cycle metrics and rolling error counters.

    All methods are synchronous and never await, so within one event loop a
    reader always sees a consistent state.

    Attributes:
        api_errors: Rolling API error counters.
        store_errors: Rolling store error counters.
        last_cycle: Metrics of the last completed cycle, if any.
    """

    clock: Callable[[], datetime] = field(default=_utcnow, repr=False)
    api_errors: ErrorCounter = field(default_factory=ErrorCounter)
    store_errors: ErrorCounter = field(default_factory=ErrorCounter)
    last_error: ErrorEvent | None = None
    _current: _LiveCycle | None = field(default=None, repr=False)
    _last_cycle: _CompletedCycle | None = field(default=None, repr=False)

    # ------------------------------------------------------------------
    # Cycle lifecycle
    # ------------------------------------------------------------------

    def start_cycle(self, source: str | None) -> None:
        """Begin tracking a new cycle and reset the per-cycle counts."""
        self._current = _LiveCycle(source=source or "unknown", started_at=self.clock())
        for counter in (self.api_errors, self.store_errors):
            counter.last_cycle_count = 0
            counter.had_errors_in_current_cycle = False

    def increment_window(self) -> None:
        """Count one rate window started in the current cycle (no-op when idle)."""
        if self._current is not None:
            self._current.windows_started += 1

    def complete_cycle(self) -> None:
        """Freeze the current cycle's metrics as the last cycle (no-op when idle)."""
        current = self._current
        if current is None:
            return
        self._last_cycle = _CompletedCycle(
            source=current.source,
            started_at=current.started_at,
            completed_at=self.clock(),
            api_errors=current.api_errors,
            store_errors=current.store_errors,
            windows_started=current.windows_started,
        )
        self.api_errors.last_cycle_count = current.api_errors
        self.store_errors.last_cycle_count = current.store_errors
        self.api_errors.had_errors_in_current_cycle = False
        self.store_errors.had_errors_in_current_cycle = False
        self._current = None

    @property
    def is_cycle_active(self) -> bool:
        return self._current is not None

    # ------------------------------------------------------------------
    # Error recording
    # ------------------------------------------------------------------

    def record_api_error(self, route: str | None, status: int | None, message: object) -> None:
        """Record one downstream API error."""
        event = self._record(self.api_errors, route or "unknown", status, message, "API error")
        if self._current is not None:
            self._current.api_errors += 1
        logger.debug("API error recorded: %s %s — %s", event.route, event.status, event.message)

    def record_store_error(self, route: str | None, status: int | None, message: object) -> None:
        """Record one store error."""
        event = self._record(self.store_errors, route or "store", status, message, "Store error")
        if self._current is not None:
            self._current.store_errors += 1
        logger.debug("Store error recorded: %s — %s", event.route, event.message)

    def _record(
        self,
        counter: ErrorCounter,
        route: str,
        status: int | None,
        message: object,
        default_message: str,
    ) -> ErrorEvent:
        if not isinstance(status, int) or isinstance(status, bool):
            status = _DEFAULT_ERROR_STATUS
        event = ErrorEvent(
            at=self.clock(),
            route=route,
            status=status,
            message=str(message) if message else default_message,
        )
        counter.total_count += 1
        counter.last = event
        counter.had_errors_in_current_cycle = self._current is not None
        self.last_error = event
        return event

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    def current_cycle(self) -> dict[str, Any] | None:
        """Live view of the running cycle, or ``None`` when idle."""
        current = self._current
        if current is None:
            return None
        elapsed = (self.clock() - current.started_at).total_seconds()
        return {
            "source": current.source,
            "started_at": format_timestamp(current.started_at),
            "elapsed_s": round(elapsed, 3),
            "elapsed_hhmmss": format_duration(elapsed),
            "api_errors": current.api_errors,
            "store_errors": current.store_errors,
            "windows_started": current.windows_started,
            "had_api_errors": current.api_errors > 0,
            "had_store_errors": current.store_errors > 0,
        }

    def last_cycle(self) -> dict[str, Any] | None:
        """Metrics of the last completed cycle, or ``None`` before the first."""
        return self._last_cycle.as_dict() if self._last_cycle else None

    def status(self) -> dict[str, Any]:
        """Return the full JSON-serialisable status view."""
        last_error = None
        if self.last_error is not None:
            last_error = {
                "at": format_timestamp(self.last_error.at),
                "message": self.last_error.message,
            }
        return {
            "current_cycle": self.current_cycle(),
            "last_cycle": self.last_cycle(),
            "api_errors": self.api_errors.as_dict(),
            "store_errors": self.store_errors.as_dict(),
            "last_error": last_error,
            "server_time": format_timestamp(self.clock()),
        }


# ---------------------------------------------------------------------------
# Status file writer
# ---------------------------------------------------------------------------


def write_status_file(status: dict[str, Any], path: str) -> None:
    """Write a JSON snapshot of *status* to *path*.

    Called after every cycle so the file reflects the most recent state.
    Errors are logged at ``WARNING`` level and never propagated.

    Args:
        status: JSON-serialisable status, usually
            :meth:`~marginbot.orchestrator.runner.CycleOrchestrator.get_live_status`.
        path: Destination file path.
    """
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(status, fh, indent=2, default=str)
    except OSError:
        logger.warning("Failed to write status file '%s'.", path, exc_info=True)
