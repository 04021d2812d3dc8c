"""Run metrics: immutable snapshots of sync cycle outcomes."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

from albumsync.services.datetime_service import format_iso


@dataclass(frozen=True)
class LastRun:
    """Outcome of the most recent sync cycle."""

    timestamp: datetime
    duration_ms: int
    added: int
    removed: int
    success: bool
    failed: int = 0
    skipped_removals: int = 0
    error: str | None = None


@dataclass(frozen=True)
class RunMetrics:
    """Process-lifetime sync metrics.

    Instances are never mutated. The engine builds a new snapshot and swaps a
    single reference, so a concurrent reader always sees a complete snapshot.
    """

    last_run: LastRun | None = None
    total_runs: int = 0
    total_failures: int = 0
    target_authenticated: bool = False

    def with_run(self, run: LastRun) -> RunMetrics:
        """Return a new snapshot that records ``run``."""
        return replace(
            self,
            last_run=run,
            total_runs=self.total_runs + 1,
            total_failures=self.total_failures + (0 if run.success else 1),
        )

    def with_authentication(self, authenticated: bool) -> RunMetrics:
        """Return a new snapshot with an updated authentication flag."""
        if authenticated == self.target_authenticated:
            return self
        return replace(self, target_authenticated=authenticated)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation."""
        data = asdict(self)
        if self.last_run is not None:
            data["last_run"]["timestamp"] = format_iso(self.last_run.timestamp)
        return data
