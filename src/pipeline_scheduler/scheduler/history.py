"""
scheduler/history.py — Run statistics and health classification

RunHistory keeps a bounded, start-ordered list of RunRecords per stage.
summarize() and classify_health() are pure functions over a history
snapshot, the stage definitions and the current time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from pipeline_scheduler.scheduler.models import HealthStatus, RunOutcome, RunRecord, StageDefinition

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_HEALTH_WINDOW = 5


# ─────────────────────────────────────────────────────────────────────────────
# RunHistory
# ─────────────────────────────────────────────────────────────────────────────

class RunHistory:
    """
    Per-stage bounded run log, oldest first.

    Records are kept in started_at order even when they are recorded out of
    order (a skip record is stored immediately while the run it collided
    with is still executing). Once a stage holds more than `limit` records
    the oldest are evicted.
    """

    def __init__(self, stages: Iterable[str], limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("history limit must be >= 1")
        self._limit = limit
        self._runs: dict[str, list[RunRecord]] = {name: [] for name in stages}
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def record(self, run: RunRecord) -> None:
        with self._lock:
            runs = self._runs.setdefault(run.stage, [])
            idx = len(runs)
            while idx > 0 and runs[idx - 1].started_at > run.started_at:
                idx -= 1
            runs.insert(idx, run)
            overflow = len(runs) - self._limit
            if overflow > 0:
                del runs[:overflow]

    def for_stage(self, stage: str) -> list[RunRecord]:
        with self._lock:
            return list(self._runs.get(stage, ()))

    def snapshot(self) -> dict[str, list[RunRecord]]:
        with self._lock:
            return {name: list(runs) for name, runs in self._runs.items()}

    def all(self) -> list[RunRecord]:
        """Every retained record across stages, oldest first."""
        records = [r for runs in self.snapshot().values() for r in runs]
        records.sort(key=lambda r: r.started_at)
        return records

    def recent(self, limit: int) -> list[RunRecord]:
        """The `limit` most recent records across stages, newest first."""
        if limit <= 0:
            return []
        return list(reversed(self.all()))[:limit]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(runs) for runs in self._runs.values())


# ─────────────────────────────────────────────────────────────────────────────
# Summary
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class RunSummary:
    total_runs: int = 0
    avg_duration_ms: float = 0.0
    total_errors: int = 0
    failures: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRuns": self.total_runs,
            "avgDurationMs": round(self.avg_duration_ms, 1),
            "totalErrors": self.total_errors,
            "failures": self.failures,
            "skipped": self.skipped,
        }


def summarize(records: Sequence[RunRecord]) -> RunSummary:
    """
    total_errors counts every record whose outcome is not success, so a
    skipped overlap shows up there as well as in `skipped`. The average
    duration covers executed runs only.
    """
    executed = [r for r in records if r.executed]
    failures = sum(1 for r in records if r.outcome is RunOutcome.FAILURE)
    skipped = len(records) - len(executed)
    avg = sum(r.duration_ms for r in executed) / len(executed) if executed else 0.0
    return RunSummary(
        total_runs=len(records),
        avg_duration_ms=avg,
        total_errors=failures + skipped,
        failures=failures,
        skipped=skipped,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────────────────────

def classify_stage(
    stage: StageDefinition,
    runs: Sequence[RunRecord],
    *,
    now: datetime,
    armed_since: Optional[datetime] = None,
    interval: Optional[timedelta] = None,
    window: int = DEFAULT_HEALTH_WINDOW,
    global_enabled: bool = True,
) -> HealthStatus:
    """
    disabled  stage (or the whole scheduler) is disabled
    failing   every executed run in the window failed, or the stage has been
              armed for more than two cadence intervals without a single run
    degraded  some, but not all, runs in the window failed
    healthy   anything else, including a stage with no runs yet
    """
    if not (global_enabled and stage.enabled):
        return HealthStatus.DISABLED

    executed = [r for r in runs if r.executed]
    recent = executed[-window:] if window > 0 else []

    if not executed:
        if armed_since is not None and interval is not None and now - armed_since > 2 * interval:
            return HealthStatus.FAILING
        return HealthStatus.HEALTHY

    failed = sum(1 for r in recent if r.outcome is RunOutcome.FAILURE)
    if recent and failed == len(recent):
        return HealthStatus.FAILING
    if failed:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def classify_health(
    stages: Mapping[str, StageDefinition],
    history: Mapping[str, Sequence[RunRecord]],
    *,
    now: datetime,
    armed_since: Callable[[str], Optional[datetime]] = lambda _name: None,
    interval_for: Callable[[str], Optional[timedelta]] = lambda _name: None,
    window: int = DEFAULT_HEALTH_WINDOW,
    global_enabled: bool = True,
) -> dict[str, HealthStatus]:
    return {
        name: classify_stage(
            stage,
            history.get(name, ()),
            now=now,
            armed_since=armed_since(name),
            interval=interval_for(name),
            window=window,
            global_enabled=global_enabled,
        )
        for name, stage in stages.items()
    }


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.FAILING: 2,
}


def overall_health(verdicts: Mapping[str, HealthStatus]) -> HealthStatus:
    """Worst verdict among enabled stages; disabled when every stage is."""
    active = [v for v in verdicts.values() if v is not HealthStatus.DISABLED]
    if not active:
        return HealthStatus.DISABLED
    return max(active, key=_SEVERITY.__getitem__)
