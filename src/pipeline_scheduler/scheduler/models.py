"""
scheduler/models.py — Stage, run and health data types

StageDefinition  one configurable pipeline stage (cadence, enabled, work).
RunRecord        immutable log entry for one execution attempt.
RunOutcome       success | failure | skipped-overlap.
HealthStatus     healthy | degraded | failing | disabled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

# ─────────────────────────────────────────────────────────────────────────────
# Stage names
# ─────────────────────────────────────────────────────────────────────────────

VIDEO_COLLECTION = "videoCollection"
DATA_PROCESSING = "dataProcessing"
RECOMMENDATION = "recommendation"
CLEANUP = "cleanup"

# Pipeline order. The stage set is fixed for the lifetime of a scheduler.
STAGE_NAMES: tuple[str, ...] = (VIDEO_COLLECTION, DATA_PROCESSING, RECOMMENDATION, CLEANUP)

DEFAULT_CADENCES: dict[str, str] = {
    VIDEO_COLLECTION: "*/30 * * * *",   # every 30 minutes
    DATA_PROCESSING:  "*/10 * * * *",   # every 10 minutes
    RECOMMENDATION:   "*/5 * * * *",    # every 5 minutes
    CLEANUP:          "0 2 * * *",      # daily at 02:00
}

# Stage work: zero-arg callable, sync or async. The return value may carry
# non-fatal messages: None, a single string, or an iterable of strings.
StageResult = Union[None, str, list, tuple]
StageWork = Callable[[], Union[StageResult, Awaitable[StageResult]]]


class RunOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED_OVERLAP = "skipped-overlap"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILING = "failing"
    DISABLED = "disabled"


class SchedulerPhase(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    RESTARTING = "restarting"


# ─────────────────────────────────────────────────────────────────────────────
# StageDefinition
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class StageDefinition:
    """
    Configuration for one pipeline stage.

    name             One of STAGE_NAMES.
    cadence          5-field cron expression (e.g. '*/30 * * * *').
    work             Opaque stage callable; the scheduler never inspects it.
    enabled          False = fires are ignored, stage stays registered.
    timeout_seconds  Max seconds one run may take; None = unbounded.
    """
    name: str
    cadence: str
    work: StageWork
    enabled: bool = True
    timeout_seconds: Optional[float] = None

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "cadence": self.cadence,
            "enabled": self.enabled,
            "timeoutSeconds": self.timeout_seconds,
        }


# ─────────────────────────────────────────────────────────────────────────────
# RunRecord
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RunRecord:
    stage: str
    run_id: str
    started_at: datetime
    ended_at: datetime
    duration_ms: float
    outcome: RunOutcome
    error_messages: tuple[str, ...] = field(default_factory=tuple)
    trigger: str = "schedule"

    def __post_init__(self) -> None:
        if self.ended_at < self.started_at:
            raise ValueError("RunRecord.ended_at must not precede started_at")
        if self.outcome is RunOutcome.SKIPPED_OVERLAP and self.duration_ms != 0:
            raise ValueError("skipped-overlap records must have zero duration")

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    @property
    def executed(self) -> bool:
        """True when the stage's work was actually invoked."""
        return self.outcome is not RunOutcome.SKIPPED_OVERLAP

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "durationMs": round(self.duration_ms, 3),
            "outcome": self.outcome.value,
            "errorMessages": list(self.error_messages),
            "trigger": self.trigger,
        }
