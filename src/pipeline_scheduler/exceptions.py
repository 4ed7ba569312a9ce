"""
exceptions.py — Pipeline Scheduler Error Hierarchy

All scheduler-specific exceptions live here. Configuration-time errors are
raised to the caller of the control operation that triggered them; runtime
stage errors are caught at the StageRunner boundary and recorded, never
propagated.

Import from here, not from individual modules:
    from pipeline_scheduler.exceptions import InvalidCadenceError

Hierarchy:
    PipelineSchedulerError
    ├── SchedulerError
    │   ├── InvalidCadenceError
    │   ├── InvalidConfigKeyError
    │   ├── InvalidConfigValueError
    │   └── UnknownStageError
    └── StageError
        ├── StageExecutionError
        └── StageTimeoutError

A skipped overlapping run is not an exception. It is recorded as
RunOutcome.SKIPPED_OVERLAP.
"""

from __future__ import annotations

from typing import Iterable, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class PipelineSchedulerError(Exception):
    """Base class for all pipeline scheduler exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Scheduler / configuration layer
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerError(PipelineSchedulerError):
    """Base for scheduler configuration and lifecycle errors."""


class InvalidCadenceError(SchedulerError):
    """A stage's cadence expression cannot be parsed."""

    def __init__(self, expression: str, reason: str = "", stage: Optional[str] = None) -> None:
        self.expression = expression
        self.reason = reason
        self.stage = stage
        where = f" for stage '{stage}'" if stage else ""
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid cadence expression '{expression}'{where}{detail}")


class InvalidConfigKeyError(SchedulerError):
    """A reconfigure() call contained keys outside the accepted key set."""

    def __init__(self, keys: Iterable[str], valid_keys: Iterable[str] = ()) -> None:
        self.keys = list(keys)
        self.valid_keys = list(valid_keys)
        super().__init__(f"Invalid config keys: {', '.join(self.keys)}")


class InvalidConfigValueError(SchedulerError):
    """A reconfigure() value has the wrong type or is out of range."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid value for '{key}': {reason}")


class UnknownStageError(SchedulerError):
    """A stage name outside the fixed stage set was referenced."""

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"Unknown stage: '{stage}'")


# ─────────────────────────────────────────────────────────────────────────────
# Stage layer
# ─────────────────────────────────────────────────────────────────────────────

class StageError(PipelineSchedulerError):
    """Base for errors raised while executing a stage."""


class StageExecutionError(StageError):
    """Wraps any exception raised by a stage's work callable."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


class StageTimeoutError(StageError):
    """A stage ran past its configured timeout_seconds."""

    def __init__(self, stage: str, timeout: float) -> None:
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Exceeded timeout ({timeout:g}s)")
