"""
scheduler/ — Clock, Stage Runner, Scheduler Core and run history.

    from pipeline_scheduler.scheduler import PipelineScheduler, StageDefinition
"""

from pipeline_scheduler.scheduler.cadence import CadenceParser, CronCadenceParser, cadence_interval
from pipeline_scheduler.scheduler.clock import Clock, SystemTimeSource, TimeSource
from pipeline_scheduler.scheduler.history import RunHistory, RunSummary, classify_health, overall_health, summarize
from pipeline_scheduler.scheduler.models import (
    DEFAULT_CADENCES,
    STAGE_NAMES,
    HealthStatus,
    RunOutcome,
    RunRecord,
    SchedulerPhase,
    StageDefinition,
)
from pipeline_scheduler.scheduler.runner import StageRunner, with_timeout
from pipeline_scheduler.scheduler.scheduler import PipelineScheduler

__all__ = [
    "CadenceParser",
    "Clock",
    "CronCadenceParser",
    "DEFAULT_CADENCES",
    "HealthStatus",
    "PipelineScheduler",
    "RunHistory",
    "RunOutcome",
    "RunRecord",
    "RunSummary",
    "STAGE_NAMES",
    "SchedulerPhase",
    "StageDefinition",
    "StageRunner",
    "SystemTimeSource",
    "TimeSource",
    "cadence_interval",
    "classify_health",
    "overall_health",
    "summarize",
    "with_timeout",
]
