"""
pipeline_scheduler — recurring multi-stage scheduler for the content pipeline
(video collection → data processing → recommendation → cleanup).

    from pipeline_scheduler import PipelineScheduler, StageDefinition
"""

from pipeline_scheduler.scheduler import (
    HealthStatus,
    PipelineScheduler,
    RunOutcome,
    RunRecord,
    StageDefinition,
)

__version__ = "1.0.0"

__all__ = [
    "HealthStatus",
    "PipelineScheduler",
    "RunOutcome",
    "RunRecord",
    "StageDefinition",
    "__version__",
]
