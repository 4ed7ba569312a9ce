"""
kernel/bootstrap.py — Scheduler Stack Factory

Composition root shared by the CLI and any host application. Resolves each
stage's work callable, builds the PipelineScheduler and the ControlSurface
bound to it. The host owns the returned stack; there is no module-level
scheduler instance.

Usage:
    from pipeline_scheduler.kernel.bootstrap import build_scheduler
    stack = build_scheduler(settings, works={"cleanup": purge_old_rows, ...})
    await stack.scheduler.start()
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from pipeline_scheduler.config.settings import ConfigError, Settings
from pipeline_scheduler.control.surface import ControlSurface
from pipeline_scheduler.observability.logger import get_logger
from pipeline_scheduler.scheduler.clock import TimeSource
from pipeline_scheduler.scheduler.models import StageWork
from pipeline_scheduler.scheduler.scheduler import PipelineScheduler

log = get_logger(__name__)


@dataclass
class SchedulerStack:
    """All wired components returned by build_scheduler()."""
    settings: Settings
    scheduler: PipelineScheduler
    control: ControlSurface


def resolve_work(path: str) -> StageWork:
    """
    Import a stage callable from a 'package.module:attribute' path.

    Dotted attributes after the colon are followed, so
    'myapp.jobs:Collector.run' resolves a class attribute.
    """
    module_name, sep, attr_path = path.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigError(f"'{path}' must look like 'package.module:callable'")
    try:
        target = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import module '{module_name}': {e}") from e

    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ConfigError(f"module '{module_name}' has no attribute '{attr_path}'") from e

    if not callable(target):
        raise ConfigError(f"'{path}' is not callable")
    return target


def build_scheduler(
    settings: Settings,
    works: Optional[Mapping[str, StageWork]] = None,
    *,
    time_source: Optional[TimeSource] = None,
    resolver: Callable[[str], StageWork] = resolve_work,
) -> SchedulerStack:
    """
    Wire up the scheduler stack from settings.

    Args:
        settings:     Loaded Settings object.
        works:        Stage name → callable. Entries here win over the
                      'work' import paths in settings.
        time_source:  Optional TimeSource (tests inject a manual one).
        resolver:     Import-path resolver, replaceable in tests.

    Raises:
        ConfigError if a stage has neither an explicit callable nor a
        resolvable work path.
    """
    works = dict(works or {})
    resolved: dict[str, StageWork] = {}
    missing: list[str] = []
    for name, stage_cfg in settings.stages.as_mapping().items():
        if name in works:
            resolved[name] = works[name]
        elif stage_cfg.work:
            resolved[name] = resolver(stage_cfg.work)
        else:
            missing.append(name)

    if missing:
        raise ConfigError(
            f"No work callable configured for stage(s): {', '.join(missing)}. "
            f"Set stages.<name>.work in config.yaml or pass works=."
        )

    scheduler = PipelineScheduler.from_settings(settings, resolved, time_source=time_source)
    log.info(
        "bootstrap.scheduler_built",
        timezone=settings.scheduler.timezone,
        stages={n: s.cadence for n, s in scheduler.stages.items()},
    )
    return SchedulerStack(
        settings=settings,
        scheduler=scheduler,
        control=ControlSurface(scheduler),
    )
