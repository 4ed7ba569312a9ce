"""
tests/unit/test_bootstrap.py — Scheduler stack wiring

Covers:
  - resolve_work(): module:attr paths, dotted attributes, bad shapes,
    missing modules/attributes, non-callables
  - build_scheduler(): explicit works win over import paths, missing works
    reported together, settings flow into the scheduler
  - PipelineScheduler.from_settings()
"""

from __future__ import annotations

import os

import pytest

from pipeline_scheduler.config.settings import ConfigError, Settings
from pipeline_scheduler.control import ControlSurface
from pipeline_scheduler.kernel.bootstrap import build_scheduler, resolve_work
from pipeline_scheduler.scheduler import PipelineScheduler
from pipeline_scheduler.scheduler.models import STAGE_NAMES


async def _noop():
    return None


class TestResolveWork:
    def test_module_attribute(self):
        assert resolve_work("os:getcwd") is os.getcwd

    def test_dotted_attribute(self):
        assert resolve_work("os:path.join") is os.path.join

    @pytest.mark.parametrize("path", ["os.getcwd", ":getcwd", "os:"])
    def test_bad_shape(self, path):
        with pytest.raises(ConfigError):
            resolve_work(path)

    def test_missing_module(self):
        with pytest.raises(ConfigError) as exc_info:
            resolve_work("no_such_module_xyz:run")
        assert "cannot import" in str(exc_info.value)

    def test_missing_attribute(self):
        with pytest.raises(ConfigError) as exc_info:
            resolve_work("os:definitely_not_here")
        assert "no attribute" in str(exc_info.value)

    def test_not_callable(self):
        with pytest.raises(ConfigError):
            resolve_work("os:sep")


class TestBuildScheduler:
    def test_explicit_works(self, time_source):
        stack = build_scheduler(Settings(), {n: _noop for n in STAGE_NAMES}, time_source=time_source)
        assert isinstance(stack.control, ControlSurface)
        assert stack.control.scheduler is stack.scheduler
        assert list(stack.scheduler.stages) == list(STAGE_NAMES)
        assert all(s.work is _noop for s in stack.scheduler.stages.values())

    def test_import_paths_resolved(self):
        settings = Settings(stages={n: {"cadence": "*/5 * * * *", "work": "os:getcwd"} for n in STAGE_NAMES})
        stack = build_scheduler(settings)
        assert stack.scheduler.stages["cleanup"].work is os.getcwd

    def test_explicit_beats_path(self):
        settings = Settings(stages={"cleanup": {"cadence": "0 2 * * *", "work": "os:getcwd"}})
        works = {n: _noop for n in STAGE_NAMES}
        stack = build_scheduler(settings, works)
        assert stack.scheduler.stages["cleanup"].work is _noop

    def test_missing_works_reported_together(self):
        with pytest.raises(ConfigError) as exc_info:
            build_scheduler(Settings(), {"cleanup": _noop})
        msg = str(exc_info.value)
        for name in ("videoCollection", "dataProcessing", "recommendation"):
            assert name in msg
        assert "cleanup" not in msg

    def test_custom_resolver(self):
        seen: list[str] = []

        def resolver(path):
            seen.append(path)
            return _noop

        settings = Settings(stages={n: {"cadence": "*/5 * * * *", "work": f"jobs:{n}"} for n in STAGE_NAMES})
        build_scheduler(settings, resolver=resolver)
        assert seen == [f"jobs:{n}" for n in STAGE_NAMES]

    def test_settings_flow_into_scheduler(self, time_source):
        settings = Settings(
            scheduler={
                "timezone": "America/New_York",
                "enabled": False,
                "history_limit": 7,
                "restart_delay_seconds": 0,
            },
            stages={"cleanup": {"cadence": "0 3 * * *", "enabled": False, "timeout_seconds": 45}},
        )
        stack = build_scheduler(settings, {n: _noop for n in STAGE_NAMES}, time_source=time_source)
        scheduler = stack.scheduler
        cleanup = scheduler.stages["cleanup"]
        assert cleanup.cadence == "0 3 * * *"
        assert cleanup.enabled is False
        assert cleanup.timeout_seconds == 45
        assert scheduler.enabled is False
        assert scheduler.history.limit == 7
        assert scheduler.clock.time_source is time_source


class TestFromSettings:
    def test_builds_stages_in_pipeline_order(self, time_source):
        settings = Settings(
            scheduler={"restart_delay_seconds": 0, "health_window": 3},
            stages={"recommendation": {"cadence": "*/7 * * * *", "timeout_seconds": 12}},
        )
        scheduler = PipelineScheduler.from_settings(
            settings, {n: _noop for n in STAGE_NAMES}, time_source=time_source
        )
        assert list(scheduler.stages) == list(STAGE_NAMES)
        rec = scheduler.stages["recommendation"]
        assert rec.cadence == "*/7 * * * *"
        assert rec.timeout_seconds == 12
        assert scheduler.running is False
