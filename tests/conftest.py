"""
Test conftest — simulated time, scheduler factories and environment
isolation shared by the unit and integration suites.

ManualTimeSource replaces the wall clock: watchers park on futures keyed by
their deadline and advance() releases them in deadline order, letting the
event loop settle between fires. Tests start at an hour boundary so cron
fires land on predictable minutes.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import pytest

from pipeline_scheduler.scheduler.models import DEFAULT_CADENCES, STAGE_NAMES, StageDefinition
from pipeline_scheduler.scheduler.scheduler import PipelineScheduler

START = datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)

_SCHEDULER_ENV_VARS = [
    "PIPELINE_SCHEDULER_CONFIG",
    "SCHEDULER__TIMEZONE",
    "SCHEDULER__ENABLED",
    "SCHEDULER__AUTOSTART",
    "SCHEDULER__HISTORY_LIMIT",
    "SCHEDULER__HEALTH_WINDOW",
    "SCHEDULER__RESTART_DELAY_SECONDS",
    "LOGGING__LEVEL",
]


# ─────────────────────────────────────────────────────────────────────────────
# Simulated time
# ─────────────────────────────────────────────────────────────────────────────

class ManualTimeSource:
    """TimeSource whose clock only moves when a test calls advance()."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._sleepers: list[tuple[datetime, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep_until(self, deadline: datetime) -> None:
        if deadline <= self._now:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (deadline, next(self._seq), fut))
        await fut

    @property
    def pending(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def settle(self, ticks: int = 25) -> None:
        for _ in range(ticks):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline is reached."""
        target = self._now + timedelta(seconds=seconds)
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._sleepers)
            if fut.done():
                continue
            self._now = max(self._now, deadline)
            fut.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def time_source() -> ManualTimeSource:
    return ManualTimeSource()


async def _noop() -> None:
    return None


@pytest.fixture
def make_stages() -> Callable[..., list[StageDefinition]]:
    """Build the four pipeline stages with default cadences and no-op work."""

    def _make(
        works: Optional[dict[str, Any]] = None,
        cadences: Optional[dict[str, str]] = None,
        **overrides: dict[str, Any],
    ) -> list[StageDefinition]:
        works = works or {}
        cadences = cadences or {}
        stages = []
        for name in STAGE_NAMES:
            stage = StageDefinition(
                name=name,
                cadence=cadences.get(name, DEFAULT_CADENCES[name]),
                work=works.get(name, _noop),
            )
            for field_name, value in overrides.get(name, {}).items():
                setattr(stage, field_name, value)
            stages.append(stage)
        return stages

    return _make


@pytest.fixture
def make_scheduler(time_source, make_stages) -> Callable[..., PipelineScheduler]:
    """PipelineScheduler on simulated time. Restart delay defaults to zero."""

    def _make(
        works: Optional[dict[str, Any]] = None,
        cadences: Optional[dict[str, str]] = None,
        stage_overrides: Optional[dict[str, dict[str, Any]]] = None,
        **kwargs: Any,
    ) -> PipelineScheduler:
        kwargs.setdefault("time_source", time_source)
        kwargs.setdefault("restart_delay_seconds", 0.0)
        return PipelineScheduler(
            make_stages(works, cadences, **(stage_overrides or {})),
            **kwargs,
        )

    return _make


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep developer .env files and exported scheduler variables out of tests."""
    for var in _SCHEDULER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import pipeline_scheduler.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)
