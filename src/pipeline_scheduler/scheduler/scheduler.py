"""
scheduler/scheduler.py — PipelineScheduler

Owns the fixed set of pipeline stages, their cadences and enable flags,
and wires Clock → StageRunner → RunHistory together.

Design
------
* Pure asyncio: one watcher task per armed stage, one task per run.
* Stopped → Running → Stopped, with Restarting as a transient phase of
  restart(). start()/stop() are idempotent; lifecycle calls are serialised
  by an asyncio.Lock so concurrent start() calls arm the Clock once.
* stop() disarms the Clock only. In-flight runs finish and are recorded.
* reconfigure() is all-or-nothing: any unknown key or bad value rejects
  the whole update and nothing is applied.
* trigger_now() bypasses cadence and enable flags but never the overlap
  guard.

Usage::

    scheduler = PipelineScheduler(stages)
    await scheduler.start()
    await scheduler.reconfigure({"videoCollection": "*/15 * * * *"})
    records = await scheduler.trigger_now("dataProcessing")
    await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from numbers import Real
from typing import Any, Iterable, Mapping, Optional

from pipeline_scheduler.exceptions import (
    InvalidCadenceError,
    InvalidConfigKeyError,
    InvalidConfigValueError,
    UnknownStageError,
)
from pipeline_scheduler.observability.logger import get_logger
from pipeline_scheduler.scheduler.cadence import CadenceParser, CronCadenceParser, cadence_interval
from pipeline_scheduler.scheduler.clock import Clock, SystemTimeSource, TimeSource
from pipeline_scheduler.scheduler.history import (
    DEFAULT_HEALTH_WINDOW,
    DEFAULT_HISTORY_LIMIT,
    RunHistory,
    classify_health,
    overall_health,
    summarize,
)
from pipeline_scheduler.scheduler.models import (
    STAGE_NAMES,
    HealthStatus,
    RunRecord,
    SchedulerPhase,
    StageDefinition,
)
from pipeline_scheduler.scheduler.runner import StageRunner

log = get_logger(__name__)

GLOBAL_ENABLED_KEY = "enabled"
STAGE_FIELDS = ("cadence", "enabled", "timeout_seconds")
DEFAULT_RESTART_DELAY = 1.0
DEFAULT_STATS_LIMIT = 20


class PipelineScheduler:
    """
    Recurring multi-stage scheduler.

    Introspection::

        scheduler.status()        # dict for status display
        scheduler.stats(limit)    # recent runs + summary
        scheduler.health()        # per-stage verdicts
        scheduler.history         # RunHistory
    """

    def __init__(
        self,
        stages: Iterable[StageDefinition],
        *,
        parser: Optional[CadenceParser] = None,
        time_source: Optional[TimeSource] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        health_window: int = DEFAULT_HEALTH_WINDOW,
        restart_delay_seconds: float = DEFAULT_RESTART_DELAY,
        enabled: bool = True,
    ) -> None:
        self._stages: dict[str, StageDefinition] = {}
        for stage in stages:
            if stage.name not in STAGE_NAMES:
                raise UnknownStageError(stage.name)
            if stage.name in self._stages:
                raise ValueError(f"Stage '{stage.name}' defined twice.")
            self._stages[stage.name] = stage
        if not self._stages:
            raise ValueError("PipelineScheduler needs at least one stage.")
        if restart_delay_seconds < 0:
            raise ValueError("restart_delay_seconds must be >= 0")

        self._time = time_source or SystemTimeSource()
        self._parser = parser or CronCadenceParser()
        self._health_window = health_window
        self._restart_delay = restart_delay_seconds
        self._enabled = enabled

        self.history = RunHistory(self._stages, limit=history_limit)
        self.runner = StageRunner(self._stages, self.history, self._time)
        self.clock = Clock(self._parser, self._on_fire, self._time)

        self._phase = SchedulerPhase.STOPPED
        self._lifecycle_lock = asyncio.Lock()
        self._started_at: Optional[datetime] = None

        log.info(
            "scheduler.init",
            stages=list(self._stages),
            history_limit=history_limit,
            restart_delay_s=restart_delay_seconds,
        )

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        works: Mapping[str, Any],
        *,
        time_source: Optional[TimeSource] = None,
    ) -> "PipelineScheduler":
        """Build a scheduler from Settings and a stage-name → work callable mapping."""
        cfg = settings.scheduler
        stages = [
            StageDefinition(
                name=name,
                cadence=stage_cfg.cadence,
                work=works[name],
                enabled=stage_cfg.enabled,
                timeout_seconds=stage_cfg.timeout_seconds,
            )
            for name, stage_cfg in settings.stages.as_mapping().items()
        ]
        return cls(
            stages,
            parser=CronCadenceParser(cfg.timezone),
            time_source=time_source,
            history_limit=cfg.history_limit,
            health_window=cfg.health_window,
            restart_delay_seconds=cfg.restart_delay_seconds,
            enabled=cfg.enabled,
        )

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self.clock.armed

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def phase(self) -> SchedulerPhase:
        return self._phase

    @property
    def stages(self) -> Mapping[str, StageDefinition]:
        return self._stages

    @property
    def active_runs(self) -> frozenset[str]:
        return self.runner.active_runs

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Arm the Clock for every enabled stage. No-op when already running."""
        async with self._lifecycle_lock:
            await self._start_locked()

    async def stop(self) -> None:
        """Disarm the Clock. In-flight runs are left to finish."""
        async with self._lifecycle_lock:
            await self._stop_locked()

    async def restart(self) -> None:
        """stop(), wait restart_delay_seconds so draining fires settle, start()."""
        async with self._lifecycle_lock:
            log.info("scheduler.restarting", delay_s=self._restart_delay)
            self._phase = SchedulerPhase.RESTARTING
            await self._stop_locked()
            self._phase = SchedulerPhase.RESTARTING
            await asyncio.sleep(self._restart_delay)
            await self._start_locked()
            if not self.running:
                self._phase = SchedulerPhase.STOPPED

    async def shutdown(self, drain: bool = True) -> None:
        """Stop scheduling and optionally wait for in-flight runs."""
        await self.stop()
        if drain:
            await self.runner.drain()
        log.info("scheduler.shutdown", drained=drain)

    async def drain(self) -> None:
        await self.runner.drain()

    async def _start_locked(self) -> None:
        if self.running:
            log.warning("scheduler.already_running")
            return
        if not self._enabled:
            log.warning("scheduler.start_refused", reason="scheduler disabled by config")
            return
        enabled = [s for s in self._stages.values() if s.enabled]
        for s in self._stages.values():
            if not s.enabled:
                log.info("scheduler.stage_disabled", stage=s.name)
        errors = self.clock.arm(enabled)
        self._phase = SchedulerPhase.RUNNING
        self._started_at = self._time.now()
        log.info(
            "scheduler.started",
            armed=self.clock.armed_stages(),
            cadence_errors={name: str(e) for name, e in errors.items()},
        )

    async def _stop_locked(self) -> None:
        if not self.running:
            return
        log.info("scheduler.stopping", active_runs=sorted(self.active_runs))
        await self.clock.disarm()
        self._phase = SchedulerPhase.STOPPED
        self._started_at = None
        log.info("scheduler.stopped")

    # ── Reconfiguration ───────────────────────────────────────────────────────

    @property
    def config_keys(self) -> tuple[str, ...]:
        return (*self._stages, GLOBAL_ENABLED_KEY)

    async def reconfigure(self, config: Mapping[str, Any]) -> dict[str, Any]:
        """
        Apply a partial update. Accepted keys are the stage names and 'enabled'.

        A stage value is either a cadence string or a mapping with any of
        cadence / enabled / timeout_seconds. Validation runs before anything
        is touched; on InvalidConfigKeyError, InvalidConfigValueError or
        InvalidCadenceError the scheduler is left exactly as it was.

        Returns the normalised update that was applied.
        """
        if not isinstance(config, Mapping):
            raise InvalidConfigValueError("config", "expected a mapping of config keys")

        stage_updates, global_enabled = self._validate_config(config)

        async with self._lifecycle_lock:
            changed: list[str] = []
            for name, fields in stage_updates.items():
                stage = self._stages[name]
                for field_name, value in fields.items():
                    if getattr(stage, field_name) == value:
                        continue
                    setattr(stage, field_name, value)
                    if field_name != "timeout_seconds":
                        changed.append(name)

            if global_enabled is not None:
                self._enabled = global_enabled

            log.info(
                "scheduler.reconfigured",
                stages=stage_updates,
                enabled=global_enabled,
            )

            if self.running:
                if not self._enabled:
                    await self._stop_locked()
                else:
                    for name in dict.fromkeys(changed):
                        await self._sync_timer(name)

        applied: dict[str, Any] = dict(stage_updates)
        if global_enabled is not None:
            applied[GLOBAL_ENABLED_KEY] = global_enabled
        return applied

    def _validate_config(
        self, config: Mapping[str, Any]
    ) -> tuple[dict[str, dict[str, Any]], Optional[bool]]:
        valid_keys = self.config_keys
        invalid = [str(k) for k in config if k not in valid_keys]
        for key, value in config.items():
            if key in self._stages and isinstance(value, Mapping):
                invalid.extend(f"{key}.{f}" for f in value if f not in STAGE_FIELDS)
        if invalid:
            log.warning("scheduler.reconfigure_rejected", invalid_keys=invalid)
            raise InvalidConfigKeyError(invalid, valid_keys)

        global_enabled: Optional[bool] = None
        stage_updates: dict[str, dict[str, Any]] = {}
        for key, value in config.items():
            if key == GLOBAL_ENABLED_KEY:
                if not isinstance(value, bool):
                    raise InvalidConfigValueError(key, "expected true or false")
                global_enabled = value
                continue

            fields = {"cadence": value} if isinstance(value, str) else value
            if not isinstance(fields, Mapping):
                raise InvalidConfigValueError(key, "expected a cadence string or a mapping")

            update: dict[str, Any] = {}
            if "cadence" in fields:
                cadence = fields["cadence"]
                if not isinstance(cadence, str):
                    raise InvalidConfigValueError(f"{key}.cadence", "expected a cron string")
                try:
                    self._parser.validate(cadence)
                except InvalidCadenceError as exc:
                    raise InvalidCadenceError(cadence, exc.reason, stage=key) from exc
                update["cadence"] = cadence.strip()
            if "enabled" in fields:
                if not isinstance(fields["enabled"], bool):
                    raise InvalidConfigValueError(f"{key}.enabled", "expected true or false")
                update["enabled"] = fields["enabled"]
            if "timeout_seconds" in fields:
                timeout = fields["timeout_seconds"]
                if timeout is not None and (
                    isinstance(timeout, bool) or not isinstance(timeout, Real) or timeout <= 0
                ):
                    raise InvalidConfigValueError(f"{key}.timeout_seconds", "expected a positive number or null")
                update["timeout_seconds"] = float(timeout) if timeout is not None else None
            stage_updates[key] = update
        return stage_updates, global_enabled

    async def _sync_timer(self, name: str) -> None:
        stage = self._stages[name]
        if not stage.enabled:
            await self.clock.cancel(name)
        else:
            await self.clock.rearm(name, stage.cadence)

    # ── Firing / triggering ───────────────────────────────────────────────────

    def _on_fire(self, name: str) -> None:
        if not (self.running and self._enabled):
            log.debug("scheduler.fire_ignored", stage=name, reason="stopped")
            return
        stage = self._stages.get(name)
        if stage is None or not stage.enabled:
            log.debug("scheduler.fire_ignored", stage=name, reason="stage disabled")
            return
        self.runner.dispatch(name, trigger="schedule")

    async def trigger_now(self, stage: Optional[str] = None) -> list[RunRecord]:
        """
        Run one stage (or every stage concurrently) immediately and return the
        resulting records. A stage that is already running yields a
        skipped-overlap record without waiting for the in-flight run.
        """
        if stage is not None and stage not in self._stages:
            raise UnknownStageError(stage)
        names = [stage] if stage is not None else list(self._stages)
        log.info("scheduler.trigger_now", stages=names)
        tasks = [self.runner.dispatch(name, trigger="manual") for name in names]
        return list(await asyncio.gather(*tasks))

    # ── Observability ─────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        stages = []
        for name, stage in self._stages.items():
            nxt = self.clock.next_fire(name)
            err = self.clock.cadence_errors.get(name)
            stages.append({
                **stage.describe(),
                "nextFireAt": nxt.isoformat() if nxt else None,
                "cadenceError": str(err) if err else None,
            })
        return {
            "running": self.running,
            "enabled": self._enabled,
            "state": self._phase.value,
            "stages": stages,
            "activeRuns": sorted(self.active_runs),
        }

    def stats(self, limit: int = DEFAULT_STATS_LIMIT) -> dict[str, Any]:
        return {
            "runs": [r.to_dict() for r in self.history.recent(limit)],
            "summary": summarize(self.history.all()).to_dict(),
        }

    def health_verdicts(self, now: Optional[datetime] = None) -> dict[str, HealthStatus]:
        now = now or self._time.now()
        return classify_health(
            self._stages,
            self.history.snapshot(),
            now=now,
            armed_since=self.clock.armed_since,
            interval_for=self._interval_for,
            window=self._health_window,
            global_enabled=self._enabled,
        )

    def health(self) -> dict[str, Any]:
        now = self._time.now()
        verdicts = self.health_verdicts(now)
        uptime = (now - self._started_at).total_seconds() if self._started_at else 0.0
        return {
            "overall": overall_health(verdicts).value,
            "stages": {name: v.value for name, v in verdicts.items()},
            "running": self.running,
            "checkedAt": now.isoformat(),
            "uptimeSeconds": round(uptime, 1),
        }

    def _interval_for(self, name: str) -> Optional[timedelta]:
        since = self.clock.armed_since(name)
        if since is None:
            return None
        try:
            return cadence_interval(self._parser, self._stages[name].cadence, since)
        except InvalidCadenceError:
            return None
