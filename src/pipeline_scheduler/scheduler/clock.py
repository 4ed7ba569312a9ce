"""
scheduler/clock.py — Clock / trigger source

Turns each armed stage's cadence into a stream of fire(stage) callbacks.
One asyncio watcher task per stage sleeps until the next cron deadline,
emits the fire event and computes the following deadline. Watchers perform
no business logic: dispatching the run is the on_fire callback's job.

Time is read through a TimeSource so tests can fast-forward simulated time
without waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol

from pipeline_scheduler.exceptions import InvalidCadenceError
from pipeline_scheduler.observability.logger import get_logger
from pipeline_scheduler.scheduler.cadence import CadenceParser
from pipeline_scheduler.scheduler.models import StageDefinition

log = get_logger(__name__)

FireCallback = Callable[[str], None]


# ─────────────────────────────────────────────────────────────────────────────
# Time sources
# ─────────────────────────────────────────────────────────────────────────────

class TimeSource(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep_until(self, deadline: datetime) -> None:
        ...


class SystemTimeSource:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep_until(self, deadline: datetime) -> None:
        delay = (deadline - self.now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)


# ─────────────────────────────────────────────────────────────────────────────
# Clock
# ─────────────────────────────────────────────────────────────────────────────

class Clock:
    """
    Per-stage cron timers.

    Lifecycle::

        clock = Clock(CronCadenceParser(), on_fire=scheduler_callback)
        errors = clock.arm(stages)        # {stage: InvalidCadenceError}
        await clock.rearm("cleanup", "0 3 * * *")
        await clock.disarm()              # idempotent

    A stage whose cadence cannot be parsed is left un-armed and its error is
    kept in cadence_errors until the stage is armed successfully.
    """

    def __init__(
        self,
        parser: CadenceParser,
        on_fire: FireCallback,
        time_source: Optional[TimeSource] = None,
    ) -> None:
        self._parser = parser
        self._on_fire = on_fire
        self._time = time_source or SystemTimeSource()

        self._armed = False
        self._watchers: dict[str, asyncio.Task] = {}
        self._armed_since: dict[str, datetime] = {}
        self._next_fire: dict[str, datetime] = {}
        self.cadence_errors: dict[str, InvalidCadenceError] = {}

    # ── Introspection ─────────────────────────────────────────────────────────

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def time_source(self) -> TimeSource:
        return self._time

    def armed_stages(self) -> list[str]:
        return list(self._watchers)

    def armed_since(self, stage: str) -> Optional[datetime]:
        return self._armed_since.get(stage)

    def next_fire(self, stage: str) -> Optional[datetime]:
        return self._next_fire.get(stage)

    # ── Arm / disarm ──────────────────────────────────────────────────────────

    def arm(self, stages: Iterable[StageDefinition]) -> dict[str, InvalidCadenceError]:
        """Install a watcher for every given stage. Must run inside an event loop."""
        self._armed = True
        errors: dict[str, InvalidCadenceError] = {}
        for stage in stages:
            if stage.name in self._watchers:
                continue
            err = self._install(stage.name, stage.cadence)
            if err is not None:
                errors[stage.name] = err
        log.info(
            "clock.armed",
            stages=list(self._watchers),
            invalid=sorted(errors),
        )
        return errors

    async def disarm(self) -> None:
        """Cancel every pending timer and wait for the watchers to exit."""
        if not self._armed and not self._watchers:
            return
        self._armed = False
        watchers = list(self._watchers.values())
        self._watchers.clear()
        self._armed_since.clear()
        self._next_fire.clear()
        for w in watchers:
            w.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)
        log.info("clock.disarmed", cancelled=len(watchers))

    async def rearm(self, stage: str, cadence: str) -> Optional[InvalidCadenceError]:
        """Reinstall one stage's timer with a new cadence. No-op while disarmed."""
        if not self._armed:
            return None
        await self.cancel(stage)
        return self._install(stage, cadence)

    async def cancel(self, stage: str) -> None:
        """Remove a single stage's timer, leaving the others running."""
        watcher = self._watchers.pop(stage, None)
        self._armed_since.pop(stage, None)
        self._next_fire.pop(stage, None)
        if watcher is not None:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            log.info("clock.stage_cancelled", stage=stage)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _install(self, stage: str, cadence: str) -> Optional[InvalidCadenceError]:
        try:
            self._parser.validate(cadence)
        except InvalidCadenceError as exc:
            err = InvalidCadenceError(cadence, exc.reason, stage=stage)
            self.cadence_errors[stage] = err
            log.error("clock.cadence_invalid", stage=stage, cadence=cadence, error=str(err))
            return err

        self.cadence_errors.pop(stage, None)
        armed_at = self._time.now()
        self._armed_since[stage] = armed_at
        self._watchers[stage] = asyncio.create_task(
            self._watch(stage, cadence, armed_at),
            name=f"clock:watch:{stage}",
        )
        return None

    async def _watch(self, stage: str, cadence: str, after: datetime) -> None:
        """Sleep until the next deadline, fire, repeat. Exits only on cancel."""
        log.debug("clock.watcher.start", stage=stage, cadence=cadence)
        try:
            while True:
                deadline = self._parser.next_fire(cadence, after)
                self._next_fire[stage] = deadline
                await self._time.sleep_until(deadline)

                log.debug("clock.fire", stage=stage, due=deadline.isoformat())
                try:
                    self._on_fire(stage)
                except Exception as e:
                    log.error("clock.fire_callback_error", stage=stage, error=str(e), exc_info=True)

                # A late wake must not replay every missed deadline.
                after = max(deadline, self._time.now())

        except asyncio.CancelledError:
            log.debug("clock.watcher.cancelled", stage=stage)
        except Exception as e:
            log.error(
                "clock.watcher.crashed",
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self._watchers.get(stage) is asyncio.current_task():
                del self._watchers[stage]
                self._armed_since.pop(stage, None)
                self._next_fire.pop(stage, None)
                self.cadence_errors[stage] = InvalidCadenceError(
                    cadence, f"{type(e).__name__}: {e}", stage=stage
                )
