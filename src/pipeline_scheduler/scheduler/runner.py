"""
scheduler/runner.py — Stage Runner

Executes one stage's work callable under a single-flight guard and turns
the attempt into a RunRecord.

* Overlap guard: test-and-insert into the active set happens under a
  threading.Lock, so two fires of the same stage can never both pass. The
  loser gets a skipped-overlap record and the work is not invoked.
* Fail-safe: any exception from the work callable is recorded as a failure.
  It never propagates out of run().
* Non-blocking: dispatch() schedules run() as its own asyncio task, and
  plain (sync) callables execute on a worker thread via asyncio.to_thread.
* Timeouts: with_timeout() bounds a run with asyncio.wait_for. A sync
  callable that overruns is recorded as failed at the deadline, but its
  thread cannot be interrupted, so the stage stays in the active set until
  the thread returns.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
import time
import uuid
from typing import Any, Mapping, Optional

from pipeline_scheduler.exceptions import StageExecutionError, StageTimeoutError, UnknownStageError
from pipeline_scheduler.observability.logger import bind_run, clear_run, get_logger
from pipeline_scheduler.scheduler.clock import SystemTimeSource, TimeSource
from pipeline_scheduler.scheduler.history import RunHistory
from pipeline_scheduler.scheduler.models import RunOutcome, RunRecord, StageDefinition, StageWork

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Work invocation helpers
# ─────────────────────────────────────────────────────────────────────────────

def is_async_work(work: StageWork) -> bool:
    """True for coroutine functions and for objects with an async __call__."""
    return inspect.iscoroutinefunction(work) or inspect.iscoroutinefunction(
        getattr(work, "__call__", None)
    )


async def call_work(work: StageWork) -> Any:
    """Invoke a stage callable without blocking the event loop."""
    if is_async_work(work):
        return await work()
    result = await asyncio.to_thread(work)
    if inspect.isawaitable(result):
        result = await result
    return result


async def wait_bounded(
    task: asyncio.Future,
    seconds: Optional[float],
    *,
    stage: str = "stage",
    shield: bool = False,
) -> Any:
    """
    Await `task` for at most `seconds`.

    Only a deadline hit by wait_for itself becomes StageTimeoutError. A
    TimeoutError raised by the work (a socket read, say) finishes the task
    and propagates unchanged. With shield=True the task keeps running after
    the deadline.
    """
    try:
        return await asyncio.wait_for(asyncio.shield(task) if shield else task, timeout=seconds)
    except asyncio.TimeoutError as exc:
        if task.done() and not task.cancelled():
            raise
        raise StageTimeoutError(stage, seconds) from exc


def with_timeout(work: StageWork, seconds: float, *, stage: str = "stage") -> StageWork:
    """Wrap a stage callable so a run longer than `seconds` raises StageTimeoutError."""

    @functools.wraps(work)
    async def bounded() -> Any:
        return await wait_bounded(asyncio.ensure_future(call_work(work)), seconds, stage=stage)

    return bounded


def collect_messages(result: Any) -> tuple[str, ...]:
    """Extract the non-fatal messages a stage reported through its return value."""
    if result is None:
        return ()
    if isinstance(result, str):
        return (result,)
    if isinstance(result, (list, tuple, set, frozenset)):
        return tuple(str(m) for m in result)
    return ()


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, (StageTimeoutError, StageExecutionError)):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


# ─────────────────────────────────────────────────────────────────────────────
# StageRunner
# ─────────────────────────────────────────────────────────────────────────────

class StageRunner:
    """
    Runs stages by name and stores every attempt in a RunHistory.

    Introspection::

        runner.active_runs      # frozenset of stage names currently executing
        runner.in_flight        # number of dispatched runs not yet finished
        runner.overrunning      # stages whose timed-out sync work is still running
    """

    def __init__(
        self,
        stages: Mapping[str, StageDefinition],
        history: RunHistory,
        time_source: Optional[TimeSource] = None,
    ) -> None:
        self._stages = stages
        self._history = history
        self._time = time_source or SystemTimeSource()

        self._active: set[str] = set()
        self._active_lock = threading.Lock()
        self._dispatched: set[asyncio.Task] = set()
        self._overrun: dict[str, asyncio.Future] = {}

    # ── Guard ─────────────────────────────────────────────────────────────────

    @property
    def active_runs(self) -> frozenset[str]:
        with self._active_lock:
            return frozenset(self._active)

    @property
    def in_flight(self) -> int:
        return len(self._dispatched)

    @property
    def overrunning(self) -> frozenset[str]:
        return frozenset(self._overrun)

    def _try_acquire(self, stage: str) -> bool:
        with self._active_lock:
            if stage in self._active:
                return False
            self._active.add(stage)
            return True

    def _release(self, stage: str) -> None:
        with self._active_lock:
            self._active.discard(stage)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def dispatch(self, stage: str, trigger: str = "schedule") -> asyncio.Task:
        """Start run() as a separate task so the caller never waits on the work."""
        task = asyncio.create_task(
            self.run(stage, trigger=trigger),
            name=f"runner:{stage}:{uuid.uuid4().hex[:6]}",
        )
        self._dispatched.add(task)
        task.add_done_callback(self._dispatched.discard)
        return task

    async def drain(self) -> None:
        """
        Wait until every dispatched run (including ones started meanwhile) has
        finished, and every timed-out sync worker has returned.
        """
        while self._dispatched or self._overrun:
            pending = [*self._dispatched, *self._overrun.values()]
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Execution ─────────────────────────────────────────────────────────────

    async def run(self, stage: str, trigger: str = "schedule") -> RunRecord:
        """Execute one attempt of `stage`. Never raises for stage failures."""
        definition = self._stages.get(stage)
        if definition is None:
            raise UnknownStageError(stage)

        run_id = uuid.uuid4().hex[:12]

        if not self._try_acquire(stage):
            now = self._time.now()
            record = RunRecord(
                stage=stage,
                run_id=run_id,
                started_at=now,
                ended_at=now,
                duration_ms=0.0,
                outcome=RunOutcome.SKIPPED_OVERLAP,
                trigger=trigger,
            )
            self._history.record(record)
            log.warning("stage.run.skipped_overlap", stage=stage, run_id=run_id, trigger=trigger)
            return record

        bind_run(stage, run_id)
        started_at = self._time.now()
        t0 = time.perf_counter()
        worker: Optional[asyncio.Future] = None
        try:
            log.info("stage.run.start", trigger=trigger)
            try:
                if is_async_work(definition.work):
                    result = await call_work(self._bounded_work(definition))
                else:
                    worker = asyncio.ensure_future(call_work(definition.work))
                    result = await wait_bounded(
                        worker, definition.timeout_seconds or None, stage=stage, shield=True,
                    )
            except asyncio.CancelledError:
                self._finish(stage, run_id, trigger, started_at, t0,
                             RunOutcome.FAILURE, ("Cancelled during shutdown",))
                log.info("stage.run.cancelled")
                raise
            except Exception as e:
                error = e if isinstance(e, StageTimeoutError) else StageExecutionError(stage, e)
                record = self._finish(stage, run_id, trigger, started_at, t0,
                                      RunOutcome.FAILURE, (describe_error(error),))
                log.error(
                    "stage.run.failed",
                    error=str(error),
                    error_type=type(e).__name__,
                    duration_ms=round(record.duration_ms, 1),
                    exc_info=not isinstance(e, StageTimeoutError),
                )
                return record

            messages = collect_messages(result)
            record = self._finish(stage, run_id, trigger, started_at, t0, RunOutcome.SUCCESS, messages)
            log.info(
                "stage.run.success",
                duration_ms=round(record.duration_ms, 1),
                messages=len(messages),
            )
            return record
        finally:
            if worker is not None and not worker.done():
                self._hold_until_done(stage, run_id, worker)
            else:
                self._release(stage)
            clear_run()

    def _hold_until_done(self, stage: str, run_id: str, worker: asyncio.Future) -> None:
        """Keep `stage` guarded until a sync worker that outlived its run returns."""
        self._overrun[stage] = worker
        log.warning("stage.run.worker_overrunning", stage=stage, run_id=run_id)

        def _done(fut: asyncio.Future) -> None:
            self._overrun.pop(stage, None)
            self._release(stage)
            error = None if fut.cancelled() else fut.exception()
            log.info(
                "stage.run.worker_returned",
                stage=stage,
                run_id=run_id,
                error=str(error) if error else None,
            )

        worker.add_done_callback(_done)

    def _bounded_work(self, definition: StageDefinition) -> StageWork:
        if definition.timeout_seconds:
            return with_timeout(definition.work, definition.timeout_seconds, stage=definition.name)
        return definition.work

    def _finish(
        self,
        stage: str,
        run_id: str,
        trigger: str,
        started_at,
        t0: float,
        outcome: RunOutcome,
        messages: tuple[str, ...],
    ) -> RunRecord:
        duration_ms = (time.perf_counter() - t0) * 1000.0
        ended_at = max(self._time.now(), started_at)
        record = RunRecord(
            stage=stage,
            run_id=run_id,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=duration_ms,
            outcome=outcome,
            error_messages=messages,
            trigger=trigger,
        )
        self._history.record(record)
        return record
