"""
tests/integration/test_pipeline_scenarios.py — End-to-end scheduler behaviour

Drives a full PipelineScheduler (Clock + StageRunner + RunHistory +
ControlSurface) on simulated time.

Covers:
  - Default schedule over 31 simulated minutes
  - A slow stage overlapping its own next fire is skipped, not stacked
  - Back-to-back manual triggers while a run is in flight
  - One failing stage never disturbs the others
  - History stays bounded under sustained firing
  - Stop/start cycles and restart while a run is in flight
  - Reconfigure rejection leaves the live schedule untouched
  - Health moves healthy → degraded → failing and back, and a stuck
    stage goes stale
"""

from __future__ import annotations

import asyncio

import pytest

from pipeline_scheduler.control import ControlSurface
from pipeline_scheduler.exceptions import InvalidConfigKeyError
from pipeline_scheduler.scheduler.models import DEFAULT_CADENCES, STAGE_NAMES, RunOutcome

MINUTE = 60


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _Counter:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1


def _counters() -> dict[str, _Counter]:
    return {name: _Counter() for name in STAGE_NAMES}


def _outcomes(scheduler, stage: str) -> list[RunOutcome]:
    return [r.outcome for r in scheduler.history.for_stage(stage)]


# ─────────────────────────────────────────────────────────────────────────────
# Scenarios
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDefaultSchedule:
    async def test_thirty_one_minutes(self, make_scheduler, time_source):
        counters = _counters()
        s = make_scheduler(works=counters)
        await s.start()
        try:
            await time_source.advance(31 * MINUTE)
        finally:
            await s.shutdown()

        assert counters["videoCollection"].calls == 1
        assert counters["dataProcessing"].calls == 3
        assert counters["recommendation"].calls == 6
        assert counters["cleanup"].calls == 0
        assert all(r.trigger == "schedule" for r in s.history.all())
        assert s.stats()["summary"]["totalRuns"] == 10

    async def test_stopped_scheduler_never_fires(self, make_scheduler, time_source):
        counters = _counters()
        s = make_scheduler(works=counters)
        await s.start()
        await s.stop()
        await time_source.advance(60 * MINUTE)
        assert sum(c.calls for c in counters.values()) == 0
        assert len(s.history) == 0

    async def test_disabled_stage_stays_silent(self, make_scheduler, time_source):
        counters = _counters()
        s = make_scheduler(works=counters, stage_overrides={"recommendation": {"enabled": False}})
        await s.start()
        try:
            await time_source.advance(30 * MINUTE)
        finally:
            await s.shutdown()
        assert counters["recommendation"].calls == 0
        assert counters["dataProcessing"].calls == 3
        assert s.health()["stages"]["recommendation"] == "disabled"


@pytest.mark.asyncio
class TestOverlap:
    async def test_slow_stage_skips_its_next_fire(self, make_scheduler, time_source):
        release = asyncio.Event()
        calls = 0

        async def slow_processing():
            nonlocal calls
            calls += 1
            await release.wait()

        s = make_scheduler(works={"dataProcessing": slow_processing})
        await s.start()
        try:
            # 00:10 starts a run that is still going at 00:20 and 00:30
            await time_source.advance(30 * MINUTE)
            assert calls == 1
            assert s.active_runs == frozenset({"dataProcessing"})
            release.set()
            await time_source.settle()
        finally:
            await s.shutdown()

        assert _outcomes(s, "dataProcessing") == [
            RunOutcome.SUCCESS,
            RunOutcome.SKIPPED_OVERLAP,
            RunOutcome.SKIPPED_OVERLAP,
        ]
        skipped = s.history.for_stage("dataProcessing")[1]
        assert skipped.duration_ms == 0
        assert skipped.error_messages == ()

    async def test_back_to_back_manual_triggers(self, make_scheduler, time_source):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def long_running():
            entered.set()
            await release.wait()

        control = ControlSurface(make_scheduler(works={"dataProcessing": long_running}))
        first = asyncio.create_task(control.trigger_now("dataProcessing"))
        await entered.wait()

        second = await control.trigger_now("dataProcessing")
        assert second[0]["outcome"] == "skipped-overlap"
        assert second[0]["trigger"] == "manual"

        release.set()
        first_result = await first
        assert first_result[0]["outcome"] == "success"

        # guard released, a third trigger runs normally
        third = await control.trigger_now("dataProcessing")
        assert third[0]["outcome"] == "success"

    async def test_other_stages_run_while_one_is_stuck(self, make_scheduler, time_source):
        release = asyncio.Event()

        async def stuck():
            await release.wait()

        counters = _counters()
        counters["videoCollection"] = stuck
        s = make_scheduler(works=counters)
        await s.start()
        try:
            await time_source.advance(31 * MINUTE)
            assert counters["recommendation"].calls == 6
        finally:
            release.set()
            await s.shutdown()


@pytest.mark.asyncio
class TestFailureIsolation:
    async def test_failing_stage_does_not_affect_others(self, make_scheduler, time_source):
        async def broken():
            raise ConnectionError("youtube api quota exceeded")

        counters = _counters()
        counters["videoCollection"] = broken
        control = ControlSurface(make_scheduler(works=counters))
        await control.start()
        try:
            await time_source.advance(60 * MINUTE)
            status = await control.handle("status")
            assert status["result"]["running"] is True
        finally:
            await control.scheduler.shutdown()

        s = control.scheduler
        assert _outcomes(s, "videoCollection") == [RunOutcome.FAILURE, RunOutcome.FAILURE]
        failure = s.history.for_stage("videoCollection")[0]
        assert failure.error_messages == ("ConnectionError: youtube api quota exceeded",)
        assert counters["dataProcessing"].calls == 6
        assert counters["recommendation"].calls == 12
        assert all(o is RunOutcome.SUCCESS for o in _outcomes(s, "recommendation"))

        stats = control.stats()
        assert stats["summary"]["failures"] == 2
        assert stats["summary"]["totalErrors"] == 2

    async def test_sync_exception_also_isolated(self, make_scheduler, time_source):
        def broken_sync():
            raise KeyError("video_id")

        s = make_scheduler(works={"cleanup": broken_sync})
        records = await s.trigger_now()
        by_stage = {r.stage: r for r in records}
        assert by_stage["cleanup"].outcome is RunOutcome.FAILURE
        assert by_stage["cleanup"].error_messages == ("KeyError: 'video_id'",)
        assert all(by_stage[n].succeeded for n in STAGE_NAMES if n != "cleanup")


@pytest.mark.asyncio
class TestHistoryBound:
    async def test_history_capped_per_stage(self, make_scheduler, time_source):
        s = make_scheduler(history_limit=10)
        await s.start()
        try:
            # recommendation fires 24 times in two hours
            await time_source.advance(120 * MINUTE)
        finally:
            await s.shutdown()

        runs = s.history.for_stage("recommendation")
        assert len(runs) == 10
        assert runs == sorted(runs, key=lambda r: r.started_at)
        assert runs[-1].started_at == time_source.now()
        assert len(s.history.for_stage("dataProcessing")) == 10
        assert len(s.history.for_stage("videoCollection")) == 4

    async def test_stats_default_limit(self, make_scheduler, time_source):
        s = make_scheduler()
        await s.start()
        try:
            await time_source.advance(60 * MINUTE)
        finally:
            await s.shutdown()
        stats = s.stats()
        assert len(stats["runs"]) == 20
        assert stats["summary"]["totalRuns"] == 2 + 6 + 12


@pytest.mark.asyncio
class TestLifecycleCycles:
    async def test_repeated_start_stop(self, make_scheduler, time_source):
        counters = _counters()
        s = make_scheduler(works=counters)
        for _ in range(3):
            await s.start()
            await s.start()
            await time_source.advance(5 * MINUTE)
            await s.stop()
            await s.stop()
        # one recommendation fire per five-minute running window
        assert counters["recommendation"].calls == 3
        assert s.clock.armed_stages() == []

    async def test_stop_lets_in_flight_run_finish(self, make_scheduler, time_source):
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "finished after stop"

        s = make_scheduler(works={"recommendation": slow})
        await s.start()
        await time_source.advance(5 * MINUTE)
        await s.stop()
        assert s.active_runs == frozenset({"recommendation"})

        release.set()
        await s.drain()
        record = s.history.for_stage("recommendation")[0]
        assert record.succeeded
        assert record.error_messages == ("finished after stop",)

    async def test_restart_resumes_schedule(self, make_scheduler, time_source):
        counters = _counters()
        control = ControlSurface(make_scheduler(works=counters))
        await control.start()
        try:
            await time_source.advance(7 * MINUTE)
            resp = await control.handle("restart")
            assert resp["result"]["state"] == "running"
            # rearmed at 00:07, so the next recommendation fire is 00:10
            await time_source.advance(3 * MINUTE)
        finally:
            await control.scheduler.shutdown()
        assert counters["recommendation"].calls == 2


@pytest.mark.asyncio
class TestReconfigureLive:
    async def test_rejected_update_keeps_schedule(self, make_scheduler, time_source):
        counters = _counters()
        s = make_scheduler(works=counters)
        await s.start()
        try:
            with pytest.raises(InvalidConfigKeyError) as exc_info:
                await s.reconfigure({"recommendation": "* * * * *", "foo": 1})
            assert exc_info.value.keys == ["foo"]
            await time_source.advance(10 * MINUTE)
        finally:
            await s.shutdown()
        assert s.stages["recommendation"].cadence == DEFAULT_CADENCES["recommendation"]
        assert counters["recommendation"].calls == 2

    async def test_accepted_update_takes_effect(self, make_scheduler, time_source):
        counters = _counters()
        control = ControlSurface(make_scheduler(works=counters))
        await control.start()
        try:
            resp = await control.handle(
                "updateConfig", {"config": {"recommendation": "* * * * *", "cleanup": {"enabled": False}}}
            )
            assert resp["status"] == "success"
            assert "cleanup" not in control.scheduler.clock.armed_stages()
            await time_source.advance(10 * MINUTE)
        finally:
            await control.scheduler.shutdown()
        assert counters["recommendation"].calls == 10
        assert control.health()["stages"]["cleanup"] == "disabled"

    async def test_error_envelope_for_bad_keys(self, make_scheduler):
        control = ControlSurface(make_scheduler())
        resp = await control.handle("updateConfig", {"config": {"foo": 1}})
        assert resp["code"] == "INVALID_CONFIG_KEYS"
        assert resp["invalidKeys"] == ["foo"]
        assert {s["name"]: s["cadence"] for s in control.status()["stages"]} == DEFAULT_CADENCES


@pytest.mark.asyncio
class TestHealthProgression:
    async def test_healthy_degraded_failing_recovered(self, make_scheduler, time_source):
        plan: list[bool] = []

        async def flaky():
            if plan and not plan.pop(0):
                raise RuntimeError("transient")

        s = make_scheduler(works={"recommendation": flaky}, health_window=3)

        plan.extend([True, True])
        await s.trigger_now("recommendation")
        await s.trigger_now("recommendation")
        assert s.health_verdicts()["recommendation"].value == "healthy"

        plan.append(False)
        await s.trigger_now("recommendation")
        assert s.health_verdicts()["recommendation"].value == "degraded"

        plan.extend([False, False])
        await s.trigger_now("recommendation")
        await s.trigger_now("recommendation")
        assert s.health_verdicts()["recommendation"].value == "failing"
        assert s.health()["overall"] == "failing"

        plan.append(True)
        await s.trigger_now("recommendation")
        assert s.health_verdicts()["recommendation"].value == "degraded"

    async def test_stuck_stage_goes_stale(self, make_scheduler, time_source):
        # The 00:30 videoCollection run never returns, so every later fire is
        # skipped and no executed run is ever recorded.
        release = asyncio.Event()

        async def stuck():
            await release.wait()

        s = make_scheduler(works={"videoCollection": stuck})
        await s.start()
        try:
            await time_source.advance(59 * MINUTE)
            assert s.health()["stages"]["videoCollection"] == "healthy"

            await time_source.advance(2 * MINUTE)
            health = s.health()
            assert _outcomes(s, "videoCollection") == [RunOutcome.SKIPPED_OVERLAP]
            assert health["stages"]["videoCollection"] == "failing"
            assert health["stages"]["recommendation"] == "healthy"
            assert health["overall"] == "failing"
        finally:
            release.set()
            await s.shutdown()
