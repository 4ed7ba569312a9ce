"""
control/surface.py — Scheduler Control Surface

Thin request/response boundary over a PipelineScheduler for HTTP handlers,
CLIs and test harnesses. Typed methods return JSON-ready dicts; handle()
wraps them in the response envelope used by transports:

    {"status": "success", "action": "...", "result": ..., "timestamp": "..."}
    {"status": "error", "error": "...", "code": "...", "timestamp": "..."}

Read actions (status/stats/health) keep answering while stages fail: stage
errors never leave the StageRunner, and handle() converts any scheduler
error into an error envelope instead of raising.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pipeline_scheduler.exceptions import (
    InvalidCadenceError,
    InvalidConfigKeyError,
    InvalidConfigValueError,
    PipelineSchedulerError,
    UnknownStageError,
)
from pipeline_scheduler.observability.logger import get_logger
from pipeline_scheduler.scheduler.scheduler import DEFAULT_STATS_LIMIT, PipelineScheduler

log = get_logger(__name__)


class Action(str, Enum):
    STATUS = "status"
    STATS = "stats"
    HEALTH = "health"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RECONFIGURE = "reconfigure"
    TRIGGER_NOW = "triggerNow"


# Names accepted by earlier clients of the control endpoint.
_ACTION_ALIASES = {
    "updateConfig": Action.RECONFIGURE,
    "triggerUpdate": Action.TRIGGER_NOW,
}


class ErrorCode(str, Enum):
    INVALID_ACTION = "INVALID_ACTION"
    MISSING_CONFIG = "MISSING_CONFIG"
    INVALID_CONFIG_KEYS = "INVALID_CONFIG_KEYS"
    INVALID_CONFIG_VALUE = "INVALID_CONFIG_VALUE"
    INVALID_CADENCE = "INVALID_CADENCE"
    UNKNOWN_STAGE = "UNKNOWN_STAGE"
    SCHEDULER_ERROR = "SCHEDULER_ERROR"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ControlSurface:
    """
    Operator controls for one PipelineScheduler.

    Lifecycle actions are idempotent and return the resulting status.
    """

    def __init__(self, scheduler: PipelineScheduler) -> None:
        self._scheduler = scheduler

    @property
    def scheduler(self) -> PipelineScheduler:
        return self._scheduler

    # ── Read path ─────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return self._scheduler.status()

    def stats(self, limit: int = DEFAULT_STATS_LIMIT) -> dict[str, Any]:
        return self._scheduler.stats(limit)

    def health(self) -> dict[str, Any]:
        return self._scheduler.health()

    # ── Write path ────────────────────────────────────────────────────────────

    async def start(self) -> dict[str, Any]:
        await self._scheduler.start()
        return self.status()

    async def stop(self) -> dict[str, Any]:
        await self._scheduler.stop()
        return self.status()

    async def restart(self) -> dict[str, Any]:
        await self._scheduler.restart()
        return self.status()

    async def reconfigure(self, config: dict[str, Any]) -> dict[str, Any]:
        await self._scheduler.reconfigure(config)
        return self.status()

    async def trigger_now(self, stage: Optional[str] = None) -> list[dict[str, Any]]:
        records = await self._scheduler.trigger_now(stage)
        return [r.to_dict() for r in records]

    # ── Envelope dispatch ─────────────────────────────────────────────────────

    async def handle(self, action: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Dispatch a named action and wrap the outcome in a response envelope."""
        payload = payload or {}
        try:
            resolved = _ACTION_ALIASES.get(action) or Action(action)
        except ValueError:
            return self._error(
                f"Invalid action: {action}",
                ErrorCode.INVALID_ACTION,
                validActions=[a.value for a in Action],
            )

        if resolved is Action.RECONFIGURE and payload.get("config") is None:
            return self._error(
                "Configuration object required for reconfigure action",
                ErrorCode.MISSING_CONFIG,
            )

        try:
            result = await self._dispatch(resolved, payload)
        except InvalidConfigKeyError as e:
            return self._error(
                str(e), ErrorCode.INVALID_CONFIG_KEYS,
                invalidKeys=e.keys, validKeys=e.valid_keys,
            )
        except InvalidConfigValueError as e:
            return self._error(str(e), ErrorCode.INVALID_CONFIG_VALUE, key=e.key)
        except InvalidCadenceError as e:
            return self._error(str(e), ErrorCode.INVALID_CADENCE, stage=e.stage, cadence=e.expression)
        except UnknownStageError as e:
            return self._error(
                str(e), ErrorCode.UNKNOWN_STAGE,
                validStages=list(self._scheduler.stages),
            )
        except PipelineSchedulerError as e:
            log.error("control.action_failed", action=resolved.value, error=str(e))
            return self._error(str(e), ErrorCode.SCHEDULER_ERROR)
        except Exception as e:
            log.error("control.action_crashed", action=resolved.value, error=str(e), exc_info=True)
            return self._error(f"Failed to execute scheduler action: {e}", ErrorCode.SCHEDULER_ERROR)

        return {
            "status": "success",
            "action": resolved.value,
            "result": result,
            "timestamp": _timestamp(),
        }

    async def _dispatch(self, action: Action, payload: dict[str, Any]) -> Any:
        if action is Action.STATUS:
            return self.status()
        if action is Action.STATS:
            return self.stats(int(payload.get("limit", DEFAULT_STATS_LIMIT)))
        if action is Action.HEALTH:
            return self.health()
        if action is Action.START:
            return await self.start()
        if action is Action.STOP:
            return await self.stop()
        if action is Action.RESTART:
            return await self.restart()
        if action is Action.RECONFIGURE:
            return await self.reconfigure(payload["config"])
        return await self.trigger_now(payload.get("stage"))

    @staticmethod
    def _error(message: str, code: ErrorCode, **extra: Any) -> dict[str, Any]:
        return {
            "status": "error",
            "error": message,
            "code": code.value,
            **extra,
            "timestamp": _timestamp(),
        }
