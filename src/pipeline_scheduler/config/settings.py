"""
config/settings.py — Pipeline Scheduler Runtime Settings

Merges config.yaml (stage cadences, scheduler tuning, logging) with
environment variables / .env. Pydantic-powered: every field is validated
and typed at parse time.

  - StageConfig rejects non-positive timeouts and malformed work paths
  - SchedulerConfig rejects non-positive history/window sizes and negative
    restart delays
  - validate_all() performs full startup validation (timezone, cadences,
    importable work callables) and raises ConfigError listing every problem
  - load_settings() respects PIPELINE_SCHEDULER_CONFIG when no explicit
    config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pipeline_scheduler.scheduler.models import (
    CLEANUP,
    DATA_PROCESSING,
    DEFAULT_CADENCES,
    RECOMMENDATION,
    VIDEO_COLLECTION,
)


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class StageConfig(BaseModel):
    cadence: str
    enabled: bool = True
    timeout_seconds: Optional[float] = None
    work: Optional[str] = None          # "package.module:callable"

    @field_validator("cadence")
    @classmethod
    def _non_empty_cadence(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("stage cadence must not be empty")
        return v.strip()

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("stage timeout_seconds must be > 0 (or omitted)")
        return v

    @field_validator("work")
    @classmethod
    def _work_path_shape(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        module, sep, attr = v.partition(":")
        if not sep or not module or not attr:
            raise ValueError(
                f"stage work '{v}' must look like 'package.module:callable'"
            )
        return v


def _stage(name: str) -> Any:
    return Field(default_factory=lambda: StageConfig(cadence=DEFAULT_CADENCES[name]), alias=name)


class StagesConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    video_collection: StageConfig = _stage(VIDEO_COLLECTION)
    data_processing: StageConfig = _stage(DATA_PROCESSING)
    recommendation: StageConfig = _stage(RECOMMENDATION)
    cleanup: StageConfig = _stage(CLEANUP)

    def as_mapping(self) -> dict[str, StageConfig]:
        """Stage name (as used on the wire) → StageConfig, in pipeline order."""
        return {
            VIDEO_COLLECTION: self.video_collection,
            DATA_PROCESSING: self.data_processing,
            RECOMMENDATION: self.recommendation,
            CLEANUP: self.cleanup,
        }


class SchedulerConfig(BaseModel):
    timezone: str = "UTC"
    enabled: bool = True
    autostart: bool = True
    history_limit: int = 50
    health_window: int = 5
    restart_delay_seconds: float = 1.0

    @field_validator("history_limit")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("scheduler.history_limit must be >= 1")
        return v

    @field_validator("health_window")
    @classmethod
    def _positive_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError("scheduler.health_window must be >= 1")
        return v

    @field_validator("restart_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("scheduler.restart_delay_seconds must be >= 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Pipeline scheduler runtime settings.

    Priority (highest to lowest):
      1. config.yaml sections passed in by load_settings()
      2. Environment variables (nested with '__', e.g. SCHEDULER__TIMEZONE)
      3. .env file
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    stages: StagesConfig = Field(default_factory=StagesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("scheduler", mode="before")
    @classmethod
    def _coerce_scheduler(cls, v: Any) -> Any:
        return SchedulerConfig(**v) if isinstance(v, dict) else v

    @field_validator("stages", mode="before")
    @classmethod
    def _coerce_stages(cls, v: Any) -> Any:
        return StagesConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self, *, require_work: bool = True) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic validators catch shape errors at parse time; this catches what
        only shows up at runtime: unknown timezones, cadences croniter cannot
        schedule, and work paths that are missing or fail to import.
        """
        from pipeline_scheduler.exceptions import InvalidCadenceError
        from pipeline_scheduler.kernel.bootstrap import resolve_work
        from pipeline_scheduler.scheduler.cadence import CronCadenceParser

        errors: list[str] = []

        # ── Timezone ─────────────────────────────────────────────────────────
        tz_name = self.scheduler.timezone.strip()
        parser: Optional[CronCadenceParser] = None
        if not tz_name:
            errors.append("scheduler.timezone must not be empty. Use 'UTC' or an IANA name.")
        else:
            try:
                ZoneInfo(tz_name)
                parser = CronCadenceParser(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                errors.append(f"scheduler.timezone '{tz_name}' is not a known IANA timezone.")

        # ── Stages ───────────────────────────────────────────────────────────
        validator = parser or CronCadenceParser()
        for name, stage in self.stages.as_mapping().items():
            try:
                validator.validate(stage.cadence)
            except InvalidCadenceError as e:
                errors.append(f"stages.{name}.cadence: {e}")

            if stage.work is None:
                if require_work:
                    errors.append(
                        f"stages.{name}.work is not set. Point it at the stage "
                        f"callable, e.g. 'myapp.pipeline:{name}'."
                    )
                continue
            try:
                resolve_work(stage.work)
            except ConfigError as e:
                errors.append(f"stages.{name}.work: {e}")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nPipeline scheduler startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + cached instance
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.RLock()

_KNOWN_SECTIONS = {"scheduler", "stages", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. PIPELINE_SCHEDULER_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("PIPELINE_SCHEDULER_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the cached Settings, loading from the default path on first use.

    Guarded by a re-entrant lock so concurrent first calls load only once.
    """
    if _singleton is not None:
        return _singleton  # fast path, no lock needed once set
    with _singleton_lock:
        if _singleton is None:
            load_settings()
    return _singleton  # type: ignore[return-value]
