"""control/ — operator-facing control surface."""

from pipeline_scheduler.control.surface import Action, ControlSurface, ErrorCode

__all__ = ["Action", "ControlSurface", "ErrorCode"]
