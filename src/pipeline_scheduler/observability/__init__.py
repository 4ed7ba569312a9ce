"""observability/ — structlog setup shared by every component."""

from pipeline_scheduler.observability.logger import bind_run, clear_run, get_logger, setup_logging

__all__ = ["bind_run", "clear_run", "get_logger", "setup_logging"]
