"""
main.py — Pipeline Scheduler Entry Point

Usage:
    pipeline-scheduler run                         # start and serve until Ctrl-C
    pipeline-scheduler run --status-interval 30    # status table every 30 s
    pipeline-scheduler status                      # validate config, show next fires
    pipeline-scheduler trigger dataProcessing      # run one stage once
    pipeline-scheduler trigger                     # run every stage once
    pipeline-scheduler run --config path/to/config.yaml --log-level DEBUG
"""

from __future__ import annotations
# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before settings are read
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

load_dotenv(dotenv_path=Path.cwd() / ".env")

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional, Sequence

from rich.console import Console


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pipeline-scheduler",
        description="Recurring scheduler for the video → recommendation pipeline",
    )
    parser.add_argument(
        "subcommand",
        nargs="?",
        choices=["run", "status", "trigger"],
        default="run",
        help=(
            "'run' — start the scheduler and keep serving (default). "
            "'status' — validate config and show each stage's next fire time. "
            "'trigger [stage]' — run one stage (or all) once and exit."
        ),
    )
    parser.add_argument(
        "stage",
        nargs="?",
        default=None,
        help="Stage name for 'trigger' (omit to run every stage).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $PIPELINE_SCHEDULER_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override the log level from config.yaml",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=60.0,
        help="Seconds between status tables while running (0 disables them)",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace, *, require_work: bool = True):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from pipeline_scheduler.config.settings import ConfigError, load_settings
    from pipeline_scheduler.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all(require_work=require_work)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("pipeline_scheduler.main")
    return settings, log


async def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    console = Console()

    if args.stage is not None and args.subcommand != "trigger":
        print(f"Unexpected argument '{args.stage}' for '{args.subcommand}'", file=sys.stderr)
        return 2

    if args.subcommand == "status":
        settings, log = bootstrap(args, require_work=False)
        return _show_status(settings, console)

    settings, log = bootstrap(args)

    from pipeline_scheduler import __version__
    from pipeline_scheduler.config.settings import ConfigError
    from pipeline_scheduler.kernel.bootstrap import build_scheduler

    log.info(
        "pipeline_scheduler.starting",
        version=__version__,
        subcommand=args.subcommand,
        timezone=settings.scheduler.timezone,
    )

    try:
        stack = build_scheduler(settings)
    except ConfigError as exc:
        log.error("pipeline_scheduler.startup_failed", error=str(exc))
        print(f"\n❌  {exc}\n", file=sys.stderr)
        return 1

    if args.subcommand == "trigger":
        return await _run_trigger(stack, args.stage, console, log)

    await _run_forever(stack, args.status_interval, console, log)
    return 0


def _show_status(settings, console: Console) -> int:
    """Print the configured stages and their next fire times without starting anything."""
    from pipeline_scheduler.interfaces.cli import render_status
    from pipeline_scheduler.scheduler.cadence import CronCadenceParser

    parser = CronCadenceParser(settings.scheduler.timezone)
    now = datetime.now(timezone.utc)
    stages = []
    for name, cfg in settings.stages.as_mapping().items():
        nxt = parser.next_fire(cfg.cadence, now) if cfg.enabled else None
        stages.append({
            "name": name,
            "cadence": cfg.cadence,
            "enabled": cfg.enabled,
            "timeoutSeconds": cfg.timeout_seconds,
            "nextFireAt": nxt.isoformat() if nxt else None,
            "cadenceError": None,
        })
    render_status(console, {
        "running": False,
        "enabled": settings.scheduler.enabled,
        "state": "stopped",
        "stages": stages,
        "activeRuns": [],
    })
    console.print(f"[dim]Timezone: {settings.scheduler.timezone}[/]")
    return 0


async def _run_trigger(stack, stage: Optional[str], console: Console, log) -> int:
    from pipeline_scheduler.exceptions import UnknownStageError
    from pipeline_scheduler.interfaces.cli import render_runs

    try:
        runs = await stack.control.trigger_now(stage)
    except UnknownStageError as exc:
        print(
            f"\n❌  {exc}. Valid stages: {', '.join(stack.scheduler.stages)}\n",
            file=sys.stderr,
        )
        return 1

    render_runs(console, runs, title="Triggered runs")
    failed = [r["stage"] for r in runs if r["outcome"] == "failure"]
    if failed:
        log.warning("pipeline_scheduler.trigger_failed", stages=failed)
        return 1
    return 0


async def _run_forever(
    stack,
    status_interval: float,
    console: Console,
    log,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Start the scheduler and serve until SIGINT/SIGTERM (or until stop_event is
    set), printing status, run summary and health every status_interval
    seconds. In-flight runs are drained on exit.
    """
    from pipeline_scheduler.interfaces.cli import render_health, render_status, render_summary

    scheduler = stack.scheduler
    stop_event = stop_event or asyncio.Event()

    def _signal_handler(*_) -> None:
        log.info("pipeline_scheduler.shutdown_requested")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl-C surfaces as KeyboardInterrupt instead.
            pass

    if stack.settings.scheduler.autostart:
        await stack.control.start()
    else:
        log.info("pipeline_scheduler.autostart_disabled")

    render_status(console, stack.control.status())

    try:
        while not stop_event.is_set():
            timeout = status_interval if status_interval > 0 else None
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                render_status(console, stack.control.status())
                render_summary(console, stack.control.stats()["summary"])
                render_health(console, stack.control.health())
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("pipeline_scheduler.interrupted")
    finally:
        console.print("[dim]Stopping scheduler, waiting for running stages...[/]")
        await scheduler.shutdown(drain=True)
        log.info("pipeline_scheduler.stopped", runs_recorded=len(scheduler.history))


def run() -> None:
    """Console-script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
