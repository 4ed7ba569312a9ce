"""
interfaces/cli.py — Terminal rendering for the scheduler CLI

Turns the dicts produced by ControlSurface (status / stats / health /
trigger results) into rich tables. The functions take plain dicts so they
work the same for a local scheduler and a response envelope fetched from
elsewhere.

Usage:
    from pipeline_scheduler.interfaces.cli import render_status
    render_status(console, control.status())
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from rich import box
from rich.console import Console
from rich.table import Table

_OUTCOME_COLOURS = {
    "success": "green",
    "failure": "red",
    "skipped-overlap": "yellow",
}

_HEALTH_COLOURS = {
    "healthy": "green",
    "degraded": "yellow",
    "failing": "red",
    "disabled": "dim",
}


def _tick(flag: bool) -> str:
    return "[green]✓[/]" if flag else "[dim red]✗[/]"


def _short_time(iso: Optional[str]) -> str:
    if not iso:
        return "[dim]—[/]"
    # 2026-01-01T00:30:00+00:00 → 2026-01-01 00:30:00
    return iso.replace("T", " ")[:19]


# ─────────────────────────────────────────────────────────────────────────────
# Renderers
# ─────────────────────────────────────────────────────────────────────────────

def render_status(console: Console, status: dict[str, Any]) -> None:
    state = status.get("state", "stopped")
    colour = "green" if status.get("running") else "yellow"
    table = Table(
        title=f"  Scheduler [{colour}]{state}[/]"
              + ("" if status.get("enabled", True) else " [red](disabled)[/]"),
        box=box.ROUNDED,
        border_style="dim",
        show_lines=False,
    )
    table.add_column("Stage", style="cyan bold", no_wrap=True)
    table.add_column("Cadence", no_wrap=True)
    table.add_column("Enabled", no_wrap=True)
    table.add_column("Timeout", no_wrap=True)
    table.add_column("Next fire (UTC)", no_wrap=True)
    table.add_column("Active", no_wrap=True)

    active = set(status.get("activeRuns", ()))
    for stage in status.get("stages", ()):
        cadence = stage["cadence"]
        if stage.get("cadenceError"):
            cadence = f"[red]{cadence}[/]"
        timeout = stage.get("timeoutSeconds")
        table.add_row(
            stage["name"],
            cadence,
            _tick(stage.get("enabled", False)),
            f"{timeout:g}s" if timeout else "[dim]—[/]",
            _short_time(stage.get("nextFireAt")),
            "[bold yellow]running[/]" if stage["name"] in active else "",
        )
    console.print(table)

    for stage in status.get("stages", ()):
        if stage.get("cadenceError"):
            console.print(f"[red]❌ {stage['name']}: {stage['cadenceError']}[/]")


def render_runs(console: Console, runs: Iterable[dict[str, Any]], title: str = "Recent runs") -> None:
    runs = list(runs)
    if not runs:
        console.print("[dim]No runs recorded yet.[/]")
        return

    table = Table(title=f"  {title}", box=box.ROUNDED, border_style="dim")
    table.add_column("Stage", style="cyan bold", no_wrap=True)
    table.add_column("Trigger", no_wrap=True)
    table.add_column("Started (UTC)", no_wrap=True)
    table.add_column("Duration", justify="right", no_wrap=True)
    table.add_column("Outcome", no_wrap=True)
    table.add_column("Messages")

    for run in runs:
        outcome = run["outcome"]
        colour = _OUTCOME_COLOURS.get(outcome, "white")
        messages = "; ".join(run.get("errorMessages", ()))
        table.add_row(
            run["stage"],
            run.get("trigger", ""),
            _short_time(run.get("startedAt")),
            f"{run.get('durationMs', 0):.0f} ms",
            f"[{colour}]{outcome}[/]",
            messages[:80] + ("…" if len(messages) > 80 else ""),
        )
    console.print(table)


def render_summary(console: Console, summary: dict[str, Any]) -> None:
    console.print(
        f"[dim]Runs:[/] {summary.get('totalRuns', 0)}  "
        f"[dim]Avg:[/] {summary.get('avgDurationMs', 0):.1f} ms  "
        f"[dim]Errors:[/] {summary.get('totalErrors', 0)} "
        f"[dim](failures {summary.get('failures', 0)}, skipped {summary.get('skipped', 0)})[/]"
    )


def render_health(console: Console, health: dict[str, Any]) -> None:
    overall = health.get("overall", "healthy")
    colour = _HEALTH_COLOURS.get(overall, "white")
    table = Table(
        title=f"  Health [{colour}]{overall}[/]",
        box=box.ROUNDED,
        border_style="dim",
    )
    table.add_column("Stage", style="cyan bold", no_wrap=True)
    table.add_column("Verdict", no_wrap=True)
    for name, verdict in health.get("stages", {}).items():
        table.add_row(name, f"[{_HEALTH_COLOURS.get(verdict, 'white')}]{verdict}[/]")
    console.print(table)
