"""
cli.py – Walk-through demo of the onboarding engine

Run:
    python -m onboarding_engine                    # in-memory, developer path
    python -m onboarding_engine --role admin
    python -m onboarding_engine --sqlite           # uses ONBOARDING_DB_PATH
    python -m onboarding_engine --pdf cert.pdf     # also write the certificate

A simulated user works through the chosen path over a few days: one step
fails validation three times before succeeding, so the blocker analysis,
badges, trend report and completion certificate all have something to show.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path as FsPath
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from onboarding_engine.config import get_settings
from onboarding_engine.engine import OnboardingEngine
from onboarding_engine.errors import OnboardingError
from onboarding_engine.models import ErrorKind, Severity, StepStatus, utcnow

console = Console()

SEVERITY_STYLE = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH:     "bold yellow",
    Severity.MEDIUM:   "bold cyan",
    Severity.LOW:      "dim white",
}

STATUS_ICON = {
    StepStatus.COMPLETED:   "[bold green]✓[/bold green]",
    StepStatus.FAILED:      "[bold red]✗[/bold red]",
    StepStatus.IN_PROGRESS: "[bold yellow]◑[/bold yellow]",
    StepStatus.NOT_STARTED: "[dim]·[/dim]",
}


class DemoClock:
    """Deterministic clock the demo moves forward by hand."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or utcnow() - timedelta(days=3)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def _bar(pct: float, width: int = 20) -> str:
    filled = round(pct / 100 * width)
    return "[" + "█" * filled + "░" * (width - filled) + f"] {pct:.0f}%"


# ─── Simulation ──────────────────────────────────────────────────────────────

def simulate(engine: OnboardingEngine, clock: DemoClock, user_id: str, role: str) -> str:
    session, personalized = engine.start_onboarding(user_id, {"role": role})
    console.print(f"Path [bold]{personalized.path.name}[/bold] "
                  f"([cyan]{personalized.match}[/cyan] match, "
                  f"{personalized.estimated_duration:.0f} min estimated)")

    sid = session.session_id
    struggled = False
    while True:
        step = engine.paths.get_next_step(sid)
        if step is None:
            break
        engine.store.start_step(sid, step.step_id)
        clock.advance(minutes=step.estimated_time)

        if not struggled and step.step_type.value in ("setup", "exercise") and step.dependencies:
            struggled = True
            for attempt in range(3):
                engine.store.record_step_completion(sid, step.step_id, {
                    "status": "failed",
                    "time_spent": step.estimated_time * (attempt + 1),
                    "error": {"kind": ErrorKind.VALIDATION, "message": f"Field check failed ({attempt + 1})"},
                })
                clock.advance(minutes=5)
                engine.store.start_step(sid, step.step_id)
            show_blockers(engine, sid)
            clock.advance(hours=20)

        result = engine.store.record_step_completion(sid, step.step_id, {
            "status": "completed", "time_spent": step.estimated_time, "score": 90,
        })
        for ach in result.awarded:
            console.print(f"  [bold green]★[/bold green] milestone [bold]{ach.milestone_key}[/bold]")
        for warning in result.warnings:
            console.print(f"  [yellow]⚠ {warning}[/yellow]")
        clock.advance(hours=6)

    engine.store.complete_session(sid)
    return sid


# ─── Display helpers ─────────────────────────────────────────────────────────

def show_progress(engine: OnboardingEngine, session_id: str) -> None:
    progress = engine.store.get_overall_progress(session_id)
    path = engine.store.get_path(progress.path_id)
    records = {r.step_id: r for r in engine.store.get_progress_records(session_id)}

    table = Table(box=box.SIMPLE_HEAD, header_style="bold white on dark_violet", padding=(0, 1))
    table.add_column("#",         justify="right")
    table.add_column("Step",      style="white", min_width=28)
    table.add_column("Status",    justify="center")
    table.add_column("Required",  justify="center")
    table.add_column("Attempts",  justify="right")
    table.add_column("Time",      justify="right")
    for step in path.ordered_steps():
        rec = records.get(step.step_id)
        status = rec.status if rec else StepStatus.NOT_STARTED
        table.add_row(
            str(step.order),
            step.title,
            STATUS_ICON[status],
            "yes" if step.is_required else "[dim]optional[/dim]",
            str(rec.attempts) if rec else "0",
            f"{rec.time_spent:.0f} min" if rec else "-",
        )
    console.print(Panel(
        table,
        title=f"[bold]Progress {_bar(progress.completion_percentage)}[/bold]",
        subtitle=f"{progress.completed_steps}/{progress.total_steps} steps · "
                 f"{progress.time_spent:.0f} min",
        border_style="magenta",
    ))


def show_blockers(engine: OnboardingEngine, session_id: str) -> None:
    blockers = engine.blockers.identify_blockers(session_id)
    if not blockers:
        console.print("[dim]No blockers detected.[/dim]")
        return
    table = Table(box=box.ROUNDED, header_style="bold cyan", padding=(0, 1))
    table.add_column("Severity")
    table.add_column("Category")
    table.add_column("Step")
    table.add_column("Suggested resolution", style="dim white")
    for b in blockers:
        style = SEVERITY_STYLE.get(b.severity, "white")
        table.add_row(f"[{style}]{b.severity.value.upper()}[/{style}]", b.category.value,
                      b.related_step_id or "[dim]several[/dim]", b.suggested_resolution)
    console.print(Panel(table, title="[bold]Blockers[/bold]", border_style="yellow"))


def show_badges(engine: OnboardingEngine, session_id: str) -> None:
    table = Table(box=box.SIMPLE, header_style="bold cyan", padding=(0, 1))
    table.add_column("Badge", style="white")
    table.add_column("Progress")
    for badge in engine.milestones.get_available_badges(session_id):
        mark = "[bold green]earned[/bold green]" if badge.earned else _bar(badge.progress, 12)
        table.add_row(badge.name, mark)
    console.print(Panel(table, title="[bold]Badges[/bold]", border_style="green"))


def show_report(engine: OnboardingEngine, session_id: str) -> None:
    from onboarding_engine.reports import ReportScope

    report = engine.reports.generate_progress_report(ReportScope(session_id=session_id))
    trend = Table(box=box.SIMPLE, header_style="bold cyan", padding=(0, 1))
    trend.add_column("Bucket")
    trend.add_column("Completion")
    trend.add_column("Steps done", justify="right")
    for point in report.trend:
        trend.add_row(point.bucket.isoformat(), _bar(point.completion_percentage, 12),
                      str(point.completed_steps))

    m = report.metrics
    recs = "\n".join(f"• {r}" for r in report.recommendations)
    console.print(Panel(
        trend,
        title=f"[bold]Trend ({report.trend_direction})[/bold]",
        subtitle=f"engagement {m.engagement_score:.0f} · difficulty {m.difficulty_score:.0f} · "
                 f"failure rate {m.failure_rate:.0f}%",
        border_style="blue",
    ))
    console.print(Panel(recs, title="[bold]Recommendations[/bold]", border_style="cyan"))


# ─── Main ────────────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="onboarding_engine", description=__doc__.splitlines()[1])
    parser.add_argument("--role", default="developer", help="user role for path selection")
    parser.add_argument("--user", default="demo_user")
    parser.add_argument("--sqlite", action="store_true", help="persist to ONBOARDING_DB_PATH")
    parser.add_argument("--pdf", type=FsPath, help="write the completion certificate here")
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except OnboardingError as e:
        console.print(f"\n[bold red]Configuration error:[/bold red] {e}")
        console.print("[dim]Check your .env file against .env.example and retry.[/dim]")
        return 1

    logging.basicConfig(level=settings.app.log_level,
                        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    console.print()
    console.print(Panel(
        "[bold]Adaptive Onboarding Engine[/bold]\n"
        "[dim]Progress tracking  •  Blockers  •  Milestones  •  Reports[/dim]",
        style="on dark_violet",
        expand=False,
    ))

    clock = DemoClock()
    engine = None
    try:
        if args.sqlite:
            engine = OnboardingEngine.from_settings(settings, clock=clock)
        else:
            engine = OnboardingEngine.in_memory(settings, clock=clock)
        engine.seed_default_paths()

        sid = simulate(engine, clock, args.user, args.role)
        show_progress(engine, sid)
        show_badges(engine, sid)
        show_report(engine, sid)

        certificate = engine.certificates.generate_completion_certificate(sid)
        console.print(f"\nCertificate [bold]{certificate.certificate_id}[/bold] issued "
                      f"{certificate.issued_at:%Y-%m-%d %H:%M} UTC")
        if args.pdf:
            from onboarding_engine.certificates import render_certificate_pdf
            args.pdf.write_bytes(render_certificate_pdf(certificate))
            console.print(f"[green]PDF written to {args.pdf}[/green]")

    except OnboardingError as e:
        console.print(f"\n[bold red]{type(e).__name__}:[/bold red] {e}")
        return 1

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        return 0

    finally:
        if engine is not None:
            engine.close()

    console.print()
    console.rule("[bold green]Onboarding complete[/bold green]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
