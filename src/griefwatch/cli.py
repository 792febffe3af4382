"""
Griefwatch CLI - Command Line Interface for grief detection

Provides commands for:
- Analyzing a decoded match timeline
- Writing a default configuration file
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from griefwatch import __version__
from griefwatch.core.config import GriefwatchConfig, LoggingConfig, generate_default_config, load_config
from griefwatch.core.timeline import TimelineError, load_timeline
from griefwatch.core.utils import format_duration
from griefwatch.export import export_results
from griefwatch.pipeline.orchestrator import (
    HUMAN_REVIEW_ADVISORY,
    AnalysisOrchestrator,
    AnalysisResults,
    ProgressUpdate,
)

app = typer.Typer(
    name="griefwatch",
    help="Explainable grief detection for decoded CS2 match timelines",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)


def configure_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """Apply logging settings; ``verbose`` forces DEBUG."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=config.format)
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    root.setLevel(level)
    if config.file:
        handler = logging.FileHandler(config.file)
        handler.setFormatter(logging.Formatter(config.format))
        root.addHandler(handler)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]Griefwatch[/bold blue] v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable verbose output"),
) -> None:
    """Griefwatch - Grief detection for CS2 demos"""
    ctx.obj = {"verbose": verbose}
    configure_logging(LoggingConfig(), verbose)


@app.command()
def analyze(
    ctx: typer.Context,
    timeline_path: Path = typer.Argument(
        ...,
        help="Path to the decoded timeline (.json or .json.gz)",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file for results (format detected from extension: .json, .csv)",
    ),
    experimental: bool = typer.Option(
        False,
        "--experimental",
        "-x",
        help="Also run the experimental detectors (inactivity, body blocking, objective, economy)",
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file (.yaml, .toml or .json)",
        exists=True,
        dir_okay=False,
    ),
    min_flash: Optional[float] = typer.Option(
        None,
        "--min-flash",
        help="Minimum blind duration in seconds for a team flash",
    ),
) -> None:
    """
    Analyze a decoded match timeline and display findings.

    Core detectors always run: AFK at round start, team kills, team damage,
    disconnects and team flashes. Experimental detectors are beta and only
    run with --experimental (or enable_experimental in the config).
    """
    config = load_config(config_file)
    configure_logging(config.logging, verbose=bool(ctx.obj and ctx.obj.get("verbose")))
    if min_flash is not None:
        config.team_flash.min_flash_duration = min_flash

    console.print("\n[bold blue]Griefwatch[/bold blue] - Analyzing timeline...\n")

    try:
        timeline = load_timeline(timeline_path)
    except TimelineError as e:
        console.print(Panel(str(e), title="Invalid timeline", border_style="red"))
        raise typer.Exit(1)

    info_table = Table(title="Timeline Information", show_header=False)
    info_table.add_column("Property", style="cyan")
    info_table.add_column("Value", style="green")
    info_table.add_row("Map", timeline.map_name or "unknown")
    info_table.add_row("Duration", format_duration(timeline.duration))
    info_table.add_row("Tick Rate", f"{timeline.tick_rate:g}")
    info_table.add_row("Rounds", str(len(timeline.rounds)))
    info_table.add_row("Players", str(len(timeline.player_names())))
    console.print(info_table)
    console.print()

    results = _run_with_progress(timeline, config, experimental or config.enable_experimental)

    _display_results(results)

    for detector, message in results.failures.items():
        console.print(f"[yellow]Warning:[/yellow] {detector} failed: {message}")

    if output:
        try:
            export_results(results, output)
        except ValueError as e:
            console.print(f"[red]Export failed:[/red] {e}")
            raise typer.Exit(1)
        console.print(f"\n[green]Results exported to:[/green] {output}")

    console.print(Panel(HUMAN_REVIEW_ADVISORY, border_style="yellow"))


def _run_with_progress(timeline, config: GriefwatchConfig, experimental: bool) -> AnalysisResults:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Starting analysis...", total=100)

        def on_progress(update: ProgressUpdate) -> None:
            progress.update(task, completed=update.percentage, description=update.current_step)

        orchestrator = AnalysisOrchestrator(
            timeline, config, progress_callback=on_progress, enable_experimental=experimental
        )
        try:
            return orchestrator.run()
        except TimelineError as e:
            progress.stop()
            console.print(Panel(str(e), title="Analysis failed", border_style="red"))
            raise typer.Exit(1)


# ============================================================================
# Result tables
# ============================================================================


def _print_table(title: str, columns: list[str], rows: list[list[str]]) -> None:
    table = Table(title=title)
    for index, column in enumerate(columns):
        if index == 0:
            table.add_column(column, style="cyan")
        else:
            table.add_column(column, justify="right" if index < len(columns) - 1 else "left")
    for row in rows:
        table.add_row(*row)
    console.print(table)
    console.print()


def _display_results(results: AnalysisResults) -> None:
    if results.total_findings == 0:
        console.print("[green]No findings.[/green]\n")
        return

    if results.afk_detections:
        _print_table(
            "AFK Players",
            ["Player", "Round", "Duration", "Ended by"],
            [
                [
                    d.player_name,
                    str(d.round),
                    f"{d.afk_duration:.1f}s",
                    "death"
                    if d.died_while_afk
                    else ("movement" if d.time_to_first_movement is not None else "round end"),
                ]
                for d in results.afk_detections
            ],
        )

    if results.team_kills:
        _print_table(
            "Team Kills",
            ["Attacker", "Round", "Victim", "Weapon"],
            [
                [k.attacker_name, str(k.round), k.victim_name, k.weapon + (" (HS)" if k.is_headshot else "")]
                for k in results.team_kills
            ],
        )

    if results.team_damage:
        _print_table(
            "Team Damage",
            ["Attacker", "Round", "Damage", "Victim"],
            [
                [d.attacker_name, str(d.round), f"{d.damage:g}", f"{d.victim_name} ({d.initial_hp:g} -> {d.final_hp:g})"]
                for d in results.team_damage
            ],
        )

    if results.disconnects:
        _print_table(
            "Disconnects",
            ["Player", "Round", "Rounds missed", "Reconnect"],
            [
                [
                    d.player_name,
                    str(d.disconnect_round),
                    str(d.rounds_missed),
                    "never" if d.is_permanent else f"round {d.reconnect_round} after {d.duration:.1f}s",
                ]
                for d in results.disconnects
            ],
        )

    if results.team_flashes:
        _print_table(
            "Team Flashes",
            ["Thrower", "Round", "Blind", "Victim"],
            [[f.thrower_name, str(f.round), f"{f.flash_duration:.1f}s", f.victim_name] for f in results.team_flashes],
        )

    _display_experimental(results)


def _display_experimental(results: AnalysisResults) -> None:
    if results.mid_round_inactivity:
        _print_table(
            "Mid-Round Inactivity (experimental)",
            ["Player", "Round", "Confidence", "Reason"],
            [
                [r.player_name, str(r.round), f"{s.confidence:.2f}", s.reason]
                for r in results.mid_round_inactivity
                for s in r.segments
            ],
        )

    if results.body_blocking:
        _print_table(
            "Body Blocking (experimental)",
            ["Blocker", "Round", "Confidence", "Reason"],
            [
                [e.blocker_name, str(e.round), f"{e.confidence:.2f}", e.reason]
                for r in results.body_blocking
                for e in r.events
            ],
        )

    if results.objective_sabotage:
        _print_table(
            "Objective Sabotage (experimental)",
            ["Player", "Round", "Confidence", "Reason"],
            [
                [e.actor_name, str(e.round), f"{e.confidence:.2f}", e.human_reason]
                for r in results.objective_sabotage
                for e in r.events
            ],
        )

    if results.economy_griefing:
        flagged = [p for p in results.economy_griefing if p.events]
        if flagged:
            _print_table(
                "Economy Griefing (experimental)",
                ["Player", "Events", "Confidence", "Flagged"],
                [
                    [p.player_name, str(len(p.events)), f"{p.match_confidence:.2f}", "yes" if p.flagged_match else "no"]
                    for p in flagged
                ],
            )


@app.command("config-init")
def config_init(
    path: Path = typer.Argument(Path("griefwatch.yaml"), help="Where to write the config (.yaml or .json)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
) -> None:
    """Write a configuration file with every default value."""
    if path.exists() and not force:
        console.print(f"[red]Error:[/red] {path} already exists (use --force to overwrite)")
        raise typer.Exit(1)
    try:
        generate_default_config(path)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Default configuration written to:[/green] {path}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
