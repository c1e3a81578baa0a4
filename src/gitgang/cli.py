"""CLI interface for gitgang."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from gitgang import __version__
from gitgang.core.environment import PreflightError, ensure_dependencies, resolve_repository
from gitgang.core.orchestrator import Orchestrator, RunResult
from gitgang.schemas.config import RunConfig
from gitgang.worktree.manager import WorktreeManager

console = Console()
logger = logging.getLogger("gitgang")

DEFAULT_CONFIG = ".gitgang.yaml"

EXIT_DNF = 1
EXIT_ERROR = 2


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Run Gemini, Claude and Codex on the same task and merge the best result.

    Each agent works in its own git worktree; Codex then reviews the
    branches and either approves a merge plan or sends the agents back
    with revisions.
    """
    pass


@main.command()
@click.argument("task")
@click.option("--rounds", type=int, help="Review rounds (1-10)")
@click.option("--timeout", type=float, help="Global run timeout in seconds")
@click.option("--round-timeout", type=float, help="Limit for the initial agent round in seconds")
@click.option("--work-root", help="Directory for worktrees, logs and run records")
@click.option("--yolo/--no-yolo", default=None, help="Auto-approve agent actions")
@click.option("--no-pr", is_flag=True, help="Do not open a pull request on approval")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=DEFAULT_CONFIG,
    show_default=True,
    help="Path to config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Log agent output and debug detail")
def run(
    task: str,
    rounds: int | None,
    timeout: float | None,
    round_timeout: float | None,
    work_root: str | None,
    yolo: bool | None,
    no_pr: bool,
    config_path: str,
    verbose: bool,
) -> None:
    """Run all three agents on TASK."""
    _setup_logging(verbose)

    try:
        cfg = RunConfig.load(config_path).with_overrides(
            rounds=rounds,
            timeout=timeout,
            round_timeout=round_timeout,
            work_root=work_root,
            yolo=yolo,
            auto_pr=False if no_pr else None,
        )
    except ValidationError as e:
        console.print(f"[red]✗[/red] Invalid configuration:\n{e}")
        sys.exit(EXIT_ERROR)

    try:
        result = asyncio.run(_run(cfg, task))
    except PreflightError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)
    except Exception as e:
        logger.exception("Run aborted")
        console.print(f"[red]✗[/red] Run aborted: {e}")
        sys.exit(EXIT_ERROR)

    _print_result(result)
    if not result.approved:
        sys.exit(EXIT_DNF)


async def _run(cfg: RunConfig, task: str) -> RunResult:
    repo_root, base_branch = await resolve_repository()
    auto_pr = ensure_dependencies(cfg.auto_pr)
    if auto_pr != cfg.auto_pr:
        cfg = cfg.with_overrides(auto_pr=auto_pr)

    console.print(
        Panel(
            f"[bold]Task:[/bold] {task}\n"
            f"[bold]Base:[/bold] {base_branch}\n"
            f"[bold]Rounds:[/bold] {cfg.rounds}   [bold]Timeout:[/bold] {cfg.timeout:.0f}s   "
            f"[bold]Auto PR:[/bold] {'on' if cfg.auto_pr else 'off'}",
            title=f"gitgang v{__version__}",
        )
    )

    orchestrator = Orchestrator(cfg, repo_root, base_branch)
    return await orchestrator.run(task)


def _print_result(result: RunResult) -> None:
    if result.outcomes:
        table = Table(title="Agents")
        table.add_column("Agent", style="cyan")
        table.add_column("Status")
        table.add_column("Exit", justify="right")
        table.add_column("Restarts", justify="right")
        table.add_column("Reason", style="dim")

        for agent, outcome in result.outcomes.items():
            style = "green" if outcome.succeeded else "red"
            table.add_row(
                agent.value,
                f"[{style}]{outcome.status.value}[/{style}]",
                str(outcome.exit_code),
                str(outcome.restarts),
                outcome.reason or "-",
            )
        console.print(table)

    if result.approved:
        console.print(f"\n[green]✓[/green] Merge branch ready: [bold]{result.merge_branch}[/bold]")
        return

    console.print(f"\n[red]✗[/red] Did not finish: {result.reason}")
    if result.record_path:
        console.print(f"  Details: {result.record_path}")


@main.command()
@click.argument("output", type=click.Path(dir_okay=False), default=DEFAULT_CONFIG)
def init(output: str) -> None:
    """Write a default configuration file."""
    output_path = Path(output)

    if output_path.exists():
        if not click.confirm(f"{output} already exists. Overwrite?"):
            return

    RunConfig().save(output_path)
    console.print(f"[green]Created:[/green] {output}")


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=DEFAULT_CONFIG,
    help="Path to config file",
)
def cleanup(config_path: str) -> None:
    """Remove leftover agent worktrees."""
    _setup_logging(False)

    try:
        cfg = RunConfig.load(config_path)
        removed = asyncio.run(_cleanup(cfg))
    except (PreflightError, ValidationError) as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(EXIT_ERROR)

    if removed:
        console.print(f"Removed worktrees: {', '.join(str(p) for p in removed)}")
    else:
        console.print("No agent worktrees found.")


async def _cleanup(cfg: RunConfig) -> list[Path]:
    repo_root, _ = await resolve_repository()
    return await WorktreeManager(repo_root, cfg.work_root).cleanup_all()


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"gitgang v{__version__}")


if __name__ == "__main__":
    main()
