"""wtf CLI - explain a git repository in plain language.

Usage:
    wtf explain [REPO_PATH] [options]
    wtf explain . -n 10
    wtf explain ../other-repo --json
"""

from __future__ import annotations

import datetime
import json
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import ConfigError, load_config
from .model import SummaryClient
from .orchestrator import PROJECT_REF, AnalysisOrchestrator, AnalysisReport
from .repository import RepositoryError

console = Console()
err_console = Console(stderr=True)

EXIT_REPOSITORY_ERROR = 3
EXIT_CANCELLED = 130


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__)
def cli():
    """wtf - explains git repositories in plain language.

    Reads the repository locally and asks an OpenAI-compatible model to
    describe the project and its most recent commits. Needs OPENAI_API_KEY
    in the environment or in a .env file.
    """
    pass


@cli.command()
@click.argument("repo_path", default=".", type=click.Path(file_okay=False))
@click.option("--num-commits", "-n", type=click.IntRange(min=1), default=None, help="Number of commits to explain [default: 5]")
@click.option("--budget", type=click.IntRange(min=1), default=None, help="Max characters of diff per model call")
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Concurrent model calls")
@click.option("--fan-in", type=click.IntRange(min=1), default=None, help="Max chunks explained per commit")
@click.option("--model", "-m", default=None, help="Model name")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Read settings from this .env file")
@click.option("--json", "json_only", is_flag=True, help="Output raw JSON to stdout (for piping)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def explain(
    repo_path: str,
    num_commits: int | None,
    budget: int | None,
    workers: int | None,
    fan_in: int | None,
    model: str | None,
    env_file: str | None,
    json_only: bool,
    verbose: bool,
):
    """Explain a repository and its recent commits.

    Examples:

        wtf explain

        wtf explain ~/src/project -n 10

        wtf explain . --json > report.json
    """
    _setup_logging(verbose)
    log = logging.getLogger(__name__)

    try:
        config = load_config(
            env_file=env_file,
            num_commits=num_commits,
            chunk_char_budget=budget,
            worker_pool_size=workers,
            fan_in_limit=fan_in,
            model=model,
        )
    except ConfigError as e:
        raise click.ClickException(str(e))
    log.debug("Config: %s", config.masked())

    if not json_only:
        console.print()
        console.print(Panel.fit(
            f"[bold cyan]wtf v{__version__}[/] - What's This For?",
            border_style="cyan",
        ))

    with SummaryClient.from_config(config) as client:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
            disable=json_only,
        ) as progress:
            task = progress.add_task("Reading repository...", total=None)

            def on_progress(status, current, total):
                progress.update(task, description=status, completed=current, total=total)

            orchestrator = AnalysisOrchestrator(config, client=client, progress_callback=on_progress)
            try:
                report = orchestrator.run(repo_path)
            except RepositoryError as e:
                progress.stop()
                err_console.print(f"[bold red]Error:[/] {escape(str(e))}")
                err_console.print("Run wtf from inside a git repository or pass its path.")
                raise SystemExit(EXIT_REPOSITORY_ERROR)

    if json_only:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)

    if report.cancelled:
        raise SystemExit(EXIT_CANCELLED)


@cli.command()
def version():
    """Show version information."""
    console.print(f"wtf-cli v{__version__}")
    console.print("Explains git repositories in plain language")


def _print_report(report: AnalysisReport) -> None:
    """Render an AnalysisReport to the terminal."""
    meta = report.project
    table = Table(title="Repository", show_header=False, border_style="dim")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Name", meta.name)
    if meta.default_branch:
        table.add_row("Branch", meta.default_branch)
    if meta.remote_url:
        table.add_row("Remote", meta.remote_url)
    table.add_row("Commits", f"{len(report.commit_summaries)} of {len(report.commits)} explained")
    console.print()
    console.print(table)

    console.print()
    console.print("[bold]Project description[/]", style="cyan")
    if report.project_summary:
        console.print(Markdown(report.project_summary.text))
        if report.project_summary.truncated:
            console.print("[dim](README was too long; only the beginning was read)[/]")
    else:
        console.print("[yellow]No description available.[/]")

    if report.commit_summaries:
        console.print()
        console.print(f"[bold]Last {len(report.commits)} commits in plain language[/]", style="cyan")
    for summary in report.commit_summaries:
        commit = report.commit(summary.subject_ref)
        title = summary.subject_ref[:8]
        if commit:
            date = datetime.datetime.fromtimestamp(commit.timestamp).strftime("%Y-%m-%d")
            title = escape(f"{commit.short_id} {commit.subject[:60]} ({commit.author}, {date})")
        body = Markdown(summary.text or "_No explanation returned._")
        console.print(Panel(body, title=title, title_align="left", border_style="green"))
        if summary.truncated:
            console.print("[dim](diff was too large; only part of it was explained)[/]")

    if report.failures:
        console.print()
        console.print("[bold red]Could not explain:[/]")
        for failure in report.failures:
            subject = "project description" if failure.subject_ref == PROJECT_REF else failure.subject_ref[:8]
            console.print(f"  [red]{subject}[/] {escape(f'[{failure.kind}]')} {escape(failure.message)}")

    if report.cancelled:
        console.print()
        console.print("[yellow]Cancelled; showing results finished so far.[/]")

    console.print()
    console.print(f"[dim]Done in {report.elapsed_seconds:.1f}s[/]")


if __name__ == "__main__":
    cli()
