"""Thin CLI wrapper for mktcb.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from mktcb import __version__
from mktcb.config import Settings, get_settings, print_settings_json
from mktcb.errors import MktcbError, ResolutionError
from mktcb.interrupt import Interrupt
from mktcb.library.resolver import resolve_library
from mktcb.orchestrator import EXIT_INTERRUPTED, run_library
from mktcb.types import ComponentState

# Exit code for resolution and configuration errors
EXIT_USAGE = 2

app = typer.Typer(
    name="mktcb",
    help="Build and package the components of a trusted computing base",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

_STATE_STYLES = {
    ComponentState.FETCHING: "blue",
    ComponentState.BUILDING: "blue",
    ComponentState.PACKAGING: "blue",
    ComponentState.DONE: "green",
    ComponentState.FAILED: "red",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"mktcb version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load_settings(**overrides: Any) -> Settings:
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        err_console.print(f"Invalid configuration: {e}", style="red", markup=False, highlight=False)
        raise typer.Exit(code=EXIT_USAGE) from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """mktcb - build and package trusted computing base components."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        step_timeout = settings.step_timeout or "(none)"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Library directory:   {settings.library_dir}")
        console.print(f"  Download directory:  {settings.download_dir}")
        console.print(f"  Build directory:     {settings.build_dir}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Jobs per build:      {settings.jobs}")
        console.print(f"  Parallel components: {settings.max_parallel_components}")
        console.print()
        console.print("[bold]Fetch:[/bold]")
        console.print(f"  Attempts:            {settings.fetch_attempts}")
        console.print(f"  Backoff (seconds):   {settings.fetch_backoff}-{settings.fetch_backoff_max}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Step timeout:        {step_timeout}")
        console.print(f"  Shutdown grace:      {settings.shutdown_grace}")
        console.print()
        console.print("[bold]Packaging:[/bold]")
        console.print(f"  Backend:             {settings.packager}")
        console.print(f"  Maintainer:          {settings.maintainer}")
        console.print(f"  Architecture:        {settings.architecture}")


@app.command()
def graph(
    library: Annotated[
        Path | None,
        typer.Option("--library", "-L", help="Recipe library directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve the library and show components in build order."""
    settings = _load_settings(library_dir=library)
    configure_logging(settings.log_level)

    try:
        dep_graph = resolve_library(settings.library_dir)
    except ResolutionError as e:
        err_console.print(f"Error: {e}", style="red", markup=False, highlight=False)
        raise typer.Exit(code=EXIT_USAGE) from None

    order = dep_graph.topological_order()
    if json_output:
        data = [
            {
                "name": c.name,
                "version": c.version,
                "depends": sorted(c.depends),
                "external": sorted(c.external),
                "internal_only": c.internal_only,
                "package": c.package.name if c.package else None,
            }
            for c in order
        ]
        typer.echo(json.dumps(data, indent=2))
        return

    console.print(f"[bold]{len(order)} components, in build order:[/bold]")
    for c in order:
        line = f"  {c.name} {c.version}"
        if c.depends:
            line += f"  <- {', '.join(sorted(c.depends))}"
        if c.internal_only:
            line += "  (internal)"
        console.print(line, markup=False, highlight=False)


@app.command()
def build(
    library: Annotated[
        Path | None,
        typer.Option("--library", "-L", help="Recipe library directory"),
    ] = None,
    build_dir: Annotated[
        Path | None,
        typer.Option("--build", "-B", help="Build directory"),
    ] = None,
    download_dir: Annotated[
        Path | None,
        typer.Option("--download", "-D", help="Download directory"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", help="Parallel jobs handed to build steps"),
    ] = None,
    parallel: Annotated[
        int | None,
        typer.Option("--parallel", "-p", help="Components processed concurrently"),
    ] = None,
    only: Annotated[
        list[str] | None,
        typer.Option("--only", help="Build only these components (can be repeated)"),
    ] = None,
    offline: Annotated[
        bool | None,
        typer.Option("--offline/--online", help="Serve network sources from the cache only"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the run report as JSON"),
    ] = False,
) -> None:
    """Fetch, build and package every component of the library.

    Exits 0 when every component is done, 1 when at least one failed,
    2 on resolution or configuration errors and 130 when interrupted.
    """
    settings = _load_settings(
        library_dir=library,
        build_dir=build_dir,
        download_dir=download_dir,
        jobs=jobs,
        max_parallel_components=parallel,
        offline=offline,
    )
    configure_logging(settings.log_level)

    def show_transition(name: str, state: ComponentState) -> None:
        style = _STATE_STYLES.get(state)
        if style and not json_output:
            console.print(f"{name}: {state.value}", style=style, markup=False, highlight=False)

    interrupt = Interrupt()
    try:
        with interrupt.installed():
            report = run_library(
                settings,
                only=only,
                interrupt=interrupt,
                listener=show_transition,
            )
    except ResolutionError as e:
        err_console.print(f"Error: {e}", style="red", markup=False, highlight=False)
        raise typer.Exit(code=EXIT_USAGE) from None
    except KeyError as e:
        err_console.print(f"Error: unknown component {e}", style="red", markup=False)
        raise typer.Exit(code=EXIT_USAGE) from None
    except MktcbError as e:
        err_console.print(f"Error: {e}", style="red", markup=False, highlight=False)
        raise typer.Exit(code=EXIT_USAGE) from None
    except KeyboardInterrupt:
        err_console.print("Interrupted", style="red")
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print()
        console.print("[bold]Run Results:[/bold]")
        console.print(f"  Total components: {len(report.outcomes)}")
        console.print(f"  [green]Done: {len(report.done)}[/green]")
        if report.failed:
            console.print(f"  [red]Failed: {len(report.failed)}[/red]")
        if report.skipped:
            console.print(f"  [yellow]Skipped: {len(report.skipped)}[/yellow]")
        if report.aborted:
            console.print(f"  [yellow]Aborted: {len(report.aborted)}[/yellow]")
        for outcome in report.done:
            if outcome.package is not None:
                hit = " (cache hit)" if outcome.package.cache_hit else ""
                console.print(f"  {outcome.package.path}{hit}", markup=False, highlight=False)

    for line in report.cause_lines():
        err_console.print(line, markup=False, highlight=False, soft_wrap=True)

    if report.exit_code:
        raise typer.Exit(code=report.exit_code)


if __name__ == "__main__":
    app()
