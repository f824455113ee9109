"""
Main CLI entry point for seqflow.

Provides the commands:
- run: Execute a pipeline
- validate: Build and print a pipeline's dependency graph
- pipelines: List bundled pipelines
"""

from __future__ import annotations

import typer
from rich import print as rprint
from rich.console import Console

from seqflow import __version__

app = typer.Typer(
    name="seqflow",
    help="Channel-based workflow engine for multi-sample bioinformatics pipelines",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        rprint(f"seqflow version {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Seqflow: run multi-sample bioinformatics pipelines.

    Pipelines wire shell-command tasks together with channels; seqflow
    resolves the dependencies, runs tasks in parallel within a CPU and
    memory budget, caches completed work for --resume and writes an
    execution trace and report.
    """


# Import and register subcommands
from seqflow.cli import run

app.command(name="run", context_settings=run.PARAM_CONTEXT)(run.run_command)
app.command(name="validate", context_settings=run.PARAM_CONTEXT)(run.validate_command)
app.command(name="pipelines")(run.pipelines_command)


if __name__ == "__main__":
    app()
