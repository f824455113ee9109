"""
Shared CLI utilities for seqflow commands.

Provides logging setup, quiet-mode console output, pipeline parameter
parsing and summary rendering.
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

if TYPE_CHECKING:
    from seqflow.core.completion import RunSummary
    from seqflow.core.graph import ExecutionGraph

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logging(
    level: int = logging.INFO,
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """Configure the 'seqflow' logger namespace.

    Console output goes through a rich handler; the optional log file always
    records DEBUG. Safe to call more than once: previous handlers are closed
    and replaced.

    Args:
        level: Level for console output.
        log_file: Optional path for a rotating log file.
        console: Console the rich handler writes to (stderr by default).
    """
    app_logger = logging.getLogger("seqflow")
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()

    rich_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    rich_handler.setLevel(level)
    app_logger.addHandler(rich_handler)

    file_level = level
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
            )
        except OSError as e:
            app_logger.warning("Cannot write log file %s: %s", log_file, e)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            app_logger.addHandler(file_handler)
            file_level = logging.DEBUG

    app_logger.setLevel(min(level, file_level))
    app_logger.propagate = False


def log_level(verbose: bool, quiet: bool) -> int:
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.INFO


@contextmanager
def spinner_progress(
    description: str,
    console: Console | None = None,
    quiet: bool = False,
) -> Generator[Progress, None, None]:
    """Context manager for spinner-style progress display.

    The spinner is suppressed when quiet mode is enabled.

    Args:
        description: Task description to display.
        console: Rich Console instance. If None and not quiet, creates one.
        quiet: If True, suppress the progress display entirely.

    Yields:
        Progress instance (even when quiet, for API consistency).
    """
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console if not quiet else None,
        disable=quiet,
    ) as progress:
        progress.add_task(description=description, total=None)
        yield progress


class QuietConsole:
    """Console wrapper that suppresses output in quiet mode.

    All other console methods are delegated to the wrapped instance.

    Example:
        >>> console = Console()
        >>> qc = QuietConsole(console, quiet=True)
        >>> qc.print("This won't be shown")  # Suppressed
        >>> qc.print("This will be shown", force=True)  # Not suppressed
    """

    def __init__(self, console: Console, quiet: bool = False):
        self._console = console
        self._quiet = quiet

    @property
    def console(self) -> Console:
        """The wrapped Console, for output that ignores quiet mode."""
        return self._console

    @property
    def quiet(self) -> bool:
        return self._quiet

    def print(self, *args: Any, force: bool = False, **kwargs: Any) -> None:
        if force or not self._quiet:
            self._console.print(*args, **kwargs)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._console, name)


def parse_param_args(args: list[str]) -> dict[str, str]:
    """Parse pipeline parameters given as extra command line arguments.

    Accepts ``--name value`` and ``--name=value``. A flag followed by another
    flag (or nothing) is set to ``"true"``. Hyphens in names become
    underscores so ``--skip-multiqc`` and ``--skip_multiqc`` are the same
    parameter.

    Raises:
        typer.BadParameter: For a positional token that is not a value.

    Example:
        >>> parse_param_args(["--input", "data/*.txt", "--skip-multiqc"])
        {'input': 'data/*.txt', 'skip_multiqc': 'true'}
    """
    params: dict[str, str] = {}
    i = 0
    while i < len(args):
        token = args[i]
        if not token.startswith("--") or token == "--":
            msg = f"Unexpected argument '{token}'; pipeline parameters are given as --name value"
            raise typer.BadParameter(msg)
        name, sep, inline = token[2:].partition("=")
        key = name.replace("-", "_")
        if not key:
            msg = f"Invalid parameter flag '{token}'"
            raise typer.BadParameter(msg)
        if sep:
            params[key] = inline
            i += 1
        elif i + 1 < len(args) and not args[i + 1].startswith("--"):
            params[key] = args[i + 1]
            i += 2
        else:
            params[key] = "true"
            i += 1
    return params


def print_summary(console: QuietConsole, summary: RunSummary) -> None:
    """Render the per-process status table and the one-line tally.

    The tally is printed even in quiet mode.
    """
    table = Table(title=f"Pipeline '{summary.pipeline}' run {summary.run_id}")
    table.add_column("Process", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Cached", justify="right", style="dim")
    table.add_column("Cancelled", justify="right", style="yellow")
    for p in summary.processes:
        table.add_row(
            p.name, str(p.total), str(p.succeeded), str(p.failed), str(p.cached), str(p.cancelled)
        )
    for e in summary.excluded:
        table.add_row(f"[dim]{e.name}[/dim]", "-", "-", "-", "-", f"[dim]excluded: {e.reason}[/dim]")
    console.print()
    console.print(table)

    for f in summary.failed:
        if f.propagated_from:
            continue
        console.print(f"[red]Failed:[/red] {f.task}: {f.error}")
        if f.workdir:
            console.print(f"  [dim]work directory: {f.workdir}[/dim]")

    color = "green" if summary.success else "red"
    console.print(f"[bold {color}]{summary.status_line()}[/bold {color}]", force=True)
    if summary.aborted:
        console.print(f"[red]Run aborted: {summary.abort_reason}[/red]", force=True)


def graph_table(graph: ExecutionGraph) -> Table:
    """Processes of a built graph in execution order."""
    table = Table(title=f"Pipeline '{graph.flow.name}'")
    table.add_column("#", justify="right")
    table.add_column("Process", style="cyan")
    table.add_column("Inputs")
    table.add_column("Outputs")
    table.add_column("Upstream")
    table.add_column("Status")
    for i, node in enumerate(graph.processes, start=1):
        table.add_row(
            str(i),
            node.name,
            ", ".join(c.name for c in node.inputs) or "-",
            ", ".join(c.name for c in node.outputs) or "-",
            ", ".join(graph.upstream_processes(node)) or "-",
            "[green]active[/green]",
        )
    for node in graph.excluded:
        table.add_row("-", f"[dim]{node.name}[/dim]", "", "", "", f"[dim]{node.exclusion_reason}[/dim]")
    return table
