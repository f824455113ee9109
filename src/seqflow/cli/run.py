"""
Commands that load, validate and execute pipeline definitions.

Pipeline parameters are passed as extra options after the pipeline name:

    seqflow run predictorthologs --profile test --molecules protein
    seqflow run count_lines.py --input 'data/*.txt' --resume
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from seqflow.cli import exit_codes
from seqflow.cli.utils import (
    QuietConsole,
    graph_table,
    log_level,
    parse_param_args,
    print_summary,
    setup_logging,
    spinner_progress,
)
from seqflow.core.engine import build_graph, check_tools, run_pipeline
from seqflow.core.exceptions import PipelineLoadError, SeqflowError
from seqflow.core.loader import (
    PipelineDefinition,
    load_pipeline,
    load_run_config,
    resolve_params,
)
from seqflow.core.units import parse_memory
from seqflow.models.config import RunConfig
from seqflow.pipelines import BUNDLED, bundled_names

logger = logging.getLogger(__name__)

console = Console()

PARAM_CONTEXT = {"allow_extra_args": True, "ignore_unknown_options": True}

LOG_NAME = "seqflow.log"


def _split_profiles(values: list[str] | None) -> tuple[str, ...]:
    profiles: list[str] = []
    for value in values or []:
        profiles.extend(p.strip() for p in value.split(",") if p.strip())
    return tuple(profiles)


def _report_error(out: QuietConsole, error: SeqflowError) -> None:
    out.print(f"[red]Error:[/red] {error.message}", force=True)
    if error.suggestion:
        out.print(f"[dim]{error.suggestion}[/dim]", force=True)


def _prepare(
    pipeline: str,
    extra_args: list[str],
    config_file: Path | None,
    profile: list[str] | None,
    overrides: dict[str, Any],
) -> tuple[PipelineDefinition, RunConfig, Any]:
    """Load the definition, build the effective config and resolve params."""
    try:
        cli_params = parse_param_args(extra_args)
    except typer.BadParameter as e:
        raise SeqflowError(str(e), "Run 'seqflow run --help' for usage.") from e

    definition = load_pipeline(pipeline)
    config = load_run_config(definition, config_file, _split_profiles(profile))
    config = config.with_overrides(**overrides)
    params = resolve_params(definition, config, cli_params)
    return definition, config, params


def _limit_overrides(max_cpus: int | None, max_memory: str | None) -> dict[str, Any] | None:
    limits: dict[str, Any] = {}
    if max_cpus is not None:
        limits["max_cpus"] = max_cpus
    if max_memory is not None:
        try:
            limits["max_memory_mb"] = parse_memory(max_memory)
        except ValueError as e:
            raise typer.BadParameter(str(e), param_hint="--max-memory") from None
    return limits or None


def run_command(
    ctx: typer.Context,
    pipeline: str = typer.Argument(
        ...,
        help="Pipeline file (Python module defining build(flow)) or bundled pipeline name",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Reuse results of tasks that completed in a previous run",
    ),
    profile: list[str] | None = typer.Option(
        None,
        "--profile", "-p",
        help="Configuration profile(s) to apply (repeat or comma-separate)",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config", "-c",
        help="YAML run configuration",
        exists=True,
        dir_okay=False,
    ),
    workdir: Path | None = typer.Option(
        None,
        "--workdir", "-w",
        help="Directory holding task namespaces [default: work]",
    ),
    outdir: Path | None = typer.Option(
        None,
        "--outdir", "-o",
        help="Directory receiving published results [default: results]",
    ),
    max_cpus: int | None = typer.Option(
        None,
        "--max-cpus",
        min=1,
        help="CPU slots available to the run",
    ),
    max_memory: str | None = typer.Option(
        None,
        "--max-memory",
        help="Memory available to the run, e.g. '16 GB'",
    ),
    with_dag: Path | None = typer.Option(
        None,
        "--with-dag",
        help="Write the dependency graph in DOT format",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Build and check the graph, then stop without running tasks",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Show debug messages",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Only print warnings, errors and the final status line",
    ),
) -> None:
    """
    Run a pipeline.

    Any option not listed below is passed to the pipeline as a parameter,
    e.g. --input 'data/*.txt'. A parameter given without a value is set to
    true.
    """
    out = QuietConsole(console, quiet=quiet)
    level = log_level(verbose, quiet)
    setup_logging(level)

    overrides: dict[str, Any] = {
        "workdir": workdir,
        "outdir": outdir,
        "resume": True if resume else None,
        "limits": _limit_overrides(max_cpus, max_memory),
        "report": {"dag": with_dag} if with_dag else None,
    }

    try:
        definition, config, params = _prepare(pipeline, ctx.args, config_file, profile, overrides)
        if config.report.log_file and not dry_run:
            setup_logging(level, log_file=config.info_dir / LOG_NAME)

        if dry_run:
            graph = build_graph(definition, params, config)
            check_tools(graph, config)
            if with_dag:
                graph.write_dot(with_dag)
            out.print(graph_table(graph))
            out.print(
                f"[green]Dry run:[/green] {len(graph.processes)} process(es) ready, "
                f"{len(graph.excluded)} excluded",
                force=True,
            )
            raise typer.Exit(code=exit_codes.SUCCESS)

        out.print(
            f"[bold]seqflow[/bold] running [cyan]{definition.name}[/cyan] "
            f"(workdir {config.workdir}, outdir {config.outdir})"
        )
        result = run_pipeline(definition, config, params)
    except SeqflowError as e:
        _report_error(out, e)
        raise typer.Exit(code=exit_codes.CONFIG_ERROR) from None

    print_summary(out, result.summary)
    if result.written:
        out.print(f"[dim]Run reports written to {config.info_dir}[/dim]")
    raise typer.Exit(code=result.exit_code)


def validate_command(
    ctx: typer.Context,
    pipeline: str = typer.Argument(
        ...,
        help="Pipeline file or bundled pipeline name",
    ),
    profile: list[str] | None = typer.Option(
        None,
        "--profile", "-p",
        help="Configuration profile(s) to apply (repeat or comma-separate)",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config", "-c",
        help="YAML run configuration",
        exists=True,
        dir_okay=False,
    ),
    max_cpus: int | None = typer.Option(
        None,
        "--max-cpus",
        min=1,
        help="CPU slots the resource hints are checked against",
    ),
    max_memory: str | None = typer.Option(
        None,
        "--max-memory",
        help="Memory the resource hints are checked against, e.g. '16 GB'",
    ),
    with_dag: Path | None = typer.Option(
        None,
        "--with-dag",
        help="Write the dependency graph in DOT format",
    ),
    check: bool = typer.Option(
        False,
        "--check-tools",
        help="Also verify that required executables are installed",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Only print the final status line",
    ),
) -> None:
    """
    Build a pipeline's dependency graph and print it without running anything.
    """
    out = QuietConsole(console, quiet=quiet)
    setup_logging(log_level(False, quiet))

    try:
        overrides = {"limits": _limit_overrides(max_cpus, max_memory)}
        definition, config, params = _prepare(pipeline, ctx.args, config_file, profile, overrides)
        with spinner_progress("Building dependency graph...", console, quiet):
            graph = build_graph(definition, params, config)
        if check:
            check_tools(graph, config)
    except SeqflowError as e:
        _report_error(out, e)
        raise typer.Exit(code=exit_codes.CONFIG_ERROR) from None

    if with_dag:
        graph.write_dot(with_dag)
        out.print(f"[dim]Graph written to {with_dag}[/dim]")
    out.print(graph_table(graph))
    out.print(
        f"[green]Graph is valid:[/green] {len(graph.processes)} process(es), "
        f"{len(graph.excluded)} excluded",
        force=True,
    )


def pipelines_command() -> None:
    """List bundled pipelines."""
    table = Table(title="Bundled pipelines")
    table.add_column("Name", style="cyan")
    table.add_column("Module")
    table.add_column("Description")
    table.add_column("Profiles")

    for name in bundled_names():
        try:
            definition = load_pipeline(name)
        except PipelineLoadError as e:
            logger.warning("%s", e.message)
            table.add_row(name, BUNDLED[name], "[red]failed to load[/red]", "")
            continue
        table.add_row(
            name,
            BUNDLED[name],
            definition.description,
            ", ".join(sorted(definition.profiles)),
        )
    console.print(table)
