"""
Run orchestration: definition -> graph -> schedule -> completion.

This is the single entry point used by the CLI and by tests that run a
pipeline programmatically:

    definition = load_pipeline("count_lines.py")
    config = RunConfig(workdir=tmp / "work", outdir=tmp / "results")
    params = resolve_params(definition, config, {"input": "data/*.txt"})
    result = run_pipeline(definition, config, params)
    print(result.summary.status_line())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel

from seqflow.core.completion import CompletionHandler, RunSummary, build_summary
from seqflow.core.context import RunContext
from seqflow.core.exceptions import PipelineLoadError, SeqflowError, ToolNotFoundError
from seqflow.core.executor import LocalExecutor
from seqflow.core.flow import Flow
from seqflow.core.graph import ExecutionGraph
from seqflow.core.loader import PipelineDefinition
from seqflow.core.scheduler import RunOutcome, Scheduler
from seqflow.external.shell import DockerRun, missing_tools
from seqflow.models.config import RunConfig

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Everything produced by one call to :func:`run_pipeline`."""

    summary: RunSummary
    outcome: RunOutcome
    graph: ExecutionGraph
    context: RunContext
    written: list[Path] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.summary.exit_code


def build_graph(
    definition: PipelineDefinition,
    params: BaseModel,
    config: RunConfig,
) -> ExecutionGraph:
    """
    Call the definition's ``build(flow)`` and validate the resulting graph.

    Raises:
        ConfigurationError: Invalid inputs or resource hints.
        GraphError: Invalid wiring.
        PipelineLoadError: ``build`` raised something other than a seqflow error.
    """
    flow = Flow(params=params, name=definition.name)
    try:
        definition.build(flow)
    except SeqflowError:
        raise
    except Exception as e:
        raise PipelineLoadError(
            definition.source, f"build(flow) raised {type(e).__name__}: {e}"
        ) from e
    return ExecutionGraph.build(flow, config.limits)


def required_tools(graph: ExecutionGraph, config: RunConfig) -> list[str]:
    """Executables needed on the host to run the active processes."""
    docker = config.executor.docker.enabled
    needed: set[str] = set()
    for node in graph.processes:
        if docker and node.spec.container:
            needed.add(DockerRun.TOOL_NAME)
            continue
        needed.update(node.spec.tools)
        needed.add(node.spec.shell[0])
    return sorted(needed)


def check_tools(graph: ExecutionGraph, config: RunConfig) -> None:
    """
    Fail before scheduling when a required executable is not on PATH.

    Raises:
        ToolNotFoundError: Naming every missing tool.
    """
    missing = missing_tools(required_tools(graph, config))
    if missing:
        raise ToolNotFoundError(", ".join(missing))


def run_pipeline(
    definition: PipelineDefinition,
    config: RunConfig,
    params: BaseModel,
    *,
    check: bool = True,
    executor: LocalExecutor | None = None,
) -> RunResult:
    """
    Build, schedule and complete one pipeline run.

    Configuration and graph errors propagate before any task starts and the
    completion step does not run. Task failures are contained by the
    scheduler and reported in the summary.

    Args:
        definition: Loaded pipeline definition.
        config: Effective run configuration.
        params: Resolved, frozen parameters.
        check: Verify required tools are installed before scheduling.
        executor: Executor override (tests inject fakes here).
    """
    graph = build_graph(definition, params, config)
    if check:
        check_tools(graph, config)

    context = RunContext.create(config, params)
    context.logger.info(
        "Run %s of '%s': %d process(es), %d excluded, workdir %s",
        context.run_id, definition.name, len(graph.processes), len(graph.excluded), config.workdir,
    )

    scheduler = Scheduler(graph, context, executor=executor)
    scheduler.prime()
    outcome = scheduler.run()

    summary = build_summary(definition.name, context.run_id, outcome, graph, config, params)
    written = CompletionHandler(graph, config).fire(summary, outcome)
    context.logger.info("Run %s finished: %s", context.run_id, summary.status_line())
    return RunResult(summary=summary, outcome=outcome, graph=graph, context=context, written=written)
