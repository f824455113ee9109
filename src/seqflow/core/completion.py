"""
Completion and aggregation after the scheduler goes quiescent.

Builds the RunSummary from the final state of every task instance and
writes the run artifacts into ``<outdir>/pipeline_info``:

- execution_trace.tsv: one row per task instance
- summary.json: counts, per-process statistics, failures and exclusions
- execution_report.html: HTML report with a task timeline
- dag.dot: the dependency graph (when requested)

User hooks registered with ``flow.on_complete`` run last. A hook that
raises is logged and never changes the run outcome.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import polars as pl
from pydantic import BaseModel, Field

from seqflow.core.graph import ExecutionGraph
from seqflow.core.io_utils import write_dataframe
from seqflow.core.scheduler import RunOutcome
from seqflow.core.units import format_duration, format_memory
from seqflow.models.config import RunConfig
from seqflow.models.task import TaskInstance, TaskStatus

logger = logging.getLogger(__name__)

TRACE_NAME = "execution_trace.tsv"
SUMMARY_NAME = "summary.json"
REPORT_NAME = "execution_report.html"


class ProcessStats(BaseModel):
    """Per-process instance counts and timing."""

    name: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cached: int = 0
    cancelled: int = 0
    mean_duration_s: float | None = None
    max_duration_s: float | None = None


class FailedTask(BaseModel):
    """A failed instance (directly or by propagation from an upstream failure)."""

    task: str
    error: str
    exit_code: int | None = None
    workdir: str | None = None
    propagated_from: str | None = None


class ExcludedProcess(BaseModel):
    name: str
    reason: str


class RunSummary(BaseModel):
    """Outcome of one pipeline run."""

    pipeline: str
    run_id: str
    started_at: datetime
    completed_at: datetime
    duration_s: float
    success: bool
    aborted: bool = False
    abort_reason: str | None = None
    abort_task: str | None = None
    counts: dict[str, int] = Field(default_factory=dict)
    processes: list[ProcessStats] = Field(default_factory=list)
    failed: list[FailedTask] = Field(default_factory=list)
    excluded: list[ExcludedProcess] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    workdir: str = ""
    outdir: str = ""
    collected: dict[str, list[Any]] = Field(default_factory=dict, exclude=True)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def count(self, status: TaskStatus) -> int:
        return self.counts.get(status.value, 0)

    def status_line(self) -> str:
        """One-line tally, e.g. ``2 succeeded, 0 failed, 1 cached``."""
        parts = [
            f"{self.count(TaskStatus.SUCCEEDED)} succeeded",
            f"{self.count(TaskStatus.FAILED)} failed",
        ]
        for status in (TaskStatus.CACHED, TaskStatus.CANCELLED):
            if self.count(status):
                parts.append(f"{self.count(status)} {status.value}")
        return ", ".join(parts)


def _params_summary(params: BaseModel | dict[str, Any] | None) -> dict[str, Any]:
    if params is None:
        return {}
    data = params if isinstance(params, dict) else params.model_dump(mode="json")
    return {k: v for k, v in data.items() if v is not None}


def build_summary(
    pipeline: str,
    run_id: str,
    outcome: RunOutcome,
    graph: ExecutionGraph,
    config: RunConfig,
    params: BaseModel | dict[str, Any] | None,
) -> RunSummary:
    """Aggregate the final instance states into a RunSummary."""
    instances = outcome.instances
    counts = Counter(i.status.value for i in instances)
    for status in TaskStatus:
        counts.setdefault(status.value, 0)

    stats: dict[str, ProcessStats] = {n.name: ProcessStats(name=n.name) for n in graph.processes}
    durations: dict[str, list[float]] = {}
    for inst in instances:
        entry = stats.setdefault(inst.name, ProcessStats(name=inst.name))
        entry.total += 1
        if inst.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CACHED, TaskStatus.CANCELLED):
            setattr(entry, inst.status.value, getattr(entry, inst.status.value) + 1)
        if inst.duration is not None and inst.status == TaskStatus.SUCCEEDED:
            durations.setdefault(inst.name, []).append(inst.duration)
    for name, values in durations.items():
        stats[name].mean_duration_s = sum(values) / len(values)
        stats[name].max_duration_s = max(values)

    failed = [
        FailedTask(
            task=inst.label,
            error=_first_line(inst.error),
            exit_code=inst.exit_code,
            workdir=str(inst.workdir) if inst.workdir and not inst.propagated_from else None,
            propagated_from=inst.propagated_from,
        )
        for inst in instances
        if inst.status == TaskStatus.FAILED
    ]

    collected: dict[str, list[Any]] = {}
    for bucket in outcome.collected:
        collected.update(bucket)

    started = datetime.fromtimestamp(outcome.started_at or outcome.completed_at, tz=timezone.utc)
    completed = datetime.fromtimestamp(outcome.completed_at, tz=timezone.utc)
    return RunSummary(
        pipeline=pipeline,
        run_id=run_id,
        started_at=started,
        completed_at=completed,
        duration_s=max(0.0, outcome.completed_at - (outcome.started_at or outcome.completed_at)),
        success=not outcome.aborted,
        aborted=outcome.aborted,
        abort_reason=outcome.abort_reason,
        abort_task=outcome.abort_task,
        counts=dict(counts),
        processes=list(stats.values()),
        failed=failed,
        excluded=[
            ExcludedProcess(name=n.name, reason=n.exclusion_reason or "excluded")
            for n in graph.excluded
        ],
        params=_params_summary(params),
        workdir=str(config.workdir),
        outdir=str(config.outdir),
        collected=collected,
    )


def _first_line(text: str | None) -> str:
    lines = (text or "").strip().splitlines()
    return lines[0] if lines else ""


def _ts(value: float | None) -> str:
    if value is None:
        return ""
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def trace_frame(instances: list[TaskInstance]) -> pl.DataFrame:
    """One row per task instance, in creation order."""
    rows = []
    for inst in instances:
        fp = inst.fingerprint
        rows.append({
            "task_id": inst.index,
            "hash": f"{fp[:2]}/{fp[2:8]}" if fp else "",
            "process": inst.name,
            "tag": inst.tag,
            "name": inst.label,
            "status": inst.status.value,
            "exit": inst.exit_code,
            "attempt": inst.attempt,
            "cpus": inst.resources.cpus,
            "memory": format_memory(inst.resources.memory_mb),
            "submit": _ts(inst.submitted_at),
            "start": _ts(inst.started_at),
            "complete": _ts(inst.completed_at),
            "duration": format_duration(inst.duration),
            "realtime_s": inst.duration,
            "workdir": str(inst.workdir) if inst.workdir else "",
            "error": _first_line(inst.error),
        })
    schema = {
        "task_id": pl.Int64, "hash": pl.Utf8, "process": pl.Utf8, "tag": pl.Utf8,
        "name": pl.Utf8, "status": pl.Utf8, "exit": pl.Int64, "attempt": pl.Int64,
        "cpus": pl.Int64, "memory": pl.Utf8, "submit": pl.Utf8, "start": pl.Utf8,
        "complete": pl.Utf8, "duration": pl.Utf8, "realtime_s": pl.Float64,
        "workdir": pl.Utf8, "error": pl.Utf8,
    }
    return pl.DataFrame(rows, schema=schema)


def write_summary_json(summary: RunSummary, path: Path) -> None:
    data = summary.model_dump(mode="json")
    data["status_line"] = summary.status_line()
    data["collected_counts"] = {k: len(v) for k, v in summary.collected.items()}
    path.write_text(json.dumps(data, indent=2, default=str) + "\n")


class CompletionHandler:
    """Writes run artifacts and fires user hooks, exactly once per run."""

    def __init__(self, graph: ExecutionGraph, config: RunConfig):
        self.graph = graph
        self.config = config
        self._fired = False

    def fire(self, summary: RunSummary, outcome: RunOutcome) -> list[Path]:
        """Write trace, summary, report and DAG, then run user hooks.

        Returns:
            Paths of the files written.
        """
        if self._fired:
            logger.debug("Completion already handled for run %s", summary.run_id)
            return []
        self._fired = True

        written = self._write_artifacts(summary, outcome)

        for index, hook in enumerate(self.graph.flow.hooks):
            collected = outcome.collected[index] if index < len(outcome.collected) else {}
            name = getattr(hook.fn, "__name__", "hook")
            try:
                hook.fn(summary, collected)
            except Exception:
                logger.exception("Completion hook '%s' raised; run outcome unchanged", name)
        return written

    def _write_artifacts(self, summary: RunSummary, outcome: RunOutcome) -> list[Path]:
        report = self.config.report
        info_dir = self.config.info_dir
        info_dir.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []

        try:
            if report.trace:
                path = info_dir / TRACE_NAME
                write_dataframe(trace_frame(outcome.instances), path, "tsv")
                written.append(path)
            if report.summary:
                path = info_dir / SUMMARY_NAME
                write_summary_json(summary, path)
                written.append(path)
            if report.html:
                from seqflow.report.generator import ExecutionReport

                path = info_dir / REPORT_NAME
                ExecutionReport(summary, outcome.instances).generate(path)
                written.append(path)
            if report.dag is not None:
                self.graph.write_dot(report.dag)
                written.append(report.dag)
        except OSError as e:
            logger.error("Could not write run reports to %s: %s", info_dir, e)
        return written
