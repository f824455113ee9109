"""
Unit tests for run completion: summaries, trace files and hooks.
"""

from __future__ import annotations

import json
from pathlib import Path

import polars as pl
import pytest
from pydantic import BaseModel

from seqflow.core import channels as ch
from seqflow.core.completion import (
    REPORT_NAME,
    SUMMARY_NAME,
    TRACE_NAME,
    CompletionHandler,
    RunSummary,
    build_summary,
    trace_frame,
)
from seqflow.core.conditions import ParamSet
from seqflow.core.flow import Flow
from seqflow.core.graph import ExecutionGraph
from seqflow.core.io_utils import read_dataframe
from seqflow.core.scheduler import RunOutcome
from seqflow.models.config import RunConfig
from seqflow.models.task import ErrorStrategy, InputPort, OutputPort, TaskSpec, TaskStatus
from tests.factories import FakeExecutor, failing, run_flow


class _Params(BaseModel):
    database: str | None = None


def _spec(name: str, strategy: ErrorStrategy | None = None) -> TaskSpec:
    return TaskSpec(
        name=name,
        inputs=(InputPort.val("x"),),
        outputs=(OutputPort.val("{x}"),),
        command="echo {x}",
        tag="{x}",
        error_strategy=strategy or ErrorStrategy(),
    )


def _finished_run(config: RunConfig, hook=None, fail: bool = False):
    flow = Flow(params=_Params(), name="demo")
    first = flow.process(_spec("first", ErrorStrategy.ignore()), ch.of("a", "b"))
    second = flow.process(_spec("second"), first.out)
    flow.process(_spec("optional_step"), ch.of("z"), when=ParamSet("database"))
    if hook is not None:
        flow.on_complete(hook, collect={"values": second.out})

    behaviors = {}
    if fail:
        def fail_on_b(instance):
            if instance.bindings["x"] == "b":
                return failing()(instance)
            return ("a",)

        behaviors["first"] = fail_on_b
    executor = FakeExecutor(behaviors)
    scheduler, outcome = run_flow(flow, config, executor)
    graph = scheduler.graph
    summary = build_summary("demo", "run123", outcome, graph, config, flow.params)
    return flow, graph, outcome, summary


# =============================================================================
# RunSummary
# =============================================================================


class TestRunSummary:
    """Tests for summary aggregation."""

    def test_counts_and_status_line(self, run_config: RunConfig) -> None:
        _, _, _, summary = _finished_run(run_config)
        assert summary.success
        assert summary.exit_code == 0
        assert summary.count(TaskStatus.SUCCEEDED) == 4
        assert summary.status_line() == "4 succeeded, 0 failed"

    def test_every_status_counted(self, run_config: RunConfig) -> None:
        _, _, _, summary = _finished_run(run_config)
        assert set(summary.counts) == {s.value for s in TaskStatus}

    def test_process_stats(self, run_config: RunConfig) -> None:
        _, _, _, summary = _finished_run(run_config)
        stats = {p.name: p for p in summary.processes}
        assert set(stats) == {"first", "second"}
        assert stats["first"].total == 2
        assert stats["first"].succeeded == 2
        assert stats["first"].mean_duration_s is not None

    def test_excluded_listed(self, run_config: RunConfig) -> None:
        _, _, _, summary = _finished_run(run_config)
        assert [e.name for e in summary.excluded] == ["optional_step"]
        assert "condition not met" in summary.excluded[0].reason

    def test_ignored_failure(self, run_config: RunConfig) -> None:
        """Ignored failures are reported but the run still succeeds."""
        _, _, _, summary = _finished_run(run_config, fail=True)
        assert summary.success
        assert summary.status_line() == "2 succeeded, 2 failed"

        direct = [f for f in summary.failed if not f.propagated_from]
        propagated = [f for f in summary.failed if f.propagated_from]
        assert [f.task for f in direct] == ["first (b)"]
        assert direct[0].exit_code == 1
        assert direct[0].error == "Task 'first (b)' failed with exit code 1"
        assert propagated[0].propagated_from == "first (b)"
        assert propagated[0].workdir is None

    def test_params_drop_unset(self, run_config: RunConfig) -> None:
        _, _, _, summary = _finished_run(run_config)
        assert summary.params == {}

    def test_collected_values(self, run_config: RunConfig) -> None:
        _, _, _, summary = _finished_run(run_config, hook=lambda s, c: None)
        assert sorted(summary.collected["values"]) == ["second:first:a", "second:first:b"]

    def test_status_line_optional_parts(self) -> None:
        summary = RunSummary(
            pipeline="p",
            run_id="r",
            started_at="2026-01-01T00:00:00Z",
            completed_at="2026-01-01T00:01:00Z",
            duration_s=60,
            success=False,
            aborted=True,
            counts={"succeeded": 1, "failed": 1, "cached": 3, "cancelled": 2},
        )
        assert summary.status_line() == "1 succeeded, 1 failed, 3 cached, 2 cancelled"
        assert summary.exit_code == 1

    def test_empty_run(self, run_config: RunConfig) -> None:
        flow = Flow()
        graph = ExecutionGraph.build(flow)
        outcome = RunOutcome(started_at=100.0, completed_at=101.5)
        summary = build_summary("empty", "r", outcome, graph, run_config, None)
        assert summary.status_line() == "0 succeeded, 0 failed"
        assert summary.duration_s == 1.5
        assert summary.success


# =============================================================================
# Trace
# =============================================================================


class TestTraceFrame:
    """Tests for the execution trace table."""

    def test_one_row_per_instance(self, run_config: RunConfig) -> None:
        _, _, outcome, _ = _finished_run(run_config)
        df = trace_frame(outcome.instances)
        assert df.height == 4
        assert df["task_id"].to_list() == [i.index for i in outcome.instances]
        assert set(df["status"].to_list()) == {"succeeded"}
        assert df["hash"][0][2] == "/"

    def test_empty(self) -> None:
        df = trace_frame([])
        assert df.height == 0
        assert "realtime_s" in df.columns
        assert df.schema["exit"] == pl.Int64


# =============================================================================
# CompletionHandler
# =============================================================================


class TestCompletionHandler:
    """Tests for artifact writing and hook dispatch."""

    def test_writes_artifacts(self, run_config: RunConfig, tmp_path: Path) -> None:
        config = run_config.with_overrides(report={"html": True, "dag": tmp_path / "dag.dot"})
        _, graph, outcome, summary = _finished_run(config)

        written = CompletionHandler(graph, config).fire(summary, outcome)

        info = config.info_dir
        assert written == [info / TRACE_NAME, info / SUMMARY_NAME, info / REPORT_NAME, tmp_path / "dag.dot"]
        trace = read_dataframe(info / TRACE_NAME)
        assert trace.height == 4

        data = json.loads((info / SUMMARY_NAME).read_text())
        assert data["status_line"] == "4 succeeded, 0 failed"
        assert data["run_id"] == "run123"
        assert "collected" not in data
        assert (tmp_path / "dag.dot").read_text().startswith("digraph")

    def test_report_flags_respected(self, run_config: RunConfig) -> None:
        config = run_config.with_overrides(report={"trace": False, "summary": False})
        _, graph, outcome, summary = _finished_run(config)
        assert CompletionHandler(graph, config).fire(summary, outcome) == []

    def test_hook_receives_summary_and_collected(self, run_config: RunConfig) -> None:
        received = []
        _, graph, outcome, summary = _finished_run(
            run_config, hook=lambda s, c: received.append((s, c))
        )
        CompletionHandler(graph, run_config).fire(summary, outcome)

        assert len(received) == 1
        got_summary, collected = received[0]
        assert got_summary is summary
        assert sorted(collected["values"]) == ["second:first:a", "second:first:b"]

    def test_hook_exception_logged(
        self, run_config: RunConfig, caplog: pytest.LogCaptureFixture
    ) -> None:
        def broken(summary, collected):
            raise RuntimeError("hook bug")

        _, graph, outcome, summary = _finished_run(run_config, hook=broken)
        with caplog.at_level("ERROR", logger="seqflow.core.completion"):
            CompletionHandler(graph, run_config).fire(summary, outcome)
        assert "Completion hook 'broken' raised" in caplog.text
        assert summary.exit_code == 0

    def test_fires_once(self, run_config: RunConfig) -> None:
        calls = []
        _, graph, outcome, summary = _finished_run(run_config, hook=lambda s, c: calls.append(1))
        handler = CompletionHandler(graph, run_config)
        handler.fire(summary, outcome)
        assert handler.fire(summary, outcome) == []
        assert calls == [1]
