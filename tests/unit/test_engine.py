"""
Unit tests for run orchestration.

Runs pipelines through run_pipeline with a FakeExecutor so the scheduler,
completion step and hooks are exercised without starting processes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from seqflow.core.completion import SUMMARY_NAME, TRACE_NAME
from seqflow.core.engine import build_graph, check_tools, required_tools, run_pipeline
from seqflow.core.exceptions import (
    InputFileNotFoundError,
    PipelineLoadError,
    ResourceExhaustionError,
    ToolNotFoundError,
)
from seqflow.core.loader import PipelineDefinition, load_pipeline, resolve_params
from seqflow.external.base import ExternalTool
from seqflow.models.config import RunConfig
from tests.factories import FakeExecutor, failing, write_pipeline

TAGGED_PIPELINE = '''\
"""Tag every letter, then join the tags."""

from seqflow import ErrorStrategy, InputPort, OutputPort, ResourceHints, TaskSpec

TAG = TaskSpec(
    name="tag",
    inputs=(InputPort.val("letter"),),
    outputs=(OutputPort.val("{letter}!"),),
    command="echo {letter}",
    tag="{letter}",
    tools=("figlet",),
    container="alpine:3",
    resources=ResourceHints(cpus=2),
)

JOIN = TaskSpec(
    name="join",
    inputs=(InputPort.val("tags"),),
    outputs=(OutputPort.val("joined"),),
    command="echo {tags}",
)

SEEN = []


def remember(summary, collected):
    SEEN.append((summary.status_line(), sorted(collected["tags"])))


def build(flow):
    tagged = flow.process(TAG, flow.of("a", "b", "c"))
    tags_for_join, tags_for_hook = tagged.out.into(2)
    flow.process(JOIN, tags_for_join.collect())
    flow.on_complete(remember, collect={"tags": tags_for_hook})
'''


BROKEN_MAP_PIPELINE = '''\
"""A source callback that always raises."""

from seqflow import InputPort, TaskSpec

ECHO = TaskSpec(name="echo", inputs=(InputPort.val("x"),), command="echo {x}")


def build(flow):
    flow.process(ECHO, flow.of(1, 2).map(lambda x: x / 0))
'''


@pytest.fixture
def tagged(tmp_path: Path) -> PipelineDefinition:
    return load_pipeline(write_pipeline(tmp_path / "tagged.py", TAGGED_PIPELINE))


class TestBuildGraph:
    """Tests for calling build(flow) and validating the graph."""

    def test_builds(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        graph = build_graph(tagged, resolve_params(tagged, run_config), run_config)
        assert [n.name for n in graph.processes] == ["tag", "join"]

    def test_seqflow_errors_propagate(
        self, count_lines_pipeline: Path, run_config: RunConfig, tmp_path: Path
    ) -> None:
        definition = load_pipeline(count_lines_pipeline)
        params = resolve_params(definition, run_config, {"input": str(tmp_path / "none" / "*.txt")})
        with pytest.raises(InputFileNotFoundError, match="from --input"):
            build_graph(definition, params, run_config)

    def test_other_errors_wrapped(self, tmp_path: Path, run_config: RunConfig) -> None:
        path = write_pipeline(tmp_path / "oops.py", "def build(flow):\n    return 1 / 0\n")
        definition = load_pipeline(path)
        with pytest.raises(PipelineLoadError, match="ZeroDivisionError"):
            build_graph(definition, resolve_params(definition, run_config), run_config)

    def test_resource_ceiling(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        config = run_config.with_overrides(limits={"max_cpus": 1})
        with pytest.raises(ResourceExhaustionError):
            build_graph(tagged, resolve_params(tagged, config), config)


class TestTools:
    """Tests for required tool discovery."""

    def test_required_tools_local(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        graph = build_graph(tagged, resolve_params(tagged, run_config), run_config)
        assert required_tools(graph, run_config) == ["bash", "figlet"]

    def test_required_tools_docker(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        config = run_config.with_overrides(executor={"docker": {"enabled": True}})
        graph = build_graph(tagged, resolve_params(tagged, config), config)
        assert required_tools(graph, config) == ["bash", "docker"]

    def test_check_tools_reports_missing(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        ExternalTool.set_executable_resolver(lambda name: "/bin/bash" if name == "bash" else None)
        graph = build_graph(tagged, resolve_params(tagged, run_config), run_config)
        with pytest.raises(ToolNotFoundError, match="'figlet'"):
            check_tools(graph, run_config)

    def test_check_tools_passes(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        ExternalTool.set_executable_resolver(lambda name: f"/usr/bin/{name}")
        graph = build_graph(tagged, resolve_params(tagged, run_config), run_config)
        check_tools(graph, run_config)


class TestRunPipeline:
    """Tests for a full run with a fake executor."""

    def test_successful_run(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        executor = FakeExecutor()
        result = run_pipeline(
            tagged, run_config, resolve_params(tagged, run_config), check=False, executor=executor
        )

        assert result.exit_code == 0
        assert result.summary.status_line() == "4 succeeded, 0 failed"
        assert sorted(executor.calls) == ["join (1)", "tag (a)", "tag (b)", "tag (c)"]
        assert executor.calls[-1] == "join (1)"
        assert result.written == [run_config.info_dir / TRACE_NAME, run_config.info_dir / SUMMARY_NAME]

    def test_hook_runs_with_collected(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        import sys

        run_pipeline(tagged, run_config, resolve_params(tagged, run_config), check=False, executor=FakeExecutor())
        module = sys.modules["seqflow_pipeline_tagged"]
        assert module.SEEN == [("4 succeeded, 0 failed", ["tag:a", "tag:b", "tag:c"])]

    def test_failed_run(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        executor = FakeExecutor({"tag": failing(exit_code=4)}, delay=0.01)
        result = run_pipeline(
            tagged, run_config, resolve_params(tagged, run_config), check=False, executor=executor
        )
        assert result.exit_code == 1
        assert result.summary.aborted
        assert result.summary.abort_reason.startswith("Task 'tag (a)' failed with exit code 4")
        assert "join (1)" not in executor.calls

    def test_check_runs_before_scheduling(self, tagged: PipelineDefinition, run_config: RunConfig) -> None:
        ExternalTool.set_executable_resolver(lambda name: None)
        executor = FakeExecutor()
        with pytest.raises(ToolNotFoundError):
            run_pipeline(tagged, run_config, resolve_params(tagged, run_config), executor=executor)
        assert executor.calls == []
        assert not run_config.info_dir.exists()

    def test_callback_error_while_priming_completes_as_aborted(
        self, tmp_path: Path, run_config: RunConfig
    ) -> None:
        definition = load_pipeline(write_pipeline(tmp_path / "broken_map.py", BROKEN_MAP_PIPELINE))
        executor = FakeExecutor()

        result = run_pipeline(
            definition, run_config, resolve_params(definition, run_config), check=False, executor=executor
        )

        assert result.exit_code == 1
        assert result.summary.aborted
        assert "ZeroDivisionError" in result.summary.abort_reason
        assert executor.calls == []
        assert (run_config.info_dir / SUMMARY_NAME).exists()
