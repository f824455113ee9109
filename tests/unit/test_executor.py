"""
Unit tests for the local executor.

These tests run real bash commands inside temporary namespaces.
"""

from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest

from seqflow.core.exceptions import MissingOutputError, TaskExecutionError, TaskTimeoutError
from seqflow.core.executor import LocalExecutor, container_name
from seqflow.core.store import MANIFEST_NAME, ArtifactStore, bind_inputs
from seqflow.external.shell import DockerRun, TaskShell
from seqflow.models.config import RunConfig
from seqflow.models.task import InputPort, OutputPort, ResourceHints, TaskInstance, TaskSpec

pytestmark = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")


@pytest.fixture
def config(tmp_path: Path) -> RunConfig:
    return RunConfig(
        workdir=tmp_path / "work",
        outdir=tmp_path / "results",
        executor={"kill_timeout": 1},
    )


@pytest.fixture
def executor(config: RunConfig) -> LocalExecutor:
    return LocalExecutor(ArtifactStore(config.workdir), config)


def _instance(executor: LocalExecutor, spec: TaskSpec, *values, index: int = 1) -> TaskInstance:
    bound = bind_inputs(spec, values)
    instance = TaskInstance(
        index=index,
        spec=spec,
        ordinal=index,
        bindings=bound.bindings,
        staged=bound.staged,
        resources=spec.resources,
    )
    executor.store.assign(instance, bound.identity)
    return instance


def _echo_spec(command: str, **kwargs) -> TaskSpec:
    return TaskSpec(
        name="echo",
        inputs=(InputPort.val("x"),),
        outputs=(OutputPort.path("out.txt"),),
        command=command,
        **kwargs,
    )


class TestExecute:
    """Tests for running one instance to completion."""

    def test_success(self, executor: LocalExecutor, count_lines_spec: TaskSpec, text_inputs: list[Path]) -> None:
        instance = _instance(executor, count_lines_spec, text_inputs[0])
        (output,) = executor.execute(instance)

        assert output == instance.workdir / "a.txt.count"
        assert output.read_text().strip() == "3"
        assert instance.exit_code == 0

    def test_bookkeeping_files(
        self, executor: LocalExecutor, count_lines_spec: TaskSpec, text_inputs: list[Path]
    ) -> None:
        instance = _instance(executor, count_lines_spec, text_inputs[0])
        executor.execute(instance)
        workdir = instance.workdir

        script = (workdir / ".command.sh").read_text()
        assert script.startswith("#!/usr/bin/env bash\n# count_lines (1)\n")
        assert "wc -l < a.txt > a.txt.count" in script
        assert (workdir / ".exitcode").read_text() == "0\n"
        assert (workdir / ".command.out").exists()
        assert (workdir / MANIFEST_NAME).exists()
        assert executor.store.lookup(instance)

    def test_stdout_and_stderr_captured(self, executor: LocalExecutor) -> None:
        instance = _instance(executor, _echo_spec("echo {x} > out.txt; echo to-out; echo to-err >&2"), "hi")
        executor.execute(instance)
        assert (instance.workdir / ".command.out").read_text() == "to-out\n"
        assert (instance.workdir / ".command.err").read_text() == "to-err\n"

    def test_publishes(self, executor: LocalExecutor, config: RunConfig) -> None:
        spec = _echo_spec("echo {x} > out.txt", publish_dir="echo/{x}")
        instance = _instance(executor, spec, "hi")
        executor.execute(instance)
        assert (config.outdir / "echo" / "hi" / "out.txt").read_text() == "hi\n"

    def test_non_zero_exit(self, executor: LocalExecutor) -> None:
        instance = _instance(executor, _echo_spec("echo 'bad input' >&2; exit 3"), "hi")
        with pytest.raises(TaskExecutionError) as exc_info:
            executor.execute(instance)

        err = exc_info.value
        assert err.exit_code == 3
        assert "bad input" in err.stderr
        assert instance.exit_code == 3
        assert (instance.workdir / ".exitcode").read_text() == "3\n"
        assert not (instance.workdir / MANIFEST_NAME).exists()

    def test_unset_variable_fails(self, executor: LocalExecutor) -> None:
        """Commands run under bash -u, so unset shell variables are errors."""
        instance = _instance(executor, _echo_spec("echo ${{NOT_DEFINED_ANYWHERE}} > out.txt"), "hi")
        with pytest.raises(TaskExecutionError):
            executor.execute(instance)

    def test_missing_output(self, executor: LocalExecutor) -> None:
        instance = _instance(executor, _echo_spec("true"), "hi")
        with pytest.raises(MissingOutputError, match="out.txt"):
            executor.execute(instance)
        assert not (instance.workdir / MANIFEST_NAME).exists()

    def test_timeout(self, executor: LocalExecutor) -> None:
        spec = _echo_spec("sleep 30", resources=ResourceHints(time="1s"))
        instance = _instance(executor, spec, "hi")
        started = time.monotonic()
        with pytest.raises(TaskTimeoutError, match="time limit"):
            executor.execute(instance)
        assert time.monotonic() - started < 15

    def test_reexecution_starts_clean(self, executor: LocalExecutor) -> None:
        instance = _instance(executor, _echo_spec("ls > listing; echo {x} > out.txt"), "hi")
        executor.execute(instance)
        (instance.workdir / "leftover").write_text("x")
        executor.execute(instance)
        assert "leftover" not in (instance.workdir / "listing").read_text()


class TestStopAll:
    """Tests for stopping running processes."""

    def test_stop_running_instance(self, executor: LocalExecutor) -> None:
        instance = _instance(executor, _echo_spec("sleep 30"), "hi")
        errors: list[Exception] = []

        def target() -> None:
            try:
                executor.execute(instance)
            except TaskExecutionError as e:
                errors.append(e)

        thread = threading.Thread(target=target)
        thread.start()
        deadline = time.monotonic() + 10
        while not executor._handles and time.monotonic() < deadline:
            time.sleep(0.05)

        assert executor.stop_all() == 1
        thread.join(timeout=15)
        assert not thread.is_alive()
        assert executor.was_stopped(instance)
        assert len(errors) == 1

    def test_nothing_running(self, executor: LocalExecutor, count_lines_spec: TaskSpec, text_inputs: list[Path]) -> None:
        instance = _instance(executor, count_lines_spec, text_inputs[0])
        assert executor.stop_all() == 0
        assert not executor.was_stopped(instance)


class TestContainerTool:
    """Tests for choosing the docker runner."""

    def test_docker_kwargs_name_the_container(self, tmp_path: Path) -> None:
        config = RunConfig(workdir=tmp_path / "work", executor={"docker": {"enabled": True}})
        executor = LocalExecutor(ArtifactStore(config.workdir), config)
        instance = _instance(executor, _echo_spec("echo {x} > out.txt", container="img"), "a")

        tool, kwargs = executor._tool_for(instance, Path(".command.sh"), instance.workdir)

        assert isinstance(tool, DockerRun)
        assert kwargs["image"] == "img"
        assert kwargs["name"] == container_name(instance)
        assert kwargs["name"] == f"seqflow-{instance.fingerprint[:32]}"

    def test_shell_without_image(self, executor: LocalExecutor) -> None:
        instance = _instance(executor, _echo_spec("echo {x} > out.txt"), "a")
        tool, kwargs = executor._tool_for(instance, Path(".command.sh"), instance.workdir)
        assert isinstance(tool, TaskShell)
        assert "name" not in kwargs
