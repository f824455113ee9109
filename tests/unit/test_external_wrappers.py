"""
Unit tests for the shell and docker command wrappers.

Executable lookup is replaced with a fake resolver so the command lines
are predictable and no container runtime is needed.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from seqflow.core.exceptions import ToolNotFoundError
from seqflow.external.base import ExternalTool
from seqflow.external.shell import ContainerHandle, DockerRun, TaskShell, missing_tools


@pytest.fixture
def fake_bin():
    """Resolve every executable to /usr/local/bin/<name>."""
    ExternalTool.set_executable_resolver(lambda name: f"/usr/local/bin/{name}")
    yield
    ExternalTool.reset_executable_resolver()


class TestTaskShell:
    """Tests for TaskShell command construction."""

    def test_default_shell(self, fake_bin) -> None:
        cmd = TaskShell().build_command(script=Path("/work/ab/cd/.command.sh"))
        assert cmd == ["/usr/local/bin/bash", "-ue", ".command.sh"]

    def test_custom_shell(self, fake_bin) -> None:
        cmd = TaskShell().build_command(script=Path(".command.sh"), shell=("zsh", "-e", "-o", "pipefail"))
        assert cmd == ["/usr/local/bin/zsh", "-e", "-o", "pipefail", ".command.sh"]

    def test_missing_interpreter(self) -> None:
        ExternalTool.set_executable_resolver(lambda name: None)
        with pytest.raises(ToolNotFoundError, match="'fish'"):
            TaskShell().build_command(script=Path(".command.sh"), shell=("fish",))


class TestDockerRun:
    """Tests for DockerRun command construction."""

    def test_minimal(self, fake_bin) -> None:
        workdir = Path("/work/ab/cdef")
        cmd = DockerRun().build_command(
            image="quay.io/biocontainers/fastp:0.23.4",
            script=workdir / ".command.sh",
            workdir=workdir,
            user_mapping=False,
        )
        assert cmd == [
            "/usr/local/bin/docker", "run", "--rm", "-i",
            "-v", "/work/ab/cdef:/work/ab/cdef", "-w", "/work/ab/cdef",
            "quay.io/biocontainers/fastp:0.23.4",
            "bash", "-ue", ".command.sh",
        ]

    def test_mounts_resources_and_options(self, fake_bin) -> None:
        workdir = Path("/work/ab/cdef")
        cmd = DockerRun().build_command(
            image="img",
            script=workdir / ".command.sh",
            workdir=workdir,
            mounts=[Path("/data/reads"), workdir, Path("/data/reads")],
            cpus=4,
            memory_mb=2048,
            run_options=("--network", "none"),
            user_mapping=False,
            name="seqflow-trim-1",
        )
        assert cmd[cmd.index("--name") + 1] == "seqflow-trim-1"
        assert cmd.count("/data/reads:/data/reads:ro") == 1
        assert "/work/ab/cdef:/work/ab/cdef:ro" not in cmd
        assert cmd[cmd.index("--cpus") + 1] == "4"
        assert cmd[cmd.index("--memory") + 1] == "2048m"
        assert cmd.index("--network") < cmd.index("img")

    @pytest.mark.skipif(not hasattr(os, "getuid"), reason="POSIX only")
    def test_user_mapping(self, fake_bin) -> None:
        workdir = Path("/w")
        cmd = DockerRun().build_command(image="img", script=workdir / "s.sh", workdir=workdir)
        assert cmd[cmd.index("-u") + 1] == f"{os.getuid()}:{os.getgid()}"


class TestMissingTools:
    def test_reports_missing_sorted(self) -> None:
        ExternalTool.set_executable_resolver(
            lambda name: "/usr/bin/bash" if name == "bash" else None
        )
        assert missing_tools(["salmon", "bash", "fastp", "salmon"]) == ["fastp", "salmon"]

    def test_all_present(self, fake_bin) -> None:
        assert missing_tools(["bash", "diamond"]) == []


class TestContainerHandle:
    """Tests for stopping named containers."""

    def test_named_container_gets_container_handle(self, fake_bin) -> None:
        tool = DockerRun()
        cmd = tool.build_command(
            image="img", script=Path("/w/.command.sh"), workdir=Path("/w"),
            user_mapping=False, name="seqflow-abc",
        )
        handle = tool.make_handle(MagicMock(), tuple(cmd))
        assert isinstance(handle, ContainerHandle)
        assert handle.container == "seqflow-abc"
        assert handle.stop_command(2.0) == ["/usr/local/bin/docker", "stop", "-t", "2", "seqflow-abc"]

    def test_unnamed_container_gets_plain_handle(self, fake_bin) -> None:
        tool = DockerRun()
        cmd = tool.build_command(image="img", script=Path("/w/.command.sh"), workdir=Path("/w"))
        assert not isinstance(tool.make_handle(MagicMock(), tuple(cmd)), ContainerHandle)

    @pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")
    def test_stop_stops_container_then_client(self) -> None:
        popen = subprocess.Popen(["sh", "-c", "sleep 30"], start_new_session=True)
        handle = ContainerHandle(popen, ("/usr/local/bin/docker", "run"), "seqflow-abc")

        with patch("seqflow.external.shell.subprocess.run") as run:
            handle.stop(grace_seconds=2)

        assert run.call_args.args[0] == ["/usr/local/bin/docker", "stop", "-t", "2", "seqflow-abc"]
        assert handle.stopped
        assert popen.returncode is not None

    def test_stop_after_exit_skips_docker(self) -> None:
        popen = MagicMock()
        popen.poll.return_value = 0
        handle = ContainerHandle(popen, ("/usr/local/bin/docker", "run"), "seqflow-abc")

        with patch("seqflow.external.shell.subprocess.run") as run:
            handle.stop()

        run.assert_not_called()
        assert not handle.stopped
