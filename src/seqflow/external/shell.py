"""
Wrappers that run a task's ``.command.sh`` locally or inside a container.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Iterable
from pathlib import Path

from seqflow.core.exceptions import ToolNotFoundError
from seqflow.external.base import ExternalTool, ProcessHandle

logger = logging.getLogger(__name__)


class TaskShell(ExternalTool):
    """Run a command script through a shell interpreter.

    Example:
        >>> shell = TaskShell()
        >>> shell.build_command(script=Path(".command.sh"), shell=("bash", "-ue"))
        ['/usr/bin/bash', '-ue', '.command.sh']
    """

    TOOL_NAME = "bash"
    TOOL_ALIASES = ("sh",)
    INSTALL_HINT = "bash ships with every Linux distribution and macOS"

    def build_command(
        self,
        *,
        script: Path,
        shell: tuple[str, ...] = ("bash", "-ue"),
    ) -> list[str]:
        interpreter = str(self.resolve(shell[0], self.INSTALL_HINT))
        return [interpreter, *shell[1:], script.name]


class ContainerHandle(ProcessHandle):
    """Handle of a ``docker run`` client whose container has a known name.

    Signalling the client alone can leave the container running, so the
    container is stopped by name first.
    """

    def __init__(self, popen: subprocess.Popen, command: tuple[str, ...], container: str):
        super().__init__(popen, command)
        self.container = container

    def stop_command(self, grace_seconds: float) -> list[str]:
        return [self.command[0], "stop", "-t", str(max(1, round(grace_seconds))), self.container]

    def stop(self, grace_seconds: float = 10.0) -> None:
        if self.popen.poll() is None:
            logger.debug("Stopping container %s", self.container)
            try:
                subprocess.run(
                    self.stop_command(grace_seconds),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=grace_seconds + 30,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning("Could not stop container %s: %s", self.container, e)
        super().stop(grace_seconds)


class DockerRun(ExternalTool):
    """Run a command script inside a container with ``docker run``.

    The task namespace is mounted at the same path inside the container and
    used as working directory. Directories holding staged inputs are mounted
    read-only so the symlinks resolve. A named container is stopped by name
    when its handle is stopped.
    """

    TOOL_NAME = "docker"
    INSTALL_HINT = "https://docs.docker.com/engine/install/"

    def __init__(self) -> None:
        self.container_name: str | None = None

    def build_command(
        self,
        *,
        image: str,
        script: Path,
        workdir: Path,
        shell: tuple[str, ...] = ("bash", "-ue"),
        mounts: Iterable[Path] = (),
        cpus: int | None = None,
        memory_mb: int | None = None,
        run_options: tuple[str, ...] = (),
        user_mapping: bool = True,
        name: str | None = None,
    ) -> list[str]:
        self.container_name = name
        cmd = [str(self.get_executable()), "run", "--rm", "-i"]
        if name:
            cmd.extend(["--name", name])
        cmd.extend(["-v", f"{workdir}:{workdir}", "-w", str(workdir)])
        for mount in sorted(set(mounts) - {workdir}):
            cmd.extend(["-v", f"{mount}:{mount}:ro"])
        if cpus:
            cmd.extend(["--cpus", str(cpus)])
        if memory_mb:
            cmd.extend(["--memory", f"{memory_mb}m"])
        if user_mapping and hasattr(os, "getuid"):
            cmd.extend(["-u", f"{os.getuid()}:{os.getgid()}"])
        cmd.extend(run_options)
        cmd.append(image)
        cmd.extend([*shell, script.name])
        return cmd

    def make_handle(self, popen: subprocess.Popen, command: tuple[str, ...]) -> ProcessHandle:
        if self.container_name is None:
            return super().make_handle(popen, command)
        return ContainerHandle(popen, command, self.container_name)


def missing_tools(names: Iterable[str]) -> list[str]:
    """Return the executables from ``names`` that are not on PATH."""
    missing = []
    for name in sorted(set(names)):
        try:
            ExternalTool.resolve(name)
        except ToolNotFoundError:
            missing.append(name)
    return missing
