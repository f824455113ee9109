"""
Base classes for running external command-line tools.

Provides a consistent interface for executing task commands with timeout
support and output redirection to files. Started processes get a handle
that can be stopped from another thread when a run is aborted.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, ClassVar

from seqflow.core.exceptions import SeqflowError, ToolNotFoundError

logger = logging.getLogger(__name__)

# Alphanumeric, underscore, hyphen, dot, slash
_SAFE_PATH_PATTERN = re.compile(r"^[\w\-./]+$")


class UnsafePathError(SeqflowError):
    """Raised when a file path cannot be passed safely to a command."""

    def __init__(self, path: Path, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(
            message=f"Unsafe path detected: {path}{detail}",
            suggestion=(
                "Rename the file so its path contains only letters, digits, "
                "underscores, hyphens and periods."
            ),
        )
        self.path = path


def validate_path_safe(path: Path, *, must_exist: bool = False, resolve: bool = True) -> Path:
    """Check a path before it is staged or handed to a command.

    Null bytes are rejected. Unusual characters only produce a warning,
    since many tools cope with them but shell templates may not.

    Raises:
        UnsafePathError: If the path contains a null byte.
        FileNotFoundError: If must_exist=True and the path does not exist.
    """
    if resolve:
        path = path.resolve()

    path_str = str(path)
    if "\x00" in path_str:
        raise UnsafePathError(path, "contains null byte")

    if not _SAFE_PATH_PATTERN.match(path_str):
        logger.warning("Path contains unusual characters (may break commands): %s", path)

    if must_exist and not path.exists():
        raise FileNotFoundError(f"Path does not exist: {path}")

    return path


@dataclass(frozen=True)
class ToolResult:
    """Result from running an external command.

    Attributes:
        command: The command that was executed.
        return_code: Exit code from the process (negative for signals).
        stdout: Captured standard output ("" when redirected to a file).
        stderr: Captured standard error ("" when redirected to a file).
        elapsed_seconds: Wall-clock time for execution.
        timed_out: True if the process was stopped at its time limit.
    """

    command: tuple[str, ...]
    return_code: int
    stdout: str
    stderr: str
    elapsed_seconds: float
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0 and not self.timed_out


class ProcessHandle:
    """A started child process that can be stopped from another thread.

    The child runs in its own session so that stopping it also reaches the
    processes spawned by its shell.
    """

    def __init__(self, popen: subprocess.Popen, command: tuple[str, ...]):
        self.popen = popen
        self.command = command
        self.started = time.perf_counter()
        self.stopped = False

    @property
    def pid(self) -> int:
        return self.popen.pid

    def wait(self, timeout: float | None = None) -> int:
        return self.popen.wait(timeout=timeout)

    def _signal(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self.popen.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.popen.send_signal(sig)

    def stop(self, grace_seconds: float = 10.0) -> None:
        """Send SIGTERM, then SIGKILL if the process outlives ``grace_seconds``."""
        if self.popen.poll() is not None:
            return
        self.stopped = True
        logger.debug("Sending SIGTERM to pid %d", self.pid)
        self._signal(signal.SIGTERM)
        try:
            self.popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.debug("Sending SIGKILL to pid %d", self.pid)
            self._signal(signal.SIGKILL)
            self.popen.wait()


class ExternalTool(ABC):
    """Abstract base class for wrapping external command-line tools.

    Subclasses must define:
        TOOL_NAME: Primary executable name (e.g., "bash")
        build_command: Method to construct the command arguments

    Optional class attributes:
        TOOL_ALIASES: Alternative executable names to search
        INSTALL_HINT: Instructions for installing the tool

    Dependency injection:
        Use set_executable_resolver() to inject a custom resolver for testing.
    """

    TOOL_NAME: ClassVar[str]
    TOOL_ALIASES: ClassVar[tuple[str, ...]] = ()
    INSTALL_HINT: ClassVar[str] = ""

    _executable_cache: ClassVar[dict[str, Path | None]] = {}
    _executable_resolver: ClassVar[Callable[[str], str | None]] = staticmethod(shutil.which)

    @classmethod
    def resolve(cls, name: str, install_hint: str = "") -> Path:
        """Locate any executable by name, caching the answer.

        Raises:
            ToolNotFoundError: If the executable cannot be found.
        """
        if name in ExternalTool._executable_cache:
            cached = ExternalTool._executable_cache[name]
            if cached is not None:
                return cached
            raise ToolNotFoundError(name, install_hint)

        exe_path = ExternalTool._executable_resolver(name)
        if exe_path:
            path = Path(exe_path)
            ExternalTool._executable_cache[name] = path
            return path

        ExternalTool._executable_cache[name] = None
        raise ToolNotFoundError(name, install_hint)

    @classmethod
    def get_executable(cls) -> Path:
        """Find the tool executable in PATH (primary name, then aliases).

        Raises:
            ToolNotFoundError: If the tool cannot be found.
        """
        for name in (cls.TOOL_NAME, *cls.TOOL_ALIASES):
            try:
                return cls.resolve(name)
            except ToolNotFoundError:
                continue
        raise ToolNotFoundError(cls.TOOL_NAME, cls.INSTALL_HINT)

    @classmethod
    def clear_cache(cls) -> None:
        ExternalTool._executable_cache.clear()

    @classmethod
    def set_executable_resolver(cls, resolver: Callable[[str], str | None]) -> None:
        """Inject a custom executable resolver for testing.

        Example:
            ExternalTool.set_executable_resolver(lambda name: f"/usr/bin/{name}")
            # run tests...
            ExternalTool.reset_executable_resolver()
        """
        ExternalTool._executable_resolver = staticmethod(resolver)
        cls.clear_cache()

    @classmethod
    def reset_executable_resolver(cls) -> None:
        ExternalTool._executable_resolver = staticmethod(shutil.which)
        cls.clear_cache()

    @abstractmethod
    def build_command(self, **kwargs: object) -> list[str]:
        """Build the command-line arguments (including the executable)."""
        ...

    def start(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        stdout: IO[str] | int | None = None,
        stderr: IO[str] | int | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Launch ``command`` in its own session and return its handle.

        Raises:
            ToolNotFoundError: If the executable disappeared since lookup.
        """
        try:
            popen = subprocess.Popen(
                command,
                cwd=cwd,
                stdout=stdout,
                stderr=stderr,
                stdin=subprocess.DEVNULL,
                env=env,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(self.TOOL_NAME, self.INSTALL_HINT) from e
        return self.make_handle(popen, tuple(command))

    def make_handle(self, popen: subprocess.Popen, command: tuple[str, ...]) -> ProcessHandle:
        return ProcessHandle(popen, command)

    def run(
        self,
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
        on_start: Callable[[ProcessHandle], None] | None = None,
        **kwargs: object,
    ) -> ToolResult:
        """Execute the tool with the specified arguments.

        Output goes to ``stdout_path``/``stderr_path`` when given (so large
        outputs never fill a pipe) and is captured otherwise.

        Args:
            timeout: Maximum execution time in seconds (None for no limit).
            cwd: Working directory of the process.
            stdout_path: File receiving standard output.
            stderr_path: File receiving standard error.
            on_start: Called with the process handle once it is running.
            **kwargs: Arguments passed to build_command().

        Returns:
            ToolResult with command, exit code and captured output. A
            process stopped at ``timeout`` has ``timed_out`` set.
        """
        command = self.build_command(**kwargs)
        command_tuple = tuple(command)

        out_file = stdout_path.open("w") if stdout_path else None
        err_file = stderr_path.open("w") if stderr_path else None
        try:
            handle = self.start(
                command,
                cwd=cwd,
                stdout=out_file or subprocess.PIPE,
                stderr=err_file or subprocess.PIPE,
            )
            if on_start is not None:
                on_start(handle)

            timed_out = False
            try:
                stdout, stderr = handle.popen.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                handle.stop(grace_seconds=5.0)
                stdout, stderr = handle.popen.communicate()
        finally:
            if out_file:
                out_file.close()
            if err_file:
                err_file.close()

        return ToolResult(
            command=command_tuple,
            return_code=handle.popen.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            elapsed_seconds=time.perf_counter() - handle.started,
            timed_out=timed_out,
        )
