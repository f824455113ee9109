"""
Local executor: runs one task instance inside its namespace.

For every instance the executor

1. creates a clean namespace and stages the inputs,
2. writes the rendered command to ``.command.sh``,
3. runs it through the task's shell (or ``docker run`` when containers are
   enabled and the task names an image), sending stdout to
   ``.command.out`` and stderr to ``.command.err``,
4. records the exit status in ``.exitcode``,
5. checks the declared outputs and writes the completion manifest,
6. publishes outputs into the run output directory.

Instances run on worker threads, one external process per thread.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from seqflow.core.exceptions import TaskExecutionError, TaskTimeoutError
from seqflow.core.store import ArtifactStore, render_command
from seqflow.external.base import ExternalTool, ProcessHandle, ToolResult
from seqflow.external.shell import DockerRun, TaskShell
from seqflow.models.config import RunConfig
from seqflow.models.task import TaskInstance

logger = logging.getLogger(__name__)


class LocalExecutor:
    """Execute task instances as local processes.

    Args:
        store: Artifact store owning the namespaces.
        config: Run configuration (outdir, docker and kill settings).
    """

    def __init__(self, store: ArtifactStore, config: RunConfig):
        self.store = store
        self.config = config
        self._handles: dict[int, ProcessHandle] = {}
        self._stopped: set[int] = set()
        self._lock = threading.Lock()

    def uses_container(self, instance: TaskInstance) -> bool:
        return self.config.executor.docker.enabled and bool(instance.spec.container)

    def execute(self, instance: TaskInstance) -> tuple[Any, ...]:
        """Run ``instance`` to completion and return its output values.

        Raises:
            TaskExecutionError: If the command exits non-zero.
            TaskTimeoutError: If the command exceeds its wall-time hint.
            MissingOutputError: If a declared output was not produced.
            TaskFailure: If a staged input is missing.
        """
        workdir = self.store.prepare(instance)
        script = workdir / ".command.sh"
        script.write_text(_script_text(instance))

        tool, kwargs = self._tool_for(instance, script, workdir)
        logger.debug("Running %s in %s", instance.label, workdir)

        result = tool.run(
            timeout=instance.resources.time_s,
            cwd=workdir,
            stdout_path=workdir / ".command.out",
            stderr_path=workdir / ".command.err",
            on_start=lambda handle: self._register(instance, handle),
            **kwargs,
        )
        self._unregister(instance)

        instance.exit_code = result.return_code
        (workdir / ".exitcode").write_text(f"{result.return_code}\n")
        self._check_result(instance, result, workdir)

        outputs = self.store.collect_outputs(instance)
        self.store.write_manifest(instance, outputs)
        self.store.publish(instance, outputs, self.config.outdir)
        return outputs

    def _tool_for(
        self,
        instance: TaskInstance,
        script: Path,
        workdir: Path,
    ) -> tuple[ExternalTool, dict[str, object]]:
        spec = instance.spec
        if self.uses_container(instance):
            docker = self.config.executor.docker
            mounts = {source.resolve().parent for _, source in instance.staged}
            return DockerRun(), {
                "image": spec.container,
                "script": script,
                "workdir": workdir,
                "shell": spec.shell,
                "mounts": mounts,
                "cpus": instance.resources.cpus,
                "memory_mb": instance.resources.memory_mb,
                "run_options": docker.run_options,
                "user_mapping": docker.user_mapping,
                "name": container_name(instance),
            }
        return TaskShell(), {"script": script, "shell": spec.shell}

    def _check_result(self, instance: TaskInstance, result: ToolResult, workdir: Path) -> None:
        if result.success:
            return
        if result.timed_out:
            raise TaskTimeoutError(instance.label, instance.resources.time_s or 0)
        if result.return_code != 0:
            stderr_path = workdir / ".command.err"
            stderr = stderr_path.read_text(errors="replace") if stderr_path.exists() else ""
            raise TaskExecutionError(instance.label, result.return_code, stderr, workdir)

    def _register(self, instance: TaskInstance, handle: ProcessHandle) -> None:
        with self._lock:
            self._handles[instance.index] = handle

    def _unregister(self, instance: TaskInstance) -> None:
        with self._lock:
            self._handles.pop(instance.index, None)

    def stop_all(self) -> int:
        """Stop every running process (SIGTERM, then SIGKILL after the kill timeout).

        Returns:
            Number of processes signalled.
        """
        with self._lock:
            handles = list(self._handles.items())
            self._stopped.update(index for index, _ in handles)

        grace = self.config.executor.kill_timeout
        threads = [
            threading.Thread(target=handle.stop, args=(grace,), daemon=True)
            for _, handle in handles
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return len(handles)

    def was_stopped(self, instance: TaskInstance) -> bool:
        with self._lock:
            return instance.index in self._stopped


def _script_text(instance: TaskInstance) -> str:
    command = render_command(instance).strip("\n")
    return f"#!/usr/bin/env {instance.spec.shell[0]}\n# {instance.label}\n{command}\n"


def container_name(instance: TaskInstance) -> str:
    """Docker container name, unique per namespace."""
    return f"seqflow-{instance.fingerprint[:32] or instance.index}"
