"""
Custom exceptions with actionable guidance.

Provides specific error types for the three failure families of a run:
configuration problems, graph construction problems, and task failures.
Each carries a suggestion telling the user how to fix it.
"""

from __future__ import annotations

from pathlib import Path


class SeqflowError(Exception):
    """Base exception for seqflow errors."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(self.full_message)

    @property
    def full_message(self) -> str:
        if self.suggestion:
            return f"{self.message}\n\nSuggestion: {self.suggestion}"
        return self.message


# =============================================================================
# Configuration errors (abort before scheduling)
# =============================================================================


class ConfigurationError(SeqflowError):
    """Raised when configuration is invalid."""



class MissingParameterError(ConfigurationError):
    """Raised when a required pipeline parameter was not supplied."""

    def __init__(self, param_name: str, detail: str = ""):
        extra = f" ({detail})" if detail else ""
        super().__init__(
            message=f"Missing required parameter '{param_name}'{extra}",
            suggestion=(
                f"Pass it on the command line as --{param_name} <value> "
                "or set it under 'params:' in the config file."
            ),
        )
        self.param_name = param_name


class InputFileNotFoundError(ConfigurationError):
    """Raised when an input path or glob matches nothing on disk."""

    def __init__(self, pattern: str | Path, param_name: str | None = None):
        source = f" (from --{param_name})" if param_name else ""
        super().__init__(
            message=f"No input files match: {pattern}{source}",
            suggestion=(
                "Check the path and quote glob patterns on the command line "
                "so the shell does not expand them, e.g. --reads 'data/*_R{1,2}.fastq.gz'."
            ),
        )
        self.pattern = str(pattern)


class EmptyChannelError(ConfigurationError):
    """Raised when a channel guarded with if_empty() finishes without items."""

    def __init__(self, channel_name: str, message: str | None = None):
        super().__init__(
            message=message or f"Channel '{channel_name}' is empty",
            suggestion=(
                "The pipeline requires input data on this channel. Check the "
                "input parameters that populate it."
            ),
        )
        self.channel_name = channel_name


class ResourceExhaustionError(ConfigurationError):
    """Raised when a task asks for more resources than the run ceiling allows."""

    def __init__(self, task_name: str, resource: str, requested: float, available: float):
        super().__init__(
            message=(
                f"Task '{task_name}' requests {resource}={requested:g} but the "
                f"run ceiling is {available:g}"
            ),
            suggestion=(
                f"Raise the ceiling (--max-{resource.replace('_mb', '')}) or lower "
                f"the {resource} hint of '{task_name}'."
            ),
        )
        self.task_name = task_name
        self.resource = resource
        self.requested = requested
        self.available = available


class PipelineLoadError(ConfigurationError):
    """Raised when a pipeline definition cannot be imported or is malformed."""

    def __init__(self, target: str, reason: str):
        super().__init__(
            message=f"Cannot load pipeline '{target}': {reason}",
            suggestion=(
                "Pass a path to a Python file that defines build(flow), or one of "
                "the bundled pipeline names listed by 'seqflow pipelines'."
            ),
        )
        self.target = target


class ToolNotFoundError(ConfigurationError):
    """Raised when a required external tool is not installed or not in PATH."""

    def __init__(self, tool_name: str, install_hint: str = ""):
        suggestion = f"Install {tool_name} and ensure it is in your PATH."
        if install_hint:
            suggestion = f"{suggestion}\n\nInstallation:\n  {install_hint}"

        super().__init__(
            message=f"Required tool '{tool_name}' not found in PATH",
            suggestion=suggestion,
        )
        self.tool_name = tool_name


# =============================================================================
# Graph errors (abort at build time)
# =============================================================================


class GraphError(SeqflowError):
    """Base class for dependency graph construction errors."""



class CycleDetectedError(GraphError):
    """Raised when the channel wiring forms a cycle."""

    def __init__(self, nodes: list[str]):
        shown = ", ".join(nodes[:6])
        if len(nodes) > 6:
            shown += f", ... ({len(nodes) - 6} more)"
        super().__init__(
            message=f"Cycle detected in the dependency graph involving: {shown}",
            suggestion=(
                "A placeholder channel was bound to a channel derived from "
                "itself. Break the feedback loop."
            ),
        )
        self.nodes = nodes


class DanglingChannelError(GraphError):
    """Raised when a placeholder channel is consumed but never bound."""

    def __init__(self, channel_name: str):
        super().__init__(
            message=f"Channel '{channel_name}' is referenced but never bound to a producer",
            suggestion=f"Call {channel_name}.bind(<channel>) before the graph is built.",
        )
        self.channel_name = channel_name


class ChannelConsumedError(GraphError):
    """Raised when a queue channel is wired into more than one consumer."""

    def __init__(self, channel_name: str, first: str, second: str):
        super().__init__(
            message=(
                f"Queue channel '{channel_name}' is already consumed by '{first}' "
                f"and cannot also feed '{second}'"
            ),
            suggestion=(
                "Split the channel with .into(n) and give each consumer its own "
                "branch, or turn it into a value channel with .collect()."
            ),
        )
        self.channel_name = channel_name


class PortArityError(GraphError):
    """Raised when a process is wired with the wrong number of channels."""

    def __init__(self, task_name: str, expected: int, received: int):
        super().__init__(
            message=(
                f"Process '{task_name}' declares {expected} input port(s) but "
                f"{received} channel(s) were given"
            ),
            suggestion="Pass exactly one channel (or literal) per declared input port.",
        )
        self.task_name = task_name


# =============================================================================
# Task failures (handled per error strategy)
# =============================================================================


class TaskFailure(SeqflowError):
    """Base class for failures of a single task instance."""

    def __init__(self, task_label: str, message: str, suggestion: str | None = None):
        super().__init__(message=message, suggestion=suggestion)
        self.task_label = task_label


class TaskExecutionError(TaskFailure):
    """Raised when a task command exits with a non-zero status."""

    def __init__(self, task_label: str, exit_code: int, stderr: str, workdir: Path):
        stderr_display = stderr.strip()
        if len(stderr_display) > 500:
            stderr_display = stderr_display[-500:]
            stderr_display = "...[truncated]\n" + stderr_display

        super().__init__(
            task_label,
            message=(
                f"Task '{task_label}' failed with exit code {exit_code}\n\n"
                f"Error output:\n{stderr_display or '(empty)'}"
            ),
            suggestion=f"Inspect {workdir}/.command.sh and {workdir}/.command.err.",
        )
        self.exit_code = exit_code
        self.stderr = stderr
        self.workdir = workdir


class MissingOutputError(TaskFailure):
    """Raised when a task exits 0 but a declared output is missing."""

    def __init__(self, task_label: str, pattern: str, workdir: Path):
        super().__init__(
            task_label,
            message=f"Task '{task_label}' did not produce declared output '{pattern}'",
            suggestion=(
                f"Check that the command writes '{pattern}' relative to its "
                f"working directory ({workdir}), or mark the output optional."
            ),
        )
        self.pattern = pattern
        self.workdir = workdir


class TaskTimeoutError(TaskFailure):
    """Raised when a task exceeds its wall-time hint."""

    def __init__(self, task_label: str, timeout_seconds: float):
        super().__init__(
            task_label,
            message=f"Task '{task_label}' exceeded its time limit of {timeout_seconds:.0f} seconds",
            suggestion="Increase the task's time hint or use a retry error strategy.",
        )
        self.timeout_seconds = timeout_seconds


class RunAbortedError(SeqflowError):
    """Raised when a run was aborted by a terminate error strategy."""

    def __init__(self, task_label: str, reason: str):
        super().__init__(
            message=f"Run aborted after task '{task_label}' failed: {reason}",
            suggestion="Fix the failing task and re-run with --resume to reuse finished work.",
        )
        self.task_label = task_label
