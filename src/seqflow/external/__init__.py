"""
Wrappers for running task commands as external processes.

Provides the ExternalTool base (executable resolution, cancellable
subprocess execution) and the local shell and docker runners.
"""

from seqflow.external.base import (
    ExternalTool,
    ProcessHandle,
    ToolResult,
    UnsafePathError,
    validate_path_safe,
)
from seqflow.external.shell import DockerRun, TaskShell, missing_tools

__all__ = [
    "DockerRun",
    "ExternalTool",
    "ProcessHandle",
    "TaskShell",
    "ToolResult",
    "UnsafePathError",
    "missing_tools",
    "validate_path_safe",
]
