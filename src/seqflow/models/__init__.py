"""
Pydantic data models for seqflow.

Provides type-safe models for task specifications, task instances and run
configuration.
"""

from seqflow.models.config import (
    DockerConfig,
    ExecutorConfig,
    ReportConfig,
    ResourceLimits,
    RunConfig,
)
from seqflow.models.task import (
    ErrorStrategy,
    InputPort,
    OutputPort,
    ResourceHints,
    TaskInstance,
    TaskSpec,
    TaskStatus,
)

__all__ = [
    "DockerConfig",
    "ErrorStrategy",
    "ExecutorConfig",
    "InputPort",
    "OutputPort",
    "ReportConfig",
    "ResourceHints",
    "ResourceLimits",
    "RunConfig",
    "TaskInstance",
    "TaskSpec",
    "TaskStatus",
]
