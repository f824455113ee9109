"""
Seqflow: channel-based workflow engine for multi-sample bioinformatics pipelines.

Pipelines are Python modules that declare task specifications (shell
command templates with typed input and output ports) and wire them together
with channels. The engine resolves dependencies, fans work out over samples,
caches completed tasks by fingerprint and aggregates the results.
"""

__version__ = "0.1.0"
__author__ = "Seqflow Team"

from seqflow.core.conditions import AllOf, AnyOf, FileExists, Not, ParamSet, ParamTrue
from seqflow.core.flow import Flow
from seqflow.models.config import RunConfig
from seqflow.models.task import (
    ErrorStrategy,
    InputPort,
    OutputPort,
    ResourceHints,
    TaskSpec,
)

__all__ = [
    "AllOf",
    "AnyOf",
    "ErrorStrategy",
    "FileExists",
    "Flow",
    "InputPort",
    "Not",
    "OutputPort",
    "ParamSet",
    "ParamTrue",
    "ResourceHints",
    "RunConfig",
    "TaskSpec",
    "__version__",
]
