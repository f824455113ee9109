"""
Core engine: channels, dependency graph, scheduling and the artifact store.

Submodules are imported directly (``seqflow.core.flow``,
``seqflow.core.scheduler``); only the exception hierarchy is re-exported
here.
"""

from seqflow.core.exceptions import (
    ConfigurationError,
    GraphError,
    RunAbortedError,
    SeqflowError,
    TaskFailure,
)

__all__ = [
    "ConfigurationError",
    "GraphError",
    "RunAbortedError",
    "SeqflowError",
    "TaskFailure",
]
