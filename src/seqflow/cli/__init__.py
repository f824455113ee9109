"""
CLI commands for seqflow.

Provides the run, validate and pipelines commands.
"""

__all__ = ["main", "run", "utils"]
