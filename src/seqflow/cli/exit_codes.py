"""
Process exit codes of the seqflow command line.
"""

SUCCESS = 0
"""The run completed; failures under an ``ignore`` strategy are allowed."""

RUN_FAILED = 1
"""A task failure aborted the run (``terminate`` strategy)."""

CONFIG_ERROR = 2
"""Invalid parameters, configuration or pipeline wiring; nothing was run."""
