"""
HTML execution report for finished runs.
"""

from seqflow.report.generator import ExecutionReport

__all__ = ["ExecutionReport"]
