"""
Shared pytest fixtures for seqflow tests.

Provides temporary run directories, small task specifications, pipeline
files written on the fly, and isolation of the logging and executable
lookup state that the CLI and the external tool wrappers keep globally.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

import pytest

from seqflow.external.base import ExternalTool
from seqflow.models.config import RunConfig
from seqflow.models.task import InputPort, OutputPort, TaskSpec
from tests.factories import COUNT_LINES_PIPELINE, write_input_files, write_pipeline


# =============================================================================
# Global state isolation
# =============================================================================


@pytest.fixture(autouse=True)
def reset_seqflow_logger():
    """Undo handlers and propagation changes made by setup_logging()."""
    app_logger = logging.getLogger("seqflow")
    yield
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()
    app_logger.propagate = True
    app_logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def reset_executable_lookup():
    """Clear the executable cache and restore shutil.which resolution."""
    ExternalTool.reset_executable_resolver()
    yield
    ExternalTool.reset_executable_resolver()


# =============================================================================
# Temporary directories and run configuration
# =============================================================================


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def run_config(tmp_path: Path) -> RunConfig:
    """RunConfig writing into the test's temporary directory."""
    return RunConfig(
        workdir=tmp_path / "work",
        outdir=tmp_path / "results",
        limits={"max_cpus": 2},
        report={"html": False, "log_file": False},
    )


# =============================================================================
# Task specifications
# =============================================================================


@pytest.fixture
def count_lines_spec() -> TaskSpec:
    """One path in, one count file out."""
    return TaskSpec(
        name="count_lines",
        inputs=(InputPort.path("input"),),
        outputs=(OutputPort.path("{input}.count"),),
        command="wc -l < {input} > {input}.count",
    )


@pytest.fixture
def sample_spec() -> TaskSpec:
    """Tuple input with a sample id and a read file."""
    return TaskSpec(
        name="trim",
        inputs=(InputPort.tuple_of(InputPort.val("sample_id"), InputPort.path("reads")),),
        outputs=(
            OutputPort.tuple_of(
                OutputPort.val("{sample_id}"),
                OutputPort.path("{sample_id}.trimmed.txt"),
                emit="reads",
            ),
        ),
        command="cp {reads} {sample_id}.trimmed.txt",
        tag="{sample_id}",
    )


# =============================================================================
# Input data and pipeline files
# =============================================================================


@pytest.fixture
def text_inputs(tmp_path: Path) -> list[Path]:
    """Two small text files: a.txt (3 lines) and b.txt (5 lines)."""
    return write_input_files(tmp_path / "data", {"a.txt": 3, "b.txt": 5})


@pytest.fixture
def count_lines_pipeline(tmp_path: Path) -> Path:
    """Pipeline file running count_lines over --input."""
    return write_pipeline(tmp_path / "count_lines.py", COUNT_LINES_PIPELINE)
