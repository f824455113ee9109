"""
E2E test fixtures for seqflow CLI testing.

Provides pipeline files and input data from the test factories together
with a CLI invocation helper. Every test here starts real bash processes.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import pytest
import yaml
from typer.testing import CliRunner

from seqflow.cli.main import app
from tests.factories import CHECK_PIPELINE, SLEEP_PIPELINE, write_input_files, write_pipeline

if TYPE_CHECKING:
    from click.testing import Result


def pytest_collection_modifyitems(config, items):
    """Mark every test in this directory as e2e and skip them without bash."""
    skip_bash = pytest.mark.skip(reason="bash not installed") if shutil.which("bash") is None else None
    for item in items:
        if "/e2e/" in str(item.fspath).replace("\\", "/"):
            item.add_marker(pytest.mark.e2e)
            if skip_bash is not None:
                item.add_marker(skip_bash)


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def e2e_runner() -> CliRunner:
    """Provide a CLI runner for E2E tests."""
    return CliRunner()


@pytest.fixture
def results_dir(tmp_path: Path) -> Path:
    return tmp_path / "results"


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    return tmp_path / "work"


@pytest.fixture
def input_dir(tmp_path: Path) -> Path:
    """a.txt (3 lines) and b.txt (5 lines)."""
    directory = tmp_path / "data"
    write_input_files(directory, {"a.txt": 3, "b.txt": 5})
    return directory


@pytest.fixture
def check_pipeline(tmp_path: Path) -> Path:
    return write_pipeline(tmp_path / "check.py", CHECK_PIPELINE)


@pytest.fixture
def sleep_pipeline(tmp_path: Path) -> Path:
    return write_pipeline(tmp_path / "sleep.py", SLEEP_PIPELINE)


@pytest.fixture
def kill_config(tmp_path: Path) -> Path:
    """Config file that stops running tasks when the run aborts."""
    path = tmp_path / "seqflow.yaml"
    path.write_text(yaml.safe_dump({
        "executor": {"kill_on_abort": True, "kill_timeout": "2s"},
        "report": {"html": False},
    }))
    return path


# =============================================================================
# CLI Invocation Helpers
# =============================================================================


@pytest.fixture
def run_cli(
    e2e_runner: CliRunner, work_dir: Path, results_dir: Path
) -> Callable[..., Result]:
    """
    Invoke ``seqflow run`` with the test's work and results directories.

    Usage:
        result = run_cli(pipeline, "--input", "data/*.txt", "--resume")
    """

    def _run(pipeline: Path | str, *args: str) -> Result:
        return e2e_runner.invoke(
            app,
            [
                "run", str(pipeline),
                "--workdir", str(work_dir),
                "--outdir", str(results_dir),
                "--max-cpus", "2",
                *args,
            ],
        )

    return _run
