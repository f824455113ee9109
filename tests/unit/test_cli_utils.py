"""
Unit tests for CLI utility functions.

Tests for parse_param_args, log_level, setup_logging, spinner_progress,
QuietConsole and summary rendering.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from io import StringIO
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import typer
from rich.console import Console
from rich.logging import RichHandler

from seqflow.cli.utils import (
    QuietConsole,
    log_level,
    parse_param_args,
    print_summary,
    setup_logging,
    spinner_progress,
)
from seqflow.core.completion import ExcludedProcess, FailedTask, ProcessStats, RunSummary


def _console() -> tuple[Console, StringIO]:
    buffer = StringIO()
    return Console(file=buffer, width=200, force_terminal=False, color_system=None), buffer


def _summary(**overrides) -> RunSummary:
    values = {
        "pipeline": "count_lines",
        "run_id": "abc123",
        "started_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
        "completed_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
        "duration_s": 1.0,
        "success": True,
        "counts": {"succeeded": 2, "failed": 0},
        "processes": [ProcessStats(name="count_lines", total=2, succeeded=2)],
    }
    values.update(overrides)
    return RunSummary(**values)


class TestParseParamArgs:
    """Tests for parse_param_args function."""

    def test_space_separated(self) -> None:
        assert parse_param_args(["--input", "data/*.txt"]) == {"input": "data/*.txt"}

    def test_equals(self) -> None:
        assert parse_param_args(["--molecules=protein,dayhoff"]) == {"molecules": "protein,dayhoff"}

    def test_flag_without_value(self) -> None:
        """A flag followed by another flag or nothing is true."""
        assert parse_param_args(["--skip-multiqc", "--input", "x"]) == {
            "skip_multiqc": "true",
            "input": "x",
        }
        assert parse_param_args(["--single_end"]) == {"single_end": "true"}

    def test_hyphens_become_underscores(self) -> None:
        assert parse_param_args(["--bloom-filter", "bf"]) == {"bloom_filter": "bf"}

    def test_empty_value(self) -> None:
        assert parse_param_args(["--tag="]) == {"tag": ""}

    def test_last_value_wins(self) -> None:
        assert parse_param_args(["--x", "1", "--x", "2"]) == {"x": "2"}

    def test_positional_rejected(self) -> None:
        with pytest.raises(typer.BadParameter, match="Unexpected argument 'stray'"):
            parse_param_args(["stray"])

    def test_empty_flag_rejected(self) -> None:
        with pytest.raises(typer.BadParameter):
            parse_param_args(["--=x"])

    def test_no_args(self) -> None:
        assert parse_param_args([]) == {}


class TestLogLevel:
    def test_levels(self) -> None:
        assert log_level(verbose=True, quiet=False) == logging.DEBUG
        assert log_level(verbose=False, quiet=True) == logging.WARNING
        assert log_level(verbose=False, quiet=False) == logging.INFO
        assert log_level(verbose=True, quiet=True) == logging.DEBUG


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_console_handler(self) -> None:
        setup_logging(logging.WARNING)
        app_logger = logging.getLogger("seqflow")
        assert len(app_logger.handlers) == 1
        assert isinstance(app_logger.handlers[0], RichHandler)
        assert app_logger.level == logging.WARNING
        assert app_logger.propagate is False

    def test_repeated_calls_replace_handlers(self) -> None:
        setup_logging()
        setup_logging()
        assert len(logging.getLogger("seqflow").handlers) == 1

    def test_log_file_records_debug(self, tmp_path: Path) -> None:
        console, _ = _console()
        log_file = tmp_path / "info" / "seqflow.log"
        setup_logging(logging.WARNING, log_file=log_file, console=console)

        app_logger = logging.getLogger("seqflow")
        assert any(isinstance(h, RotatingFileHandler) for h in app_logger.handlers)
        assert app_logger.level == logging.DEBUG

        logging.getLogger("seqflow.core.scheduler").debug("detail for the file")
        for handler in app_logger.handlers:
            handler.flush()
        assert "detail for the file" in log_file.read_text()

    def test_console_respects_level(self) -> None:
        console, buffer = _console()
        setup_logging(logging.WARNING, console=console)
        logging.getLogger("seqflow.run").info("hidden")
        logging.getLogger("seqflow.run").warning("shown")
        assert "hidden" not in buffer.getvalue()
        assert "shown" in buffer.getvalue()


class TestSpinnerProgress:
    """Tests for spinner_progress context manager."""

    def test_yields_progress(self) -> None:
        console, _ = _console()
        with spinner_progress("Working...", console=console) as progress:
            assert len(progress.tasks) == 1
            assert progress.tasks[0].description == "Working..."

    def test_quiet_disables(self) -> None:
        with spinner_progress("Working...", quiet=True) as progress:
            assert progress.disable


class TestQuietConsole:
    """Tests for QuietConsole wrapper."""

    def test_prints_when_not_quiet(self) -> None:
        console, buffer = _console()
        QuietConsole(console).print("hello")
        assert "hello" in buffer.getvalue()

    def test_suppressed_when_quiet(self) -> None:
        console, buffer = _console()
        QuietConsole(console, quiet=True).print("hello")
        assert buffer.getvalue() == ""

    def test_force(self) -> None:
        console, buffer = _console()
        QuietConsole(console, quiet=True).print("status", force=True)
        assert "status" in buffer.getvalue()

    def test_delegates(self) -> None:
        console, _ = _console()
        wrapped = QuietConsole(console, quiet=True)
        assert wrapped.width == 200
        assert wrapped.console is console
        assert wrapped.quiet


class TestPrintSummary:
    """Tests for summary rendering."""

    def test_success(self) -> None:
        console, buffer = _console()
        print_summary(QuietConsole(console), _summary())
        text = buffer.getvalue()
        assert "count_lines" in text
        assert "2 succeeded, 0 failed" in text
        assert "Run aborted" not in text

    def test_quiet_keeps_status_line(self) -> None:
        console, buffer = _console()
        print_summary(QuietConsole(console, quiet=True), _summary())
        text = buffer.getvalue()
        assert text.strip() == "2 succeeded, 0 failed"

    def test_failures_and_exclusions(self) -> None:
        console, buffer = _console()
        summary = _summary(
            success=False,
            aborted=True,
            abort_reason="Task 'check (b.txt)' failed with exit code 3",
            counts={"succeeded": 1, "failed": 2},
            failed=[
                FailedTask(task="check (b.txt)", error="exit code 3", exit_code=3, workdir="/work/ab/cd"),
                FailedTask(task="count (2)", error="upstream", propagated_from="check (b.txt)"),
            ],
            excluded=[ExcludedProcess(name="MULTIQC", reason="condition not met")],
        )
        print_summary(QuietConsole(console), summary)
        text = buffer.getvalue()
        assert "Failed: check (b.txt): exit code 3" in text
        assert "work directory: /work/ab/cd" in text
        assert "count (2)" not in text
        assert "MULTIQC" in text
        assert "Run aborted: Task 'check (b.txt)' failed with exit code 3" in text
