"""Shared conftest for integration tests."""

from __future__ import annotations

import shutil

import pytest


def pytest_collection_modifyitems(config, items):
    """Skip tests marked requires_bash if bash is not available."""
    if shutil.which("bash") is None:
        skip_bash = pytest.mark.skip(reason="bash not installed")
        for item in items:
            if "requires_bash" in item.keywords:
                item.add_marker(skip_bash)
