"""Fixtures for integration tests."""

import textwrap
from pathlib import Path
from typing import Protocol

import pytest


class WriteScriptFn(Protocol):
    """Protocol for script writing function."""

    def __call__(self, relative_path: str, source: str = "") -> Path:
        """Write a Python script under the project root and return its path."""


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Create an empty example project."""
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def write_script(project_root: Path) -> WriteScriptFn:
    """Return a function to create scripts in the test project."""

    def _write(relative_path: str, source: str = "") -> Path:
        path = project_root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source))
        return path

    return _write
