"""Fixtures for integration tests against the fake host process."""

import sys
from pathlib import Path

import pytest

from host_test_runner.testing.fake_host import write_host_script


@pytest.fixture
def host(tmp_path: Path) -> Path:
    """Write an executable fake host."""
    if sys.platform == "win32":
        pytest.skip("fake host is a POSIX shell wrapper")
    return write_host_script(tmp_path / "bin" / "host")


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Create the directory the host runs in."""
    path = tmp_path / "work"
    path.mkdir()
    return path
