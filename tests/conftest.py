"""Shared fixtures for runner tests."""

from pathlib import Path
from textwrap import dedent

import pytest

from host_test_runner.discovery import discover
from host_test_runner.models.catalog import Catalog

WALL_TESTS = dedent(
    '''
    """Wall tests; only importable inside the host."""

    from host_api import Document, Transaction


    @fixture
    @category("Walls")
    class WallTests:
        @setup
        def open_model(self):
            self.doc = Document.open("walls.rvt")

        @category("Smoke")
        def test_create_wall(self):
            pass

        def test_join_walls(self):
            pass

        @teardown
        def close_model(self):
            self.doc.close()


    class TestFloors:
        @category("Smoke")
        def test_create_floor(self):
            pass

        @test
        def slab_edges(self):
            pass

        def helper(self):
            pass

        def tearDown(self):
            pass


    class Helpers:
        def test_not_a_fixture(self):
            pass


    @fixture
    class RoofTests:
        @category("Slow")
        def test_pitched_roof(self):
            pass
    '''
)


@pytest.fixture
def container(tmp_path: Path) -> Path:
    """Write a Python test module with 3 fixtures and 5 tests."""
    path = tmp_path / "walls.py"
    path.write_text(WALL_TESTS)
    return path


@pytest.fixture
def catalog(container: Path) -> Catalog:
    """Discover the sample container."""
    return discover([container])
