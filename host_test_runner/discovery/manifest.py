"""Discovery of tests listed in a YAML manifest beside a compiled module.

Compiled containers cannot be inspected from Python, so the build that
produces them exports their test metadata as a manifest::

    version: "1.0"
    module: WallTests.dll
    requires:
      - HostApiShim.dll
    fixtures:
      - name: Walls.WallTests
        setup: SetUp
        categories: [Walls]
        tests:
          - name: CreateWall
            categories: [Smoke]
"""

import logging
from collections.abc import Sequence
from pathlib import Path

import yaml
from pydantic import Field, ValidationError

from host_test_runner.discovery.base import (
    DiscoveredTest,
    DiscoveryAdapter,
    LoadError,
)
from host_test_runner.models.base import Model

log = logging.getLogger(__name__)


class ManifestTest(Model):
    """A test method declared in the manifest."""

    __test__ = False

    name: str = Field(..., min_length=1, description="Test method name")
    categories: Sequence[str] = Field(default_factory=tuple)


class ManifestFixture(Model):
    """A test class declared in the manifest."""

    name: str = Field(..., min_length=1, description="Fully-qualified type name")
    setup: str | None = None
    teardown: str | None = None
    categories: Sequence[str] = Field(
        default_factory=tuple, description="Tags applied to every test"
    )
    tests: Sequence[ManifestTest] = Field(default_factory=tuple)


class TestManifest(Model):
    """Complete manifest loaded from a ``*.tests.yaml`` file."""

    __test__ = False

    version: str = Field(..., description="Manifest schema version")
    module: str = Field(..., description="Compiled module, relative to the manifest")
    requires: Sequence[str] = Field(
        default_factory=tuple, description="Dependencies, relative to the manifest"
    )
    fixtures: Sequence[ManifestFixture] = Field(default_factory=tuple)


def load_manifest(path: Path) -> TestManifest:
    """Load and validate a manifest file.

    Raises:
        LoadError: If the file is missing, not valid YAML or does not match
            the manifest schema

    """
    if not path.is_file():
        raise LoadError(f"Test container not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise LoadError(f"Invalid manifest {path}: {e}") from e

    try:
        return TestManifest.model_validate(data)
    except ValidationError as e:
        raise LoadError(f"Invalid manifest {path}: {e}") from e


class ManifestAdapter(DiscoveryAdapter):
    """Lists tests from a manifest and checks its module and dependencies exist."""

    def list_tests(self, container: Path) -> Sequence[DiscoveredTest]:
        manifest = load_manifest(container)

        missing = [
            name
            for name in (manifest.module, *manifest.requires)
            if not (container.parent / name).is_file()
        ]
        if missing:
            raise LoadError(
                f"Unresolved dependencies for {container}: {', '.join(missing)}"
            )

        discovered = [
            DiscoveredTest(
                fixture=fixture.name,
                name=test.name,
                categories=tuple(dict.fromkeys([*fixture.categories, *test.categories])),
                setup=fixture.setup,
                teardown=fixture.teardown,
            )
            for fixture in manifest.fixtures
            for test in fixture.tests
        ]
        log.debug("Found %d test(s) in manifest %s", len(discovered), container)
        return discovered
