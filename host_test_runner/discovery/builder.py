"""Build the test catalog from one or more containers."""

import logging
from collections.abc import Sequence
from pathlib import Path

from host_test_runner.discovery.base import (
    DiscoveredTest,
    DiscoveryAdapter,
    LoadError,
)
from host_test_runner.discovery.loading import (
    AdapterNotFoundError,
    adapter_key_for,
    load_discovery_adapter,
)
from host_test_runner.models.catalog import (
    AssemblyNode,
    Catalog,
    CategoryNode,
    FixtureNode,
    GroupingStrategy,
    GroupNode,
    TestId,
    TestNode,
)

log = logging.getLogger(__name__)


def discover(
    container_paths: Sequence[Path],
    *,
    adapter: DiscoveryAdapter | None = None,
    grouping: GroupingStrategy = "fixture",
    strict: bool = True,
) -> Catalog:
    """Build a fresh catalog for the given containers.

    Args:
        container_paths: Test containers, in the order they should appear
        adapter: Adapter to use for every container; picked per container
            from its suffix when omitted
        grouping: Group tests under fixtures or under category tags
        strict: Raise on the first container that fails to load; otherwise
            keep it in the catalog with a ``load_error`` status

    Returns:
        A catalog with every test in ``not_run`` state

    Raises:
        LoadError: If a container cannot be loaded and ``strict`` is set

    """
    catalog = Catalog(grouping=grouping)

    for raw_path in container_paths:
        path = Path(raw_path).resolve()
        try:
            discovered = list_container(path, adapter)
        except LoadError as e:
            if strict:
                raise
            log.warning("Failed to load %s: %s", path, e)
            catalog.assemblies.append(
                AssemblyNode(path=str(path), load_status="load_error", load_error=str(e))
            )
            continue

        catalog.assemblies.append(add_assembly(catalog, str(path), discovered))

    log.info(
        "Discovered %d test(s) in %d container(s)",
        len(catalog),
        len(catalog.assemblies),
    )
    return catalog


def list_container(
    path: Path, adapter: DiscoveryAdapter | None
) -> Sequence[DiscoveredTest]:
    """Run the matching adapter over ``path``."""
    if adapter is None:
        try:
            adapter = load_discovery_adapter(adapter_key_for(path))
        except AdapterNotFoundError as e:
            raise LoadError(str(e)) from e
    return adapter.list_tests(path)


def add_assembly(
    catalog: Catalog, container: str, discovered: Sequence[DiscoveredTest]
) -> AssemblyNode:
    """Index ``discovered`` into ``catalog`` and return the grouped assembly node."""
    fixtures: dict[str, FixtureNode] = {}
    categories: dict[str, CategoryNode] = {}

    for entry in discovered:
        test_id = TestId(container=container, fixture=entry.fixture, name=entry.name)
        if test_id in catalog.tests:
            log.warning("Ignoring duplicate test declaration %s", test_id)
            continue

        node = TestNode(id=test_id, categories=tuple(entry.categories))
        catalog.tests[test_id] = node

        fixture = fixtures.get(entry.fixture)
        if fixture is None:
            fixture = fixtures[entry.fixture] = FixtureNode(
                name=entry.fixture, setup=entry.setup, teardown=entry.teardown
            )
        fixture.tests.append(node)

        for tag in node.category_tags:
            catalog.categories.setdefault(tag, []).append(test_id)
            categories.setdefault(tag, CategoryNode(name=tag)).tests.append(node)

    groups: list[GroupNode]
    if catalog.grouping == "category":
        groups = list(categories.values())
    else:
        groups = list(fixtures.values())

    return AssemblyNode(path=container, groups=groups)
