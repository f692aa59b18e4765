"""Selection of the runnable subset of a catalog."""

import logging
from collections.abc import Collection, Iterator, Sequence
from dataclasses import dataclass

from host_test_runner.models.catalog import Catalog, TestId, TestNode

log = logging.getLogger(__name__)


class SelectionError(Exception):
    """Raised when criteria name something the catalog does not contain."""


class EmptySelectionError(SelectionError):
    """Raised when a run is requested with nothing selected."""


@dataclass(frozen=True, kw_only=True)
class SelectAll:
    """Every test in the catalog."""

    excluded_categories: Collection[str] = ()


@dataclass(frozen=True, kw_only=True)
class SelectTest:
    """A single test."""

    __test__ = False

    test_id: TestId
    excluded_categories: Collection[str] = ()


@dataclass(frozen=True, kw_only=True)
class SelectTestName:
    """A single test named by fixture (full or short name) and method."""

    __test__ = False

    fixture: str
    name: str
    container: str | None = None
    excluded_categories: Collection[str] = ()


@dataclass(frozen=True, kw_only=True)
class SelectFixture:
    """All tests of a fixture, matched by full or short type name."""

    fixture: str
    container: str | None = None
    excluded_categories: Collection[str] = ()


@dataclass(frozen=True, kw_only=True)
class SelectCategory:
    """All tests tagged with a category."""

    category: str
    excluded_categories: Collection[str] = ()


type Criteria = (
    SelectAll | SelectTest | SelectTestName | SelectFixture | SelectCategory
)


@dataclass(frozen=True)
class RunnableSet:
    """Ordered ids of the tests selected for a run."""

    tests: Sequence[TestId]

    def __len__(self) -> int:
        return len(self.tests)

    def __iter__(self) -> Iterator[TestId]:
        return iter(self.tests)

    def __contains__(self, test_id: object) -> bool:
        return test_id in self.tests


def criteria_from_filters(
    *,
    test: str | None = None,
    fixture: str | None = None,
    category: str | None = None,
    exclude: str | None = None,
) -> Criteria:
    """Build criteria from command-line style filters.

    ``test`` is ``Fixture.method`` (fixture full or short name); it wins over
    ``fixture``, which wins over ``category``. No filter selects everything.
    """
    excluded = (exclude,) if exclude else ()
    if test:
        fixture_name, _, method = test.rpartition(".")
        if not fixture_name or not method:
            raise SelectionError(f"Test filter must be 'Fixture.method', got '{test}'")
        return SelectTestName(
            fixture=fixture_name, name=method, excluded_categories=excluded
        )
    if fixture:
        return SelectFixture(fixture=fixture, excluded_categories=excluded)
    if category:
        return SelectCategory(category=category, excluded_categories=excluded)
    return SelectAll(excluded_categories=excluded)


def fixture_matches(test_id: TestId, fixture: str) -> bool:
    return fixture in (test_id.fixture, test_id.fixture_short_name)


def matches(node: TestNode, criteria: Criteria) -> bool:
    """Return True when ``node`` falls inside ``criteria``."""
    if any(tag in criteria.excluded_categories for tag in node.category_tags):
        return False

    match criteria:
        case SelectAll():
            return True
        case SelectTest(test_id=test_id):
            return node.id == test_id
        case SelectTestName(fixture=fixture, name=name, container=container):
            return (
                node.id.name == name
                and fixture_matches(node.id, fixture)
                and container in (None, node.id.container)
            )
        case SelectFixture(fixture=fixture, container=container):
            return fixture_matches(node.id, fixture) and container in (
                None,
                node.id.container,
            )
        case SelectCategory(category=category):
            return category in node.category_tags
    return False


def select(catalog: Catalog, criteria: Criteria) -> RunnableSet:
    """Flag the tests matching ``criteria`` and return them in catalog order.

    Every other test has its flag cleared. Run states are left untouched.

    Raises:
        SelectionError: If a single test is requested that is not in the catalog

    """
    if isinstance(criteria, SelectTest) and criteria.test_id not in catalog.tests:
        raise SelectionError(f"Test not found in catalog: {criteria.test_id}")

    selected: list[TestId] = []
    for node in catalog:
        node.should_run = matches(node, criteria)
        if node.should_run:
            selected.append(node.id)

    if isinstance(criteria, SelectTestName) and not selected:
        raise SelectionError(
            f"Test not found in catalog: {criteria.fixture}.{criteria.name}"
        )

    log.info("%s", selection_summary(catalog))
    return RunnableSet(tuple(selected))


def selection_summary(catalog: Catalog) -> str:
    """Human readable count of selected tests, e.g. ``2 tests selected of 5``."""
    return f"{len(catalog.runnable())} tests selected of {len(catalog)}"
