"""Models for the discovered test catalog."""

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Literal

type RunState = Literal["not_run", "running", "success", "failure", "timed_out"]
type GroupingStrategy = Literal["fixture", "category"]
type LoadStatus = Literal["loaded", "load_error"]

TERMINAL_STATES: frozenset[RunState] = frozenset({"success", "failure", "timed_out"})

ALLOWED_TRANSITIONS: Mapping[RunState, frozenset[RunState]] = {
    "not_run": frozenset({"running"}),
    "running": TERMINAL_STATES,
    "success": frozenset(),
    "failure": frozenset(),
    "timed_out": frozenset(),
}

UNCATEGORIZED = "Uncategorized"


class RunStateError(RuntimeError):
    """Raised when a test node is moved backwards through its run states."""


@dataclass(frozen=True, order=True)
class TestId:
    """Identity of a test: its container, fixture and method name."""

    __test__ = False

    container: str
    fixture: str
    name: str

    @property
    def fixture_short_name(self) -> str:
        """Fixture name without its module or namespace prefix."""
        return self.fixture.rsplit(".", 1)[-1]

    def __str__(self) -> str:
        return f"{self.fixture}.{self.name}"


@dataclass(kw_only=True)
class TestNode:
    """A single test in the catalog along with its latest run state."""

    __test__ = False

    id: TestId
    categories: Sequence[str] = ()
    run_state: RunState = "not_run"
    message: str = ""
    stack_trace: str = ""
    duration: float = 0.0
    should_run: bool = False

    @property
    def category_tags(self) -> Sequence[str]:
        """Tags used for grouping and selection, ``Uncategorized`` when untagged."""
        return self.categories or (UNCATEGORIZED,)

    def transition(
        self,
        state: RunState,
        *,
        message: str = "",
        stack_trace: str = "",
        duration: float = 0.0,
    ) -> None:
        """Move the node to ``state``, refusing anything but forward progress."""
        if state not in ALLOWED_TRANSITIONS[self.run_state]:
            raise RunStateError(
                f"Cannot move {self.id} from {self.run_state} to {state}"
            )
        self.run_state = state
        self.message = message
        self.stack_trace = stack_trace
        self.duration = duration

    def reset(self) -> None:
        """Forget the previous run before the node is scheduled again."""
        if self.run_state == "running":
            raise RunStateError(f"Cannot reset {self.id} while it is running")
        self.run_state = "not_run"
        self.message = ""
        self.stack_trace = ""
        self.duration = 0.0


@dataclass(kw_only=True)
class FixtureNode:
    """A test class and the tests it declares."""

    name: str
    setup: str | None = None
    teardown: str | None = None
    tests: list[TestNode] = field(default_factory=list)


@dataclass(kw_only=True)
class CategoryNode:
    """Tests sharing a category tag, used when grouping by category."""

    name: str
    tests: list[TestNode] = field(default_factory=list)


type GroupNode = FixtureNode | CategoryNode


@dataclass(kw_only=True)
class AssemblyNode:
    """A test container and its groups of tests."""

    path: str
    load_status: LoadStatus = "loaded"
    load_error: str | None = None
    groups: list[GroupNode] = field(default_factory=list)

    @property
    def name(self) -> str:
        return PurePath(self.path).name


@dataclass(kw_only=True)
class Catalog:
    """Hierarchy of discovered tests plus flat indexes over it.

    ``tests`` preserves discovery order and ``categories`` maps each tag to the
    ids it applies to. The category index never owns nodes; with category
    grouping the same ``TestNode`` appears under every one of its tags.
    """

    grouping: GroupingStrategy = "fixture"
    assemblies: list[AssemblyNode] = field(default_factory=list)
    tests: dict[TestId, TestNode] = field(default_factory=dict)
    categories: dict[str, list[TestId]] = field(default_factory=dict)

    def __iter__(self) -> Iterator[TestNode]:
        return iter(self.tests.values())

    def __len__(self) -> int:
        return len(self.tests)

    def get(self, test_id: TestId) -> TestNode | None:
        return self.tests.get(test_id)

    def runnable(self) -> Sequence[TestId]:
        """Ids of the tests currently flagged to run, in catalog order."""
        return [node.id for node in self.tests.values() if node.should_run]

    def fixtures(self) -> Sequence[str]:
        """Distinct fixture names in discovery order."""
        return list(dict.fromkeys(test_id.fixture for test_id in self.tests))
