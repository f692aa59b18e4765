"""Abstract base class for test discovery adapters."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class LoadError(Exception):
    """Raised when a container is missing, malformed or has unresolved dependencies."""


@dataclass(frozen=True, kw_only=True)
class DiscoveredTest:
    """A test entry declared by a container, as reported by an adapter."""

    __test__ = False

    fixture: str
    name: str
    categories: Sequence[str] = ()
    setup: str | None = None
    teardown: str | None = None


class DiscoveryAdapter(ABC):
    """Lists the tests a container declares without executing any test code."""

    @abstractmethod
    def list_tests(self, container: Path) -> Sequence[DiscoveredTest]:
        """Return the declared tests in declaration order.

        Args:
            container: Path to the test container

        Returns:
            Declared tests, fixture by fixture

        Raises:
            LoadError: If the container cannot be read or resolved

        """

    def ensure_exists(self, container: Path) -> None:
        if not container.is_file():
            raise LoadError(f"Test container not found: {container}")
