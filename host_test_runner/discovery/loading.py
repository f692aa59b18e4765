"""Loading of discovery adapters from entry points."""

from importlib.metadata import entry_points
from pathlib import Path

from host_test_runner.discovery.base import DiscoveryAdapter

ENTRY_POINT_GROUP = "host_test_runner.discovery"

SUFFIX_TO_ADAPTER = {
    ".py": "python",
    ".yaml": "manifest",
    ".yml": "manifest",
}


class AdapterNotFoundError(Exception):
    """Raised when a discovery adapter is not found."""


def adapter_key_for(container: Path) -> str:
    """Pick the adapter key matching a container's file suffix."""
    try:
        return SUFFIX_TO_ADAPTER[container.suffix.lower()]
    except KeyError:
        raise AdapterNotFoundError(
            f"No discovery adapter handles '{container.suffix}' containers "
            f"({container})"
        ) from None


def load_discovery_adapter(key: str) -> DiscoveryAdapter:
    """Load a discovery adapter by key.

    Args:
        key: The adapter key as registered in pyproject.toml
             (e.g., "python", "manifest")

    Returns:
        A new adapter instance

    Raises:
        AdapterNotFoundError: If no adapter with the given key is found

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)

    for entry in entries:
        if entry.name == key:
            adapter_cls: type[DiscoveryAdapter] = entry.load()
            return adapter_cls()

    available = [e.name for e in entries]
    raise AdapterNotFoundError(
        f"Discovery adapter '{key}' not found. Available adapters: {available}"
    )
