"""Test discovery: adapters and catalog building."""

from host_test_runner.discovery.base import DiscoveredTest, DiscoveryAdapter, LoadError
from host_test_runner.discovery.builder import discover
from host_test_runner.discovery.loading import (
    AdapterNotFoundError,
    adapter_key_for,
    load_discovery_adapter,
)
from host_test_runner.discovery.manifest import ManifestAdapter
from host_test_runner.discovery.python_source import PythonSourceAdapter

__all__ = [
    "AdapterNotFoundError",
    "DiscoveredTest",
    "DiscoveryAdapter",
    "LoadError",
    "ManifestAdapter",
    "PythonSourceAdapter",
    "adapter_key_for",
    "discover",
    "load_discovery_adapter",
]
