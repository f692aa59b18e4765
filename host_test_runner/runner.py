"""Runner facade consumed by the CLI and by presentation layers."""

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from host_test_runner.controller import ControllerState, Launcher, RunController
from host_test_runner.discovery import discover, load_discovery_adapter
from host_test_runner.events import Listeners, RunListener
from host_test_runner.models.catalog import Catalog, TestId
from host_test_runner.models.config import (
    RunConfiguration,
    RunnerSettings,
    load_settings,
    save_settings,
)
from host_test_runner.selection import (
    Criteria,
    EmptySelectionError,
    RunnableSet,
    criteria_from_filters,
    select,
    selection_summary,
)
from host_test_runner.supervisor import launch

log = logging.getLogger(__name__)

REDISCOVERY_FIELDS = (
    "containers",
    "working_directory",
    "grouping",
    "discovery_adapter",
    "strict_discovery",
)


class RunInProgressError(RuntimeError):
    """Raised when the catalog or settings are changed while a run is active."""


class Runner:
    """Owns the catalog, the settings and the background run task.

    Only the run task mutates the catalog while a run is active; callers may
    read it at any time.
    """

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        listeners: Sequence[RunListener] = (),
        launcher: Launcher = launch,
    ) -> None:
        self.settings = settings
        self.listeners = Listeners(listeners)
        self.catalog = Catalog(grouping=settings.grouping)
        self.controller = RunController(
            catalog_source=self.get_catalog,
            listeners=self.listeners,
            launcher=launcher,
        )
        self._task: asyncio.Task[ControllerState] | None = None

    @classmethod
    def load(cls, path: Path, **kwargs: Any) -> "Runner":
        """Create a runner from a saved session file."""
        return cls(load_settings(path), **kwargs)

    def save(self, path: Path) -> None:
        save_settings(path, self.settings)

    def add_listener(self, listener: RunListener) -> None:
        self.listeners.add(listener)

    def remove_listener(self, listener: RunListener) -> None:
        self.listeners.remove(listener)

    @property
    def is_active(self) -> bool:
        """True from ``start_run`` until the run task has finished."""
        return self._task is not None and not self._task.done()

    def get_catalog(self) -> Catalog:
        return self.catalog

    def discover(self) -> Catalog:
        """Rebuild the catalog from the configured containers.

        Raises:
            LoadError: If a container cannot be loaded and discovery is strict;
                the previous catalog is kept
            AdapterNotFoundError: If the configured discovery adapter is not
                installed
            RunInProgressError: If a run is launching hosts

        """
        if self.controller.is_busy:
            raise RunInProgressError("Cannot rediscover tests during a run")

        adapter = None
        if self.settings.discovery_adapter:
            adapter = load_discovery_adapter(self.settings.discovery_adapter)

        self.catalog = discover(
            self.settings.containers,
            adapter=adapter,
            grouping=self.settings.grouping,
            strict=self.settings.strict_discovery,
        )
        self.listeners.emit("on_discovery_completed", self.catalog)
        return self.catalog

    def refresh(self) -> Catalog | None:
        """Entry point for file watchers when a container changes on disk.

        Ignored while hosts are running. A continuous run that is waiting is
        retriggered against the fresh catalog.
        """
        if self.controller.is_busy:
            log.info("Ignoring container change while a run is active")
            return None

        catalog = self.discover()
        if self.controller.is_waiting:
            self.controller.retrigger()
        return catalog

    def configure(self, **changes: Any) -> None:
        """Update settings, rediscovering when the catalog's inputs changed."""
        if self.is_active:
            raise RunInProgressError("Cannot change settings during a run")

        updated = RunnerSettings.model_validate(
            {**self.settings.model_dump(), **changes}
        )
        rebuild = any(
            getattr(updated, name) != getattr(self.settings, name)
            for name in REDISCOVERY_FIELDS
        )
        self.settings = updated
        if rebuild:
            self.discover()

    def select(self, criteria: Criteria) -> RunnableSet:
        if self.controller.is_busy:
            raise RunInProgressError("Cannot change the selection during a run")
        return select(self.catalog, criteria)

    def select_from_settings(self) -> RunnableSet:
        """Apply the test, fixture, category and exclusion filters of the settings."""
        return self.select(
            criteria_from_filters(
                test=self.settings.test,
                fixture=self.settings.fixture,
                category=self.settings.category,
                exclude=self.settings.excluded_category,
            )
        )

    def get_runnable_tests(self) -> Sequence[TestId]:
        return self.catalog.runnable()

    def can_run(self) -> bool:
        return not self.is_active and bool(self.get_runnable_tests())

    def summary(self) -> str:
        return selection_summary(self.catalog)

    def start_run(
        self, config: RunConfiguration | None = None
    ) -> asyncio.Task[ControllerState]:
        """Start a run on a background task and return the task.

        Without ``config`` the run covers the currently selected tests using
        the runner's settings.

        Raises:
            RunInProgressError: If a run is already active
            EmptySelectionError: If there is nothing to run
            ConfigurationError: If the settings lack a host or results path

        """
        if self.is_active:
            raise RunInProgressError("A run is already active")

        tests = config.tests if config is not None else self.get_runnable_tests()
        if not tests:
            raise EmptySelectionError("No tests selected to run")
        if config is None:
            config = self.settings.to_run_configuration(tests)

        self._task = asyncio.create_task(
            self.controller.run(config), name="host-test-runner"
        )
        return self._task

    async def wait(self) -> ControllerState | None:
        """Wait for the active run; return how it ended, or None if none ran."""
        if self._task is None:
            return None
        return await self._task

    async def run(self, config: RunConfiguration | None = None) -> ControllerState:
        """Start a run and wait for it to end."""
        return await self.start_run(config)

    async def cancel(self) -> ControllerState | None:
        """Cancel the active run and return once its host processes are gone."""
        if not self.is_active:
            return None
        self.controller.request_cancel()
        return await self.wait()
