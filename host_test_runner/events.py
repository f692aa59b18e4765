"""Notifications the runner emits to presentation layers.

Callbacks run on the runner's worker, which is not necessarily the thread or
event loop that registered the listener. Consumers that drive a UI must
marshal the call onto their own loop.
"""

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from host_test_runner.models.catalog import Catalog, TestNode
from host_test_runner.models.result import RunResult

if TYPE_CHECKING:
    from host_test_runner.controller import ControllerState
    from host_test_runner.script import Invocation
    from host_test_runner.supervisor import HostProcessHandle

log = logging.getLogger(__name__)


class RunListener:
    """Base listener; override the notifications you care about."""

    def on_discovery_completed(self, catalog: Catalog) -> None:
        """A new catalog replaced the previous one."""

    def on_state_changed(self, state: "ControllerState") -> None:
        """The run controller moved to ``state``."""

    def on_host_started(self, handle: "HostProcessHandle") -> None:
        """A host process was launched."""

    def on_test_completed(self, node: TestNode, result: RunResult) -> None:
        """A test reached a final state, whatever its outcome."""

    def on_test_failed(self, node: TestNode, result: RunResult) -> None:
        """A test failed, or the host never reported it."""

    def on_test_timed_out(self, node: TestNode, result: RunResult) -> None:
        """A test was still running when its host launch timed out."""

    def on_invocation_completed(
        self, invocation: "Invocation", results: Sequence[RunResult]
    ) -> None:
        """Results of one host launch were merged into the results document."""

    def on_run_faulted(self, error: BaseException) -> None:
        """The run stopped because of ``error``."""


class Listeners:
    """Fan-out of notifications to every registered listener.

    A listener that raises is logged and skipped so it cannot stall a run.
    """

    def __init__(self, listeners: Sequence[RunListener] = ()) -> None:
        self._listeners: list[RunListener] = list(listeners)

    def add(self, listener: RunListener) -> None:
        self._listeners.append(listener)

    def remove(self, listener: RunListener) -> None:
        self._listeners.remove(listener)

    def emit(self, name: str, *args: object) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, name)(*args)
            except Exception:
                log.exception("Listener %r failed handling %s", listener, name)

    def test_finished(self, node: TestNode, result: RunResult) -> None:
        """Emit the completion notification plus the outcome-specific one."""
        self.emit("on_test_completed", node, result)
        if result.outcome == "failure":
            self.emit("on_test_failed", node, result)
        elif result.outcome == "timed_out":
            self.emit("on_test_timed_out", node, result)
