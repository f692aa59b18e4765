"""Run controller: sequences host launches for a run and tracks its state.

States move only through ``RunController._transition``::

    idle -> preparing -> running -> completed | cancelled | faulted -> idle

A continuous run goes from ``completed`` back to ``preparing`` each time it is
retriggered, reusing the same configuration.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Literal, Protocol

from host_test_runner.collector import collect
from host_test_runner.events import Listeners
from host_test_runner.models.catalog import Catalog, TestId
from host_test_runner.models.config import RunConfiguration
from host_test_runner.models.result import RunResult
from host_test_runner.results import ResultsDocument, ResultsFormatError
from host_test_runner.script import (
    Invocation,
    ScriptArtifact,
    generate_script,
    plan_invocations,
)
from host_test_runner.supervisor import (
    HostProcessHandle,
    LaunchError,
    ProcessOutcome,
    launch,
)

log = logging.getLogger(__name__)

type ControllerState = Literal[
    "idle", "preparing", "running", "completed", "cancelled", "faulted"
]

TRANSITIONS: Mapping[ControllerState, frozenset[ControllerState]] = {
    "idle": frozenset({"preparing"}),
    "preparing": frozenset({"running", "completed", "cancelled", "faulted"}),
    "running": frozenset({"completed", "cancelled", "faulted"}),
    "completed": frozenset({"idle", "preparing"}),
    "cancelled": frozenset({"idle"}),
    "faulted": frozenset({"idle"}),
}

CANCELLED_MESSAGE = "run cancelled"


class InvalidTransitionError(RuntimeError):
    """Raised when the controller is asked to make a transition it does not allow."""


class Launcher(Protocol):
    """Signature of the host launch step, see ``supervisor.launch``."""

    def __call__(
        self,
        host_executable: Path,
        artifact: ScriptArtifact,
        timeout_ms: int | None,
        cancel_event: asyncio.Event,
        *,
        cwd: Path,
        on_started: Callable[[HostProcessHandle], None] | None = None,
    ) -> Awaitable[ProcessOutcome]: ...


def needs_isolation(result: RunResult) -> bool:
    """A test that hung or was lost with its host must run alone next time."""
    return result.outcome == "timed_out" or result.synthesized


class RunController:
    """Drives one run at a time on a single worker task."""

    def __init__(
        self,
        *,
        catalog_source: Callable[[], Catalog],
        listeners: Listeners | None = None,
        launcher: Launcher = launch,
    ) -> None:
        self.catalog_source = catalog_source
        self.listeners = listeners or Listeners()
        self.launcher = launcher
        self.quarantine: set[TestId] = set()
        self.active_handle: HostProcessHandle | None = None
        self.error: BaseException | None = None
        self._state: ControllerState = "idle"
        self._continuous = False
        self._cancel = asyncio.Event()
        self._retrigger = asyncio.Event()

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def is_busy(self) -> bool:
        """True while a run is preparing or launching hosts."""
        return self._state in ("preparing", "running")

    @property
    def is_waiting(self) -> bool:
        """True while a continuous run waits for its next trigger."""
        return self._state == "completed" and self._continuous

    def request_cancel(self) -> None:
        """Ask the run to stop; the active host, if any, is killed."""
        self._cancel.set()

    def retrigger(self) -> None:
        """Start the next cycle of a waiting continuous run."""
        self._retrigger.set()

    def _transition(self, state: ControllerState) -> None:
        if state not in TRANSITIONS[self._state]:
            raise InvalidTransitionError(f"Cannot move from {self._state} to {state}")
        log.info("Run state %s -> %s", self._state, state)
        self._state = state
        self.listeners.emit("on_state_changed", state)

    async def run(self, config: RunConfiguration) -> ControllerState:
        """Execute ``config`` and return how the run ended.

        Returns ``completed``, ``cancelled`` or ``faulted``; the controller is
        back in ``idle`` when this returns.
        """
        if self._state != "idle":
            raise InvalidTransitionError(f"Cannot start a run while {self._state}")

        self._cancel.clear()
        self._retrigger.clear()
        self._continuous = config.continuous
        self.error = None
        outcome: ControllerState = "faulted"

        try:
            while True:
                outcome = await self._run_sequence(config)
                if outcome != "completed" or not config.continuous:
                    break
                if not await self._wait_for_retrigger():
                    break
        except Exception as e:
            log.exception("Run faulted")
            self.error = e
            outcome = "faulted"
            if self.is_busy:
                self._transition("faulted")
            self.listeners.emit("on_run_faulted", e)
        finally:
            self.active_handle = None
            self._continuous = False
            if self.is_busy:
                outcome = "cancelled"
                self._transition("cancelled")
            if self._state != "idle":
                self._transition("idle")

        return outcome

    async def _wait_for_retrigger(self) -> bool:
        log.info("Waiting for changes before the next continuous cycle")
        retrigger = asyncio.create_task(self._retrigger.wait())
        cancel = asyncio.create_task(self._cancel.wait())
        try:
            await asyncio.wait({retrigger, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            retrigger.cancel()
            cancel.cancel()

        if self._cancel.is_set():
            log.info("Continuous run stopped")
            return False
        self._retrigger.clear()
        return True

    async def _run_sequence(self, config: RunConfiguration) -> ControllerState:
        self._transition("preparing")
        catalog = self.catalog_source()

        tests = [test for test in config.tests if test in catalog.tests]
        if missing := len(config.tests) - len(tests):
            log.warning("%d selected test(s) are no longer in the catalog", missing)
        for test in tests:
            catalog.tests[test].reset()

        document = self._prepare_document(config)
        invocations = plan_invocations(
            tests, config.granularity, isolate=self.quarantine.intersection(tests)
        )
        if not invocations:
            log.info("Nothing to run")
            self._transition("completed")
            return "completed"

        log.info(
            "Running %d test(s) in %d host launch(es)", len(tests), len(invocations)
        )
        self._transition("running")

        for invocation in invocations:
            if self._cancel.is_set():
                self._transition("cancelled")
                return "cancelled"

            state = await self._run_invocation(config, catalog, document, invocation)
            if state is not None:
                self._transition(state)
                return state

        self._transition("completed")
        return "completed"

    def _prepare_document(self, config: RunConfiguration) -> ResultsDocument:
        """Load prior results, seed the quarantine and truncate when not concatenating."""
        try:
            previous = ResultsDocument.load(config.results_path)
        except ResultsFormatError:
            if config.concatenate:
                raise
            log.warning("Discarding unreadable results %s", config.results_path)
            previous = ResultsDocument()

        self.quarantine.update(
            record.test
            for record in previous.latest().values()
            if needs_isolation(record)
        )
        if config.concatenate:
            return previous

        document = ResultsDocument()
        if not config.dry_run:
            document.save(config.results_path)
        return document

    async def _run_invocation(
        self,
        config: RunConfiguration,
        catalog: Catalog,
        document: ResultsDocument,
        invocation: Invocation,
    ) -> ControllerState | None:
        """Run one host launch; return a terminal state if the run must stop."""
        artifact = generate_script(config, invocation)
        if config.dry_run:
            log.info(
                "Dry run: generated %s for %d test(s)",
                artifact.journal_path,
                len(invocation.tests),
            )
            return None

        try:
            for test in invocation.tests:
                catalog.tests[test].transition("running")

            outcome = await self.launcher(
                config.host_executable,
                artifact,
                config.launch_timeout_ms,
                self._cancel,
                cwd=config.working_directory,
                on_started=self._host_started,
            )
            self.active_handle = None

            if outcome.kind == "cancelled":
                self._apply(
                    catalog, self._cancelled_results(invocation), cancelled=True
                )
                return "cancelled"

            collection = collect(config, artifact, outcome)
            document.merge(collection.results, concatenate=config.concatenate)
            document.save(config.results_path)
            self._apply(catalog, collection.results)
            self.listeners.emit(
                "on_invocation_completed", invocation, collection.results
            )
        except BaseException as e:
            for test in invocation.tests:
                node = catalog.tests[test]
                if node.run_state == "running":
                    node.transition("failure", message=f"run faulted: {e!r}")
            raise
        finally:
            if config.clean_up:
                artifact.remove()

        if outcome.kind == "launch_error":
            self.error = LaunchError(outcome.message)
            self.listeners.emit("on_run_faulted", self.error)
            return "faulted"
        return None

    def _host_started(self, handle: HostProcessHandle) -> None:
        self.active_handle = handle
        self.listeners.emit("on_host_started", handle)

    def _cancelled_results(self, invocation: Invocation) -> Sequence[RunResult]:
        return [
            RunResult(
                test=test,
                outcome="failure",
                message=CANCELLED_MESSAGE,
                synthesized=True,
            )
            for test in invocation.tests
        ]

    def _apply(
        self,
        catalog: Catalog,
        results: Sequence[RunResult],
        *,
        cancelled: bool = False,
    ) -> None:
        """Record final states in the catalog, update the quarantine and notify.

        Results of a cancelled invocation leave the quarantine unchanged.
        """
        for result in results:
            if not cancelled:
                if needs_isolation(result):
                    self.quarantine.add(result.test)
                else:
                    self.quarantine.discard(result.test)

            node = catalog.tests[result.test]
            node.transition(
                result.outcome,
                message=result.message,
                stack_trace=result.stack_trace,
                duration=result.duration,
            )
            self.listeners.test_finished(node, result)
