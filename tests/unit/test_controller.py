"""Tests for the run controller."""

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import Mock, call

import pytest

from host_test_runner.controller import (
    CANCELLED_MESSAGE,
    InvalidTransitionError,
    RunController,
)
from host_test_runner.events import Listeners, RunListener
from host_test_runner.models.catalog import Catalog, TestId
from host_test_runner.models.config import RunConfiguration
from host_test_runner.models.result import NO_RESULT_MESSAGE, RunResult
from host_test_runner.results import ResultsDocument
from host_test_runner.supervisor import LaunchError, ProcessOutcome
from host_test_runner.testing.launchers import BlockingLauncher, FakeLauncher


@pytest.fixture
def listener() -> Mock:
    """Create mock listener."""
    return Mock(spec=RunListener)


@pytest.fixture
def config(tmp_path: Path, catalog: Catalog) -> RunConfiguration:
    """Create a batch run of every test in the sample catalog."""
    return RunConfiguration(
        working_directory=tmp_path / "work",
        results_path=tmp_path / "results.xml",
        host_executable=tmp_path / "host",
        timeout_ms=2000,
        tests=tuple(catalog.tests),
    )


def make_controller(
    catalog: Catalog, launcher: FakeLauncher, listener: Mock | None = None
) -> RunController:
    listeners = Listeners([listener] if listener is not None else [])
    return RunController(
        catalog_source=lambda: catalog, listeners=listeners, launcher=launcher
    )


def states(catalog: Catalog) -> dict[str, str]:
    return {node.id.name: node.run_state for node in catalog}


async def wait_until(predicate: Callable[[], bool]) -> None:
    async with asyncio.timeout(5):
        while not predicate():
            await asyncio.sleep(0.01)


async def test_completed_run(
    catalog: Catalog, config: RunConfiguration, listener: Mock
) -> None:
    """Runs the batch, records outcomes and walks through every run state."""
    launcher = FakeLauncher(outcomes={"test_join_walls": "failure"})
    controller = make_controller(catalog, launcher, listener)

    state = await controller.run(config)

    assert state == "completed"
    assert controller.state == "idle"
    assert len(launcher.calls) == 1
    assert states(catalog) == {
        "test_create_wall": "success",
        "test_join_walls": "failure",
        "test_create_floor": "success",
        "slab_edges": "success",
        "test_pitched_roof": "success",
    }
    assert listener.on_state_changed.call_args_list == [
        call("preparing"),
        call("running"),
        call("completed"),
        call("idle"),
    ]
    assert listener.on_test_completed.call_count == 5
    assert listener.on_test_failed.call_count == 1
    listener.on_invocation_completed.assert_called_once()

    document = ResultsDocument.load(config.results_path)
    assert [r.test for r in document.records] == list(catalog.tests)


async def test_artifacts_are_cleaned_up(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Generated journals are removed unless clean-up is disabled."""
    await make_controller(catalog, FakeLauncher()).run(config)
    assert list(config.working_directory.iterdir()) == []

    kept = config.model_copy(update={"clean_up": False})
    await make_controller(catalog, FakeLauncher()).run(kept)
    assert sorted(p.suffix for p in kept.working_directory.iterdir()) == [
        ".journal",
        ".xml",
        ".xml",
    ]


async def test_results_are_truncated_without_concatenation(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Records from earlier runs are dropped when not concatenating."""
    stale = RunResult(
        test=TestId(container="/old/old.py", fixture="old.Old", name="test_old"),
        outcome="success",
    )
    ResultsDocument(records=[stale]).save(config.results_path)

    await make_controller(catalog, FakeLauncher()).run(config)

    records = ResultsDocument.load(config.results_path).records
    assert len(records) == 5
    assert stale not in records


async def test_rerun_writes_identical_results(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Running the same selection twice leaves the same document."""
    controller = make_controller(catalog, FakeLauncher())

    await controller.run(config)
    first = config.results_path.read_bytes()
    await controller.run(config)

    assert config.results_path.read_bytes() == first


async def test_concatenation_keeps_history(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Concatenated runs append every record."""
    concat = config.model_copy(update={"concatenate": True})
    controller = make_controller(catalog, FakeLauncher())

    await controller.run(concat)
    await controller.run(concat)

    assert len(ResultsDocument.load(config.results_path)) == 10


async def test_crash_isolates_unreported_test_next_run(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """A test lost with its host runs alone until it reports a real result."""
    crashing = FakeLauncher(silent={"test_create_floor"})
    controller = make_controller(catalog, crashing)

    await controller.run(config)

    node = next(n for n in catalog if n.id.name == "test_create_floor")
    assert node.run_state == "failure"
    assert node.message == NO_RESULT_MESSAGE
    assert controller.quarantine == {node.id}

    healthy = FakeLauncher()
    controller.launcher = healthy
    await controller.run(config)

    assert [list(i.tests) for i in healthy.calls][1] == [node.id]
    assert len(healthy.calls[0].tests) == 4
    assert controller.quarantine == set()


async def test_quarantine_is_seeded_from_previous_results(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """A test that timed out in an earlier session starts isolated."""
    hung = next(iter(catalog.tests))
    ResultsDocument(
        records=[RunResult(test=hung, outcome="timed_out", duration=2.0)]
    ).save(config.results_path)
    launcher = FakeLauncher()

    await make_controller(catalog, launcher).run(config)

    assert len(launcher.calls) == 2
    assert list(launcher.calls[1].tests) == [hung]


async def test_timeout_marks_unreported_tests(
    catalog: Catalog, config: RunConfiguration, listener: Mock
) -> None:
    """Tests still pending at the deadline end timed_out."""
    launcher = FakeLauncher(
        kind="timed_out",
        silent={"slab_edges", "test_pitched_roof"},
        message="host did not finish within 2000 ms",
    )

    state = await make_controller(catalog, launcher, listener).run(config)

    assert state == "completed"
    assert states(catalog)["slab_edges"] == "timed_out"
    assert states(catalog)["test_pitched_roof"] == "timed_out"
    assert states(catalog)["test_create_wall"] == "success"
    assert listener.on_test_timed_out.call_count == 2


async def test_launch_error_faults_the_run(
    catalog: Catalog, config: RunConfiguration, listener: Mock
) -> None:
    """A host that cannot start faults the run and leaves later tests not_run."""
    per_test = config.model_copy(update={"granularity": "per_test"})
    launcher = FakeLauncher(kind="launch_error", message="Host executable not found")
    controller = make_controller(catalog, launcher, listener)

    state = await controller.run(per_test)

    assert state == "faulted"
    assert controller.state == "idle"
    assert isinstance(controller.error, LaunchError)
    assert len(launcher.calls) == 1
    assert list(states(catalog).values()) == [
        "failure",
        "not_run",
        "not_run",
        "not_run",
        "not_run",
    ]
    listener.on_run_faulted.assert_called_once_with(controller.error)
    assert listener.on_state_changed.call_args_list[-2:] == [
        call("faulted"),
        call("idle"),
    ]
    (record,) = ResultsDocument.load(config.results_path).records
    assert record.synthesized is True
    assert record.stack_trace == "Host executable not found"


async def test_unexpected_error_faults_the_run(
    catalog: Catalog, config: RunConfiguration, listener: Mock
) -> None:
    """An exception while running leaves no test stuck in running."""

    async def broken(*args: object, **kwargs: object) -> ProcessOutcome:
        raise RuntimeError("host API crashed")

    controller = make_controller(catalog, FakeLauncher(), listener)
    controller.launcher = broken

    state = await controller.run(config)

    assert state == "faulted"
    assert isinstance(controller.error, RuntimeError)
    assert all(node.run_state == "failure" for node in catalog)
    assert all("host API crashed" in node.message for node in catalog)
    listener.on_run_faulted.assert_called_once_with(controller.error)


async def test_cancel_during_launch(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Cancelling stops the run and fails the interrupted tests."""
    launcher = BlockingLauncher()
    controller = make_controller(catalog, launcher)

    task = asyncio.create_task(controller.run(config))
    await asyncio.wait_for(launcher.started.wait(), timeout=5)
    assert controller.is_busy
    controller.request_cancel()

    assert await task == "cancelled"
    assert controller.state == "idle"
    assert all(node.run_state == "failure" for node in catalog)
    assert all(node.message == CANCELLED_MESSAGE for node in catalog)
    assert controller.quarantine == set()
    assert len(ResultsDocument.load(config.results_path)) == 0


async def test_second_run_while_busy_is_rejected(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Only one run may be active on a controller."""
    launcher = BlockingLauncher()
    controller = make_controller(catalog, launcher)
    task = asyncio.create_task(controller.run(config))
    await asyncio.wait_for(launcher.started.wait(), timeout=5)

    with pytest.raises(InvalidTransitionError, match="while running"):
        await controller.run(config)

    controller.request_cancel()
    await task


async def test_continuous_run_waits_for_retrigger(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """A continuous run repeats on each retrigger until cancelled."""
    launcher = FakeLauncher()
    controller = make_controller(catalog, launcher)
    task = asyncio.create_task(
        controller.run(config.model_copy(update={"continuous": True}))
    )

    await wait_until(lambda: controller.is_waiting)
    assert len(launcher.calls) == 1

    controller.retrigger()
    await wait_until(lambda: len(launcher.calls) == 2 and controller.is_waiting)

    controller.request_cancel()
    assert await task == "completed"
    assert controller.state == "idle"
    assert not controller.is_waiting


async def test_dry_run_generates_without_launching(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Dry runs keep the generated files and never start a host."""
    launcher = FakeLauncher()

    state = await make_controller(catalog, launcher).run(
        config.model_copy(update={"dry_run": True})
    )

    assert state == "completed"
    assert launcher.calls == []
    assert all(node.run_state == "not_run" for node in catalog)
    assert not config.results_path.exists()
    assert [p.name for p in config.working_directory.glob("*.journal")] == [
        "walls_0001.journal"
    ]


async def test_tests_missing_from_catalog_are_skipped(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Tests removed by a rediscovery are dropped from the run."""
    ghost = TestId(container="/gone/gone.py", fixture="gone.Gone", name="test_gone")
    launcher = FakeLauncher()

    await make_controller(catalog, launcher).run(
        config.model_copy(update={"tests": (ghost, *catalog.tests)})
    )

    assert ghost not in launcher.calls[0].tests
    assert len(launcher.calls[0].tests) == 5


async def test_nothing_to_run_completes(
    catalog: Catalog, config: RunConfiguration, listener: Mock
) -> None:
    """A run whose tests all vanished completes without a launch."""
    ghost = TestId(container="/gone/gone.py", fixture="gone.Gone", name="test_gone")
    launcher = FakeLauncher()

    state = await make_controller(catalog, launcher, listener).run(
        config.model_copy(update={"tests": (ghost,)})
    )

    assert state == "completed"
    assert launcher.calls == []
    assert listener.on_state_changed.call_args_list == [
        call("preparing"),
        call("completed"),
        call("idle"),
    ]


async def test_kept_artifact_is_not_reused_by_next_launch(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """A host that reports nothing is not credited with the previous run's report."""
    kept = config.model_copy(update={"clean_up": False})
    await make_controller(catalog, FakeLauncher()).run(kept)
    assert all(node.run_state == "success" for node in catalog)

    silent = FakeLauncher(exit_code=1, writes_results=False)
    state = await make_controller(catalog, silent).run(kept)

    assert state == "completed"
    assert all(node.run_state == "failure" for node in catalog)
    assert all(node.message == NO_RESULT_MESSAGE for node in catalog)
    records = ResultsDocument.load(kept.results_path).records
    assert all(record.synthesized for record in records)


async def test_reported_failure_named_like_cancellation_leaves_quarantine(
    catalog: Catalog, config: RunConfiguration
) -> None:
    """Quarantine follows the invocation, not the wording of a failure."""
    isolated = next(iter(catalog.tests))
    launcher = FakeLauncher(
        outcomes={isolated.name: "failure"},
        messages={isolated.name: CANCELLED_MESSAGE},
    )
    controller = make_controller(catalog, launcher)
    controller.quarantine.add(isolated)

    await controller.run(config)

    assert catalog.tests[isolated].message == CANCELLED_MESSAGE
    assert controller.quarantine == set()
