"""Tests for journal and run configuration generation."""

from pathlib import Path

import pytest

from host_test_runner.models.catalog import TestId
from host_test_runner.models.config import RunConfiguration
from host_test_runner.script import (
    JOURNAL_HEADER,
    Invocation,
    generate_script,
    plan_invocations,
    read_journal,
    read_run_configuration,
)

WALLS = "/tests/walls.py"
ROOFS = "/tests/roofs.py"


def make_test(container: str, name: str) -> TestId:
    return TestId(container=container, fixture=f"{Path(container).stem}.Tests", name=name)


@pytest.fixture
def tests() -> list[TestId]:
    """Create tests spread over two containers."""
    return [
        make_test(WALLS, "test_a"),
        make_test(WALLS, "test_b"),
        make_test(ROOFS, "test_c"),
        make_test(WALLS, "test_d"),
    ]


@pytest.fixture
def config(tmp_path: Path) -> RunConfiguration:
    """Create run configuration rooted in a temporary directory."""
    return RunConfiguration(
        working_directory=tmp_path / "work",
        results_path=tmp_path / "results.xml",
        host_executable=tmp_path / "host",
    )


def test_batch_plan_groups_by_container(tests: list[TestId]) -> None:
    """Batch granularity launches once per container, keeping test order."""
    invocations = plan_invocations(tests, "batch")

    assert [(i.index, i.container, [t.name for t in i.tests]) for i in invocations] == [
        (1, WALLS, ["test_a", "test_b", "test_d"]),
        (2, ROOFS, ["test_c"]),
    ]


def test_per_test_plan_launches_each_test(tests: list[TestId]) -> None:
    """Per-test granularity gives every test its own launch."""
    invocations = plan_invocations(tests, "per_test")

    assert [i.index for i in invocations] == [1, 2, 3, 4]
    assert [list(i.tests) for i in invocations] == [[t] for t in tests]


def test_isolated_tests_run_alone_after_their_batch(tests: list[TestId]) -> None:
    """Isolated tests leave the batch and follow it one launch each."""
    invocations = plan_invocations(tests, "batch", isolate={tests[1]})

    assert [[t.name for t in i.tests] for i in invocations] == [
        ["test_a", "test_d"],
        ["test_b"],
        ["test_c"],
    ]


def test_fully_isolated_container_has_no_batch(tests: list[TestId]) -> None:
    """A container whose tests are all isolated only gets single launches."""
    invocations = plan_invocations(tests, "batch", isolate={tests[2]})

    assert [[t.name for t in i.tests] for i in invocations] == [
        ["test_a", "test_b", "test_d"],
        ["test_c"],
    ]


def test_empty_plan() -> None:
    """No tests means no launches."""
    assert plan_invocations([], "batch") == []


def test_generate_script_writes_journal_and_configuration(
    config: RunConfiguration, tests: list[TestId]
) -> None:
    """The journal names the add-in and the run configuration lists the tests."""
    (invocation,) = plan_invocations(tests[:2], "batch")

    artifact = generate_script(config, invocation)

    work = config.working_directory.resolve()
    assert artifact.journal_path == work / "walls_0001.journal"
    assert artifact.run_config_path == work / "walls_0001.config.xml"
    assert artifact.results_path == work / "walls_0001.results.xml"
    assert not artifact.results_path.exists()

    journal = artifact.journal_path.read_text()
    assert journal.startswith(JOURNAL_HEADER)
    assert read_journal(artifact.journal_path) == {
        "addin": config.addin,
        "run_config": str(artifact.run_config_path),
    }

    instructions = read_run_configuration(artifact.run_config_path)
    assert instructions.container == WALLS
    assert list(instructions.tests) == tests[:2]
    assert instructions.results_path == artifact.results_path
    assert instructions.debug is False


def test_generate_script_is_deterministic(
    config: RunConfiguration, tests: list[TestId]
) -> None:
    """Identical inputs produce byte-identical files."""
    invocation = Invocation(index=3, container=WALLS, tests=tuple(tests[:2]))

    first = generate_script(config, invocation)
    journal = first.journal_path.read_bytes()
    run_config = first.run_config_path.read_bytes()
    second = generate_script(config, invocation)

    assert second == first
    assert second.journal_path.read_bytes() == journal
    assert second.run_config_path.read_bytes() == run_config


def test_generate_script_records_debug(
    config: RunConfiguration, tests: list[TestId]
) -> None:
    """Debug runs tell the add-in to wait for a debugger."""
    invocation = Invocation(index=1, container=WALLS, tests=(tests[0],))

    artifact = generate_script(config.model_copy(update={"debug": True}), invocation)

    assert read_run_configuration(artifact.run_config_path).debug is True


def test_generate_script_discards_earlier_host_output(
    config: RunConfiguration, tests: list[TestId]
) -> None:
    """Results left by an earlier launch of the same invocation are deleted."""
    invocation = Invocation(index=1, container=WALLS, tests=(tests[0],))
    first = generate_script(config, invocation)
    first.results_path.write_text("<testResults/>")

    second = generate_script(config, invocation)

    assert second.results_path == first.results_path
    assert not second.results_path.exists()
    assert second.journal_path.exists()


def test_artifact_remove_deletes_generated_files(
    config: RunConfiguration, tests: list[TestId]
) -> None:
    """Removing an artifact deletes its files, including host output."""
    invocation = Invocation(index=1, container=WALLS, tests=(tests[0],))
    artifact = generate_script(config, invocation)
    artifact.results_path.write_text("<testResults/>")

    artifact.remove()
    artifact.remove()

    assert not artifact.journal_path.exists()
    assert not artifact.run_config_path.exists()
    assert not artifact.results_path.exists()


def test_read_run_configuration_rejects_other_documents(tmp_path: Path) -> None:
    """Raises ValueError for documents with another root element."""
    path = tmp_path / "other.xml"
    path.write_text("<testResults/>")

    with pytest.raises(ValueError, match="Not a run configuration"):
        read_run_configuration(path)
