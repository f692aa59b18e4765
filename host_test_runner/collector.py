"""Turning a host launch into one result per scheduled test."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from host_test_runner.models.catalog import TestId
from host_test_runner.models.config import RunConfiguration
from host_test_runner.models.result import NO_RESULT_MESSAGE, RunResult
from host_test_runner.results import ResultsFormatError, parse_results
from host_test_runner.script import Invocation, ScriptArtifact
from host_test_runner.supervisor import ProcessOutcome

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Collection:
    """Results matched to scheduled tests, plus artifact entries nobody scheduled."""

    results: Sequence[RunResult]
    orphans: Sequence[RunResult] = ()


def read_artifact(path: Path, container: str) -> Sequence[RunResult]:
    """Read the host's results artifact; a missing or corrupt one yields nothing."""
    if not path.exists():
        log.info("Host wrote no results artifact at %s", path)
        return []
    try:
        return parse_results(path.read_bytes(), default_container=container)
    except (OSError, ResultsFormatError) as e:
        log.warning("Ignoring unreadable results artifact %s: %s", path, e)
        return []


def synthesize(
    invocation: Invocation,
    reported: set[TestId],
    outcome: ProcessOutcome,
    timeout_ms: int,
) -> list[RunResult]:
    """Explicit records for every scheduled test the host did not report."""
    missing = [test for test in invocation.tests if test not in reported]
    if outcome.kind == "timed_out":
        return [
            RunResult(
                test=test,
                outcome="timed_out",
                duration=timeout_ms / 1000,
                message=outcome.message or NO_RESULT_MESSAGE,
                synthesized=True,
            )
            for test in missing
        ]
    detail = outcome.message
    if outcome.kind == "exited":
        detail = f"host exited with code {outcome.exit_code}"
    return [
        RunResult(
            test=test,
            outcome="failure",
            message=NO_RESULT_MESSAGE,
            stack_trace=detail,
            synthesized=True,
        )
        for test in missing
    ]


def collect(
    config: RunConfiguration,
    artifact: ScriptArtifact,
    outcome: ProcessOutcome,
) -> Collection:
    """Match the host's results to the invocation's tests.

    Args:
        config: Configuration of the current run
        artifact: Files generated for the invocation, including where the host
            was told to write results
        outcome: How the host launch ended

    Returns:
        One result per scheduled test, in scheduling order, and any orphans

    """
    invocation = artifact.invocation
    scheduled = {(test.fixture, test.name): test for test in invocation.tests}
    reported: dict[TestId, RunResult] = {}
    orphans: list[RunResult] = []

    for result in read_artifact(artifact.results_path, invocation.container):
        test = scheduled.get((result.test.fixture, result.test.name))
        if test is not None:
            reported[test] = replace(result, test=test)
        else:
            log.warning(
                "Orphan result for %s (%s) in %s",
                result.test,
                result.outcome,
                artifact.results_path,
            )
            orphans.append(result)

    synthesized = {
        result.test: result
        for result in synthesize(invocation, set(reported), outcome, config.timeout_ms)
    }
    if synthesized:
        log.warning(
            "No result reported for %d of %d test(s) in invocation %d (%s)",
            len(synthesized),
            len(invocation.tests),
            invocation.index,
            outcome.kind,
        )

    results = [reported.get(test) or synthesized[test] for test in invocation.tests]
    return Collection(results=results, orphans=orphans)
