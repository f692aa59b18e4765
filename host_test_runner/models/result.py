"""Models for test execution results."""

from dataclasses import dataclass
from typing import Literal

from host_test_runner.models.catalog import TestId

type Outcome = Literal["success", "failure", "timed_out"]

NO_RESULT_MESSAGE = "no result reported"


@dataclass(frozen=True, kw_only=True)
class RunResult:
    """Result of a single test execution inside the host.

    ``synthesized`` marks records the runner produced itself because the host
    never reported the test (crash, hang or early exit).
    """

    __test__ = False

    test: TestId
    outcome: Outcome
    duration: float = 0.0
    message: str = ""
    stack_trace: str = ""
    synthesized: bool = False
