"""Generation of the journal and run configuration handed to the host.

Each invocation gets two files in the working directory:

- ``<stem>_<index>.journal``: the startup script the host's automation entry
  point executes; it names the test add-in and the run configuration
- ``<stem>_<index>.config.xml``: the run configuration the add-in reads; it
  lists the container, the ordered tests, where to write results and whether
  to wait for a debugger

The host-side add-in is versioned separately, so the element and key names
below must not change.
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from pathlib import Path

from host_test_runner.models.catalog import TestId
from host_test_runner.models.config import Granularity, RunConfiguration

log = logging.getLogger(__name__)

JOURNAL_HEADER = "' host-test-runner journal v1"
RUN_CONFIG_VERSION = "1"


@dataclass(frozen=True, kw_only=True)
class Invocation:
    """One host launch: a container and the tests it runs, in order."""

    index: int
    container: str
    tests: Sequence[TestId]


@dataclass(frozen=True, kw_only=True)
class ScriptArtifact:
    """Files generated for one invocation."""

    journal_path: Path
    run_config_path: Path
    results_path: Path
    invocation: Invocation

    def remove(self) -> None:
        """Delete every generated file, including the host's results artifact."""
        for path in (self.journal_path, self.run_config_path, self.results_path):
            path.unlink(missing_ok=True)


@dataclass(frozen=True, kw_only=True)
class RunInstructions:
    """Contents of a run configuration document, as the host add-in sees them."""

    container: str
    tests: Sequence[TestId]
    results_path: Path
    debug: bool


def plan_invocations(
    tests: Sequence[TestId],
    granularity: Granularity,
    isolate: Collection[TestId] = (),
) -> Sequence[Invocation]:
    """Split ordered tests into host launches.

    ``batch`` runs each container's tests in one launch, ``per_test`` gives
    every test its own. Tests in ``isolate`` always run alone, after the batch
    of their container, so one that hung or crashed the host before cannot
    take the rest of the batch down with it.
    """
    plans: list[tuple[str, list[TestId]]] = []

    if granularity == "per_test":
        plans = [(test.container, [test]) for test in tests]
    else:
        batches: dict[str, list[TestId]] = {}
        isolated: dict[str, list[TestId]] = {}
        for test in tests:
            target = isolated if test in isolate else batches
            target.setdefault(test.container, []).append(test)
            batches.setdefault(test.container, [])

        for container, batch in batches.items():
            if batch:
                plans.append((container, batch))
            plans.extend((container, [test]) for test in isolated.get(container, []))

    return [
        Invocation(index=index, container=container, tests=tuple(batch))
        for index, (container, batch) in enumerate(plans, start=1)
    ]


def artifact_stem(invocation: Invocation) -> str:
    stem = re.sub(r"[^A-Za-z0-9_.-]", "_", Path(invocation.container).stem)
    return f"{stem}_{invocation.index:04d}"


def render_journal(addin: str, run_config_path: Path) -> bytes:
    lines = [
        JOURNAL_HEADER,
        f"addin = {addin}",
        f"run_config = {run_config_path}",
        "",
    ]
    return "\n".join(lines).encode("utf-8")


def render_run_configuration(
    invocation: Invocation, results_path: Path, debug: bool
) -> bytes:
    root = ET.Element("runConfiguration", {"version": RUN_CONFIG_VERSION})
    ET.SubElement(root, "container").text = invocation.container
    ET.SubElement(root, "results").text = str(results_path)
    ET.SubElement(root, "debug").text = "true" if debug else "false"
    tests = ET.SubElement(root, "tests")
    for test in invocation.tests:
        ET.SubElement(tests, "test", {"fixture": test.fixture, "name": test.name})

    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True) + b"\n"


def generate_script(config: RunConfiguration, invocation: Invocation) -> ScriptArtifact:
    """Write the journal and run configuration for ``invocation``.

    Output depends only on ``config`` and ``invocation``, so identical inputs
    produce byte-identical files. Any results artifact left at the
    invocation's results path is deleted.
    """
    directory = config.working_directory.resolve()
    directory.mkdir(parents=True, exist_ok=True)

    stem = artifact_stem(invocation)
    journal_path = directory / f"{stem}.journal"
    run_config_path = directory / f"{stem}.config.xml"
    results_path = directory / f"{stem}.results.xml"
    # a report left by an earlier launch must not be read as this one's
    results_path.unlink(missing_ok=True)

    run_config_path.write_bytes(
        render_run_configuration(invocation, results_path, config.debug)
    )
    journal_path.write_bytes(render_journal(config.addin, run_config_path))

    log.debug(
        "Generated journal %s for %d test(s) of %s",
        journal_path,
        len(invocation.tests),
        invocation.container,
    )
    return ScriptArtifact(
        journal_path=journal_path,
        run_config_path=run_config_path,
        results_path=results_path,
        invocation=invocation,
    )


def read_journal(path: Path) -> dict[str, str]:
    """Parse a journal into its ``key = value`` entries."""
    entries: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip() or line.startswith("'"):
            continue
        key, sep, value = line.partition("=")
        if sep:
            entries[key.strip()] = value.strip()
    return entries


def read_run_configuration(path: Path) -> RunInstructions:
    """Parse a run configuration document.

    Raises:
        ValueError: If the document is not a run configuration

    """
    root = ET.parse(path).getroot()
    if root.tag != "runConfiguration":
        raise ValueError(f"Not a run configuration document: {path}")

    container = root.findtext("container", default="")
    return RunInstructions(
        container=container,
        tests=tuple(
            TestId(
                container=container,
                fixture=element.get("fixture", ""),
                name=element.get("name", ""),
            )
            for element in root.iterfind("tests/test")
        ),
        results_path=Path(root.findtext("results", default="")),
        debug=root.findtext("debug") == "true",
    )
