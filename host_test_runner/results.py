"""The cumulative results document and its XML form.

Both the host's per-invocation artifact and the cumulative document use the
same element layout::

    <testResults version="1">
      <result container="..." fixture="..." name="..." outcome="success"
              duration="1.250">
        <message>...</message>
        <stackTrace>...</stackTrace>
      </result>
    </testResults>

The host may omit ``container``; records are then attributed to the
container of the invocation that produced them.
"""

import logging
import os
import tempfile
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import get_args

from host_test_runner.models.catalog import TestId
from host_test_runner.models.result import Outcome, RunResult

log = logging.getLogger(__name__)

RESULTS_VERSION = "1"
OUTCOMES: frozenset[str] = frozenset(get_args(Outcome.__value__))


class ResultsFormatError(ValueError):
    """Raised when a results document cannot be parsed."""


def result_to_element(result: RunResult) -> ET.Element:
    attributes = {
        "container": result.test.container,
        "fixture": result.test.fixture,
        "name": result.test.name,
        "outcome": result.outcome,
        "duration": f"{result.duration:.3f}",
    }
    if result.synthesized:
        attributes["synthesized"] = "true"

    element = ET.Element("result", attributes)
    if result.message:
        ET.SubElement(element, "message").text = result.message
    if result.stack_trace:
        ET.SubElement(element, "stackTrace").text = result.stack_trace
    return element


def element_to_result(element: ET.Element, default_container: str = "") -> RunResult:
    outcome = element.get("outcome", "")
    if outcome not in OUTCOMES:
        raise ResultsFormatError(f"Unknown outcome '{outcome}'")
    try:
        duration = float(element.get("duration", "0") or 0)
    except ValueError as e:
        raise ResultsFormatError(f"Invalid duration: {e}") from e

    return RunResult(
        test=TestId(
            container=element.get("container") or default_container,
            fixture=element.get("fixture", ""),
            name=element.get("name", ""),
        ),
        outcome=outcome,  # type: ignore[arg-type]
        duration=duration,
        message=element.findtext("message") or "",
        stack_trace=element.findtext("stackTrace") or "",
        synthesized=element.get("synthesized") == "true",
    )


def parse_results(data: bytes, default_container: str = "") -> Sequence[RunResult]:
    """Parse a results document.

    Raises:
        ResultsFormatError: If the XML is malformed or not a results document

    """
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ResultsFormatError(f"Malformed results XML: {e}") from e
    if root.tag != "testResults":
        raise ResultsFormatError(f"Unexpected root element <{root.tag}>")
    return [element_to_result(e, default_container) for e in root.iterfind("result")]


def render_results(results: Iterable[RunResult]) -> bytes:
    root = ET.Element("testResults", {"version": RESULTS_VERSION})
    root.extend(result_to_element(result) for result in results)
    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True) + b"\n"


def write_atomically(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` in one step; readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass(kw_only=True)
class ResultsDocument:
    """Ordered run results, persisted as one XML document."""

    records: list[RunResult] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    @classmethod
    def load(cls, path: Path) -> "ResultsDocument":
        """Load a document, or return an empty one if ``path`` does not exist."""
        if not path.exists():
            return cls()
        return cls(records=list(parse_results(path.read_bytes())))

    def save(self, path: Path) -> None:
        write_atomically(path, render_results(self.records))
        log.debug("Saved %d result(s) to %s", len(self.records), path)

    def merge(self, results: Iterable[RunResult], *, concatenate: bool) -> None:
        """Add ``results``; replace earlier records of the same test unless concatenating."""
        for result in results:
            if not concatenate:
                self.records = [r for r in self.records if r.test != result.test]
            self.records.append(result)

    def outcomes(self) -> Mapping[TestId, str]:
        """Latest outcome per test."""
        return {record.test: record.outcome for record in self.records}

    def latest(self) -> Mapping[TestId, RunResult]:
        """Latest record per test."""
        return {record.test: record for record in self.records}
