"""CLI entry point for running tests inside a host application."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from host_test_runner.controller import ControllerState
from host_test_runner.discovery import AdapterNotFoundError, LoadError
from host_test_runner.models.catalog import Catalog, CategoryNode
from host_test_runner.models.config import (
    ConfigurationError,
    RunnerSettings,
    load_settings,
    save_settings,
)
from host_test_runner.runner import Runner
from host_test_runner.selection import SelectionError

STATUS_SYMBOLS = {
    "success": "✅",
    "failure": "❌",
    "timed_out": "⏱️",
    "not_run": "·",
}


def log_results_summary(log: logging.Logger, catalog: Catalog) -> None:
    """Log a formatted summary of the tests that ran."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for node in catalog:
        if not node.should_run:
            continue
        symbol = STATUS_SYMBOLS.get(node.run_state, "?")
        log.info("%s %s: %s (%.2fs)", symbol, node.id, node.run_state, node.duration)
        if node.message and node.run_state != "success":
            log.info("  Message: %s", node.message)


def format_output(catalog: Catalog, state: ControllerState | None) -> dict[str, Any]:
    """Format the selected tests' outcomes for JSON output."""
    all_results: list[dict[str, Any]] = [
        {
            "container": node.id.container,
            "fixture": node.id.fixture,
            "test": node.id.name,
            "status": node.run_state,
            "duration": node.duration,
            "message": node.message or None,
        }
        for node in catalog
        if node.should_run
    ]

    return {
        "state": state,
        "total": len(all_results),
        "passed": sum(1 for r in all_results if r["status"] == "success"),
        "failed": sum(1 for r in all_results if r["status"] == "failure"),
        "timeouts": sum(1 for r in all_results if r["status"] == "timed_out"),
        "not_run": sum(1 for r in all_results if r["status"] == "not_run"),
        "results": all_results,
    }


def format_catalog(catalog: Catalog) -> dict[str, Any]:
    """Format the catalog tree for ``--list``."""
    return {
        "grouping": catalog.grouping,
        "assemblies": [
            {
                "path": assembly.path,
                "status": assembly.load_status,
                "error": assembly.load_error,
                "groups": [
                    {
                        "kind": (
                            "category" if isinstance(group, CategoryNode) else "fixture"
                        ),
                        "name": group.name,
                        "tests": [
                            {"name": node.id.name, "categories": list(node.categories)}
                            for node in group.tests
                        ],
                    }
                    for group in assembly.groups
                ],
            }
            for assembly in catalog.assemblies
        ],
    }


SETTINGS_FIELDS = {
    "working_dir": "working_directory",
    "results": "results_path",
    "host": "host_path",
    "timeout": "timeout_ms",
    "adapter": "discovery_adapter",
    "exclude_category": "excluded_category",
    "concat": "concatenate",
}


def build_settings(args: argparse.Namespace) -> RunnerSettings:
    """Merge the optional session file with command-line overrides."""
    settings = load_settings(args.settings) if args.settings else RunnerSettings()

    overrides: dict[str, Any] = {}
    if args.container:
        overrides["containers"] = args.container
    for name in (
        "working_dir",
        "results",
        "host",
        "timeout",
        "granularity",
        "grouping",
        "adapter",
        "test",
        "fixture",
        "category",
        "exclude_category",
    ):
        value = getattr(args, name)
        if value is not None:
            overrides[SETTINGS_FIELDS.get(name, name)] = value
    for flag in ("concat", "debug", "dry_run"):
        if getattr(args, flag):
            overrides[SETTINGS_FIELDS.get(flag, flag)] = True
    if args.keep_artifacts:
        overrides["clean_up"] = False
    if args.skip_broken:
        overrides["strict_discovery"] = False

    return RunnerSettings.model_validate({**settings.model_dump(), **overrides})


async def run(settings: RunnerSettings, *, list_only: bool = False) -> int:
    """Discover, select and run tests; return the exit code."""
    log = logging.getLogger("host_test_runner")

    runner = Runner(settings)
    catalog = runner.discover()

    if list_only:
        print(json.dumps(format_catalog(catalog), indent=2))
        return 0

    runnable = runner.select_from_settings()
    if not runnable:
        log.info("No tests selected")
        print(json.dumps(format_output(catalog, None)))
        return 0

    if settings.continuous:
        log.warning("Continuous mode needs a file watcher; running once")
        settings = settings.model_copy(update={"continuous": False})
        runner.settings = settings

    log.info("Running %s...", runner.summary())
    state = await runner.run()

    log_results_summary(log, catalog)
    print(json.dumps(format_output(catalog, state), indent=2))

    has_failures = state == "faulted" or any(
        node.run_state in {"failure", "timed_out"} for node in catalog
    )
    return 1 if has_failures else 0


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run tests inside a host application and collect their results"
    )
    parser.add_argument(
        "--settings", type=Path, help="Saved session file (JSON or YAML)"
    )
    parser.add_argument(
        "--container",
        type=Path,
        action="append",
        help="Test container (repeatable): a Python test module or a manifest",
    )
    parser.add_argument("--host", type=Path, help="Path to the host executable")
    parser.add_argument("--working-dir", type=Path, help="Directory the host runs in")
    parser.add_argument("--results", type=Path, help="Cumulative results XML file")
    parser.add_argument("--test", help="Run a single test (Fixture.method)")
    parser.add_argument("--fixture", help="Run all tests of a fixture")
    parser.add_argument("--category", help="Run all tests tagged with a category")
    parser.add_argument("--exclude-category", help="Skip tests tagged with a category")
    parser.add_argument(
        "--timeout", type=int, help="Per-launch timeout in milliseconds"
    )
    parser.add_argument(
        "--granularity",
        choices=["batch", "per_test"],
        help="One host launch per container, or one per test",
    )
    parser.add_argument(
        "--grouping",
        choices=["fixture", "category"],
        help="Group the catalog by fixture or by category",
    )
    parser.add_argument(
        "--adapter", help="Discovery adapter key (default: from container suffix)"
    )
    parser.add_argument(
        "--concat", action="store_true", help="Append to existing results"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Disable the timeout for debugging"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Generate journals without launching"
    )
    parser.add_argument(
        "--keep-artifacts", action="store_true", help="Keep generated journals"
    )
    parser.add_argument(
        "--skip-broken",
        action="store_true",
        help="List containers that fail to load instead of aborting",
    )
    parser.add_argument(
        "--list", action="store_true", help="Print the discovered catalog and exit"
    )
    parser.add_argument(
        "--save-settings", type=Path, help="Save the effective settings to a file"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    log = logging.getLogger("host_test_runner")

    try:
        settings = build_settings(args)
        if args.save_settings:
            save_settings(args.save_settings, settings)
        exit_code = asyncio.run(run(settings, list_only=args.list))
    except (
        AdapterNotFoundError,
        ConfigurationError,
        FileNotFoundError,
        LoadError,
        SelectionError,
        ValidationError,
    ) as e:
        log.error("%s", e)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
