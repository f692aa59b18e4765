"""Discovery of tests declared in Python source modules.

The module is parsed, never imported: test modules import host APIs that only
exist inside a running host, so all metadata comes from the syntax tree.

Recognised markers:

- fixtures are top-level classes decorated ``@fixture`` or named ``Test*``
- tests are methods decorated ``@test`` or named ``test*``
- ``@category("Smoke", ...)`` on a class or a method tags its tests
- ``@setup``/``@teardown`` (or ``setUp``/``tearDown``) mark fixture hooks
"""

import ast
import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from host_test_runner.discovery.base import (
    DiscoveredTest,
    DiscoveryAdapter,
    LoadError,
)

log = logging.getLogger(__name__)

SETUP_NAMES = frozenset({"setUp", "setup", "set_up"})
TEARDOWN_NAMES = frozenset({"tearDown", "teardown", "tear_down"})

type FunctionNode = ast.FunctionDef | ast.AsyncFunctionDef


def decorator_name(node: ast.expr) -> str | None:
    """Return the bare name of a decorator, ignoring any call or attribute path."""
    if isinstance(node, ast.Call):
        node = node.func
    if isinstance(node, ast.Attribute):
        return node.attr
    if isinstance(node, ast.Name):
        return node.id
    return None


def has_decorator(node: ast.ClassDef | FunctionNode, name: str) -> bool:
    return any(decorator_name(d) == name for d in node.decorator_list)


def category_tags(node: ast.ClassDef | FunctionNode, container: Path) -> list[str]:
    """Collect string arguments of every ``@category(...)`` decorator."""
    tags: list[str] = []
    for decorator in node.decorator_list:
        if decorator_name(decorator) != "category":
            continue
        if not isinstance(decorator, ast.Call):
            raise LoadError(
                f"{container}:{decorator.lineno}: @category needs at least one tag"
            )
        for arg in decorator.args:
            if not isinstance(arg, ast.Constant) or not isinstance(arg.value, str):
                raise LoadError(
                    f"{container}:{decorator.lineno}: category tags must be "
                    "string literals"
                )
            tags.append(arg.value)
    return tags


class PythonSourceAdapter(DiscoveryAdapter):
    """Lists tests by walking the syntax tree of a Python module."""

    def list_tests(self, container: Path) -> Sequence[DiscoveredTest]:
        self.ensure_exists(container)
        if container.suffix != ".py":
            raise LoadError(f"Not a Python test module: {container}")

        module = self.parse(container)
        self.check_relative_imports(module, container)

        discovered: list[DiscoveredTest] = []
        for node in module.body:
            if isinstance(node, ast.ClassDef) and self.is_fixture(node):
                discovered.extend(self.fixture_tests(node, container))

        log.debug("Found %d test(s) in %s", len(discovered), container)
        return discovered

    def parse(self, container: Path) -> ast.Module:
        try:
            source = container.read_bytes()
        except OSError as e:
            raise LoadError(f"Cannot read test container {container}: {e}") from e
        try:
            return ast.parse(source, filename=str(container))
        except (SyntaxError, ValueError) as e:
            raise LoadError(f"Invalid Python test module {container}: {e}") from e

    def is_fixture(self, node: ast.ClassDef) -> bool:
        return has_decorator(node, "fixture") or node.name.startswith("Test")

    def is_test(self, node: FunctionNode) -> bool:
        return has_decorator(node, "test") or node.name.startswith("test")

    def fixture_tests(
        self, node: ast.ClassDef, container: Path
    ) -> Iterable[DiscoveredTest]:
        fixture = f"{container.stem}.{node.name}"
        fixture_tags = category_tags(node, container)
        methods = [
            item
            for item in node.body
            if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
        ]

        setup = next(
            (
                m.name
                for m in methods
                if has_decorator(m, "setup") or m.name in SETUP_NAMES
            ),
            None,
        )
        teardown = next(
            (
                m.name
                for m in methods
                if has_decorator(m, "teardown") or m.name in TEARDOWN_NAMES
            ),
            None,
        )

        for method in methods:
            if method.name in (setup, teardown) or not self.is_test(method):
                continue
            tags = fixture_tags + category_tags(method, container)
            yield DiscoveredTest(
                fixture=fixture,
                name=method.name,
                categories=tuple(dict.fromkeys(tags)),
                setup=setup,
                teardown=teardown,
            )

    def check_relative_imports(self, module: ast.Module, container: Path) -> None:
        """Fail when a relative import points at a module missing on disk."""
        for node in ast.walk(module):
            if not isinstance(node, ast.ImportFrom) or node.level == 0:
                continue

            base = container.parent
            for _ in range(node.level - 1):
                base = base.parent

            if node.module:
                targets = [base.joinpath(*node.module.split("."))]
            elif (base / "__init__.py").is_file():
                # names may be defined by the package itself
                continue
            else:
                targets = [base / alias.name for alias in node.names]

            for target in targets:
                if not (target.with_suffix(".py").is_file() or target.is_dir()):
                    raise LoadError(
                        f"{container}:{node.lineno}: unresolved dependency "
                        f"{'.' * node.level}{node.module or target.name}"
                    )
