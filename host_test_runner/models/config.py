"""Runner settings and the per-run configuration snapshot."""

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from host_test_runner.models.base import Model
from host_test_runner.models.catalog import GroupingStrategy, TestId

log = logging.getLogger(__name__)

type Granularity = Literal["batch", "per_test"]

DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_ADDIN = "HostTestRunner.TestAddin"


class ConfigurationError(Exception):
    """Raised when settings cannot produce a runnable configuration."""


class HostProduct(BaseModel):
    """An installed version of the host application."""

    name: str
    version: str
    install_location: Path
    executable: str = Field(
        default="host.exe", description="Executable name inside install_location"
    )

    @property
    def executable_path(self) -> Path:
        return self.install_location / self.executable

    def is_installed(self) -> bool:
        return self.executable_path.is_file()


class RunConfiguration(Model):
    """Immutable snapshot of everything one run needs."""

    working_directory: Path
    results_path: Path
    host_executable: Path
    product: HostProduct | None = None
    addin: str = DEFAULT_ADDIN
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    debug: bool = False
    continuous: bool = False
    concatenate: bool = False
    dry_run: bool = False
    clean_up: bool = True
    granularity: Granularity = "batch"
    tests: Sequence[TestId] = ()

    @property
    def launch_timeout_ms(self) -> int | None:
        """Deadline for one host launch; None while a debugger may be attached."""
        if self.debug:
            return None
        return self.timeout_ms


class RunnerSettings(BaseModel):
    """Everything a user can set on the runner between runs."""

    containers: list[Path] = Field(default_factory=list)
    working_directory: Path | None = None
    results_path: Path | None = None
    products: list[HostProduct] = Field(default_factory=list)
    selected_product: int = 0
    host_path: Path | None = None
    addin: str = DEFAULT_ADDIN
    timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    debug: bool = False
    continuous: bool = False
    concatenate: bool = False
    dry_run: bool = False
    clean_up: bool = True
    grouping: GroupingStrategy = "fixture"
    granularity: Granularity = "batch"
    discovery_adapter: str | None = None
    strict_discovery: bool = Field(
        default=True,
        description="Fail discovery on the first broken container instead of "
        "listing it with its load error",
    )
    test: str | None = None
    fixture: str | None = None
    category: str | None = None
    excluded_category: str | None = None

    def available_products(self) -> Sequence[HostProduct]:
        """Products whose executable actually exists on this machine."""
        return [product for product in self.products if product.is_installed()]

    def product(self) -> HostProduct | None:
        if 0 <= self.selected_product < len(self.products):
            return self.products[self.selected_product]
        return None

    def host_executable(self) -> Path:
        """Resolve the host executable from the explicit path or the product."""
        if self.host_path is not None:
            return self.host_path
        if (product := self.product()) is not None:
            return product.executable_path
        raise ConfigurationError("No host executable or host product selected")

    def resolved_working_directory(self) -> Path:
        if self.working_directory is not None:
            return self.working_directory
        if self.containers:
            return Path(self.containers[0]).resolve().parent
        raise ConfigurationError("No working directory configured")

    def to_run_configuration(self, tests: Sequence[TestId]) -> RunConfiguration:
        """Snapshot the settings for a run of ``tests``."""
        if self.results_path is None:
            raise ConfigurationError("No results path configured")

        return RunConfiguration(
            working_directory=self.resolved_working_directory(),
            results_path=self.results_path,
            host_executable=self.host_executable(),
            product=self.product() if self.host_path is None else None,
            addin=self.addin,
            timeout_ms=self.timeout_ms,
            debug=self.debug,
            continuous=self.continuous,
            concatenate=self.concatenate,
            dry_run=self.dry_run,
            clean_up=self.clean_up,
            granularity=self.granularity,
            tests=tuple(tests),
        )


def load_settings(path: Path) -> RunnerSettings:
    """Load a saved runner session from JSON or YAML.

    Raises:
        FileNotFoundError: If the session file does not exist
        ConfigurationError: If the file is malformed

    """
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
        return RunnerSettings.model_validate(data)
    except (yaml.YAMLError, json.JSONDecodeError, ValidationError) as e:
        raise ConfigurationError(f"Invalid settings file {path}: {e}") from e


def save_settings(path: Path, settings: RunnerSettings) -> None:
    """Save a runner session as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2) + "\n", encoding="utf-8")
    log.info("Saved runner settings to %s", path)
