"""
Centralized runtime dependency validation for the audio RTSP daemon.

Checks the Python libraries the daemon imports and the external tools
it shells out to, with clear, actionable messages so operators know
what to install before starting the service.
"""

from __future__ import annotations

import importlib
import logging
import shutil
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyDefinition:
    """Static definition of a dependency."""

    key: str
    module_path: str
    display_name: str
    install_hint: str
    category: str  # library or tool


@dataclass
class DependencyStatus:
    """Result of checking a dependency."""

    definition: DependencyDefinition
    state: str  # ok, missing, error
    detail: str = ""

    @property
    def is_failure(self) -> bool:
        return self.state != "ok"

    def describe(self) -> str:
        if self.state == "ok":
            return f"{self.definition.display_name} available"

        if self.definition.category == "tool":
            qualifier = "was not found in PATH"
        elif self.state == "missing":
            qualifier = "is not installed"
        else:
            qualifier = "is installed but failed to load"
        detail = f" ({self.detail})" if self.detail else ""
        return f"{self.definition.display_name} {qualifier}{detail}. {self.definition.install_hint}"


class DependencyValidationError(RuntimeError):
    """Raised when one or more dependencies are unavailable."""

    def __init__(self, failures: Iterable[DependencyStatus]):
        self.failures: List[DependencyStatus] = list(failures)
        message = "Runtime dependency validation failed:\n" + "\n".join(
            f"- {failure.describe()}" for failure in self.failures
        )
        super().__init__(message)
        self.user_message = message


class MissingDependencyError(DependencyValidationError):
    """Raised when a dependency is missing entirely."""


class BrokenDependencyError(DependencyValidationError):
    """Raised when a dependency exists but cannot be imported/used."""


DEPENDENCIES: List[DependencyDefinition] = [
    DependencyDefinition(
        key="pyudev",
        module_path="pyudev",
        display_name="pyudev",
        install_hint="Install pyudev (pip install pyudev or apt install python3-pyudev).",
        category="library",
    ),
    DependencyDefinition(
        key="psutil",
        module_path="psutil",
        display_name="psutil",
        install_hint="Install psutil (e.g., pip install psutil or your distro's python3-psutil package).",
        category="library",
    ),
    DependencyDefinition(
        key="tabulate",
        module_path="tabulate",
        display_name="tabulate",
        install_hint="Install tabulate (pip install tabulate or apt install python3-tabulate).",
        category="library",
    ),
    DependencyDefinition(
        key="ffmpeg",
        module_path="ffmpeg",
        display_name="ffmpeg",
        install_hint="Install ffmpeg (apt install ffmpeg).",
        category="tool",
    ),
    DependencyDefinition(
        key="arecord",
        module_path="arecord",
        display_name="arecord",
        install_hint="Install the ALSA utilities (apt install alsa-utils).",
        category="tool",
    ),
    DependencyDefinition(
        key="udevadm",
        module_path="udevadm",
        display_name="udevadm",
        install_hint="Install udev (apt install udev).",
        category="tool",
    ),
]


def _import_dependency(module_path: str):
    """Separated for testability."""
    return importlib.import_module(module_path)


def _find_tool(name: str) -> Optional[str]:
    """Separated for testability."""
    return shutil.which(name)


def _check_dependency(
    definition: DependencyDefinition,
    importer: Callable[[str], object] = _import_dependency,
    which: Callable[[str], Optional[str]] = _find_tool,
) -> DependencyStatus:
    if definition.category == "tool":
        path = which(definition.module_path)
        if path:
            return DependencyStatus(definition=definition, state="ok", detail=path)
        logger.debug("Tool %s not found", definition.display_name)
        return DependencyStatus(definition=definition, state="missing")

    try:
        importer(definition.module_path)
        return DependencyStatus(definition=definition, state="ok")
    except ModuleNotFoundError as exc:
        logger.debug("Dependency %s missing: %s", definition.display_name, exc)
        return DependencyStatus(definition=definition, state="missing", detail=str(exc))
    except Exception as exc:  # pragma: no cover - exercised via tests
        logger.debug("Dependency %s failed to import: %s", definition.display_name, exc)
        return DependencyStatus(definition=definition, state="error", detail=str(exc))


def collect_dependency_statuses(
    include_tools: bool = True,
    importer: Callable[[str], object] = _import_dependency,
    which: Callable[[str], Optional[str]] = _find_tool,
) -> List[DependencyStatus]:
    """Collect the status of all runtime dependencies."""
    statuses: List[DependencyStatus] = []
    for definition in DEPENDENCIES:
        if definition.category == "tool" and not include_tools:
            continue
        statuses.append(_check_dependency(definition, importer=importer, which=which))
    return statuses


def ensure_runtime_dependencies(
    include_tools: bool = True,
    importer: Callable[[str], object] = _import_dependency,
    which: Callable[[str], Optional[str]] = _find_tool,
) -> List[DependencyStatus]:
    """
    Validate that all required dependencies are available.

    Raises:
        DependencyValidationError: when any dependency is missing or broken.
    """
    statuses = collect_dependency_statuses(include_tools=include_tools, importer=importer, which=which)
    failures = [status for status in statuses if status.is_failure]
    if failures:
        if all(status.state == "missing" for status in failures):
            raise MissingDependencyError(failures)
        raise BrokenDependencyError(failures)
    return statuses


def run_self_check(
    include_tools: bool = True,
    importer: Callable[[str], object] = _import_dependency,
    which: Callable[[str], Optional[str]] = _find_tool,
) -> bool:
    """
    Run dependency validation and print a human-friendly report.

    Returns:
        bool: True when all required dependencies are available, False otherwise.
    """
    statuses = collect_dependency_statuses(include_tools=include_tools, importer=importer, which=which)
    failures = [status for status in statuses if status.is_failure]

    print("Running audio RTSP dependency self-check...\n")
    for status in statuses:
        label = "OK" if not status.is_failure else ("MISSING" if status.state == "missing" else "ERROR")
        print(f"[{label:<7}] {status.describe()}")

    if failures:
        print("\nOne or more dependencies are unavailable. Address the issues above and retry.")
        return False

    print("\nAll dependencies satisfied. You can start the audio RTSP daemon safely.")
    return True
