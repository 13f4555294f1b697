"""Python dependency manager collaborator (python -m pip)."""
import logging
import sys
from typing import Optional

from ..engine.errors import ProbeError
from .base import PythonPackageManager
from .command import CommandRunner

logger = logging.getLogger(__name__)


class PipPackageManager(PythonPackageManager):
    """Manage distributions of one interpreter, typically a virtualenv's."""

    def __init__(
        self,
        python: Optional[str] = None,
        runner: Optional[CommandRunner] = None
    ):
        """
        Initialize the pip manager.

        Args:
            python: Interpreter whose environment is managed
                (e.g. /home/radxa/radxa_venv/bin/python). Defaults to the
                running interpreter.
            runner: Command runner
        """
        self.python = python or sys.executable
        self.runner = runner or CommandRunner(env={"PIP_DISABLE_PIP_VERSION_CHECK": "1"})

    def _pip(self, *args: str) -> list[str]:
        return [self.python, "-m", "pip", *args]

    def installed_version(self, name: str) -> Optional[str]:
        result = self.runner.run(self._pip("show", name), check=False)
        if result.returncode == 127:
            raise ProbeError(f"Python interpreter not found: {self.python}")
        if not result.ok:
            if "not found" in result.stderr.lower():
                return None
            raise ProbeError(
                f"pip show {name} failed ({result.returncode}): {result.stderr.strip()}"
            )
        return parse_pip_show(result.stdout)

    def install(
        self,
        name: str,
        version: Optional[str] = None,
        source: Optional[str] = None
    ) -> None:
        if source:
            spec = source  # Wheel path or git+https://... reference
        elif version:
            spec = f"{name}=={version}"
        else:
            spec = name
        self.runner.run(self._pip("install", spec))

    def remove(self, name: str) -> None:
        self.runner.run(self._pip("uninstall", "-y", name))


def parse_pip_show(output: str) -> Optional[str]:
    """Extract the Version field from "pip show" output."""
    for line in output.splitlines():
        key, _, value = line.partition(":")
        if key.strip().lower() == "version":
            return value.strip() or None
    return None
