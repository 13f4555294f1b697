"""Base abstractions for the system collaborators the engine talks to.

Probes only call the read methods. The executor is the only caller of
the mutating methods. Read failures raise ProbeError and mutation failures
raise ExecutionError.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from .command import CmdResult, CommandRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileStat:
    """Subset of stat() the engine compares."""
    size: int
    mode: int  # Permission bits only (e.g. 0o644)


class PackageManager(ABC):
    """OS package database (dpkg/apt)."""

    @abstractmethod
    def installed_version(self, name: str) -> Optional[str]:
        """Return the installed version, or None if not installed."""
        pass

    @abstractmethod
    def install(
        self,
        name: str,
        version: Optional[str] = None,
        source: Optional[str] = None
    ) -> None:
        """Install a package, pinned to version if given, or from a local .deb."""
        pass

    @abstractmethod
    def remove(self, name: str) -> None:
        """Remove (purge) a package."""
        pass


class PythonPackageManager(ABC):
    """Python dependency manager (pip in a given interpreter)."""

    @abstractmethod
    def installed_version(self, name: str) -> Optional[str]:
        """Return the installed distribution version, or None."""
        pass

    @abstractmethod
    def install(
        self,
        name: str,
        version: Optional[str] = None,
        source: Optional[str] = None
    ) -> None:
        """Install by name+version, local artifact path or VCS reference."""
        pass

    @abstractmethod
    def remove(self, name: str) -> None:
        """Uninstall a distribution."""
        pass


class FileSystem(ABC):
    """Filesystem access with permissions."""

    @abstractmethod
    def stat(self, path: str) -> Optional[FileStat]:
        """Return file stat, or None if the path does not exist."""
        pass

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        pass

    @abstractmethod
    def write_bytes(self, path: str, data: bytes, mode: Optional[int] = None) -> None:
        """Write a file, creating parent directories."""
        pass

    @abstractmethod
    def chmod(self, path: str, mode: int) -> None:
        pass

    @abstractmethod
    def remove(self, path: str) -> None:
        pass

    @abstractmethod
    def fetch(self, source: str) -> bytes:
        """Fetch artifact content from a URL or local path."""
        pass


class KernelModules(ABC):
    """Kernel module list and modprobe configuration."""

    @abstractmethod
    def loaded_modules(self) -> set[str]:
        pass

    @abstractmethod
    def load(self, name: str) -> None:
        pass

    @abstractmethod
    def unload(self, name: str) -> None:
        pass

    @abstractmethod
    def is_blacklisted(self, name: str) -> bool:
        pass

    @abstractmethod
    def set_blacklisted(self, name: str, blacklisted: bool) -> None:
        pass


class EnvironmentStore(ABC):
    """System-wide environment variables (e.g. /etc/environment)."""

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, name: str, value: str) -> None:
        pass

    @abstractmethod
    def unset(self, name: str) -> None:
        pass


@dataclass
class SystemInterfaces:
    """Bundle of collaborators used by the prober and executor."""
    packages: PackageManager
    python_packages: PythonPackageManager
    files: FileSystem
    modules: KernelModules
    environment: EnvironmentStore
    commands: CommandRunner
    check_timeout: Optional[float] = None

    def run_command(self, argv: Sequence[str]) -> CmdResult:
        """Run a post-apply command, raising CommandError on failure."""
        return self.commands.run(argv, check=True)

    def check_output(self, argv: Sequence[str]) -> CmdResult:
        """Run a read-only check command; the caller inspects the result."""
        return self.commands.run(argv, check=False, timeout=self.check_timeout)
