"""System collaborators: package managers, files, kernel modules, environment."""
from typing import TYPE_CHECKING

from .apt import AptPackageManager
from .base import (
    EnvironmentStore,
    FileStat,
    FileSystem,
    KernelModules,
    PackageManager,
    PythonPackageManager,
    SystemInterfaces,
)
from .command import CmdResult, CommandRunner
from .environment import EnvironmentFile
from .files import LocalFileSystem
from .kmod import KernelModuleManager
from .pip import PipPackageManager

if TYPE_CHECKING:
    from ..config.settings import EngineSettings

__all__ = [
    "AptPackageManager",
    "CmdResult",
    "CommandRunner",
    "EnvironmentFile",
    "EnvironmentStore",
    "FileStat",
    "FileSystem",
    "KernelModuleManager",
    "KernelModules",
    "LocalFileSystem",
    "PackageManager",
    "PipPackageManager",
    "PythonPackageManager",
    "SystemInterfaces",
    "create_system",
]


def create_system(settings: "EngineSettings") -> SystemInterfaces:
    """Factory function to create the local host's collaborators."""
    files = LocalFileSystem(download_timeout=settings.download_timeout)
    return SystemInterfaces(
        packages=AptPackageManager(update_index=settings.apt_update, files=files),
        python_packages=PipPackageManager(python=settings.python),
        files=files,
        modules=KernelModuleManager(modprobe_dir=settings.modprobe_dir),
        environment=EnvironmentFile(settings.environment_file),
        commands=CommandRunner(),
        check_timeout=settings.check_timeout,
    )
