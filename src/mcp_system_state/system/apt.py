"""Debian package manager collaborator (dpkg-query, apt-get, dpkg)."""
import logging
import os
import tempfile
from typing import Optional

from ..engine.errors import CommandError, ExecutionError, ProbeError
from .base import FileSystem, PackageManager
from .command import CommandRunner

logger = logging.getLogger(__name__)

INSTALLED_STATUS = "install ok installed"

APT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
}


class AptPackageManager(PackageManager):
    """Query and change the dpkg database through apt-get and dpkg."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        update_index: bool = True,
        files: Optional[FileSystem] = None
    ):
        """
        Initialize the package manager.

        Args:
            runner: Command runner (defaults to a noninteractive apt env)
            update_index: Run "apt-get update" once before the first install
            files: Used to download .deb sources given as http(s) URLs
        """
        self.runner = runner or CommandRunner(env=APT_ENV)
        self.update_index = update_index
        self.files = files
        self._index_updated = False

    def installed_version(self, name: str) -> Optional[str]:
        result = self.runner.run(
            ["dpkg-query", "-W", "-f=${Status}\t${Version}", name],
            check=False,
        )
        if result.returncode == 127:
            raise ProbeError(f"dpkg-query not available: {result.stderr.strip()}")
        if not result.ok:
            # Unknown package
            if "no packages found" in result.stderr.lower():
                return None
            raise ProbeError(
                f"dpkg-query failed for {name} ({result.returncode}): "
                f"{result.stderr.strip()}"
            )
        return parse_dpkg_status(result.stdout)

    def install(
        self,
        name: str,
        version: Optional[str] = None,
        source: Optional[str] = None
    ) -> None:
        if source:
            if source.startswith(("http://", "https://")):
                self._install_remote_deb(name, source)
            else:
                self._install_deb(name, source)
            return

        self._refresh_index()
        spec = f"{name}={version}" if version else name
        self.runner.run(["apt-get", "install", "-y", spec])

    def remove(self, name: str) -> None:
        self.runner.run(["apt-get", "remove", "--purge", "-y", name])

    def _install_remote_deb(self, name: str, url: str) -> None:
        if self.files is None:
            raise ExecutionError(f"Cannot download {url}: no file collaborator configured")
        data = self.files.fetch(url)
        fd, path = tempfile.mkstemp(prefix=f"{name}-", suffix=".deb")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            self._install_deb(name, path)
        finally:
            os.unlink(path)

    def _install_deb(self, name: str, path: str) -> None:
        """Install a local .deb, repairing missing dependencies if dpkg fails."""
        try:
            self.runner.run(["dpkg", "-i", path])
        except CommandError as e:
            logger.warning(f"dpkg -i {path} failed, trying to fix dependencies: {e}")
            self._refresh_index()
            self.runner.run(["apt-get", "install", "-f", "-y"])
            if self.installed_version(name) is None:
                raise ExecutionError(
                    f"Package {name} still not installed after dependency repair"
                ) from e

    def _refresh_index(self) -> None:
        if not self.update_index or self._index_updated:
            return
        result = self.runner.run(["apt-get", "update"], check=False)
        if not result.ok:
            logger.warning("apt-get update failed, retrying with --fix-missing")
            self.runner.run(["apt-get", "update", "--fix-missing"], check=False)
        self._index_updated = True


def parse_dpkg_status(output: str) -> Optional[str]:
    """
    Parse "${Status}\\t${Version}" output of dpkg-query.

    Examples:
        "install ok installed\\t1.9-1" -> "1.9-1"
        "deinstall ok config-files\\t1.9-1" -> None
    """
    line = output.strip().splitlines()[0] if output.strip() else ""
    status, _, version = line.partition("\t")
    if status.strip() != INSTALLED_STATUS:
        return None
    return version.strip() or None
