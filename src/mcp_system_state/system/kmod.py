"""Kernel module collaborator (/proc/modules, modprobe, modprobe.d)."""
import logging
import re
from pathlib import Path
from typing import Optional

from ..engine.errors import ProbeError
from .base import KernelModules
from .command import CommandRunner

logger = logging.getLogger(__name__)

BLACKLIST_RE = re.compile(r"^\s*blacklist\s+(\S+)\s*$")

MANAGED_HEADER = "# Managed by statecraft\n"


def normalize_module_name(name: str) -> str:
    """Kernel reports module names with underscores (bifrost-kbase -> bifrost_kbase)."""
    return name.strip().replace("-", "_")


def blacklisted_module(line: str) -> Optional[str]:
    """Return the module a "blacklist <name>" line refers to, if any.

    A trailing "# comment" is ignored, as modprobe does.
    """
    match = BLACKLIST_RE.match(line.split("#", 1)[0])
    return normalize_module_name(match.group(1)) if match else None


class KernelModuleManager(KernelModules):
    """Inspect and configure kernel modules on the local host."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        modprobe_dir: str = "/etc/modprobe.d",
        proc_modules: str = "/proc/modules",
    ):
        self.runner = runner or CommandRunner()
        self.modprobe_dir = Path(modprobe_dir)
        self.proc_modules = Path(proc_modules)

    def loaded_modules(self) -> set[str]:
        try:
            text = self.proc_modules.read_text()
        except OSError as e:
            raise ProbeError(f"Cannot read {self.proc_modules}: {e}") from e
        return {
            normalize_module_name(line.split()[0])
            for line in text.splitlines()
            if line.strip()
        }

    def load(self, name: str) -> None:
        self.runner.run(["modprobe", name])

    def unload(self, name: str) -> None:
        self.runner.run(["modprobe", "-r", name])

    def is_blacklisted(self, name: str) -> bool:
        wanted = normalize_module_name(name)
        for conf in self._conf_files():
            try:
                lines = conf.read_text().splitlines()
            except OSError as e:
                raise ProbeError(f"Cannot read {conf}: {e}") from e
            if any(blacklisted_module(line) == wanted for line in lines):
                return True
        return False

    def set_blacklisted(self, name: str, blacklisted: bool) -> None:
        if blacklisted:
            if self.is_blacklisted(name):
                return
            # Options or aliases already in the file are kept
            conf = self.modprobe_dir / f"{name}.conf"
            self.modprobe_dir.mkdir(parents=True, exist_ok=True)
            existing = conf.read_text() if conf.exists() else MANAGED_HEADER
            if existing and not existing.endswith("\n"):
                existing += "\n"
            conf.write_text(f"{existing}blacklist {name}\n")
            logger.info(f"Blacklisted kernel module {name} in {conf}")
            return

        wanted = normalize_module_name(name)
        for conf in self._conf_files():
            lines = conf.read_text().splitlines(keepends=True)
            kept = [line for line in lines if blacklisted_module(line) != wanted]
            if len(kept) != len(lines):
                conf.write_text("".join(kept))
                logger.info(f"Removed blacklist entry for {name} from {conf}")

    def _conf_files(self) -> list[Path]:
        if not self.modprobe_dir.is_dir():
            return []
        return sorted(self.modprobe_dir.glob("*.conf"))
