"""Probe layer: read the current state of resources.

Probing is read-only and total. Any failure to determine state is recorded
on the ProbeResult as probe_error and the resource counts as unsatisfied.
"""
import asyncio
import logging
import shlex
from typing import Callable, Optional, Sequence

from ..system.base import SystemInterfaces
from ..system.kmod import normalize_module_name
from ..utils.logging_config import timed_section_sync
from .errors import describe
from .schema import ProbeResult, Resource, ResourceKind, content_digest

logger = logging.getLogger(__name__)


def flag_text(value: bool) -> str:
    return "true" if value else "false"


class StateProber:
    """Query system collaborators for the current state of a resource."""

    def __init__(self, system: SystemInterfaces):
        self.system = system
        self._handlers: dict[ResourceKind, Callable[[Resource], ProbeResult]] = {
            ResourceKind.PACKAGE_INSTALLED: self._probe_package,
            ResourceKind.PIP_PACKAGE_VERSION: self._probe_pip_package,
            ResourceKind.FILE_CONTENT: self._probe_file,
            ResourceKind.KERNEL_MODULE_BLACKLISTED: self._probe_blacklist,
            ResourceKind.KERNEL_MODULE_LOADED: self._probe_module_loaded,
            ResourceKind.ENV_VAR_SET: self._probe_env_var,
            ResourceKind.PYTHON_VENV: self._probe_venv,
            ResourceKind.COMMAND_OUTPUT: self._probe_command,
        }

    def probe(self, resource: Resource) -> ProbeResult:
        """
        Read the current state of one resource.

        Never raises: query failures are returned as probe_error.
        """
        handler = self._handlers[resource.kind]
        try:
            with timed_section_sync("probe", subject=resource.id):
                result = handler(resource)
        except Exception as e:
            logger.warning(f"Probe failed for {resource.id}: {e}")
            return ProbeResult(
                resource_id=resource.id,
                present=False,
                matches_desired=False,
                probe_error=describe(e),
            )

        logger.debug(
            f"Probed {resource.id}: present={result.present} "
            f"observed={result.observed_value!r} matches={result.matches_desired}"
        )
        return result

    def probe_all(
        self,
        resources: Sequence[Resource],
        should_stop: Optional[Callable[[], bool]] = None
    ) -> dict[str, ProbeResult]:
        """
        Probe resources sequentially, keyed by resource id in declaration order.

        Args:
            resources: Resources to probe
            should_stop: Checked before each probe; once it returns True the
                remaining resources are left out of the result
        """
        results: dict[str, ProbeResult] = {}
        for resource in resources:
            if should_stop is not None and should_stop():
                logger.warning(
                    f"Probing stopped, {len(resources) - len(results)} resources not probed"
                )
                break
            results[resource.id] = self.probe(resource)
        return results

    async def probe_all_concurrent(
        self,
        resources: Sequence[Resource],
        workers: int = 4,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> dict[str, ProbeResult]:
        """
        Probe resources on worker threads, at most `workers` at a time.

        Probes are read-only, so no ordering between resources is needed.
        Resources not yet started when should_stop() turns True are left out.
        """
        semaphore = asyncio.Semaphore(max(1, workers))

        async def bounded(resource: Resource) -> Optional[ProbeResult]:
            async with semaphore:
                if should_stop is not None and should_stop():
                    return None
                return await asyncio.to_thread(self.probe, resource)

        results = await asyncio.gather(*(bounded(r) for r in resources))
        return {
            r.id: result for r, result in zip(resources, results) if result is not None
        }

    # --- Per-kind probes ---

    def _versioned(self, resource: Resource, version) -> ProbeResult:
        present = version is not None
        if resource.absent:
            matches = not present
        else:
            matches = present and (resource.desired is None or version == resource.desired)
        return ProbeResult(
            resource_id=resource.id,
            present=present,
            observed_value=version,
            matches_desired=matches,
        )

    def _probe_package(self, resource: Resource) -> ProbeResult:
        return self._versioned(
            resource, self.system.packages.installed_version(resource.target)
        )

    def _probe_pip_package(self, resource: Resource) -> ProbeResult:
        return self._versioned(
            resource, self.system.python_packages.installed_version(resource.target)
        )

    def _probe_file(self, resource: Resource) -> ProbeResult:
        files = self.system.files
        st = files.stat(resource.target)
        if st is None:
            return ProbeResult(
                resource_id=resource.id,
                present=False,
                matches_desired=resource.absent,
            )

        digest = content_digest(files.read_bytes(resource.target))
        if resource.absent:
            return ProbeResult(
                resource_id=resource.id,
                present=True,
                observed_value=digest,
                matches_desired=False,
            )

        matches = True
        detail = None
        if resource.desired is not None and digest != content_digest(resource.desired):
            matches = False
            detail = "content differs"
        if resource.mode is not None and st.mode != resource.mode:
            matches = False
            mode_detail = f"mode {st.mode:04o} != {resource.mode:04o}"
            detail = f"{detail}; {mode_detail}" if detail else mode_detail

        return ProbeResult(
            resource_id=resource.id,
            present=True,
            observed_value=digest,
            matches_desired=matches,
            detail=detail,
        )

    def _flag(self, resource: Resource, current: bool) -> ProbeResult:
        wanted = False if resource.absent else resource.desired is not False
        return ProbeResult(
            resource_id=resource.id,
            present=current,
            observed_value=flag_text(current),
            matches_desired=current == wanted,
        )

    def _probe_blacklist(self, resource: Resource) -> ProbeResult:
        return self._flag(resource, self.system.modules.is_blacklisted(resource.target))

    def _probe_module_loaded(self, resource: Resource) -> ProbeResult:
        loaded = self.system.modules.loaded_modules()
        return self._flag(resource, normalize_module_name(resource.target) in loaded)

    def _probe_env_var(self, resource: Resource) -> ProbeResult:
        value = self.system.environment.get(resource.target)
        present = value is not None
        if resource.absent:
            matches = not present
        else:
            matches = present and (resource.desired is None or value == str(resource.desired))
        return ProbeResult(
            resource_id=resource.id,
            present=present,
            observed_value=value,
            matches_desired=matches,
        )

    def _probe_venv(self, resource: Resource) -> ProbeResult:
        """A venv exists when pyvenv.cfg and bin/python are both there."""
        files = self.system.files
        root = resource.target.rstrip("/")
        config = f"{root}/pyvenv.cfg"
        if files.stat(config) is None:
            return ProbeResult(resource_id=resource.id, present=False)

        version = venv_version(files.read_bytes(config).decode("utf-8", errors="replace"))
        has_python = files.stat(f"{root}/bin/python") is not None
        return ProbeResult(
            resource_id=resource.id,
            present=True,
            observed_value=version or "present",
            matches_desired=has_python,
            detail=None if has_python else "bin/python missing",
        )

    def _probe_command(self, resource: Resource) -> ProbeResult:
        result = self.system.check_output(shlex.split(resource.target))
        if not result.ok:
            if result.returncode == 127:
                reason = "command not found"
            else:
                reason = f"exit status {result.returncode}"
            return ProbeResult(
                resource_id=resource.id,
                present=False,
                observed_value=_first_line(result.stderr),
                detail=f"command failed ({reason})",
            )

        output = result.stdout
        missing = resource.desired.missing(output) if resource.desired is not None else []
        return ProbeResult(
            resource_id=resource.id,
            present=True,
            observed_value=_clip_output(output),
            matches_desired=not missing,
            detail=f"missing {', '.join(missing)}" if missing else None,
        )


MAX_OBSERVED_OUTPUT = 200


def _first_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


def _clip_output(output: str) -> str:
    """Collapse command output to one reportable line."""
    text = " | ".join(line.strip() for line in output.splitlines() if line.strip())
    if len(text) > MAX_OBSERVED_OUTPUT:
        text = text[:MAX_OBSERVED_OUTPUT - 3] + "..."
    return text


def venv_version(config_text: str) -> Optional[str]:
    """Python version recorded in a pyvenv.cfg ("version = 3.11.2")."""
    for line in config_text.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip() in ("version", "version_info"):
            return value.strip()
    return None
