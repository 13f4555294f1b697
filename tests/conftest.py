"""Shared fixtures: in-memory collaborators for the reconcile engine."""
from typing import Optional, Sequence

import pytest

from mcp_system_state.engine.errors import CommandError, ExecutionError, ProbeError
from mcp_system_state.system.base import (
    EnvironmentStore,
    FileStat,
    FileSystem,
    KernelModules,
    PackageManager,
    PythonPackageManager,
    SystemInterfaces,
)
from mcp_system_state.system.command import CmdResult, CommandRunner


class FakePackages(PackageManager):
    """Package database held in a dict of name -> version."""

    def __init__(self, installed: Optional[dict] = None, latest: Optional[dict] = None):
        self.installed = dict(installed or {})
        self.latest = dict(latest or {})
        self.unavailable: set[tuple[str, Optional[str]]] = set()
        self.failures: dict[str, int] = {}
        self.broken_query: set[str] = set()
        self.calls: list[tuple] = []

    def installed_version(self, name: str) -> Optional[str]:
        if name in self.broken_query:
            raise ProbeError(f"database locked while querying {name}")
        return self.installed.get(name)

    def install(self, name: str, version: Optional[str] = None, source: Optional[str] = None) -> None:
        self.calls.append(("install", name, version, source))
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise ExecutionError(f"transient failure installing {name}")
        if (name, version) in self.unavailable or (name, source) in self.unavailable:
            raise ExecutionError(f"Version '{version}' for '{name}' was not found")
        self.installed[name] = version or self.latest.get(name, "0.0-latest")

    def remove(self, name: str) -> None:
        self.calls.append(("remove", name))
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise ExecutionError(f"failed to remove {name}")
        self.installed.pop(name, None)


class FakePythonPackages(FakePackages, PythonPackageManager):
    """pip environment held in a dict."""


class FakeFiles(FileSystem):
    """Filesystem held in a dict of path -> (content, mode)."""

    def __init__(self, files: Optional[dict] = None, sources: Optional[dict] = None):
        self.files: dict[str, tuple[bytes, int]] = dict(files or {})
        self.sources: dict[str, bytes] = dict(sources or {})
        self.fetches: list[str] = []
        self.writes: list[str] = []
        self.chmods: list[tuple[str, int]] = []

    def stat(self, path: str) -> Optional[FileStat]:
        if path not in self.files:
            return None
        data, mode = self.files[path]
        return FileStat(size=len(data), mode=mode)

    def read_bytes(self, path: str) -> bytes:
        if path not in self.files:
            raise ProbeError(f"No such file: {path}")
        return self.files[path][0]

    def write_bytes(self, path: str, data: bytes, mode: Optional[int] = None) -> None:
        self.writes.append(path)
        self.files[path] = (data, mode if mode is not None else 0o644)

    def chmod(self, path: str, mode: int) -> None:
        if path not in self.files:
            raise ExecutionError(f"No such file: {path}")
        self.chmods.append((path, mode))
        self.files[path] = (self.files[path][0], mode)

    def remove(self, path: str) -> None:
        self.files.pop(path, None)

    def fetch(self, source: str) -> bytes:
        self.fetches.append(source)
        if source not in self.sources:
            raise ExecutionError(f"Download failed for {source}: 404 Not Found")
        return self.sources[source]


class FakeModules(KernelModules):
    """Loaded and blacklisted modules held in sets."""

    def __init__(self, loaded: Sequence[str] = (), blacklisted: Sequence[str] = ()):
        self.loaded = set(loaded)
        self.blacklisted = set(blacklisted)
        self.unloadable: set[str] = set()

    def loaded_modules(self) -> set[str]:
        return set(self.loaded)

    def load(self, name: str) -> None:
        if name in self.unloadable or name in self.blacklisted:
            raise ExecutionError(f"modprobe: could not insert '{name}'")
        self.loaded.add(name)

    def unload(self, name: str) -> None:
        self.loaded.discard(name)

    def is_blacklisted(self, name: str) -> bool:
        return name in self.blacklisted

    def set_blacklisted(self, name: str, blacklisted: bool) -> None:
        if blacklisted:
            self.blacklisted.add(name)
        else:
            self.blacklisted.discard(name)


class FakeEnvironment(EnvironmentStore):
    """Environment variables held in a dict."""

    def __init__(self, values: Optional[dict] = None):
        self.values = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def set(self, name: str, value: str) -> None:
        self.values[name] = value

    def unset(self, name: str) -> None:
        self.values.pop(name, None)


class FakeCommandRunner(CommandRunner):
    """Records commands instead of running them.

    Responses map the argv (as a tuple) or its first word to a CmdResult
    or to a (returncode, stdout, stderr) tuple.
    """

    def __init__(self, responses: Optional[dict] = None):
        super().__init__()
        self.responses = dict(responses or {})
        self.commands: list[list[str]] = []
        self.timeouts: list[Optional[float]] = []

    def run(
        self,
        argv,
        check: bool = True,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CmdResult:
        argv_list = [str(a) for a in argv]
        self.commands.append(argv_list)
        self.timeouts.append(timeout)

        response = self.responses.get(tuple(argv_list), self.responses.get(argv_list[0]))
        if response is None:
            result = CmdResult(argv=argv_list, returncode=0)
        elif isinstance(response, CmdResult):
            result = response
        else:
            returncode, stdout, stderr = response
            result = CmdResult(argv=argv_list, returncode=returncode, stdout=stdout, stderr=stderr)

        if check and not result.ok:
            raise CommandError(argv_list, result.returncode, result.stderr)
        return result


@pytest.fixture
def fake_system() -> SystemInterfaces:
    """A host with nothing installed."""
    return SystemInterfaces(
        packages=FakePackages(),
        python_packages=FakePythonPackages(),
        files=FakeFiles(),
        modules=FakeModules(),
        environment=FakeEnvironment(),
        commands=FakeCommandRunner(),
    )


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def restore_audit_logger():
    """Put the audit logger back the way it was after the test reconfigures it."""
    from mcp_system_state.utils.audit_log import audit_logger

    saved_handlers = list(audit_logger.handlers)
    saved_propagate = audit_logger.propagate
    saved_level = audit_logger.level
    yield audit_logger

    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        audit_logger.addHandler(handler)
    audit_logger.propagate = saved_propagate
    audit_logger.setLevel(saved_level)
