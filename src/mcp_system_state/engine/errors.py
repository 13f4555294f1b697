"""Error taxonomy for the reconcile engine.

ConfigError and its subclasses are fatal and raised before any probe runs.
ProbeError and ExecutionError are raised by system collaborators and are
captured into probe results and execution records rather than propagated.
"""
from typing import Optional, Sequence


class StatecraftError(Exception):
    """Base class for all engine errors."""
    pass


class ConfigError(StatecraftError):
    """Bad resource declarations. Aborts a run before any mutation."""
    pass


class ConfigNotFoundError(ConfigError):
    """No resource file was given and none exists at the default locations."""
    pass


class DuplicateIdError(ConfigError):
    """Two resources share the same id."""

    def __init__(self, resource_id: str):
        super().__init__(f"Duplicate resource id: {resource_id}")
        self.resource_id = resource_id


class UnknownDependencyError(ConfigError):
    """A resource depends on an id that is not declared."""

    def __init__(self, resource_id: str, dependency: str):
        super().__init__(
            f"Resource {resource_id} depends on unknown resource: {dependency}"
        )
        self.resource_id = resource_id
        self.dependency = dependency


class CyclicDependencyError(ConfigError):
    """depends_on edges form a cycle."""

    def __init__(self, resource_ids: Sequence[str]):
        self.resource_ids = list(resource_ids)
        super().__init__(
            f"Cyclic dependency between resources: {', '.join(self.resource_ids)}"
        )


class ProbeError(StatecraftError):
    """Current state of a resource could not be determined."""
    pass


class ExecutionError(StatecraftError):
    """A mutation could not be applied."""
    pass


class CommandError(ExecutionError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({returncode}): {' '.join(self.argv)}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


def describe(error: Optional[BaseException]) -> Optional[str]:
    """Render an exception for reports, keeping the type for unexpected ones."""
    if error is None:
        return None
    if isinstance(error, StatecraftError):
        return str(error)
    return f"{type(error).__name__}: {error}"
