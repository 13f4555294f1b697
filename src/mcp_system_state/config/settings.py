"""Engine settings.

Resolved in order (later wins): built-in defaults, the "settings:" block of
the resource file, STATECRAFT_* environment variables, CLI flags.

Environment Variables:
    STATECRAFT_MAX_ATTEMPTS: Attempts per action, fallback included (default: 2)
    STATECRAFT_RETRY_DELAY: Seconds between attempts (default: 0)
    STATECRAFT_ERROR_MODE: continue-on-error or fail-fast
    STATECRAFT_WORKERS: Worker count for concurrent mode (default: 1)
    STATECRAFT_PYTHON: Interpreter whose pip environment is managed
    STATECRAFT_ENVIRONMENT_FILE: Environment file (default: /etc/environment)
    STATECRAFT_MODPROBE_DIR: modprobe config dir (default: /etc/modprobe.d)
    STATECRAFT_DOWNLOAD_TIMEOUT: HTTP download timeout in seconds (default: 60)
    STATECRAFT_CHECK_TIMEOUT: Seconds a command_output check may run (default: 60)
    STATECRAFT_AUDIT_LOG: Audit log file (default: ~/.statecraft/audit.log)
"""
import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..engine.errors import ConfigError
from ..engine.schema import ErrorMode, ExecuteOptions

ENV_PREFIX = "STATECRAFT_"


@dataclass
class EngineSettings:
    """Settings that shape a reconcile run and the system collaborators."""
    max_attempts: int = 2
    retry_delay: float = 0
    error_mode: ErrorMode = ErrorMode.CONTINUE_ON_ERROR
    workers: int = 1
    python: Optional[str] = None
    environment_file: str = "/etc/environment"
    modprobe_dir: str = "/etc/modprobe.d"
    download_timeout: float = 60.0
    check_timeout: float = 60.0
    apt_update: bool = True
    audit_log: Optional[str] = None

    def __post_init__(self):
        try:
            self.error_mode = ErrorMode(self.error_mode)
        except ValueError:
            raise ConfigError(
                f"Invalid error_mode: {self.error_mode}. "
                f"Must be 'continue-on-error' or 'fail-fast'"
            )
        if int(self.max_attempts) < 1:
            raise ConfigError("max_attempts must be at least 1")
        if int(self.workers) < 1:
            raise ConfigError("workers must be at least 1")

    @classmethod
    def from_sources(
        cls,
        settings: Optional[Mapping[str, Any]] = None,
        env: Optional[Mapping[str, str]] = None,
        **overrides: Any
    ) -> "EngineSettings":
        """
        Build settings from a YAML block, environment and explicit overrides.

        Args:
            settings: The "settings:" mapping of a resource file
            env: Environment (defaults to os.environ)
            **overrides: Values that win over everything else (None is ignored)
        """
        env = os.environ if env is None else env
        fields = {f.name: f for f in dataclasses.fields(cls)}
        values: dict[str, Any] = {}

        for key, value in (settings or {}).items():
            key = key.replace("-", "_")
            if key not in fields:
                raise ConfigError(f"Unknown setting: {key}")
            values[key] = value

        for name in fields:
            env_value = env.get(ENV_PREFIX + name.upper())
            if env_value is not None and env_value != "":
                values[name] = env_value

        for key, value in overrides.items():
            if value is not None:
                values[key] = value

        return cls(**{k: _coerce(fields[k].type, v) for k, v in values.items()})

    def execute_options(self, dry_run: bool = False) -> ExecuteOptions:
        return ExecuteOptions(
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
            error_mode=self.error_mode,
            workers=self.workers,
            dry_run=dry_run,
        )


def _coerce(field_type: Any, value: Any) -> Any:
    """Coerce env/YAML values to the declared field type."""
    if value is None:
        return None
    type_name = field_type if isinstance(field_type, str) else getattr(field_type, "__name__", "")
    try:
        if type_name == "int":
            return int(value)
        if type_name == "float":
            return float(value)
        if type_name == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid setting value: {value!r}")
    return value
