"""Environment file collaborator (/etc/environment style KEY=VALUE lines)."""
import logging
from pathlib import Path
from typing import Optional

from ..engine.errors import ProbeError
from .base import EnvironmentStore

logger = logging.getLogger(__name__)


def parse_line(line: str) -> Optional[tuple[str, str]]:
    """
    Parse one environment file line.

    Examples:
        'LIBGL_KOPPER_DISABLE=true' -> ("LIBGL_KOPPER_DISABLE", "true")
        'export OPENCV_OPENCL_DEVICE="enabled"' -> ("OPENCV_OPENCL_DEVICE", "enabled")
        '# comment' -> None
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()
    key, _, value = stripped.partition("=")
    key = key.strip()
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def format_line(name: str, value: str) -> str:
    if any(c.isspace() for c in value):
        return f'{name}="{value}"\n'
    return f"{name}={value}\n"


class EnvironmentFile(EnvironmentStore):
    """Variables stored in a KEY=VALUE file read at login."""

    def __init__(self, path: str = "/etc/environment"):
        self.path = Path(path)

    def _read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text().splitlines(keepends=True)

    def get(self, name: str) -> Optional[str]:
        try:
            lines = self._read_lines()
        except OSError as e:
            raise ProbeError(f"Cannot read {self.path}: {e}") from e

        value = None
        for line in lines:
            parsed = parse_line(line)
            if parsed and parsed[0] == name:
                value = parsed[1]  # Last assignment wins
        return value

    def set(self, name: str, value: str) -> None:
        """Replace the first assignment of name, dropping duplicates, or append."""
        lines = self._read_lines()
        output = []
        written = False
        for line in lines:
            parsed = parse_line(line)
            if parsed and parsed[0] == name:
                if not written:
                    output.append(format_line(name, value))
                    written = True
                continue
            output.append(line)

        if not written:
            if output and not output[-1].endswith("\n"):
                output[-1] += "\n"
            output.append(format_line(name, value))

        self._write(output)
        logger.info(f"Set {name} in {self.path}")

    def unset(self, name: str) -> None:
        lines = self._read_lines()
        output = []
        for line in lines:
            parsed = parse_line(line)
            if parsed and parsed[0] == name:
                continue
            output.append(line)
        if len(output) != len(lines):
            self._write(output)
            logger.info(f"Removed {name} from {self.path}")

    def _write(self, lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("".join(lines))
