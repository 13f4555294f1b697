"""Local command execution with consistent logging."""
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from ..engine.errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    """Result of a finished command."""
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


class CommandRunner:
    """Run external commands.

    A command that cannot be found is reported as exit code 127, the same
    as a shell would, so callers only deal with CmdResult/CommandError.
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None
    ):
        self.env = dict(env or {})
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        check: bool = True,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CmdResult:
        """
        Run argv without a shell.

        Args:
            argv: Program and arguments
            check: Raise CommandError on a non-zero exit status
            input_text: Text fed to stdin
            timeout: Seconds before the command is killed (defaults to the
                runner's timeout)
        """
        argv_list = [str(a) for a in argv]
        timeout = timeout if timeout is not None else self.timeout
        logger.info(f"CMD {format_argv(argv_list)}")

        try:
            p = subprocess.run(
                argv_list,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,  # We'll handle errors ourselves
                env=dict(os.environ, **self.env),
                timeout=timeout,
            )
            result = CmdResult(
                argv=argv_list,
                returncode=p.returncode,
                stdout=p.stdout or "",
                stderr=p.stderr or "",
            )
        except FileNotFoundError as e:
            result = CmdResult(argv=argv_list, returncode=127, stderr=str(e))
        except subprocess.TimeoutExpired:
            result = CmdResult(
                argv=argv_list,
                returncode=124,
                stderr=f"timed out after {timeout}s",
            )

        if result.stdout:
            logger.debug(f"STDOUT {result.stdout.strip()}")
        if result.stderr:
            logger.debug(f"STDERR {result.stderr.strip()}")

        if check and not result.ok:
            raise CommandError(argv_list, result.returncode, result.stderr)

        return result
