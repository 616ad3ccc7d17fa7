import shlex
import subprocess
from collections.abc import Sequence
from typing import Final
from typing import Self

from loguru import logger

from imbue.lvsnap.base import FrozenModel

_MAX_OUTPUT_IN_MESSAGE: Final[int] = 8000


class ProcessError(Exception):
    """Raised when a process fails with a non-zero exit code."""

    def __init__(
        self,
        command: tuple[str, ...],
        stdout: str,
        stderr: str,
        returncode: int | None = None,
        message: str = "Command failed with non-zero exit code",
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.message = message
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = f"{self.message} {self.returncode}. command=`{shlex.join(self.command)}`"
        output = (self.stdout + "\n" + self.stderr).strip()
        if output:
            if len(output) > _MAX_OUTPUT_IN_MESSAGE:
                half = _MAX_OUTPUT_IN_MESSAGE // 2
                output = output[:half] + "\n... OUTPUT TRUNCATED ...\n" + output[-half:]
            msg += f"\noutput:\n{output}"
        return msg

    def __str__(self) -> str:
        return self._format_message()


class ProcessTimeoutError(ProcessError):
    """Raised when a process times out."""

    def __init__(self, command: tuple[str, ...], stdout: str, stderr: str) -> None:
        super().__init__(command, stdout, stderr, None, message="Command timed out")


class FinishedProcess(FrozenModel):
    """A completed process with its output and exit status."""

    returncode: int | None = None
    stdout: str
    stderr: str
    command: tuple[str, ...]
    is_timed_out: bool = False

    @property
    def is_success(self) -> bool:
        return not self.is_timed_out and self.returncode == 0

    def check(self) -> Self:
        if self.is_timed_out:
            raise ProcessTimeoutError(command=self.command, stdout=self.stdout, stderr=self.stderr)
        if self.returncode != 0:
            raise ProcessError(
                command=self.command,
                returncode=self.returncode,
                stdout=self.stdout,
                stderr=self.stderr,
            )
        return self


def _to_text(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def run_local_command(
    command: Sequence[str],
    is_checked: bool = False,
    timeout: float | None = None,
) -> FinishedProcess:
    """Run a command as an argv list (never through a shell) and capture its output.

    A missing executable is reported as a FinishedProcess with returncode 127, the
    same way a shell would report it, so callers can treat it as an ordinary failure.
    """
    command_tuple = tuple(command)
    logger.debug("Running: {}", shlex.join(command_tuple))
    try:
        completed = subprocess.run(
            command_tuple,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        logger.debug("Command timed out after {}s: {}", timeout, shlex.join(command_tuple))
        finished = FinishedProcess(
            command=command_tuple,
            stdout=_to_text(e.stdout),
            stderr=_to_text(e.stderr),
            is_timed_out=True,
        )
    except FileNotFoundError as e:
        finished = FinishedProcess(
            command=command_tuple,
            returncode=127,
            stdout="",
            stderr=str(e),
        )
    else:
        finished = FinishedProcess(
            command=command_tuple,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
    logger.trace("Exit code {}, stdout={!r}, stderr={!r}", finished.returncode, finished.stdout, finished.stderr)
    if is_checked:
        finished.check()
    return finished
