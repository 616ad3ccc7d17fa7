"""Tests for the local command runner."""

import sys

import pytest

from imbue.lvsnap.utils.commands import FinishedProcess
from imbue.lvsnap.utils.commands import ProcessError
from imbue.lvsnap.utils.commands import ProcessTimeoutError
from imbue.lvsnap.utils.commands import run_local_command


def test_run_local_command_captures_stdout() -> None:
    """Output of a successful command should be captured."""
    result = run_local_command([sys.executable, "-c", "print('hello')"])

    assert result.is_success
    assert result.stdout.strip() == "hello"


def test_run_local_command_reports_nonzero_exit() -> None:
    """A failing command should not raise unless checked."""
    result = run_local_command([sys.executable, "-c", "import sys; sys.exit(3)"])

    assert result.returncode == 3
    assert not result.is_success


def test_run_local_command_raises_when_checked() -> None:
    """is_checked=True should raise ProcessError with the exit code."""
    with pytest.raises(ProcessError, match="non-zero exit code 3"):
        run_local_command([sys.executable, "-c", "import sys; sys.exit(3)"], is_checked=True)


def test_run_local_command_missing_executable_is_127() -> None:
    """A missing executable should look like a shell 'command not found'."""
    result = run_local_command(["/nonexistent/lvsnap-test-binary"])

    assert result.returncode == 127
    assert not result.is_success


def test_run_local_command_times_out() -> None:
    """A command running past its timeout should be marked as timed out."""
    result = run_local_command([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)

    assert result.is_timed_out
    with pytest.raises(ProcessTimeoutError):
        result.check()


def test_process_error_truncates_long_output() -> None:
    """Huge outputs should be truncated in the error message."""
    finished = FinishedProcess(returncode=1, stdout="x" * 20000, stderr="", command=("false",))

    with pytest.raises(ProcessError) as exc_info:
        finished.check()

    message = str(exc_info.value)
    assert "OUTPUT TRUNCATED" in message
    assert len(message) < 9000
