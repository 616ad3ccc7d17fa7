"""Tests for exit and signal cleanup."""

import signal

import pytest

from imbue.lvsnap.utils.cleanup import _handle_termination_signal
from imbue.lvsnap.utils.cleanup import register_cleanup
from imbue.lvsnap.utils.cleanup import reset_cleanup_state
from imbue.lvsnap.utils.cleanup import run_cleanup_callbacks
from imbue.lvsnap.utils.cleanup import unregister_cleanup


@pytest.fixture(autouse=True)
def _clean_registry() -> None:
    reset_cleanup_state()


def test_run_cleanup_callbacks_runs_each_once() -> None:
    """Callbacks should run once and then be forgotten."""
    calls: list[str] = []
    register_cleanup("a", lambda: calls.append("a"))
    register_cleanup("b", lambda: calls.append("b"))

    run_cleanup_callbacks()
    run_cleanup_callbacks()

    assert sorted(calls) == ["a", "b"]


def test_unregistered_callback_does_not_run() -> None:
    """unregister_cleanup should remove a callback."""
    calls: list[str] = []
    register_cleanup("a", lambda: calls.append("a"))
    unregister_cleanup("a")

    run_cleanup_callbacks()

    assert calls == []


def test_failing_callback_does_not_block_others() -> None:
    """An OSError in one callback should not prevent the rest from running."""
    calls: list[str] = []

    def failing() -> None:
        raise OSError("disk gone")

    register_cleanup("failing", failing)
    register_cleanup("ok", lambda: calls.append("ok"))

    run_cleanup_callbacks()

    assert calls == ["ok"]


def test_sigterm_runs_cleanup_and_exits() -> None:
    """SIGTERM should clean up and exit with 128 + signum."""
    calls: list[str] = []
    register_cleanup("a", lambda: calls.append("a"))

    with pytest.raises(SystemExit) as exc_info:
        _handle_termination_signal(signal.SIGTERM, None)

    assert calls == ["a"]
    assert exc_info.value.code == 128 + signal.SIGTERM


def test_sigint_runs_cleanup_and_raises_keyboard_interrupt() -> None:
    """SIGINT should clean up and then behave like a normal Ctrl-C."""
    calls: list[str] = []
    register_cleanup("a", lambda: calls.append("a"))

    with pytest.raises(KeyboardInterrupt):
        _handle_termination_signal(signal.SIGINT, None)

    assert calls == ["a"]
