"""Unit tests for the polling module."""

import time

from imbue.lvsnap.primitives import PollResult
from imbue.lvsnap.utils.polling import poll_until
from imbue.lvsnap.utils.polling import poll_until_result


def test_poll_until_result_completes_when_condition_met_immediately() -> None:
    """poll_until_result should return COMPLETED when the condition holds on the first check."""
    result = poll_until_result(lambda: True, timeout=1.0)

    assert result == PollResult.COMPLETED


def test_poll_until_result_times_out() -> None:
    """poll_until_result should return TIMED_OUT when the condition never holds."""
    result = poll_until_result(lambda: False, timeout=0.3, poll_interval=0.1)

    assert result == PollResult.TIMED_OUT


def test_poll_until_result_checks_at_least_once_with_zero_timeout() -> None:
    """A zero timeout still evaluates the condition once."""
    calls: list[int] = []

    def condition() -> bool:
        calls.append(1)
        return False

    result = poll_until_result(condition, timeout=0.0, poll_interval=0.0)

    assert result == PollResult.TIMED_OUT
    assert len(calls) == 1


def test_poll_until_result_waits_for_initial_delay() -> None:
    """The first check should happen after the initial delay."""
    start = time.monotonic()
    first_check: list[float] = []

    def condition() -> bool:
        first_check.append(time.monotonic() - start)
        return True

    poll_until_result(condition, timeout=1.0, initial_delay=0.1)

    assert first_check[0] >= 0.1


def test_poll_until_polls_until_condition_met() -> None:
    """poll_until should poll until condition is met."""
    start = time.time()

    result = poll_until(lambda: time.time() - start > 0.15, timeout=1.0, poll_interval=0.05)
    elapsed = time.time() - start
    assert result is True
    assert elapsed > 0.15
    assert elapsed < 0.75
