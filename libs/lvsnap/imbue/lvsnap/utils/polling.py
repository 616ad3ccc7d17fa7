import time
from collections.abc import Callable

from imbue.lvsnap.primitives import PollResult


def poll_until_result(
    condition: Callable[[], bool],
    timeout: float = 5.0,
    poll_interval: float = 0.1,
    initial_delay: float = 0.0,
) -> PollResult:
    """Poll until a condition becomes true or the timeout expires.

    The condition is always checked at least once, after the initial delay.
    The timeout is measured from the first check.
    """
    if initial_delay > 0:
        time.sleep(initial_delay)
    start_time = time.monotonic()
    while True:
        if condition():
            return PollResult.COMPLETED
        if time.monotonic() - start_time >= timeout:
            return PollResult.TIMED_OUT
        time.sleep(poll_interval)


def poll_until(
    condition: Callable[[], bool],
    timeout: float = 5.0,
    poll_interval: float = 0.1,
) -> bool:
    """Poll until a condition becomes true or timeout expires.

    Returns True if the condition was met, False if timeout occurred.
    """
    return poll_until_result(condition, timeout, poll_interval) == PollResult.COMPLETED
