import atexit
import signal
import sys
from collections.abc import Callable
from types import FrameType

from loguru import logger

# Named callbacks that remove transient per-run state (pending recreation lists, per-run caches)
_cleanup_callbacks: dict[str, Callable[[], None]] = {}
_handlers_installed: dict[str, bool] = {"installed": False}


def run_cleanup_callbacks() -> None:
    """Run and forget every registered cleanup callback.

    Called via atexit and from the signal handlers. A failing callback does not
    stop the others from running.
    """
    callbacks = list(_cleanup_callbacks.items())
    _cleanup_callbacks.clear()
    for name, callback in callbacks:
        try:
            callback()
        except (OSError, ValueError) as e:
            logger.warning("Cleanup step {} failed: {}", name, e)


def _handle_termination_signal(signum: int, frame: FrameType | None) -> None:
    logger.warning("Received signal {}, cleaning up", signal.Signals(signum).name)
    run_cleanup_callbacks()
    if signum == signal.SIGINT:
        raise KeyboardInterrupt
    sys.exit(128 + signum)


def _ensure_handlers_installed() -> None:
    """Register the atexit and signal handlers if not already registered."""
    if _handlers_installed["installed"]:
        return
    atexit.register(run_cleanup_callbacks)
    try:
        signal.signal(signal.SIGTERM, _handle_termination_signal)
        signal.signal(signal.SIGINT, _handle_termination_signal)
    except ValueError:
        # signal handlers can only be installed from the main thread
        logger.trace("Not installing signal handlers outside the main thread")
    _handlers_installed["installed"] = True


def register_cleanup(name: str, callback: Callable[[], None]) -> None:
    """Register a callback to run on exit or on SIGTERM/SIGINT. Re-registering a name replaces it."""
    _ensure_handlers_installed()
    _cleanup_callbacks[name] = callback


def unregister_cleanup(name: str) -> None:
    _cleanup_callbacks.pop(name, None)


def reset_cleanup_state() -> None:
    """Forget every callback without running it. Used for test isolation."""
    _cleanup_callbacks.clear()
