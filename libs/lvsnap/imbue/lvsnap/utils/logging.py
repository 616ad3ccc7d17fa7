import functools
import inspect
import logging
import os
import sys
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import ParamSpec
from typing import TypeVar

import deal
from loguru import logger

from imbue.lvsnap.config.data_types import LvsnapConfig
from imbue.lvsnap.config.data_types import OutputOptions
from imbue.lvsnap.primitives import LogLevel

# ANSI color codes that work well on both light and dark backgrounds.
# WARNING_COLOR: Bold gold/orange (256-color code 178)
# ERROR_COLOR: Bold red (256-color code 196)
# DEBUG_COLOR: Solid blue (256-color code 33)
WARNING_COLOR = "\x1b[1;38;5;178m"
ERROR_COLOR = "\x1b[1;38;5;196m"
DEBUG_COLOR = "\x1b[38;5;33m"
RESET_COLOR = "\x1b[0m"

_LEVEL_MAP: dict[LogLevel, str] = {
    LogLevel.TRACE: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARN: "WARNING",
    LogLevel.ERROR: "ERROR",
    LogLevel.NONE: "CRITICAL",
}

# Third-party loggers that use the standard library and should end up in our sinks
_FORWARDED_STDLIB_LOGGERS = ("pyinfra", "paramiko")


def _format_user_message(record: Any) -> str:
    """Format user-facing log messages, adding colored prefixes for warnings and errors.

    The record parameter is a loguru Record TypedDict, but the type is only available
    in type stubs so we use Any here.
    """
    level_name = record["level"].name
    if level_name == "WARNING":
        return f"{WARNING_COLOR}WARNING: {{message}}{RESET_COLOR}\n"
    if level_name == "ERROR":
        return f"{ERROR_COLOR}ERROR: {{message}}{RESET_COLOR}\n"
    if level_name == "CRITICAL":
        return f"{ERROR_COLOR}SEVERE: {{message}}{RESET_COLOR}\n"
    if level_name in ("DEBUG", "TRACE"):
        return f"{DEBUG_COLOR}{{message}}{RESET_COLOR}\n"
    return "{message}\n"


def _dynamic_stderr_sink(message: Any) -> None:
    """Write to whatever sys.stderr is at call time, so that click's CliRunner can capture it."""
    sys.stderr.write(str(message))
    sys.stderr.flush()


class _StdlibToLoguruHandler(logging.Handler):
    """Forward standard library log records (pyinfra, paramiko) to loguru at TRACE level."""

    def emit(self, record: logging.LogRecord) -> None:
        logger.opt(depth=6, exception=record.exc_info).trace("[{}] {}", record.name, record.getMessage())


def setup_logging(output_opts: OutputOptions, config: LvsnapConfig) -> None:
    """Configure logging based on output options and config.

    Sets up:
    - stderr logging for user-facing messages at the console level
    - File logging to a custom path (if log_file_path provided) or
      <data_dir>/logs/<timestamp>-<pid>.json (default)
    - Log rotation based on config (only for the default log directory)
    """
    logger.remove()

    if output_opts.console_level != LogLevel.NONE:
        logger.add(
            _dynamic_stderr_sink,
            level=_LEVEL_MAP[output_opts.console_level],
            format=_format_user_message,
            colorize=False,
            diagnose=False,
        )

    is_using_custom_log_path = output_opts.log_file_path is not None
    if output_opts.log_file_path is not None:
        log_file = output_opts.log_file_path.expanduser()
        log_dir = log_file.parent
    else:
        log_dir = resolve_log_dir(config)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        log_file = log_dir / f"{timestamp}-{os.getpid()}.json"

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.debug("Not logging to a file, cannot create {}: {}", log_dir, e)
    else:
        logger.add(
            log_file,
            level=_LEVEL_MAP[config.logging.file_level],
            format="{message}",
            serialize=True,
            diagnose=False,
            rotation=f"{config.logging.max_log_size_mb} MB",
        )
        # Only rotate the default directory, so a custom path never deletes unrelated .json files
        if not is_using_custom_log_path:
            _rotate_old_logs(log_dir, config.logging.max_log_files)

    _forward_stdlib_logging()


def _forward_stdlib_logging() -> None:
    handler = _StdlibToLoguruHandler()
    for name in _FORWARDED_STDLIB_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [handler]
        stdlib_logger.setLevel(logging.DEBUG)
        stdlib_logger.propagate = False


def resolve_log_dir(config: LvsnapConfig) -> Path:
    """Resolve the log directory path. A relative log_dir is relative to data_dir."""
    log_dir = config.logging.log_dir
    if not log_dir.is_absolute():
        log_dir = config.data_dir / log_dir
    return log_dir.expanduser()


def _rotate_old_logs(log_dir: Path, max_files: int) -> None:
    """Remove the oldest log files if we exceed max_files.

    Concurrent lvsnap processes may race here; failures during deletion are ignored.
    """
    try:
        log_files = sorted(log_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
    except OSError:
        return

    for old_log in log_files[max_files:]:
        try:
            old_log.unlink()
        except OSError:
            pass


P = ParamSpec("P")
R = TypeVar("R")


@deal.has()
def _format_arg_value(value: Any) -> str:
    """Format an argument value for logging, truncating if too long."""
    str_value = repr(value)
    max_len = 200
    if len(str_value) > max_len:
        return str_value[: max_len - 3] + "..."
    return str_value


def log_call(func: Callable[P, R]) -> Callable[P, R]:
    """Decorator that logs function calls with inputs at debug level.

    Binds arguments as structured logging fields, which end up in the JSON log file.
    """
    func_name = getattr(func, "__name__", repr(func))

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        sig = inspect.signature(func)
        bound_args = sig.bind(*args, **kwargs)
        bound_args.apply_defaults()
        log_fields = {name: _format_arg_value(value) for name, value in bound_args.arguments.items()}
        logger.debug("Calling {}", func_name, **log_fields)

        result = func(*args, **kwargs)

        logger.debug("{} returned", func_name, result=_format_arg_value(result))
        return result

    return wrapper
