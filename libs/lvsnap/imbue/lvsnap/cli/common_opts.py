import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any
from typing import TypeVar

import click
from click.core import ParameterSource
from click_option_group import optgroup

from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.config.data_types import LvsnapConfig
from imbue.lvsnap.config.data_types import LvsnapContext
from imbue.lvsnap.config.data_types import OutputOptions
from imbue.lvsnap.config.loader import load_config
from imbue.lvsnap.primitives import LogLevel
from imbue.lvsnap.primitives import OutputFormat
from imbue.lvsnap.utils.logging import setup_logging

# Constant for the "Common" option group name used across all commands
COMMON_OPTIONS_GROUP_NAME = "Common"

TCommandOptions = TypeVar("TCommandOptions", bound="CommonCliOptions")
TDecorated = TypeVar("TDecorated", bound=Callable[..., Any])


class CommonCliOptions(FrozenModel):
    """Base class for common CLI options shared across all commands.

    This captures the options added by the @add_common_options decorator.
    All command-specific option classes should inherit from this class.

    Note that this class VERY INTENTIONALLY DOES NOT use Field() decorators with descriptions, defaults, etc.
    For that information, see the @add_common_options decorator and its click.option() decorators.
    """

    output_format: str
    quiet: bool
    verbose: int
    debug: bool
    log_file: str | None


def add_common_options(command: TDecorated) -> TDecorated:
    """Decorator to add common options to a command.

    Adds the following options in the "Common" option group:
    - --format: Output format (human/json/jsonl)
    - -q, --quiet: Suppress console output
    - -v, --verbose: Increase verbosity
    - --debug: Same as -v
    - --log-file: Override log file path
    """
    # Apply decorators in reverse order (bottom to top)
    command = optgroup.option(
        "--log-file",
        type=click.Path(),
        default=None,
        help="Path to log file (overrides default <data_dir>/logs/<timestamp>-<pid>.json)",
    )(command)
    command = optgroup.option("--debug", is_flag=True, help="Show debug output (same as -v)")(command)
    command = optgroup.option(
        "-v", "--verbose", count=True, help="Increase verbosity (default: INFO); -v for DEBUG, -vv for TRACE"
    )(command)
    command = optgroup.option("-q", "--quiet", is_flag=True, help="Suppress all console output")(command)
    command = optgroup.option(
        "--format",
        "output_format",
        type=click.Choice(["human", "json", "jsonl"], case_sensitive=False),
        default="human",
        show_default=True,
        help="Output format for command results",
    )(command)
    # Start the "Common" option group - applied last since decorators run in reverse order
    command = optgroup.group(COMMON_OPTIONS_GROUP_NAME)(command)

    return command


def _is_terminal_attached() -> bool:
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except (ValueError, AttributeError):
        # Handle cases where stdio is replaced or closed
        return False


def setup_command_context(
    ctx: click.Context,
    command_name: str,
    command_class: type[TCommandOptions],
    is_interactive: bool | None = None,
) -> tuple[LvsnapContext, OutputOptions, TCommandOptions]:
    """Set up config and logging for a command.

    This is the single entry point for command setup. Call this at the top of
    each command to load config, parse output options, apply config defaults
    and set up logging. When is_interactive is None it is decided by whether a
    terminal is attached.
    """
    # First parse options from CLI args to extract common parameters
    initial_opts = command_class(**ctx.params)

    pm = ctx.obj
    lvsnap_ctx = load_config(
        pm,
        is_interactive=_is_terminal_attached() if is_interactive is None else is_interactive,
    )

    output_opts = parse_output_options(
        output_format=initial_opts.output_format,
        quiet=initial_opts.quiet,
        verbose=effective_verbosity(initial_opts.verbose, initial_opts.debug),
        log_file=initial_opts.log_file,
        config=lvsnap_ctx.config,
    )
    setup_logging(output_opts, lvsnap_ctx.config)

    # Apply config defaults to parameters that came from defaults (not user-specified)
    updated_params = apply_config_defaults(ctx, lvsnap_ctx.config, command_name)
    opts = command_class(**updated_params)

    return lvsnap_ctx, output_opts, opts


def effective_verbosity(verbose: int, debug: bool) -> int:
    return max(verbose, 1) if debug else verbose


def parse_output_options(
    output_format: str,
    quiet: bool,
    verbose: int,
    log_file: str | None,
    config: LvsnapConfig,
) -> OutputOptions:
    """Parse output-related CLI options. CLI flags can override config values."""
    parsed_output_format = OutputFormat(output_format.upper())

    # Determine console level based on quiet and verbose flags
    if quiet:
        console_level = LogLevel.NONE
    elif verbose >= 2:
        console_level = LogLevel.TRACE
    elif verbose == 1:
        console_level = LogLevel.DEBUG
    else:
        console_level = config.logging.console_level

    log_file_path = Path(log_file) if log_file else None

    return OutputOptions(
        output_format=parsed_output_format,
        console_level=console_level,
        log_file_path=log_file_path,
    )


def apply_config_defaults(ctx: click.Context, config: LvsnapConfig, command_name: str) -> dict[str, Any]:
    """Apply config defaults to parameters that were not explicitly set by the user.

    Uses ctx.get_parameter_source() to detect which parameters came from defaults.
    Only overrides parameters that came from DEFAULT source, not COMMANDLINE or ENVIRONMENT.
    Values from environment variables arrive as strings and are converted with the
    parameter's click type.
    """
    command_defaults = config.commands.get(command_name)
    if not command_defaults:
        return ctx.params.copy()

    updated_params = ctx.params.copy()
    params_by_name = {param.name: param for param in ctx.command.params if param.name is not None}

    for param_name, config_value in command_defaults.defaults.items():
        if param_name not in ctx.params:
            continue
        if ctx.get_parameter_source(param_name) != ParameterSource.DEFAULT:
            continue
        param = params_by_name.get(param_name)
        if param is not None and isinstance(config_value, str):
            updated_params[param_name] = param.type_cast_value(ctx, config_value)
        else:
            updated_params[param_name] = config_value

    return updated_params
