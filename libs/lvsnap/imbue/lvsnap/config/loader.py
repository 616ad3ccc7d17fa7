import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pluggy
from loguru import logger
from pydantic import ValidationError

from imbue.lvsnap.config.data_types import CacheConfig
from imbue.lvsnap.config.data_types import CommandDefaults
from imbue.lvsnap.config.data_types import DEFAULT_DATA_DIR
from imbue.lvsnap.config.data_types import LoggingConfig
from imbue.lvsnap.config.data_types import LvsnapConfig
from imbue.lvsnap.config.data_types import LvsnapContext
from imbue.lvsnap.config.data_types import PathsConfig
from imbue.lvsnap.config.data_types import SETTINGS_FILENAME
from imbue.lvsnap.config.data_types import SYSTEM_CONFIG_PATH
from imbue.lvsnap.config.data_types import SizingConfig
from imbue.lvsnap.config.data_types import SshConfig
from imbue.lvsnap.config.data_types import WaitsConfig
from imbue.lvsnap.errors import ConfigNotFoundError
from imbue.lvsnap.errors import ConfigParseError

# Environment variable prefix for command config overrides.
# Format: LVSNAP_COMMANDS_<COMMANDNAME>_<PARAMNAME>=<value>
# Example: LVSNAP_COMMANDS_REVERT_KEEP_SNAPSHOT=true
#
# Command names are single words, so the first underscore after the prefix
# separates the command name from the parameter name.
_ENV_COMMANDS_PREFIX = "LVSNAP_COMMANDS_"
_ENV_DATA_DIR = "LVSNAP_DATA_DIR"
_ENV_SYSTEM_CONFIG = "LVSNAP_SYSTEM_CONFIG"

_SECTION_CLASSES: dict[str, type] = {
    "paths": PathsConfig,
    "cache": CacheConfig,
    "waits": WaitsConfig,
    "ssh": SshConfig,
    "sizing": SizingConfig,
    "logging": LoggingConfig,
}


def load_config(
    pm: pluggy.PluginManager,
    is_interactive: bool = False,
    environ: Mapping[str, str] | None = None,
) -> LvsnapContext:
    """Load and merge configuration from all sources.

    Precedence (lowest to highest):
    1. Built-in defaults
    2. System config (/etc/lvsnap/settings.toml, or LVSNAP_SYSTEM_CONFIG)
    3. User config (<data_dir>/settings.toml)
    4. Environment variables (LVSNAP_DATA_DIR, LVSNAP_COMMANDS_*)
    5. CLI arguments (handled by caller)

    Returns LvsnapContext containing both the final LvsnapConfig and a reference to the plugin manager.
    """
    env = os.environ if environ is None else environ

    config = LvsnapConfig()

    system_config_path = Path(env.get(_ENV_SYSTEM_CONFIG, str(SYSTEM_CONFIG_PATH)))
    if system_config_path.exists():
        config = config.merge_with(_parse_config(_load_toml(system_config_path)))

    # The data dir may itself come from the system config, so resolve it before reading the user config
    env_data_dir = env.get(_ENV_DATA_DIR)
    data_dir = Path(env_data_dir).expanduser() if env_data_dir else config.data_dir
    user_config_path = data_dir / SETTINGS_FILENAME
    if user_config_path.exists():
        try:
            config = config.merge_with(_parse_config(_load_toml(user_config_path)))
        except ConfigNotFoundError:
            pass

    config_dict: dict[str, Any] = config.model_dump()
    config_dict["data_dir"] = data_dir if env_data_dir else config.data_dir
    config_dict["commands"] = dict(config.commands)

    env_command_overrides = _parse_command_env_vars(env)
    if env_command_overrides:
        config_dict["commands"] = _merge_command_defaults(config_dict["commands"], env_command_overrides)

    # Allow plugins to modify config_dict before validation
    pm.hook.on_load_config(config_dict=config_dict)

    try:
        final_config = LvsnapConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigParseError(f"Invalid configuration: {e}") from e

    logger.trace("Loaded configuration with data dir {}", final_config.data_dir)
    return LvsnapContext(config=final_config, pm=pm, is_interactive=is_interactive)


def get_default_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    env_data_dir = env.get(_ENV_DATA_DIR)
    return Path(env_data_dir).expanduser() if env_data_dir else DEFAULT_DATA_DIR


# =============================================================================
# Config Loading
# =============================================================================


def _load_toml(path: Path) -> dict[str, Any]:
    """Load and parse a TOML file."""
    if not path.exists():
        raise ConfigNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(f"Failed to parse {path}: {e}") from e


def _parse_section(section_name: str, raw_section: Any) -> Any:
    """Parse one config section, rejecting keys the section does not define."""
    if not isinstance(raw_section, dict):
        raise ConfigParseError(f"Config section [{section_name}] must be a table")
    section_class = _SECTION_CLASSES[section_name]
    unknown_keys = sorted(set(raw_section) - set(section_class.model_fields))
    if unknown_keys:
        raise ConfigParseError(f"Unknown fields in [{section_name}]: {unknown_keys}")
    return section_class.model_construct(**raw_section)


def _parse_commands(raw_commands: dict[str, dict[str, Any]]) -> dict[str, CommandDefaults]:
    """Parse command defaults from config.

    Format: commands.{command_name}.{param_name} = value
    Example: [commands.revert]
             keep_snapshot = true
    """
    commands: dict[str, CommandDefaults] = {}
    for command_name, raw_defaults in raw_commands.items():
        if not isinstance(raw_defaults, dict):
            raise ConfigParseError(f"Config section [commands.{command_name}] must be a table")
        commands[command_name] = CommandDefaults(defaults=raw_defaults)
    return commands


def _parse_config(raw: dict[str, Any]) -> LvsnapConfig:
    """Parse a raw config dict into LvsnapConfig.

    Uses model_construct so that only the keys present in the file are marked as set.
    """
    raw = dict(raw)
    kwargs: dict[str, Any] = {}
    if "data_dir" in raw:
        kwargs["data_dir"] = Path(raw.pop("data_dir")).expanduser()
    for section_name in _SECTION_CLASSES:
        if section_name in raw:
            kwargs[section_name] = _parse_section(section_name, raw.pop(section_name))
    if "commands" in raw:
        kwargs["commands"] = _parse_commands(raw.pop("commands"))

    if len(raw) > 0:
        raise ConfigParseError(f"Unknown configuration fields: {list(raw.keys())}")

    return LvsnapConfig.model_construct(**kwargs)


# =============================================================================
# Environment Variable Overrides for Commands
# =============================================================================


def _parse_command_env_vars(environ: Mapping[str, str]) -> dict[str, CommandDefaults]:
    """Parse environment variables to extract command config overrides.

    Looks for environment variables matching the pattern:
        LVSNAP_COMMANDS_<COMMANDNAME>_<PARAMNAME>=<value>

    Examples:
        LVSNAP_COMMANDS_REVERT_KEEP_SNAPSHOT=true
            -> commands["revert"]["keep_snapshot"] = "true"

        LVSNAP_COMMANDS_LIST_FORMAT=json
            -> commands["list"]["format"] = "json"
    """
    commands: dict[str, dict[str, Any]] = {}

    for env_key, env_value in environ.items():
        if not env_key.startswith(_ENV_COMMANDS_PREFIX):
            continue

        suffix = env_key[len(_ENV_COMMANDS_PREFIX) :]
        underscore_idx = suffix.find("_")
        if underscore_idx == -1:
            continue

        command_name = suffix[:underscore_idx].lower()
        param_name = suffix[underscore_idx + 1 :].lower()
        if not command_name or not param_name:
            continue

        # Stored as a string; click converts it using the parameter's type
        commands.setdefault(command_name, {})[param_name] = env_value

    return {command_name: CommandDefaults(defaults=params) for command_name, params in commands.items()}


def _merge_command_defaults(
    base: dict[str, CommandDefaults],
    override: dict[str, CommandDefaults],
) -> dict[str, CommandDefaults]:
    """Merge two command defaults dicts, with override taking precedence."""
    result = dict(base)
    for command_name, command_defaults in override.items():
        if command_name in result:
            result[command_name] = result[command_name].merge_with(command_defaults)
        else:
            result[command_name] = command_defaults
    return result
