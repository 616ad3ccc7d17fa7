from pathlib import Path
from typing import Any

import pluggy
import pytest

from imbue.lvsnap import hookimpl
from imbue.lvsnap.config.loader import load_config
from imbue.lvsnap.errors import ConfigParseError


def _environ(data_dir: Path, system_config: Path, **extra: str) -> dict[str, str]:
    return {"LVSNAP_DATA_DIR": str(data_dir), "LVSNAP_SYSTEM_CONFIG": str(system_config), **extra}


def test_defaults_without_any_file(tmp_path: Path, plugin_manager: pluggy.PluginManager) -> None:
    ctx = load_config(plugin_manager, environ=_environ(tmp_path / "data", tmp_path / "missing.toml"))

    assert ctx.config.data_dir == tmp_path / "data"
    assert ctx.config.paths.metadata_dir == "/etc/pve/snapshot-metadata"
    assert ctx.config.waits.merge_timeout_seconds == 300.0
    assert not ctx.is_interactive


def test_user_config_overrides_system_config(tmp_path: Path, plugin_manager: pluggy.PluginManager) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    system_config = tmp_path / "system.toml"
    system_config.write_text("[waits]\nmerge_timeout_seconds = 60.0\nlock_timeout_seconds = 5.0\n")
    (data_dir / "settings.toml").write_text("[waits]\nmerge_timeout_seconds = 30.0\n")

    ctx = load_config(plugin_manager, environ=_environ(data_dir, system_config))

    assert ctx.config.waits.merge_timeout_seconds == 30.0
    assert ctx.config.waits.lock_timeout_seconds == 5.0


def test_unknown_keys_are_rejected(tmp_path: Path, plugin_manager: pluggy.PluginManager) -> None:
    system_config = tmp_path / "system.toml"
    system_config.write_text("[waits]\nmerge_forever = true\n")

    with pytest.raises(ConfigParseError):
        load_config(plugin_manager, environ=_environ(tmp_path / "data", system_config))


def test_invalid_toml_is_a_parse_error(tmp_path: Path, plugin_manager: pluggy.PluginManager) -> None:
    system_config = tmp_path / "system.toml"
    system_config.write_text("[waits\n")

    with pytest.raises(ConfigParseError):
        load_config(plugin_manager, environ=_environ(tmp_path / "data", system_config))


def test_command_defaults_from_file_and_environment(tmp_path: Path, plugin_manager: pluggy.PluginManager) -> None:
    system_config = tmp_path / "system.toml"
    system_config.write_text("[commands.revert]\nautostart = false\n")

    ctx = load_config(
        plugin_manager,
        environ=_environ(tmp_path / "data", system_config, LVSNAP_COMMANDS_REVERT_KEEP_SNAPSHOT="true"),
    )

    assert ctx.config.commands["revert"].defaults == {"autostart": False, "keep_snapshot": "true"}


class _MetadataDirPlugin:
    @hookimpl
    def on_load_config(self, config_dict: dict[str, Any]) -> None:
        config_dict["paths"]["metadata_dir"] = "/srv/lvsnap-metadata"


def test_plugins_can_modify_the_config(tmp_path: Path, plugin_manager: pluggy.PluginManager) -> None:
    plugin_manager.register(_MetadataDirPlugin())

    ctx = load_config(plugin_manager, environ=_environ(tmp_path / "data", tmp_path / "missing.toml"))

    assert ctx.config.paths.metadata_dir == "/srv/lvsnap-metadata"
