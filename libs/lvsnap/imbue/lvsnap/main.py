import click
import pluggy

from imbue.lvsnap.cli.create import create
from imbue.lvsnap.cli.delete import delete
from imbue.lvsnap.cli.list import list_command
from imbue.lvsnap.cli.revert import revert
from imbue.lvsnap.plugins import hookspecs
from imbue.lvsnap.runtimes.registry import load_runtimes_from_plugins
from imbue.lvsnap.runtimes.registry import register_builtin_runtimes

# Module-level container for the plugin manager singleton, created lazily.
# Using a dict avoids the need for the 'global' keyword while still allowing module-level state.
_plugin_manager_container: dict[str, pluggy.PluginManager | None] = {"pm": None}


@click.group()
@click.version_option(prog_name="lvsnap", message="%(prog)s %(version)s")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    Consistent LVM snapshots of Proxmox VMs and containers.
    """
    # expose the plugin manager in the command context so that all commands have access to it
    ctx.obj = get_or_create_plugin_manager()


def create_plugin_manager() -> pluggy.PluginManager:
    """
    Initializes the plugin manager and loads the runtime registry.

    This should only really be called once from the main command (or during testing).
    """
    pm = pluggy.PluginManager("lvsnap")
    pm.add_hookspecs(hookspecs)

    # Built-ins first, so that hooks from external plugins are called before them
    register_builtin_runtimes(pm)

    # External packages can register hooks by adding an entry point for the "lvsnap" group.
    pm.load_setuptools_entrypoints("lvsnap")

    load_runtimes_from_plugins(pm)

    return pm


def get_or_create_plugin_manager() -> pluggy.PluginManager:
    """
    Get or create the module-level plugin manager singleton.

    The singleton ensures that plugins are only loaded once even if this is called multiple times.
    """
    if _plugin_manager_container["pm"] is None:
        _plugin_manager_container["pm"] = create_plugin_manager()
    return _plugin_manager_container["pm"]


def reset_plugin_manager() -> None:
    """
    Reset the module-level plugin manager singleton.

    This is primarily useful for testing to ensure a fresh plugin manager
    is created for each test.
    """
    _plugin_manager_container["pm"] = None


BUILTIN_COMMANDS: list[click.Command] = [
    list_command,
    create,
    delete,
    revert,
]

for cmd in BUILTIN_COMMANDS:
    cli.add_command(cmd)
