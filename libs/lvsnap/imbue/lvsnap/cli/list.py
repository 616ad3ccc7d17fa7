import click

from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.list import list_snapshots
from imbue.lvsnap.cli.instance_command import add_instance_options
from imbue.lvsnap.cli.instance_command import run_instance_command
from imbue.lvsnap.cli.output_helpers import emit_snapshot_listings
from imbue.lvsnap.config.data_types import OutputOptions
from imbue.lvsnap.config.data_types import RunOptions
from imbue.lvsnap.primitives import SnapshotAction


def _list_here(env: HostEnvironment, instance: Instance, run_options: RunOptions, output_opts: OutputOptions) -> None:
    listings = list_snapshots(env, instance)
    emit_snapshot_listings(instance.id, listings, output_opts.output_format)


@click.command(name="list")
@click.argument("instance_id")
@add_instance_options
@click.pass_context
def list_command(ctx: click.Context, **kwargs) -> None:
    """List the snapshots of an instance.

    Shows one row per snapshot volume with its disk, size, usage and type.
    Listing does not take the instance lock.

    \b
    Examples:
      lvsnap list 104
      lvsnap list 104 --format json
    """
    run_instance_command(ctx, SnapshotAction.LIST, _list_here, is_locked=False)
