import click

from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.delete import delete_snapshot_set
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.cli.instance_command import add_instance_options
from imbue.lvsnap.cli.instance_command import require_snapshot_name
from imbue.lvsnap.cli.instance_command import run_instance_command
from imbue.lvsnap.cli.output_helpers import emit_event
from imbue.lvsnap.cli.output_helpers import emit_final_json
from imbue.lvsnap.config.data_types import OutputOptions
from imbue.lvsnap.config.data_types import RunOptions
from imbue.lvsnap.primitives import OutputFormat
from imbue.lvsnap.primitives import SnapshotAction


def _delete_here(env: HostEnvironment, instance: Instance, run_options: RunOptions, output_opts: OutputOptions) -> None:
    result = delete_snapshot_set(env, instance, require_snapshot_name(run_options))
    removed_paths = [outcome.snapshot_path for outcome in result.outcomes if outcome.is_deleted]
    for path in removed_paths:
        emit_event("snapshot_removed", {"message": f"  removed {path}", "path": path}, output_opts.output_format)
    data = {
        "instance_id": str(result.instance_id),
        "snapshot_name": str(result.snapshot_name),
        "deleted_count": result.deleted_count,
        "removed": removed_paths,
    }
    emit_event(
        "deleted",
        {
            "message": (
                f"Deleted snapshot '{result.snapshot_name}' of instance {result.instance_id} "
                f"({result.deleted_count} volume(s) removed)"
            ),
            **data,
        },
        output_opts.output_format,
    )
    if output_opts.output_format == OutputFormat.JSON:
        emit_final_json(data)


@click.command(name="delete")
@click.argument("instance_id")
@click.argument("snapshot_name")
@add_instance_options
@click.pass_context
def delete(ctx: click.Context, **kwargs) -> None:
    """Delete a snapshot from every disk of an instance.

    Disks that do not have the snapshot are skipped, so deleting twice is safe.

    \b
    Examples:
      lvsnap delete 104 pre-upgrade
    """
    run_instance_command(ctx, SnapshotAction.DELETE, _delete_here)
