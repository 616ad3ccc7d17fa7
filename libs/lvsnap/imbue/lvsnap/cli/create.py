import click

from imbue.lvsnap.api.create import create_snapshot_set
from imbue.lvsnap.api.data_types import CreateResult
from imbue.lvsnap.api.data_types import Instance
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


def _result_data(result: CreateResult) -> dict[str, object]:
    return {
        "transaction_id": str(result.transaction_id),
        "instance_id": str(result.instance_id),
        "snapshot_name": str(result.snapshot_name),
        "timestamp": result.timestamp,
        "total_allocated_gb": result.total_allocated_gb,
        "elapsed_seconds": round(result.elapsed_seconds, 2),
        "quiesce_method": result.quiesce_method.lower(),
        "snapshots": [
            {
                "disk": item.disk.config_key,
                "path": item.snapshot_path,
                "size_gb": item.size.size_gb if item.size is not None else None,
                "sizing_strategy": item.size.strategy.lower() if item.size is not None else "thin",
            }
            for item in result.snapshots
        ],
    }


def _create_here(env: HostEnvironment, instance: Instance, run_options: RunOptions, output_opts: OutputOptions) -> None:
    result = create_snapshot_set(
        env,
        instance,
        require_snapshot_name(run_options),
        strategy=run_options.strategy,
        is_size_optimized=run_options.is_size_optimization,
        is_consistency_checked=run_options.is_consistency_check,
    )
    data = _result_data(result)
    for item in result.snapshots:
        size_text = f"{item.size.size_gb}G" if item.size is not None else "thin"
        emit_event(
            "snapshot_created",
            {
                "message": f"  {item.disk.config_key}: {item.snapshot_path} ({size_text})",
                "disk": item.disk.config_key,
                "path": item.snapshot_path,
            },
            output_opts.output_format,
        )
    emit_event(
        "created",
        {
            "message": (
                f"Created snapshot '{result.snapshot_name}' of instance {result.instance_id}: "
                f"{len(result.snapshots)} disk(s), {result.total_allocated_gb}G allocated "
                f"in {result.elapsed_seconds:.1f}s"
            ),
            **data,
        },
        output_opts.output_format,
    )
    if output_opts.output_format == OutputFormat.JSON:
        emit_final_json(data)


@click.command(name="create")
@click.argument("instance_id")
@click.argument("snapshot_name")
@add_instance_options
@click.pass_context
def create(ctx: click.Context, **kwargs) -> None:
    """Snapshot every disk of an instance as one consistent set.

    A running instance is frozen, suspended or stopped for the moment the
    snapshots are taken. If any disk fails, the snapshots already taken are
    removed again.

    \b
    Examples:
      lvsnap create 104 pre-upgrade
      lvsnap create 200 nightly --fast --no-size-opt
    """
    run_instance_command(ctx, SnapshotAction.CREATE, _create_here)
