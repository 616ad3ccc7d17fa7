import click
from loguru import logger

from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.data_types import RevertResult
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.revert import revert_to_snapshot
from imbue.lvsnap.cli.instance_command import add_instance_options
from imbue.lvsnap.cli.instance_command import require_snapshot_name
from imbue.lvsnap.cli.instance_command import run_instance_command
from imbue.lvsnap.cli.output_helpers import emit_event
from imbue.lvsnap.cli.output_helpers import emit_final_json
from imbue.lvsnap.config.data_types import OutputOptions
from imbue.lvsnap.config.data_types import RunOptions
from imbue.lvsnap.primitives import OutputFormat
from imbue.lvsnap.primitives import PollResult
from imbue.lvsnap.primitives import SnapshotAction


def _outcome_text(is_merged: bool, is_recreated: bool | None, error_message: str | None) -> str:
    if not is_merged:
        return f"failed: {error_message}"
    if is_recreated is True:
        return "reverted, snapshot kept"
    if is_recreated is False:
        return "reverted, snapshot could not be kept"
    return "reverted"


def _result_data(result: RevertResult) -> dict[str, object]:
    return {
        "transaction_id": str(result.transaction_id),
        "instance_id": str(result.instance_id),
        "snapshot_name": str(result.snapshot_name),
        "reverted_count": result.reverted_count,
        "merge_wait": result.merge_wait.lower(),
        "was_running": result.was_running,
        "final_state": result.final_state.lower(),
        "is_kept": result.is_kept,
        "disks": [
            {
                "disk": outcome.disk.config_key,
                "is_merged": outcome.is_merged,
                "is_recreated": outcome.is_recreated,
                "merge_state": outcome.merge_state.lower(),
                "error": outcome.error_message,
            }
            for outcome in result.outcomes
        ],
    }


def _revert_here(env: HostEnvironment, instance: Instance, run_options: RunOptions, output_opts: OutputOptions) -> None:
    result = revert_to_snapshot(
        env,
        instance,
        require_snapshot_name(run_options),
        keep_snapshot=run_options.keep_snapshot,
        is_autostart=run_options.is_autostart,
    )
    for outcome in result.outcomes:
        emit_event(
            "disk_reverted" if outcome.is_merged else "disk_failed",
            {
                "message": f"  {outcome.disk.config_key}: "
                + _outcome_text(outcome.is_merged, outcome.is_recreated, outcome.error_message),
                "disk": outcome.disk.config_key,
                "is_merged": outcome.is_merged,
            },
            output_opts.output_format,
        )
    if result.merge_wait == PollResult.TIMED_OUT:
        logger.warning("Merges were still running when lvsnap stopped waiting; they continue in the background")

    data = _result_data(result)
    emit_event(
        "reverted",
        {
            "message": (
                f"Reverted instance {result.instance_id} to snapshot '{result.snapshot_name}' "
                f"on {result.reverted_count} of {len(result.outcomes)} disk(s); "
                f"instance is {result.final_state.lower()}"
            ),
            **data,
        },
        output_opts.output_format,
    )
    if output_opts.output_format == OutputFormat.JSON:
        emit_final_json(data)


@click.command(name="revert")
@click.argument("instance_id")
@click.argument("snapshot_name")
@add_instance_options
@click.pass_context
def revert(ctx: click.Context, **kwargs) -> None:
    """Roll every disk of an instance back to a snapshot.

    The instance is stopped while the snapshot is merged into its disks. The
    snapshot is consumed by the merge; with --keep-snapshot an identical one is
    taken again afterwards.

    \b
    Examples:
      lvsnap revert 104 pre-upgrade
      lvsnap revert 104 pre-upgrade --keep-snapshot --no-autostart
    """
    run_instance_command(ctx, SnapshotAction.REVERT, _revert_here)
