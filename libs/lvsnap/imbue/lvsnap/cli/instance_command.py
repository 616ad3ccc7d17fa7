"""Shared plumbing for the commands that act on one instance.

Every command accepts the same flag set, so that the command forwarded to the
owning node is always accepted there. The flow is: load config and logging,
resolve the instance, then either dispatch to the owning node or run the
operation here under the per-instance lock.
"""

from collections.abc import Callable
from typing import Any
from typing import TypeVar

import click
from click_option_group import optgroup
from loguru import logger

from imbue.lvsnap.api.data_types import ClusterTopology
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.dispatch import dispatch_to_node
from imbue.lvsnap.api.dispatch import resolve_dispatch_target
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.environment import create_host_environment
from imbue.lvsnap.api.topology import discover_cluster
from imbue.lvsnap.api.topology import resolve_instance
from imbue.lvsnap.cli.common_opts import CommonCliOptions
from imbue.lvsnap.cli.common_opts import add_common_options
from imbue.lvsnap.cli.common_opts import effective_verbosity
from imbue.lvsnap.cli.common_opts import setup_command_context
from imbue.lvsnap.config.data_types import OutputOptions
from imbue.lvsnap.config.data_types import RunOptions
from imbue.lvsnap.errors import UserInputError
from imbue.lvsnap.primitives import CreateStrategy
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import SnapshotAction
from imbue.lvsnap.primitives import SnapshotName
from imbue.lvsnap.utils.locking import lock_instance

TDecorated = TypeVar("TDecorated", bound=Callable[..., Any])

LocalOperation = Callable[[HostEnvironment, Instance, RunOptions, OutputOptions], None]


class InstanceCliOptions(CommonCliOptions):
    """Options shared by list, create, delete and revert.

    See the click decorators in add_instance_options for descriptions and defaults.
    """

    instance_id: str
    snapshot_name: str | None = None
    vm: bool
    container: bool
    interactive: bool | None
    autostart: bool
    keep_snapshot: bool | None
    atomic: bool
    test_atomic: bool
    size_opt: bool
    force_local: bool
    cluster_sync: bool
    no_banner: bool


def add_instance_options(command: TDecorated) -> TDecorated:
    """Decorator adding the instance, create, revert and cluster option groups, plus the common options."""
    command = add_common_options(command)
    command = optgroup.option(
        "--no-banner", is_flag=True, help="Accepted for compatibility; lvsnap prints no banner"
    )(command)
    command = optgroup.option(
        "--cluster-sync", is_flag=True, help="Resolve the owning node through the cluster and forward this flag"
    )(command)
    command = optgroup.option(
        "--force-local", is_flag=True, help="Run on this node even if the instance lives elsewhere"
    )(command)
    command = optgroup.group("Cluster")(command)
    command = optgroup.option(
        "--keep-snapshot/--delete-snapshot",
        "keep_snapshot",
        default=None,
        help="Keep the snapshot after reverting [default: ask when interactive, otherwise delete]",
    )(command)
    command = optgroup.option(
        "--autostart/--no-autostart", default=True, help="Start the instance after reverting [default: start]"
    )(command)
    command = optgroup.group("Revert")(command)
    command = optgroup.option(
        "--size-opt/--no-size-opt", default=True, help="Size thick snapshots from measured usage [default: on]"
    )(command)
    command = optgroup.option(
        "--test-atomic", is_flag=True, help="Check that the snapshot set is complete after creating it"
    )(command)
    command = optgroup.option(
        "--atomic/--fast",
        default=True,
        help="--fast skips the free space check before allocating [default: atomic]",
    )(command)
    command = optgroup.group("Create")(command)
    command = optgroup.option(
        "--interactive/--non-interactive",
        default=None,
        help="Allow prompts [default: interactive when attached to a terminal]",
    )(command)
    command = optgroup.option("--container", is_flag=True, help="Treat the instance as an LXC container")(command)
    command = optgroup.option("--vm", is_flag=True, help="Treat the instance as a QEMU virtual machine")(command)
    command = optgroup.group("Instance")(command)
    return command


def build_run_options(action: SnapshotAction, opts: InstanceCliOptions, is_interactive: bool) -> RunOptions:
    """Validate the parsed flags into the immutable options of one run."""
    if opts.vm and opts.container:
        raise UserInputError("--vm and --container are mutually exclusive")
    try:
        instance_id = InstanceId(opts.instance_id)
        snapshot_name = SnapshotName(opts.snapshot_name) if opts.snapshot_name is not None else None
    except ValueError as e:
        raise UserInputError(str(e)) from e

    kind_override = None
    if opts.vm:
        kind_override = InstanceKind.VM
    elif opts.container:
        kind_override = InstanceKind.CONTAINER

    return RunOptions(
        action=action,
        instance_id=instance_id,
        snapshot_name=snapshot_name,
        kind_override=kind_override,
        is_interactive=is_interactive,
        is_autostart=opts.autostart,
        keep_snapshot=opts.keep_snapshot,
        strategy=CreateStrategy.ATOMIC if opts.atomic else CreateStrategy.FAST,
        is_consistency_check=opts.test_atomic,
        is_size_optimization=opts.size_opt,
        is_force_local=opts.force_local,
        is_cluster_sync=opts.cluster_sync,
        verbosity=effective_verbosity(opts.verbose, opts.debug),
    )


def _confirm_with_click(prompt: str, default: bool) -> bool:
    return click.confirm(prompt, default=default)


def run_instance_command(
    ctx: click.Context,
    action: SnapshotAction,
    operation: LocalOperation,
    is_locked: bool = True,
) -> None:
    """Resolve the instance, then dispatch to its node or run `operation` here."""
    lvsnap_ctx, output_opts, opts = setup_command_context(
        ctx,
        action.lower(),
        InstanceCliOptions,
        is_interactive=ctx.params.get("interactive"),
    )
    run_options = build_run_options(action, opts, lvsnap_ctx.is_interactive)
    env = create_host_environment(lvsnap_ctx, confirm=_confirm_with_click)

    if run_options.is_force_local and not run_options.is_cluster_sync:
        topology = ClusterTopology(current_node=env.current_node, nodes=(env.current_node,), is_cluster=False)
    else:
        topology = discover_cluster(env)
    instance = resolve_instance(env, run_options.instance_id, run_options.kind_override, topology)

    target = resolve_dispatch_target(env, instance, run_options)
    if target is not None:
        result = dispatch_to_node(env, target, run_options)
        if result.exit_code != 0:
            ctx.exit(result.exit_code)
        return

    if not is_locked:
        operation(env, instance, run_options, output_opts)
        return
    config = lvsnap_ctx.config
    with lock_instance(config.lock_dir, instance.id, config.waits.lock_timeout_seconds):
        logger.trace("Holding the lock for instance {}", instance.id)
        operation(env, instance, run_options, output_opts)


def require_snapshot_name(run_options: RunOptions) -> SnapshotName:
    if run_options.snapshot_name is None:
        raise UserInputError(f"{run_options.action.lower()} requires a snapshot name")
    return run_options.snapshot_name
