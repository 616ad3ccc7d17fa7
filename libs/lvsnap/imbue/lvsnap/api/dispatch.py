"""Running an operation on the cluster node that owns the instance.

Snapshots can only be taken where the instance's volumes are active, so an
operation on an instance hosted elsewhere is re-executed there as an lvsnap
command over SSH. Two transports exist: a pyinfra (paramiko) session and the
system OpenSSH client. The configured one is tried first and a connection
failure falls back to the other.

The remote node normally runs its installed lvsnap. When it has none and a
zipapp is configured, the zipapp is copied over for the one run and removed
afterwards.
"""

import re
import shlex
import subprocess
import sys
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Final

from loguru import logger

from imbue.lvsnap.api.data_types import DispatchResult
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.base import pure
from imbue.lvsnap.config.data_types import RunOptions
from imbue.lvsnap.errors import CommandFailedError
from imbue.lvsnap.errors import NodeConnectionError
from imbue.lvsnap.errors import RemoteCommandNotFoundError
from imbue.lvsnap.errors import RemoteConnectionError
from imbue.lvsnap.hosts.ssh import build_ssh_base_args
from imbue.lvsnap.primitives import CreateStrategy
from imbue.lvsnap.primitives import DispatchTransport
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.utils.commands import ProcessError
from imbue.lvsnap.utils.commands import run_local_command
from imbue.lvsnap.utils.logging import log_call

# OpenSSH exits with 255 when it could not connect or authenticate
_SSH_CONNECTION_FAILURE_EXIT_CODE: Final[int] = 255
_COMMAND_NOT_FOUND_EXIT_CODE: Final[int] = 127


@pure
def build_remote_argv(options: RunOptions, remote_command: Sequence[str]) -> list[str]:
    """The lvsnap invocation that performs `options` on the owning node, and never dispatches again."""
    argv = [*remote_command, options.action.lower(), str(options.instance_id)]
    if options.snapshot_name is not None:
        argv.append(str(options.snapshot_name))
    if options.kind_override == InstanceKind.VM:
        argv.append("--vm")
    elif options.kind_override == InstanceKind.CONTAINER:
        argv.append("--container")
    if not options.is_autostart:
        argv.append("--no-autostart")
    if options.keep_snapshot is True:
        argv.append("--keep-snapshot")
    elif options.keep_snapshot is False:
        argv.append("--delete-snapshot")
    if options.strategy == CreateStrategy.FAST:
        argv.append("--fast")
    if options.is_consistency_check:
        argv.append("--test-atomic")
    if not options.is_size_optimization:
        argv.append("--no-size-opt")
    if options.is_cluster_sync:
        argv.append("--cluster-sync")
    argv.append("--interactive" if options.is_interactive else "--non-interactive")
    if options.verbosity > 0:
        argv.append("-" + "v" * options.verbosity)
    argv.extend(["--force-local", "--no-banner"])
    return argv


def resolve_dispatch_target(env: HostEnvironment, instance: Instance, options: RunOptions) -> NodeName | None:
    """Return the node to dispatch to, or None to run here.

    --force-local always runs here; so does an instance whose owner is unknown
    or is this node.
    """
    if options.is_force_local:
        return None
    if instance.owner_node is None or instance.owner_node == env.current_node:
        return None
    return instance.owner_node


def _relay_output(result: DispatchResult) -> None:
    if result.stdout:
        sys.stdout.write(result.stdout)
        sys.stdout.flush()
    if result.stderr:
        sys.stderr.write(result.stderr)
        sys.stderr.flush()


def _run_with_pyinfra(env: HostEnvironment, node_name: NodeName, argv: Sequence[str]) -> DispatchResult:
    """Run through a paramiko session. Raises NodeConnectionError if the node is unreachable."""
    node = env.connect(node_name)
    try:
        finished = node.run(argv)
    finally:
        node.disconnect()
    return DispatchResult(
        node=node_name,
        exit_code=finished.returncode if finished.returncode is not None else 1,
        stdout=finished.stdout,
        stderr=finished.stderr,
        transport=DispatchTransport.PYINFRA,
    )


def _run_with_openssh(
    env: HostEnvironment,
    node_name: NodeName,
    argv: Sequence[str],
    is_interactive: bool,
) -> DispatchResult:
    """Run through the system ssh client. Raises NodeConnectionError on exit code 255."""
    ssh_config = env.config.ssh
    ssh_argv = build_ssh_base_args(
        node_name,
        ssh_config,
        ssh_config.dispatch_connect_timeout_seconds,
        is_tty_requested=is_interactive,
    )
    ssh_argv.append(shlex.join(argv))

    if is_interactive:
        # The remote side needs the terminal for its prompts, so nothing is captured
        logger.debug("Running: {}", shlex.join(ssh_argv))
        completed = subprocess.run(ssh_argv, check=False)
        returncode, stdout, stderr = completed.returncode, "", ""
    else:
        finished = run_local_command(ssh_argv)
        returncode = finished.returncode if finished.returncode is not None else 1
        stdout, stderr = finished.stdout, finished.stderr

    if returncode == _SSH_CONNECTION_FAILURE_EXIT_CODE:
        raise NodeConnectionError(stderr.strip() or f"ssh to {node_name} failed")
    return DispatchResult(
        node=node_name,
        exit_code=returncode,
        stdout=stdout,
        stderr=stderr,
        transport=DispatchTransport.OPENSSH,
    )


@pure
def is_remote_command_missing(result: DispatchResult, program: str) -> bool:
    """Whether the remote shell could not find `program` at all.

    lvsnap's own errors never exit with 127, and its messages never take the
    shell's "<program>: not found" form, so a failed lvsnap run is not mistaken
    for a missing one.
    """
    if result.exit_code == _COMMAND_NOT_FOUND_EXIT_CODE:
        return True
    return re.search(rf"{re.escape(program)}: (command )?not found", result.stderr) is not None


def _run_transferred_payload(
    env: HostEnvironment,
    node_name: NodeName,
    options: RunOptions,
    payload_path: Path,
) -> DispatchResult:
    """Copy the zipapp to the node, run it there, and remove it again."""
    ssh_config = env.config.ssh
    remote_path = f"{ssh_config.payload_remote_dir.rstrip('/')}/lvsnap-{uuid.uuid4().hex[:8]}.pyz"
    # The copied zipapp runs over a paramiko session, which has no terminal for prompts
    if options.is_interactive:
        logger.warning("The lvsnap copied to {} runs non-interactively", node_name)
    argv = build_remote_argv(
        options.model_copy(update={"is_interactive": False}),
        (ssh_config.remote_python, remote_path),
    )

    node = env.connect(node_name)
    try:
        logger.info("lvsnap is not installed on {}, copying {} to {}", node_name, payload_path, remote_path)
        node.upload_file(payload_path, remote_path)
        try:
            finished = node.run(argv)
        finally:
            try:
                node.remove(remote_path)
            except (NodeConnectionError, ProcessError) as e:
                logger.warning("Could not remove {} from {}: {}", remote_path, node_name, e)
    finally:
        node.disconnect()

    return DispatchResult(
        node=node_name,
        exit_code=finished.returncode if finished.returncode is not None else 1,
        stdout=finished.stdout,
        stderr=finished.stderr,
        transport=DispatchTransport.PYINFRA,
        is_payload_transferred=True,
    )


@pure
def transport_order(configured: DispatchTransport, is_interactive: bool) -> tuple[DispatchTransport, ...]:
    """Interactive runs need a terminal, which only the OpenSSH client provides, so it goes first."""
    if is_interactive or configured == DispatchTransport.OPENSSH:
        return (DispatchTransport.OPENSSH, DispatchTransport.PYINFRA)
    return (DispatchTransport.PYINFRA, DispatchTransport.OPENSSH)


@log_call
def dispatch_to_node(env: HostEnvironment, node_name: NodeName, options: RunOptions) -> DispatchResult:
    """Run the operation on another node and relay its output.

    Raises RemoteConnectionError when neither transport can reach the node, and
    RemoteCommandNotFoundError when the node has no lvsnap and no zipapp is
    configured to send it.
    """
    program = env.config.ssh.remote_command[0]
    argv = build_remote_argv(options, env.config.ssh.remote_command)
    logger.info("Instance {} runs on node {}, executing there", options.instance_id, node_name)

    failures: list[str] = []
    for transport in transport_order(env.config.ssh.transport, options.is_interactive):
        try:
            match transport:
                case DispatchTransport.PYINFRA:
                    result = _run_with_pyinfra(env, node_name, argv)
                case DispatchTransport.OPENSSH:
                    result = _run_with_openssh(env, node_name, argv, options.is_interactive)
                case _:
                    raise ValueError(f"Unknown transport {transport}")
        except NodeConnectionError as e:
            logger.debug("{} dispatch to {} failed: {}", transport.lower(), node_name, e)
            failures.append(f"{transport.lower()}: {e}")
            continue
        if is_remote_command_missing(result, program):
            payload_path = env.config.ssh.payload_path
            if payload_path is None:
                raise RemoteCommandNotFoundError(node_name, program)
            try:
                result = _run_transferred_payload(env, node_name, options, payload_path)
            except NodeConnectionError as e:
                raise RemoteConnectionError(node_name, str(e)) from e
            except ProcessError as e:
                raise CommandFailedError(f"Could not copy lvsnap to {node_name}: {e}") from e
        _relay_output(result)
        logger.debug("Node {} finished with exit code {}", node_name, result.exit_code)
        return result

    raise RemoteConnectionError(node_name, "; ".join(failures))
