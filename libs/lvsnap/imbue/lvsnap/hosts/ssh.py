import io
import shlex
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from pathlib import PurePosixPath
from typing import Any

from loguru import logger
from paramiko import SSHException
from pydantic import PrivateAttr
from pyinfra.api import Host as PyinfraHost
from pyinfra.api import State as PyinfraState
from pyinfra.api.command import StringCommand
from pyinfra.api.exceptions import ConnectError as PyinfraConnectError
from pyinfra.api.inventory import Inventory

from imbue.lvsnap.base import pure
from imbue.lvsnap.config.data_types import SshConfig
from imbue.lvsnap.errors import NodeConnectionError
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.utils.commands import FinishedProcess


@pure
def build_ssh_base_args(
    node: NodeName,
    ssh_config: SshConfig,
    connect_timeout_seconds: float,
    is_tty_requested: bool = False,
) -> list[str]:
    """Build base OpenSSH client args for reaching a cluster node.

    Returns args like ["ssh", "-o", "BatchMode=yes", ..., "root@node"].
    The caller appends the remote command.
    """
    ssh_args = ["ssh"]
    if is_tty_requested:
        ssh_args.append("-t")

    if ssh_config.key_path is not None:
        ssh_args.extend(["-i", str(ssh_config.key_path)])

    if ssh_config.port != 22:
        ssh_args.extend(["-p", str(ssh_config.port)])

    ssh_args.extend(["-o", "BatchMode=yes"])
    ssh_args.extend(["-o", f"ConnectTimeout={max(1, int(round(connect_timeout_seconds)))}"])

    if ssh_config.known_hosts_file is not None:
        ssh_args.extend(["-o", f"UserKnownHostsFile={ssh_config.known_hosts_file}"])
    if ssh_config.is_strict_host_key_checking:
        ssh_args.extend(["-o", "StrictHostKeyChecking=yes"])
    else:
        ssh_args.extend(["-o", "StrictHostKeyChecking=accept-new"])

    ssh_args.append(f"{ssh_config.user}@{node}")
    return ssh_args


def create_pyinfra_host(node: NodeName, ssh_config: SshConfig, connect_timeout_seconds: float) -> PyinfraHost:
    """Create a pyinfra host with SSH connector."""
    host_data: dict[str, Any] = {
        "ssh_user": ssh_config.user,
        "ssh_port": ssh_config.port,
        "ssh_strict_host_key_checking": "yes" if ssh_config.is_strict_host_key_checking else "accept-new",
        "ssh_paramiko_connect_kwargs": {"timeout": connect_timeout_seconds},
    }
    if ssh_config.key_path is not None:
        host_data["ssh_key"] = str(ssh_config.key_path)
    if ssh_config.known_hosts_file is not None:
        host_data["ssh_known_hosts_file"] = str(ssh_config.known_hosts_file)

    names_data = ([(str(node), host_data)], {})
    inventory = Inventory(names_data)
    state = PyinfraState(inventory=inventory)

    pyinfra_host = inventory.get_host(str(node))
    pyinfra_host.init(state)
    return pyinfra_host


class SshNode(NodeInterface):
    """A remote cluster node reached through a pyinfra (paramiko) SSH session."""

    ssh_config: SshConfig
    connect_timeout_seconds: float = 2.0

    _host: PyinfraHost | None = PrivateAttr(default=None)

    @property
    def is_local(self) -> bool:
        return False

    def _get_host(self) -> PyinfraHost:
        if self._host is None:
            self._host = create_pyinfra_host(self.name, self.ssh_config, self.connect_timeout_seconds)
        return self._host

    def _ensure_connected(self) -> PyinfraHost:
        host = self._get_host()
        if not host.connected:
            host.connect(raise_exceptions=True)
        return host

    def disconnect(self) -> None:
        """Close the SSH session if it is open."""
        if self._host is not None and self._host.connected:
            logger.trace("Disconnecting from node {}", self.name)
            self._host.disconnect()

    def _run_shell(self, shell_command: str, timeout_seconds: float | None) -> tuple[bool, str, str]:
        try:
            host = self._ensure_connected()
            success, output = host.run_shell_command(
                StringCommand(shell_command),
                _timeout=int(timeout_seconds) if timeout_seconds else None,
            )
        except PyinfraConnectError as e:
            raise NodeConnectionError(f"Could not connect to {self.name}: {e}") from e
        except OSError as e:
            if "Socket is closed" in str(e):
                raise NodeConnectionError(f"Connection to {self.name} was closed while running command") from e
            raise
        except (EOFError, SSHException) as e:
            raise NodeConnectionError(f"Could not execute command on {self.name} due to connection error") from e
        return success, output.stdout, output.stderr

    def run(self, command: Sequence[str], timeout_seconds: float | None = None) -> FinishedProcess:
        """Run an argv command on the node.

        pyinfra only reports success or failure, so a failed command is given exit code 1.
        """
        command_tuple = tuple(command)
        logger.debug("Running on {}: {}", self.name, shlex.join(command_tuple))
        success, stdout, stderr = self._run_shell(shlex.join(command_tuple), timeout_seconds)
        logger.trace("Success={}, stdout={!r}, stderr={!r}", success, stdout, stderr)
        return FinishedProcess(
            returncode=0 if success else 1,
            stdout=stdout,
            stderr=stderr,
            command=command_tuple,
        )

    def read_text(self, path: str) -> str:
        result = self.run(["cat", path])
        if not result.is_success:
            raise FileNotFoundError(f"File not found on {self.name}: {path}")
        return result.stdout

    def write_text(self, path: str, content: str) -> None:
        self.run(["mkdir", "-p", str(PurePosixPath(path).parent)]).check()
        try:
            host = self._ensure_connected()
            host.put_file(io.BytesIO(content.encode()), path)
        except (EOFError, SSHException, PyinfraConnectError) as e:
            raise NodeConnectionError(f"Could not write {path} on {self.name}") from e

    def upload_file(self, local_path: Path, path: str) -> None:
        self.run(["mkdir", "-p", str(PurePosixPath(path).parent)]).check()
        try:
            host = self._ensure_connected()
            is_success = host.put_file(str(local_path), path)
        except (EOFError, SSHException, PyinfraConnectError) as e:
            raise NodeConnectionError(f"Could not upload {local_path} to {path} on {self.name}") from e
        if not is_success:
            raise NodeConnectionError(f"Could not upload {local_path} to {path} on {self.name}")

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path]).is_success

    def remove(self, path: str) -> None:
        self.run(["rm", "-f", path]).check()

    def get_mtime(self, path: str) -> datetime | None:
        result = self.run(["stat", "-c", "%Y", path])
        if not result.is_success:
            return None
        try:
            return datetime.fromtimestamp(int(result.stdout.strip()))
        except ValueError:
            return None

    def resolve_path(self, path: str) -> str:
        result = self.run(["readlink", "-f", path])
        resolved = result.stdout.strip()
        return resolved if result.is_success and resolved else path
