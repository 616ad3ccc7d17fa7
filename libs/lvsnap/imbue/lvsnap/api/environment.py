import socket
from collections.abc import Callable

from pydantic import Field

from imbue.lvsnap.api.metadata import MetadataStore
from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.config.data_types import LvsnapConfig
from imbue.lvsnap.config.data_types import LvsnapContext
from imbue.lvsnap.hosts.local import LocalNode
from imbue.lvsnap.hosts.ssh import SshNode
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.runtimes.registry import build_runtime
from imbue.lvsnap.storage.lvm import LvmTool
from imbue.lvsnap.utils.cache import FileCache


def get_current_node_name() -> NodeName:
    """Short hostname of this machine, as Proxmox names cluster members."""
    return NodeName(socket.gethostname().split(".")[0])


def _never_confirm(prompt: str, default: bool) -> bool:
    return default


class HostEnvironment(FrozenModel):
    """Everything an engine needs to act on the current host and reach the rest of the cluster."""

    model_config = {"arbitrary_types_allowed": True}

    ctx: LvsnapContext
    local_node: NodeInterface = Field(description="The node lvsnap runs on")
    node_connector: Callable[[NodeName], NodeInterface] = Field(
        description="Opens a session to another cluster node",
    )
    confirm: Callable[[str, bool], bool] = Field(
        default=_never_confirm,
        description="Asks the user a yes/no question; receives the prompt and the default answer",
    )

    @property
    def config(self) -> LvsnapConfig:
        return self.ctx.config

    @property
    def is_interactive(self) -> bool:
        return self.ctx.is_interactive

    @property
    def current_node(self) -> NodeName:
        return self.local_node.name

    def connect(self, node_name: NodeName) -> NodeInterface:
        if node_name == self.local_node.name:
            return self.local_node
        return self.node_connector(node_name)

    def lvm(self, node: NodeInterface | None = None) -> LvmTool:
        return LvmTool(
            node=node or self.local_node,
            timeout_seconds=self.config.waits.command_timeout_seconds,
        )

    def runtime(self, kind: InstanceKind, node: NodeInterface | None = None) -> InstanceRuntimeInterface:
        return build_runtime(kind, node or self.local_node, self.config.waits.command_timeout_seconds)

    def metadata(self) -> MetadataStore:
        return MetadataStore(node=self.local_node, directory=self.config.paths.metadata_dir)

    def cache(self, namespace: str, ttl_seconds: float) -> FileCache:
        return FileCache(
            self.config.cache_dir,
            namespace,
            ttl_seconds,
            is_enabled=self.config.cache.is_enabled,
        )


def create_host_environment(
    ctx: LvsnapContext,
    confirm: Callable[[str, bool], bool] = _never_confirm,
) -> HostEnvironment:
    """Build the environment for the machine lvsnap is running on."""
    ssh_config = ctx.config.ssh

    def connect_to_node(node_name: NodeName) -> NodeInterface:
        return SshNode(
            name=node_name,
            ssh_config=ssh_config,
            connect_timeout_seconds=ssh_config.connect_timeout_seconds,
        )

    return HostEnvironment(
        ctx=ctx,
        local_node=LocalNode(name=get_current_node_name()),
        node_connector=connect_to_node,
        confirm=confirm,
    )
