import re

from imbue.lvsnap import hookimpl
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.runtimes.base import BaseInstanceRuntime


class LxcRuntime(BaseInstanceRuntime):
    """Containers, managed with pct. There is no guest agent, so filesystems are never frozen."""

    kind = InstanceKind.CONTAINER
    tool = "pct"
    volume_prefixes = ("subvol", "vm")
    cluster_resource_type = "lxc"
    disk_key_pattern = re.compile(r"rootfs|mp\d+")

    def freeze_filesystems(self, instance_id: InstanceId) -> bool:
        return False

    def thaw_filesystems(self, instance_id: InstanceId) -> bool:
        return True


@hookimpl
def register_instance_runtime() -> tuple[InstanceKind, type[InstanceRuntimeInterface]]:
    """Register the pct runtime for containers."""
    return (InstanceKind.CONTAINER, LxcRuntime)
