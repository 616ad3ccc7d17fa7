import re

from loguru import logger

from imbue.lvsnap import hookimpl
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.runtimes.base import BaseInstanceRuntime


class QemuRuntime(BaseInstanceRuntime):
    """Virtual machines, managed with qm. Filesystem freeze goes through the QEMU guest agent."""

    kind = InstanceKind.VM
    tool = "qm"
    volume_prefixes = ("vm",)
    cluster_resource_type = "qemu"
    disk_key_pattern = re.compile(r"(virtio|sata|scsi|ide)\d+")

    def _run_guest_command(self, instance_id: InstanceId, guest_command: str) -> bool:
        result = self._run("guest", "cmd", str(instance_id), guest_command)
        if not result.is_success:
            logger.debug("Guest agent {} failed for {}: {}", guest_command, instance_id, result.stderr.strip())
        return result.is_success

    def freeze_filesystems(self, instance_id: InstanceId) -> bool:
        return self._run_guest_command(instance_id, "fs-freeze")

    def thaw_filesystems(self, instance_id: InstanceId) -> bool:
        return self._run_guest_command(instance_id, "fs-thaw")


@hookimpl
def register_instance_runtime() -> tuple[InstanceKind, type[InstanceRuntimeInterface]]:
    """Register the qm runtime for virtual machines."""
    return (InstanceKind.VM, QemuRuntime)
