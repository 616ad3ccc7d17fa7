from abc import ABC
from abc import abstractmethod
from typing import ClassVar

from pydantic import Field

from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import RunningState


class InstanceRuntimeInterface(FrozenModel, ABC):
    """The command surface of one instance kind (qm for VMs, pct for containers) on one node."""

    kind: ClassVar[InstanceKind]
    # Name of the storage volumes the runtime creates, e.g. "vm" for vm-104-disk-0
    volume_prefixes: ClassVar[tuple[str, ...]]
    # The "type" field of this kind in the cluster resource listing
    cluster_resource_type: ClassVar[str]

    node: NodeInterface = Field(description="Node the runtime commands run on")
    timeout_seconds: float = Field(default=300.0, description="Timeout for each runtime command")

    @abstractmethod
    def is_present(self, instance_id: InstanceId) -> bool:
        """Return True if a status query for the instance succeeds on this node."""
        ...

    @abstractmethod
    def get_status(self, instance_id: InstanceId) -> RunningState: ...

    @abstractmethod
    def list_instance_ids(self) -> list[InstanceId]:
        """Return the ids in this node's local listing."""
        ...

    @abstractmethod
    def list_instances_text(self) -> str:
        """Return the raw local listing, for showing to the user."""
        ...

    @abstractmethod
    def get_config(self, instance_id: InstanceId) -> str:
        """Return the instance configuration dump. Raises CommandFailedError on failure."""
        ...

    @abstractmethod
    def is_disk_key(self, config_key: str) -> bool:
        """Return True if a configuration key declares a disk."""
        ...

    @abstractmethod
    def start(self, instance_id: InstanceId) -> bool: ...

    @abstractmethod
    def stop(self, instance_id: InstanceId) -> bool: ...

    @abstractmethod
    def force_stop(self, instance_id: InstanceId) -> bool:
        """Stop the instance ignoring locks."""
        ...

    @abstractmethod
    def suspend(self, instance_id: InstanceId) -> bool: ...

    @abstractmethod
    def resume(self, instance_id: InstanceId) -> bool: ...

    @abstractmethod
    def freeze_filesystems(self, instance_id: InstanceId) -> bool:
        """Ask the guest to freeze its filesystems. Returns False if unsupported or it failed."""
        ...

    @abstractmethod
    def thaw_filesystems(self, instance_id: InstanceId) -> bool: ...
