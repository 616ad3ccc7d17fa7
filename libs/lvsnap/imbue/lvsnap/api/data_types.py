from datetime import datetime
from pathlib import PurePosixPath

from pydantic import Field

from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.base import MutableModel
from imbue.lvsnap.primitives import Confidence
from imbue.lvsnap.primitives import DetectionMethod
from imbue.lvsnap.primitives import DispatchTransport
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import MergeState
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.primitives import PollResult
from imbue.lvsnap.primitives import ProvisioningType
from imbue.lvsnap.primitives import QuiesceMethod
from imbue.lvsnap.primitives import RevertPhase
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.primitives import SizingStrategy
from imbue.lvsnap.primitives import SnapshotName
from imbue.lvsnap.primitives import TransactionId
from imbue.lvsnap.primitives import TransactionPhase

SNAPSHOT_INFIX = "-snapshot-"


def snapshot_lv_name(origin_lv_name: str, name: str) -> str:
    """LVM name of the snapshot called `name` taken from `origin_lv_name`."""
    return f"{origin_lv_name}{SNAPSHOT_INFIX}{name}"


# Proxmox names instance volumes <prefix>-<id>-disk-<n>; base- volumes belong to templates
INSTANCE_VOLUME_PREFIXES = ("vm", "subvol", "base")


def is_instance_volume(lv_name: str, instance_id: str) -> bool:
    """Return True if an LV name (or the origin of a snapshot) belongs to the instance."""
    return any(lv_name.startswith(f"{prefix}-{instance_id}-disk-") for prefix in INSTANCE_VOLUME_PREFIXES)


# =============================================================================
# Topology
# =============================================================================


class DetectionAttempt(FrozenModel):
    """One classification check and what it found."""

    method: DetectionMethod = Field(description="Which check ran")
    detail: str = Field(description="What was checked, e.g. the path or command")
    found_kind: InstanceKind | None = Field(default=None, description="Kind found by this check, if any")

    @property
    def is_success(self) -> bool:
        return self.found_kind is not None


class Classification(FrozenModel):
    """Result of classifying an instance id as a VM or a container."""

    instance_id: InstanceId
    kind: InstanceKind | None
    confidence: Confidence
    attempts: tuple[DetectionAttempt, ...] = ()

    def describe_attempts(self) -> str:
        lines = []
        for attempt in self.attempts:
            result = f"found {attempt.found_kind.lower()}" if attempt.found_kind is not None else "not found"
            lines.append(f"  - {attempt.method.lower()} ({attempt.detail}): {result}")
        return "\n".join(lines)


class ClusterTopology(FrozenModel):
    """The set of nodes the current host can dispatch to."""

    current_node: NodeName
    nodes: tuple[NodeName, ...]
    is_cluster: bool

    @property
    def other_nodes(self) -> tuple[NodeName, ...]:
        return tuple(node for node in self.nodes if node != self.current_node)


class Instance(FrozenModel):
    """A VM or container, discovered per invocation."""

    id: InstanceId
    kind: InstanceKind
    owner_node: NodeName | None = Field(default=None, description="Node currently hosting the instance")
    running_state: RunningState = RunningState.UNKNOWN


# =============================================================================
# Disks and snapshots
# =============================================================================


class Disk(FrozenModel):
    """A storage-backed disk declared in an instance configuration."""

    instance_id: InstanceId
    config_key: str = Field(description="Configuration key, e.g. 'scsi0' or 'rootfs'")
    volume_ref: str = Field(description="Volume reference in 'storage:volname' form")
    device_path: str = Field(description="Resolved block device path, empty when unresolved")
    declared_size_hint: str | None = Field(default=None, description="Raw value of the size= option")
    is_thin_provisioned: bool = False

    @property
    def storage(self) -> str:
        return self.volume_ref.split(":", 1)[0]

    @property
    def volume_name(self) -> str:
        return self.volume_ref.split(":", 1)[-1]

    @property
    def is_resolved(self) -> bool:
        return self.device_path != ""

    @property
    def vg_name(self) -> str:
        return PurePosixPath(self.device_path).parent.name

    @property
    def lv_name(self) -> str:
        return PurePosixPath(self.device_path).name

    @property
    def provisioning_type(self) -> ProvisioningType:
        return ProvisioningType.THIN if self.is_thin_provisioned else ProvisioningType.THICK

    def snapshot_path(self, name: SnapshotName) -> str:
        return f"{self.device_path}{SNAPSHOT_INFIX}{name}"

    def snapshot_lv_name(self, name: SnapshotName | str) -> str:
        return snapshot_lv_name(self.lv_name, name)


class SizeProfile(FrozenModel):
    """Measured characteristics of a volume used to pick a snapshot size."""

    total_gb: float | None = None
    used_fraction: float | None = None
    rotational: bool | None = Field(default=None, description="None when the class is unknown")
    queue_depth: int | None = None
    throughput_sample_mbs: float | None = None
    is_network_backed: bool = False
    historical_average_gb: float | None = None


class SizeDecision(FrozenModel):
    """A computed thick snapshot size and how it was reached."""

    size_gb: int
    strategy: SizingStrategy
    profile: SizeProfile | None = None


class SnapshotMetadata(FrozenModel):
    """Persisted data about one snapshot volume."""

    lv_name: str
    timestamp: int | None = Field(default=None, description="Commit time as epoch seconds")
    optimized_size: str | None = None
    optimization_type: str | None = None
    is_thin: bool | None = None
    transaction_id: str | None = None


# =============================================================================
# Create
# =============================================================================


class ValidationIssue(FrozenModel):
    """One reason a create cannot proceed."""

    config_key: str
    device_path: str
    message: str

    def __str__(self) -> str:
        return f"{self.config_key} ({self.device_path or 'unresolved'}): {self.message}"


class PlannedSnapshot(FrozenModel):
    """A snapshot the create transaction intends to allocate."""

    disk: Disk
    snapshot_lv_name: str
    snapshot_path: str
    size: SizeDecision | None = Field(default=None, description="None for thin disks")


class AllocationResult(FrozenModel):
    """Outcome of allocating one snapshot."""

    planned: PlannedSnapshot
    is_success: bool
    error_message: str | None = None


class Transaction(MutableModel):
    """State of one create invocation. Never persisted."""

    id: TransactionId = Field(default_factory=TransactionId.generate)
    instance_id: InstanceId
    snapshot_name: SnapshotName
    phase: TransactionPhase = TransactionPhase.VALIDATING
    disks_planned: list[PlannedSnapshot] = Field(default_factory=list)
    disks_created: list[PlannedSnapshot] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=datetime.now)


class ConsistencyReport(FrozenModel):
    """Result of counting an instance's snapshots after a create."""

    expected_count: int
    actual_count: int
    distinct_timestamps: int

    @property
    def is_consistent(self) -> bool:
        return self.actual_count in (0, self.expected_count)

    @property
    def has_timestamp_mismatch(self) -> bool:
        return self.distinct_timestamps > 1


class CreateResult(FrozenModel):
    """Summary of a committed create."""

    transaction_id: TransactionId
    instance_id: InstanceId
    snapshot_name: SnapshotName
    snapshots: tuple[PlannedSnapshot, ...]
    timestamp: int
    total_allocated_gb: int
    elapsed_seconds: float
    quiesce_method: QuiesceMethod
    consistency: ConsistencyReport | None = None


# =============================================================================
# Revert
# =============================================================================


class PendingRecreation(FrozenModel):
    """A preserved snapshot waiting to be recreated after its merge finishes."""

    disk: Disk
    snapshot_lv_name: str
    temp_lv_name: str


class DiskRevertOutcome(FrozenModel):
    """What happened to one disk during a revert."""

    disk: Disk
    is_merged: bool
    is_preserved: bool = False
    is_recreated: bool | None = Field(default=None, description="None when recreation was not attempted")
    merge_state: MergeState = MergeState.NONE
    error_message: str | None = None


class RevertContext(MutableModel):
    """State owned by one revert invocation."""

    id: TransactionId = Field(default_factory=TransactionId.generate)
    instance_id: InstanceId
    snapshot_name: SnapshotName
    phase: RevertPhase = RevertPhase.RESOLVING
    was_running: bool = False
    is_keeping_snapshot: bool = False
    pending_recreations: list[PendingRecreation] = Field(default_factory=list)


class RevertResult(FrozenModel):
    """Summary of a revert."""

    transaction_id: TransactionId
    instance_id: InstanceId
    snapshot_name: SnapshotName
    outcomes: tuple[DiskRevertOutcome, ...]
    merge_wait: PollResult
    was_running: bool
    final_state: RunningState
    is_kept: bool

    @property
    def reverted_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.is_merged)


# =============================================================================
# Delete and list
# =============================================================================


class DiskDeleteOutcome(FrozenModel):
    """What happened to one disk during a delete."""

    disk: Disk
    snapshot_path: str
    is_deleted: bool
    is_absent: bool = False
    error_message: str | None = None


class DeleteResult(FrozenModel):
    """Summary of a delete."""

    instance_id: InstanceId
    snapshot_name: SnapshotName
    outcomes: tuple[DiskDeleteOutcome, ...]

    @property
    def deleted_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.is_deleted)

    @property
    def failed(self) -> tuple[DiskDeleteOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.error_message is not None)


class SnapshotListing(FrozenModel):
    """One row of the snapshot table."""

    snapshot_name: str
    lv_name: str
    disk: str
    size_gb: float
    usage_percent: float | None
    provisioning_type: ProvisioningType
    created_at: datetime | None
    merge_state: MergeState = MergeState.NONE


# =============================================================================
# Dispatch
# =============================================================================


class DispatchResult(FrozenModel):
    """Outcome of running an operation on the owning node."""

    node: NodeName
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    transport: DispatchTransport | None = Field(default=None, description="None when run in-process")
    is_payload_transferred: bool = Field(
        default=False, description="Whether a copied zipapp ran instead of the installed lvsnap"
    )
