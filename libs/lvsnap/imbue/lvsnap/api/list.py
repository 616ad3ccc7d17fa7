from datetime import datetime
from datetime import timezone

from loguru import logger

from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.data_types import SNAPSHOT_INFIX
from imbue.lvsnap.api.data_types import SnapshotListing
from imbue.lvsnap.api.data_types import is_instance_volume
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.metadata import MetadataStore
from imbue.lvsnap.base import pure
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import MergeState
from imbue.lvsnap.primitives import ProvisioningType
from imbue.lvsnap.storage.lvm import LogicalVolumeInfo
from imbue.lvsnap.utils.logging import log_call


@pure
def is_instance_snapshot(volume: LogicalVolumeInfo, instance_id: InstanceId) -> bool:
    """Return True for snapshot volumes taken by lvsnap from one of the instance's disks."""
    return (
        volume.origin is not None
        and is_instance_volume(volume.origin, instance_id)
        and SNAPSHOT_INFIX in volume.lv_name
    )


@pure
def snapshot_name_of(volume: LogicalVolumeInfo) -> str:
    """The user-facing name: whatever follows the snapshot infix of the volume name."""
    if volume.origin and volume.lv_name.startswith(f"{volume.origin}{SNAPSHOT_INFIX}"):
        return volume.lv_name[len(volume.origin) + len(SNAPSHOT_INFIX) :]
    return volume.lv_name.split(SNAPSHOT_INFIX, 1)[-1]


def _created_at(volume: LogicalVolumeInfo, metadata: MetadataStore, node: NodeInterface) -> datetime | None:
    """Creation time from the commit timestamp, then the LVM creation time, then the device mtime."""
    timestamp = metadata.read_timestamp(volume.lv_name)
    if timestamp is not None:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    if volume.created_at is not None:
        return volume.created_at
    return node.get_mtime(volume.path)


@log_call
def list_snapshots(env: HostEnvironment, instance: Instance) -> list[SnapshotListing]:
    """List the snapshots of a local instance across every volume group, oldest first."""
    lvm = env.lvm()
    metadata = env.metadata()
    listings: list[SnapshotListing] = []
    for vg_name in lvm.list_volume_groups():
        for volume in lvm.list_logical_volumes(vg_name):
            if not is_instance_snapshot(volume, instance.id):
                continue
            listings.append(
                SnapshotListing(
                    snapshot_name=snapshot_name_of(volume),
                    lv_name=volume.lv_name,
                    disk=volume.origin or "",
                    size_gb=volume.size_gb,
                    usage_percent=volume.data_percent,
                    provisioning_type=ProvisioningType.THIN if volume.is_thin else ProvisioningType.THICK,
                    created_at=_created_at(volume, metadata, env.local_node),
                    merge_state=MergeState.MERGING if volume.is_merging else MergeState.NONE,
                )
            )
    logger.debug("Found {} snapshot volume(s) for instance {}", len(listings), instance.id)
    return sorted(
        listings,
        key=lambda listing: (
            listing.created_at.timestamp() if listing.created_at is not None else 0.0,
            listing.snapshot_name,
            listing.disk,
        ),
    )
