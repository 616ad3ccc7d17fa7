from loguru import logger

from imbue.lvsnap.api.data_types import DeleteResult
from imbue.lvsnap.api.data_types import DiskDeleteOutcome
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.disks import list_disks
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.errors import PartialFailureError
from imbue.lvsnap.primitives import SnapshotName
from imbue.lvsnap.utils.logging import log_call


@log_call
def delete_snapshot_set(env: HostEnvironment, instance: Instance, snapshot_name: SnapshotName) -> DeleteResult:
    """Remove the named snapshot from every disk of a local instance.

    Disks without the snapshot are skipped with a warning, so deleting twice is
    harmless. Every disk is attempted; PartialFailureError is raised afterwards
    if any removal failed.
    """
    lvm = env.lvm()
    metadata = env.metadata()
    outcomes: list[DiskDeleteOutcome] = []
    for disk in list_disks(env, instance):
        if not disk.is_resolved:
            logger.warning("Skipping {}: no block device found", disk.config_key)
            continue
        snapshot_path = disk.snapshot_path(snapshot_name)
        # Inactive snapshots have no device node, so ask LVM
        if lvm.get_logical_volume(snapshot_path) is None:
            logger.warning("Snapshot {} does not exist, nothing to delete", snapshot_path)
            outcomes.append(DiskDeleteOutcome(disk=disk, snapshot_path=snapshot_path, is_deleted=False, is_absent=True))
            continue

        result = lvm.remove_volume(snapshot_path)
        if not result.is_success:
            error_message = result.stderr.strip() or f"lvremove exited with {result.returncode}"
            logger.error("Could not remove {}: {}", snapshot_path, error_message)
            outcomes.append(
                DiskDeleteOutcome(disk=disk, snapshot_path=snapshot_path, is_deleted=False, error_message=error_message)
            )
            continue

        metadata.remove(disk.snapshot_lv_name(snapshot_name))
        logger.info("Deleted {}", snapshot_path)
        outcomes.append(DiskDeleteOutcome(disk=disk, snapshot_path=snapshot_path, is_deleted=True))

    delete_result = DeleteResult(instance_id=instance.id, snapshot_name=snapshot_name, outcomes=tuple(outcomes))
    if delete_result.failed:
        raise PartialFailureError(
            f"Deleted {delete_result.deleted_count} snapshot(s) of instance {instance.id}, "
            f"but {len(delete_result.failed)} could not be removed:",
            [f"{outcome.snapshot_path}: {outcome.error_message}" for outcome in delete_result.failed],
        )
    return delete_result
