"""Reverting an instance to a snapshot set.

Every disk that has the snapshot is merged back into its origin. LVM consumes
the snapshot when the merge completes, so keeping it means reserving a
temporary copy of the origin before merging and recreating the snapshot from
the reverted origin afterwards. LVM refuses to snapshot a thick snapshot, so
the copy is never taken from the snapshot itself.
"""

import math
import time
import uuid

from loguru import logger

from imbue.lvsnap.api.data_types import Disk
from imbue.lvsnap.api.data_types import DiskRevertOutcome
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.data_types import PendingRecreation
from imbue.lvsnap.api.data_types import RevertContext
from imbue.lvsnap.api.data_types import RevertResult
from imbue.lvsnap.api.data_types import SnapshotMetadata
from imbue.lvsnap.api.data_types import is_instance_volume
from imbue.lvsnap.api.disks import forget_disks
from imbue.lvsnap.api.disks import list_disks
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.power import start_instance
from imbue.lvsnap.api.power import stop_instance
from imbue.lvsnap.base import pure
from imbue.lvsnap.errors import RevertFailedError
from imbue.lvsnap.errors import SnapshotNotFoundError
from imbue.lvsnap.errors import UserInputError
from imbue.lvsnap.primitives import MergeState
from imbue.lvsnap.primitives import PollResult
from imbue.lvsnap.primitives import RevertPhase
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.primitives import SnapshotName
from imbue.lvsnap.storage.lvm import LogicalVolumeInfo
from imbue.lvsnap.utils.cleanup import register_cleanup
from imbue.lvsnap.utils.cleanup import unregister_cleanup
from imbue.lvsnap.utils.logging import log_call
from imbue.lvsnap.utils.polling import poll_until_result

_MIN_PRESERVED_SIZE_GB = 2
_PRESERVED_SIZE_FRACTION = 0.10


@pure
def preserved_size_gb(origin_size_gb: float) -> int:
    """Size of a thick temporary copy or recreated snapshot: 10% of the origin, at least 2 GB."""
    return max(_MIN_PRESERVED_SIZE_GB, math.ceil(origin_size_gb * _PRESERVED_SIZE_FRACTION))


def temp_lv_name(snapshot_lv_name: str) -> str:
    return f"{snapshot_lv_name}-temp-{uuid.uuid4().hex[:8]}"


def decide_keep_snapshot(env: HostEnvironment, keep_snapshot: bool | None, snapshot_name: SnapshotName) -> bool:
    """An explicit choice wins; otherwise ask in interactive mode, defaulting to not keeping."""
    if keep_snapshot is not None:
        return keep_snapshot
    if env.is_interactive:
        return env.confirm(f"Keep snapshot '{snapshot_name}' after reverting?", False)
    return False


def _activate_instance_volumes(env: HostEnvironment, instance: Instance) -> None:
    lvm = env.lvm()
    for volume in lvm.list_logical_volumes():
        if volume.lv_name.startswith((f"vm-{instance.id}-", f"subvol-{instance.id}-")):
            if not lvm.activate(volume.vg_name, volume.lv_name):
                logger.warning("Could not activate {}", volume.path)
    lvm.settle_devices()
    if env.config.waits.activation_settle_seconds > 0:
        time.sleep(env.config.waits.activation_settle_seconds)


def _create_from(env: HostEnvironment, source: LogicalVolumeInfo, lv_name: str, size_basis_gb: float) -> bool:
    """Snapshot `source` as `lv_name`. Thick sources get a size derived from `size_basis_gb`."""
    size_gb = None if source.is_thin else preserved_size_gb(size_basis_gb)
    result = env.lvm().create_snapshot(source.path, lv_name, size_gb)
    if not result.is_success:
        logger.warning("Could not create {}: {}", lv_name, result.stderr.strip())
    return result.is_success


def _remove_quietly(env: HostEnvironment, path: str) -> None:
    result = env.lvm().remove_volume(path)
    if not result.is_success:
        logger.warning("Could not remove {}: {}", path, result.stderr.strip())


def _merge_one(
    env: HostEnvironment,
    context: RevertContext,
    disk: Disk,
    snapshot: LogicalVolumeInfo,
    origin: LogicalVolumeInfo | None,
) -> DiskRevertOutcome:
    """Optionally preserve, then start merging one disk's snapshot."""
    temp_name: str | None = None
    if context.is_keeping_snapshot:
        context.phase = RevertPhase.PRESERVING
        candidate = temp_lv_name(snapshot.lv_name)
        if origin is not None and _create_from(env, origin, candidate, origin.size_gb):
            temp_name = candidate
            logger.debug("Reserved {} for {}", temp_name, snapshot.lv_name)
        else:
            logger.warning("Could not preserve {}, it will be consumed by the merge", snapshot.lv_name)

    context.phase = RevertPhase.MERGING
    result = env.lvm().merge_snapshot(snapshot.path)
    if not result.is_success:
        logger.error("Merge of {} failed: {}", snapshot.path, result.stderr.strip())
        if temp_name is not None:
            _remove_quietly(env, f"/dev/{snapshot.vg_name}/{temp_name}")
        return DiskRevertOutcome(disk=disk, is_merged=False, error_message=result.stderr.strip() or "merge failed")

    logger.info("Merging {} into {}", snapshot.lv_name, disk.lv_name)
    if temp_name is not None:
        context.pending_recreations.append(
            PendingRecreation(disk=disk, snapshot_lv_name=snapshot.lv_name, temp_lv_name=temp_name)
        )
    return DiskRevertOutcome(disk=disk, is_merged=True, is_preserved=temp_name is not None)


def read_merge_states(env: HostEnvironment, instance: Instance, snapshot_lv_names: set[str]) -> dict[str, MergeState]:
    """Merge state of each merged snapshot volume.

    A volume LVM no longer lists is MERGED. A listed volume carrying the merge
    attribute is MERGING; one without it has its merge deferred until the next
    activation, which is reported as NONE.
    """
    listed = {
        volume.lv_name: volume
        for volume in env.lvm().list_logical_volumes()
        if volume.lv_name in snapshot_lv_names and volume.origin and is_instance_volume(volume.origin, instance.id)
    }
    states: dict[str, MergeState] = {}
    for lv_name in snapshot_lv_names:
        volume = listed.get(lv_name)
        if volume is None:
            states[lv_name] = MergeState.MERGED
        elif volume.is_merging:
            states[lv_name] = MergeState.MERGING
        else:
            states[lv_name] = MergeState.NONE
    return states


def await_merges(
    env: HostEnvironment,
    instance: Instance,
    snapshot_lv_names: set[str],
) -> tuple[PollResult, dict[str, MergeState]]:
    """Wait while any merged snapshot volume is still merging. A timeout is only a warning."""
    if not snapshot_lv_names:
        return PollResult.COMPLETED, {}
    waits = env.config.waits
    latest: dict[str, MergeState] = {}

    def _is_done() -> bool:
        latest.update(read_merge_states(env, instance, snapshot_lv_names))
        merging = sorted(lv_name for lv_name, state in latest.items() if state == MergeState.MERGING)
        if merging:
            logger.debug("Still merging: {}", ", ".join(merging))
        return not merging

    result = poll_until_result(
        _is_done,
        timeout=waits.merge_timeout_seconds,
        poll_interval=waits.merge_poll_interval_seconds,
        initial_delay=waits.merge_initial_delay_seconds,
    )
    if result == PollResult.TIMED_OUT:
        logger.warning(
            "Merge did not finish within {:g}s, it continues in the background",
            waits.merge_timeout_seconds,
        )
    for lv_name in sorted(lv_name for lv_name, state in latest.items() if state == MergeState.NONE):
        logger.warning("Merge of {} is deferred until its origin is next activated", lv_name)
    return result, latest


def recreate_snapshots(
    env: HostEnvironment,
    context: RevertContext,
    merge_states: dict[str, MergeState],
) -> dict[str, bool]:
    """Recreate every preserved snapshot whose merge finished. Returns success per config key."""
    lvm = env.lvm()
    metadata = env.metadata()
    timestamp = int(time.time())
    outcomes: dict[str, bool] = {}
    for pending in context.pending_recreations:
        disk = pending.disk
        temp_path = f"/dev/{disk.vg_name}/{pending.temp_lv_name}"
        if merge_states.get(pending.snapshot_lv_name) != MergeState.MERGED:
            logger.error(
                "{} has not finished merging, so it cannot be recreated; the preserved copy is kept as {}",
                pending.snapshot_lv_name,
                temp_path,
            )
            outcomes[disk.config_key] = False
            continue
        origin = lvm.get_logical_volume(disk.device_path)
        if origin is None:
            logger.error("Origin {} disappeared, keeping {}", disk.device_path, temp_path)
            outcomes[disk.config_key] = False
            continue
        if _create_from(env, origin, pending.snapshot_lv_name, origin.size_gb):
            metadata.write(
                SnapshotMetadata(
                    lv_name=pending.snapshot_lv_name,
                    timestamp=timestamp,
                    is_thin=origin.is_thin,
                    transaction_id=str(context.id),
                )
            )
            _remove_quietly(env, temp_path)
            logger.info("Recreated snapshot {}", pending.snapshot_lv_name)
            outcomes[disk.config_key] = True
        else:
            logger.error("Could not recreate {}; the preserved copy is kept as {}", pending.snapshot_lv_name, temp_path)
            outcomes[disk.config_key] = False
    context.pending_recreations.clear()
    return outcomes


@log_call
def revert_to_snapshot(
    env: HostEnvironment,
    instance: Instance,
    snapshot_name: SnapshotName,
    keep_snapshot: bool | None = None,
    is_autostart: bool = True,
) -> RevertResult:
    """Revert every disk of a local instance that has the snapshot.

    Raises SnapshotNotFoundError when no disk has it and RevertFailedError when
    no disk could be merged. Partial success is returned with per-disk outcomes.
    """
    context = RevertContext(instance_id=instance.id, snapshot_name=snapshot_name)
    cleanup_name = f"revert-{context.id}"
    register_cleanup(cleanup_name, context.pending_recreations.clear)
    try:
        return _run_revert(env, instance, context, keep_snapshot, is_autostart)
    finally:
        unregister_cleanup(cleanup_name)
        forget_disks(env, instance.id)


def _run_revert(
    env: HostEnvironment,
    instance: Instance,
    context: RevertContext,
    keep_snapshot: bool | None,
    is_autostart: bool,
) -> RevertResult:
    snapshot_name = context.snapshot_name
    lvm = env.lvm()
    targets: list[tuple[Disk, LogicalVolumeInfo, LogicalVolumeInfo | None]] = []
    for disk in list_disks(env, instance):
        if not disk.is_resolved:
            continue
        snapshot = lvm.get_logical_volume(disk.snapshot_path(snapshot_name))
        if snapshot is None:
            logger.debug("{} has no snapshot '{}'", disk.config_key, snapshot_name)
            continue
        targets.append((disk, snapshot, lvm.get_logical_volume(disk.device_path)))
    if not targets:
        raise SnapshotNotFoundError(instance.id, snapshot_name)

    context.is_keeping_snapshot = decide_keep_snapshot(env, keep_snapshot, snapshot_name)

    context.phase = RevertPhase.QUIESCING
    runtime = env.runtime(instance.kind)
    context.was_running = runtime.get_status(instance.id) == RunningState.RUNNING
    if context.was_running:
        if env.is_interactive and not env.confirm(
            f"Instance {instance.id} is running and must be stopped to revert. Stop it now?", True
        ):
            raise UserInputError(f"Revert of instance {instance.id} cancelled")
        stop_instance(runtime, instance.id, env.config.waits)

    _activate_instance_volumes(env, instance)

    outcomes = [_merge_one(env, context, disk, snapshot, origin) for disk, snapshot, origin in targets]
    merged_lv_names = {
        snapshot.lv_name for (_, snapshot, _), outcome in zip(targets, outcomes, strict=True) if outcome.is_merged
    }

    if not merged_lv_names:
        if context.was_running:
            start_instance(runtime, instance.id, env.config.waits)
        raise RevertFailedError(
            f"Revert of instance {instance.id} to '{snapshot_name}' failed: no disk could be merged"
        )

    context.phase = RevertPhase.AWAITING_MERGE_COMPLETION
    merge_wait, merge_states = await_merges(env, instance, merged_lv_names)

    metadata = env.metadata()
    recreated = recreate_snapshots(env, context, merge_states)
    updated_outcomes: list[DiskRevertOutcome] = []
    for outcome in outcomes:
        if not outcome.is_merged:
            updated_outcomes.append(outcome)
            continue
        lv_name = outcome.disk.snapshot_lv_name(snapshot_name)
        merge_state = merge_states.get(lv_name, MergeState.MERGED)
        # A snapshot that is still listed keeps its metadata
        if merge_state == MergeState.MERGED and not recreated.get(outcome.disk.config_key, False):
            metadata.remove(lv_name)
        update: dict[str, object] = {"merge_state": merge_state}
        if outcome.disk.config_key in recreated:
            update["is_recreated"] = recreated[outcome.disk.config_key]
        updated_outcomes.append(outcome.model_copy(update=update))
    outcomes = updated_outcomes

    context.phase = RevertPhase.RESTORING
    final_state = RunningState.STOPPED
    if is_autostart or context.was_running:
        if start_instance(runtime, instance.id, env.config.waits) == PollResult.COMPLETED:
            final_state = RunningState.RUNNING
        else:
            final_state = runtime.get_status(instance.id)
    else:
        logger.info("Instance {} is left stopped", instance.id)

    context.phase = RevertPhase.DONE
    failed = [outcome for outcome in outcomes if not outcome.is_merged]
    if failed:
        logger.warning(
            "Reverted {} of {} disk(s); failed: {}",
            len(merged_lv_names),
            len(outcomes),
            ", ".join(outcome.disk.config_key for outcome in failed),
        )
    else:
        logger.info("Reverted {} disk(s) of instance {} to '{}'", len(outcomes), instance.id, snapshot_name)

    return RevertResult(
        transaction_id=context.id,
        instance_id=instance.id,
        snapshot_name=snapshot_name,
        outcomes=tuple(outcomes),
        merge_wait=merge_wait,
        was_running=context.was_running,
        final_state=final_state,
        is_kept=context.is_keeping_snapshot and any(outcome.is_recreated for outcome in outcomes),
    )
