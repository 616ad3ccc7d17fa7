"""The snapshot create transaction.

A create either leaves a snapshot on every disk of the instance or, on any
allocation failure, removes every snapshot it made. All checks that can be
done without side effects run first, so most failures change nothing.
"""

import time
from collections import defaultdict
from collections.abc import Iterator
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import as_completed
from contextlib import contextmanager

import psutil
from loguru import logger

from imbue.lvsnap.api.data_types import AllocationResult
from imbue.lvsnap.api.data_types import ConsistencyReport
from imbue.lvsnap.api.data_types import CreateResult
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.data_types import PlannedSnapshot
from imbue.lvsnap.api.data_types import SNAPSHOT_INFIX
from imbue.lvsnap.api.data_types import SnapshotMetadata
from imbue.lvsnap.api.data_types import Transaction
from imbue.lvsnap.api.data_types import ValidationIssue
from imbue.lvsnap.api.data_types import is_instance_volume
from imbue.lvsnap.api.disks import list_disks
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.power import start_instance
from imbue.lvsnap.api.power import stop_instance
from imbue.lvsnap.api.sizing import compute_size
from imbue.lvsnap.errors import ConsistencyViolationError
from imbue.lvsnap.errors import RollbackFailedError
from imbue.lvsnap.errors import SnapshotCreationFailedError
from imbue.lvsnap.errors import SnapshotValidationError
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import CreateStrategy
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import QuiesceMethod
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.primitives import SnapshotName
from imbue.lvsnap.primitives import TransactionPhase
from imbue.lvsnap.utils.logging import log_call

# =============================================================================
# Planning and validation
# =============================================================================


def plan_snapshots(
    env: HostEnvironment,
    instance: Instance,
    snapshot_name: SnapshotName,
    is_size_optimized: bool,
) -> list[PlannedSnapshot]:
    """Decide the name, path and size of the snapshot of every disk. Unresolved disks get no size."""
    planned: list[PlannedSnapshot] = []
    for disk in list_disks(env, instance):
        size = compute_size(env, disk, instance.kind, is_size_optimized) if disk.is_resolved else None
        planned.append(
            PlannedSnapshot(
                disk=disk,
                snapshot_lv_name=disk.snapshot_lv_name(snapshot_name) if disk.is_resolved else "",
                snapshot_path=disk.snapshot_path(snapshot_name) if disk.is_resolved else "",
                size=size,
            )
        )
    return planned


def validate_plan(
    env: HostEnvironment,
    planned: Sequence[PlannedSnapshot],
    strategy: CreateStrategy,
) -> list[ValidationIssue]:
    """Collect every reason the plan cannot be carried out. Runs no mutating command."""
    lvm = env.lvm()
    issues: list[ValidationIssue] = []
    seen_paths: dict[str, str] = {}
    required_gb_by_vg: dict[str, int] = defaultdict(int)
    thick_by_vg: dict[str, list[PlannedSnapshot]] = defaultdict(list)

    for item in planned:
        disk = item.disk

        def _issue(message: str) -> None:
            issues.append(ValidationIssue(config_key=disk.config_key, device_path=disk.device_path, message=message))

        if not disk.is_resolved:
            _issue(f"no block device found for volume {disk.volume_ref}")
            continue
        if not env.local_node.exists(disk.device_path):
            _issue("device does not exist")
            continue
        if lvm.get_logical_volume(item.snapshot_path) is not None:
            _issue(f"snapshot {item.snapshot_path} already exists")
        if item.snapshot_path in seen_paths:
            _issue(f"snapshot path collides with disk {seen_paths[item.snapshot_path]}")
        seen_paths.setdefault(item.snapshot_path, disk.config_key)
        if item.size is not None:
            required_gb_by_vg[disk.vg_name] += item.size.size_gb
            thick_by_vg[disk.vg_name].append(item)

    if strategy == CreateStrategy.ATOMIC:
        for vg_name, required_gb in required_gb_by_vg.items():
            free_gb = lvm.get_vg_free_gb(vg_name)
            if free_gb is not None and free_gb >= required_gb:
                continue
            if free_gb is None:
                message = f"could not read free space of volume group {vg_name}"
            else:
                message = f"volume group {vg_name} has {free_gb:.1f}G free, {required_gb}G needed"
            for item in thick_by_vg[vg_name]:
                issues.append(
                    ValidationIssue(config_key=item.disk.config_key, device_path=item.disk.device_path, message=message)
                )
    return issues


# =============================================================================
# Quiescing
# =============================================================================


@contextmanager
def quiesced(
    env: HostEnvironment,
    runtime: InstanceRuntimeInterface,
    instance: Instance,
) -> Iterator[QuiesceMethod]:
    """Hold a running instance still for the duration of the block, then release it.

    VMs try a guest-agent filesystem freeze first; both kinds then fall back to
    suspend and finally to a full stop.
    """
    if runtime.get_status(instance.id) != RunningState.RUNNING:
        yield QuiesceMethod.NONE
        return

    if instance.kind == InstanceKind.VM and runtime.freeze_filesystems(instance.id):
        method = QuiesceMethod.FREEZE
    elif runtime.suspend(instance.id):
        method = QuiesceMethod.SUSPEND
    else:
        stop_instance(runtime, instance.id, env.config.waits)
        method = QuiesceMethod.STOP
    logger.debug("Quiesced instance {} with {}", instance.id, method.lower())

    try:
        yield method
    finally:
        match method:
            case QuiesceMethod.FREEZE:
                if not runtime.thaw_filesystems(instance.id):
                    logger.error("Could not thaw the filesystems of instance {}", instance.id)
            case QuiesceMethod.SUSPEND:
                if not runtime.resume(instance.id):
                    logger.error("Could not resume instance {}", instance.id)
            case QuiesceMethod.STOP:
                start_instance(runtime, instance.id, env.config.waits)
            case _:
                pass


# =============================================================================
# Allocation, commit and rollback
# =============================================================================


def _allocate_one(env: HostEnvironment, item: PlannedSnapshot) -> AllocationResult:
    size_gb = item.size.size_gb if item.size is not None else None
    result = env.lvm().create_snapshot(item.disk.device_path, item.snapshot_lv_name, size_gb)
    if result.is_success:
        return AllocationResult(planned=item, is_success=True)
    return AllocationResult(planned=item, is_success=False, error_message=result.stderr.strip() or "lvcreate failed")


def allocate_snapshots(env: HostEnvironment, transaction: Transaction) -> list[AllocationResult]:
    """Create every planned snapshot in parallel, one worker per CPU core."""
    transaction.phase = TransactionPhase.ALLOCATING
    max_workers = max(1, min(len(transaction.disks_planned), psutil.cpu_count() or 1))
    results: list[AllocationResult] = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(_allocate_one, env, item) for item in transaction.disks_planned]
        for future in as_completed(futures):
            result = future.result()
            results.append(result)
            if result.is_success:
                transaction.disks_created.append(result.planned)
                logger.debug("Created {}", result.planned.snapshot_path)
            else:
                logger.error("Could not create {}: {}", result.planned.snapshot_path, result.error_message)
    return results


def rollback(env: HostEnvironment, transaction: Transaction) -> None:
    """Remove every snapshot the transaction created. Raises RollbackFailedError if any is left."""
    logger.warning("Rolling back {} created snapshot(s)", len(transaction.disks_created))
    lvm = env.lvm()
    metadata = env.metadata()
    leftovers: list[str] = []
    for item in transaction.disks_created:
        result = lvm.remove_volume(item.snapshot_path)
        if result.is_success or lvm.get_logical_volume(item.snapshot_path) is None:
            metadata.remove(item.snapshot_lv_name)
        else:
            logger.error("Could not remove {}: {}", item.snapshot_path, result.stderr.strip())
            leftovers.append(item.snapshot_path)
    if leftovers:
        raise RollbackFailedError(leftovers)
    transaction.phase = TransactionPhase.ROLLED_BACK


def _write_one_metadata(env: HostEnvironment, item: PlannedSnapshot, timestamp: int, transaction: Transaction) -> None:
    env.metadata().write(
        SnapshotMetadata(
            lv_name=item.snapshot_lv_name,
            timestamp=timestamp,
            optimized_size=f"{item.size.size_gb}G" if item.size is not None else None,
            optimization_type=item.size.strategy.lower() if item.size is not None else None,
            is_thin=item.disk.is_thin_provisioned,
            transaction_id=str(transaction.id),
        )
    )


def commit(env: HostEnvironment, transaction: Transaction) -> int:
    """Write one shared timestamp to the metadata of every created snapshot. Returns the timestamp."""
    timestamp = int(time.time())
    with ThreadPoolExecutor(max_workers=max(1, len(transaction.disks_created))) as executor:
        futures = {
            executor.submit(_write_one_metadata, env, item, timestamp, transaction): item
            for item in transaction.disks_created
        }
        for future in as_completed(futures):
            try:
                future.result()
            except OSError as e:
                logger.warning("Could not write metadata for {}: {}", futures[future].snapshot_lv_name, e)
    transaction.phase = TransactionPhase.COMMITTED
    return timestamp


# =============================================================================
# Consistency check
# =============================================================================


def check_consistency(
    env: HostEnvironment,
    instance: Instance,
    snapshot_name: SnapshotName,
    expected_count: int,
) -> ConsistencyReport:
    """Count the instance's snapshot volumes with this name, and their distinct commit timestamps."""
    suffix = f"{SNAPSHOT_INFIX}{snapshot_name}"
    found = [
        volume
        for volume in env.lvm().list_logical_volumes()
        if volume.is_snapshot
        and volume.lv_name.endswith(suffix)
        and volume.origin is not None
        and is_instance_volume(volume.origin, instance.id)
    ]
    metadata = env.metadata()
    timestamps = {metadata.read_timestamp(volume.lv_name) for volume in found}
    timestamps.discard(None)
    return ConsistencyReport(
        expected_count=expected_count,
        actual_count=len(found),
        distinct_timestamps=len(timestamps),
    )


def enforce_consistency(report: ConsistencyReport) -> None:
    if not report.is_consistent:
        logger.critical(
            "Snapshot set is partial: {} of {} snapshot(s) exist",
            report.actual_count,
            report.expected_count,
        )
        raise ConsistencyViolationError(report.expected_count, report.actual_count, report.distinct_timestamps)
    if report.has_timestamp_mismatch:
        logger.critical("Snapshot set has {} different commit timestamps", report.distinct_timestamps)
    else:
        logger.info("Consistency check passed: {} snapshot(s)", report.actual_count)


# =============================================================================
# Entry point
# =============================================================================


@log_call
def create_snapshot_set(
    env: HostEnvironment,
    instance: Instance,
    snapshot_name: SnapshotName,
    strategy: CreateStrategy = CreateStrategy.ATOMIC,
    is_size_optimized: bool = True,
    is_consistency_checked: bool = False,
) -> CreateResult:
    """Snapshot every disk of a local instance as one set.

    Raises SnapshotValidationError before any change, SnapshotCreationFailedError
    after a clean rollback, and RollbackFailedError if the rollback left volumes.
    """
    started = time.monotonic()
    transaction = Transaction(instance_id=instance.id, snapshot_name=snapshot_name)
    logger.debug("Starting create transaction {}", transaction.id)

    transaction.disks_planned = plan_snapshots(env, instance, snapshot_name, is_size_optimized)
    issues = validate_plan(env, transaction.disks_planned, strategy)
    if issues:
        raise SnapshotValidationError(issues)

    runtime = env.runtime(instance.kind)
    with quiesced(env, runtime, instance) as quiesce_method:
        results = allocate_snapshots(env, transaction)

    failures = [f"{result.planned.disk.config_key}: {result.error_message}" for result in results if not result.is_success]
    if failures:
        transaction.phase = TransactionPhase.PARTIALLY_FAILED
        rollback(env, transaction)
        if is_consistency_checked:
            enforce_consistency(check_consistency(env, instance, snapshot_name, len(transaction.disks_planned)))
        raise SnapshotCreationFailedError(failures)

    timestamp = commit(env, transaction)
    consistency = None
    if is_consistency_checked:
        consistency = check_consistency(env, instance, snapshot_name, len(transaction.disks_planned))
        enforce_consistency(consistency)

    created = tuple(item for item in transaction.disks_planned if item in transaction.disks_created)
    total_allocated_gb = sum(item.size.size_gb for item in created if item.size is not None)
    logger.info(
        "Created snapshot '{}' on {} disk(s) of instance {}",
        snapshot_name,
        len(created),
        instance.id,
    )
    return CreateResult(
        transaction_id=transaction.id,
        instance_id=instance.id,
        snapshot_name=snapshot_name,
        snapshots=created,
        timestamp=timestamp,
        total_allocated_gb=total_allocated_gb,
        elapsed_seconds=time.monotonic() - started,
        quiesce_method=quiesce_method,
        consistency=consistency,
    )
