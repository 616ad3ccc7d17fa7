import pytest

from imbue.lvsnap.api.create import create_snapshot_set
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.data_types import SnapshotMetadata
from imbue.lvsnap.api.delete import delete_snapshot_set
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.errors import PartialFailureError
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import SnapshotName
from imbue.lvsnap.utils.testing import FakeNode

_NAME = SnapshotName("nightly")


def _setup_container(fake_node: FakeNode, host_env: HostEnvironment) -> Instance:
    fake_node.add_instance(
        "200",
        InstanceKind.CONTAINER,
        config_lines=["rootfs: pve:vm-200-disk-0,size=8G", "mp0: pve:vm-200-disk-1,mp=/data,size=50G"],
    )
    for lv_name in ("vm-200-disk-0", "vm-200-disk-1"):
        fake_node.add_volume(lv_name, 8)
        fake_node.add_volume(f"{lv_name}-snapshot-nightly", 1, origin=lv_name)
        host_env.metadata().write(
            SnapshotMetadata(lv_name=f"{lv_name}-snapshot-nightly", timestamp=1700000000, optimized_size="1G")
        )
    return Instance(id=InstanceId("200"), kind=InstanceKind.CONTAINER)


def test_delete_removes_snapshots_and_metadata(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    instance = _setup_container(fake_node, host_env)

    result = delete_snapshot_set(host_env, instance, _NAME)

    assert result.deleted_count == 2
    assert fake_node.snapshot_lv_names() == []
    assert host_env.metadata().read("vm-200-disk-0-snapshot-nightly") is None
    assert host_env.metadata().read("vm-200-disk-1-snapshot-nightly") is None


def test_delete_is_idempotent(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    instance = _setup_container(fake_node, host_env)
    delete_snapshot_set(host_env, instance, _NAME)

    result = delete_snapshot_set(host_env, instance, _NAME)

    assert result.deleted_count == 0
    assert all(outcome.is_absent for outcome in result.outcomes)
    assert fake_node.count_commands("lvremove") == 2


def test_delete_attempts_every_disk_before_failing(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    instance = _setup_container(fake_node, host_env)
    fake_node.failing_commands.append(("lvremove", "-y", "/dev/pve/vm-200-disk-0-snapshot-nightly"))

    with pytest.raises(PartialFailureError) as exc_info:
        delete_snapshot_set(host_env, instance, _NAME)

    assert exc_info.value.failures == ("/dev/pve/vm-200-disk-0-snapshot-nightly: simulated failure",)
    assert fake_node.snapshot_lv_names() == ["vm-200-disk-0-snapshot-nightly"]
    assert host_env.metadata().read("vm-200-disk-0-snapshot-nightly") is not None
    assert host_env.metadata().read("vm-200-disk-1-snapshot-nightly") is None


def test_delete_removes_inactive_thin_snapshot(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("108", InstanceKind.CONTAINER, config_lines=["rootfs: pve:vm-108-disk-0,size=16G"])
    fake_node.add_volume("vm-108-disk-0", 16, is_thin=True)
    instance = Instance(id=InstanceId("108"), kind=InstanceKind.CONTAINER)
    create_snapshot_set(host_env, instance, SnapshotName("pre-update"))
    snapshot = fake_node.find_volume("vm-108-disk-0-snapshot-pre-update")
    assert snapshot is not None
    assert not snapshot.is_active

    result = delete_snapshot_set(host_env, instance, SnapshotName("pre-update"))

    assert result.deleted_count == 1
    assert fake_node.snapshot_lv_names() == []
    assert host_env.metadata().read("vm-108-disk-0-snapshot-pre-update") is None
