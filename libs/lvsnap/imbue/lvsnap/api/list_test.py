from datetime import datetime
from datetime import timezone

from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.data_types import SnapshotMetadata
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.list import list_snapshots
from imbue.lvsnap.api.list import snapshot_name_of
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import MergeState
from imbue.lvsnap.primitives import ProvisioningType
from imbue.lvsnap.storage.lvm import LogicalVolumeInfo
from imbue.lvsnap.utils.testing import FakeNode

_INSTANCE = Instance(id=InstanceId("104"), kind=InstanceKind.VM)


def test_snapshot_name_strips_origin_and_infix() -> None:
    volume = LogicalVolumeInfo(
        vg_name="pve",
        lv_name="vm-104-disk-0-snapshot-pre-upgrade",
        size_bytes=1,
        origin="vm-104-disk-0",
    )

    assert snapshot_name_of(volume) == "pre-upgrade"


def test_list_only_returns_the_instance_snapshots(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)
    fake_node.add_volume("vm-104-disk-0-snapshot-pre", 2, origin="vm-104-disk-0", data_percent=12.5)
    fake_node.add_volume("vm-1040-disk-0", 32)
    fake_node.add_volume("vm-1040-disk-0-snapshot-pre", 2, origin="vm-1040-disk-0")
    fake_node.add_volume("vm-104-disk-0-backup", 2, origin="vm-104-disk-0")

    listings = list_snapshots(host_env, _INSTANCE)

    assert [listing.lv_name for listing in listings] == ["vm-104-disk-0-snapshot-pre"]
    assert listings[0].snapshot_name == "pre"
    assert listings[0].disk == "vm-104-disk-0"
    assert listings[0].size_gb == 2.0
    assert listings[0].usage_percent == 12.5
    assert listings[0].provisioning_type == ProvisioningType.THICK


def test_list_covers_every_volume_group_and_thin_volumes(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)
    fake_node.add_volume("vm-104-disk-0-snapshot-a", 2, origin="vm-104-disk-0")
    fake_node.add_volume("vm-104-disk-1", 32, vg_name="fast", is_thin=True)
    fake_node.add_volume("vm-104-disk-1-snapshot-a", 32, vg_name="fast", is_thin=True, origin="vm-104-disk-1")

    listings = list_snapshots(host_env, _INSTANCE)

    assert {listing.disk: listing.provisioning_type for listing in listings} == {
        "vm-104-disk-0": ProvisioningType.THICK,
        "vm-104-disk-1": ProvisioningType.THIN,
    }


def test_creation_date_prefers_metadata_timestamp(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)
    fake_node.add_volume(
        "vm-104-disk-0-snapshot-pre", 2, origin="vm-104-disk-0", lv_time="2024-01-02 03:04:05 +0000"
    )
    fake_node.add_volume(
        "vm-104-disk-0-snapshot-old", 2, origin="vm-104-disk-0", lv_time="2023-05-06 07:08:09 +0000"
    )
    host_env.metadata().write(SnapshotMetadata(lv_name="vm-104-disk-0-snapshot-pre", timestamp=1700000000))

    listings = list_snapshots(host_env, _INSTANCE)

    by_name = {listing.snapshot_name: listing for listing in listings}
    assert by_name["pre"].created_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert by_name["old"].created_at == datetime(2023, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    assert [listing.snapshot_name for listing in listings] == ["old", "pre"]


def test_creation_date_falls_back_to_device_mtime(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)
    fake_node.add_volume("vm-104-disk-0-snapshot-pre", 2, origin="vm-104-disk-0", lv_time="")
    device_mtime = datetime(2022, 1, 1, 12, 0, 0)
    fake_node.mtimes["/dev/pve/vm-104-disk-0-snapshot-pre"] = device_mtime

    listings = list_snapshots(host_env, _INSTANCE)

    assert listings[0].created_at == device_mtime


def test_list_with_no_snapshots_is_empty(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)

    assert list_snapshots(host_env, _INSTANCE) == []


def test_list_marks_snapshots_that_are_merging(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)
    merging = fake_node.add_volume("vm-104-disk-0-snapshot-pre", 2, origin="vm-104-disk-0")
    merging.attr = "Swi-a-s---"
    fake_node.add_volume("vm-104-disk-0-snapshot-post", 2, origin="vm-104-disk-0")

    listings = list_snapshots(host_env, _INSTANCE)

    assert {listing.snapshot_name: listing.merge_state for listing in listings} == {
        "pre": MergeState.MERGING,
        "post": MergeState.NONE,
    }
