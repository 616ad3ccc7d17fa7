from imbue.lvsnap.storage.lvm import BYTES_PER_GB
from imbue.lvsnap.storage.lvm import LvmTool
from imbue.lvsnap.storage.lvm import build_snapshot_command
from imbue.lvsnap.storage.lvm import parse_lvs_output
from imbue.lvsnap.utils.testing import FakeNode

_LVS_OUTPUT = (
    "  pve|vm-104-disk-0|34359738368||||-wi-ao----|2024-03-01 10:00:00 +0000\n"
    "  pve|vm-104-disk-0-snapshot-pre|4294967296|12.50|vm-104-disk-0||swi-a-s---|2024-03-02 11:30:00 +0000\n"
    "  pve|vm-105-disk-0|8589934592|3.10||data|Vwi-a-tz--|\n"
    "  garbage line\n"
)


def test_parse_lvs_output_reads_every_field() -> None:
    volumes = parse_lvs_output(_LVS_OUTPUT)

    assert [volume.lv_name for volume in volumes] == [
        "vm-104-disk-0",
        "vm-104-disk-0-snapshot-pre",
        "vm-105-disk-0",
    ]
    origin, snapshot, thin = volumes
    assert origin.size_gb == 32
    assert not origin.is_snapshot
    assert origin.created_at is not None and origin.created_at.year == 2024
    assert snapshot.is_snapshot
    assert snapshot.origin == "vm-104-disk-0"
    assert snapshot.data_percent == 12.5
    assert snapshot.path == "/dev/pve/vm-104-disk-0-snapshot-pre"
    assert thin.is_thin
    assert thin.created_at is None


def test_merging_attribute_is_detected() -> None:
    (volume,) = parse_lvs_output("pve|vm-1-disk-0-snapshot-a|1024|1.0|vm-1-disk-0||Swi-a-s---|\n")

    assert volume.is_merging


def test_snapshot_command_for_thick_and_thin() -> None:
    assert build_snapshot_command("/dev/pve/vm-1-disk-0", "vm-1-disk-0-snapshot-a", 4) == [
        "lvcreate",
        "-L",
        "4G",
        "-s",
        "-n",
        "vm-1-disk-0-snapshot-a",
        "/dev/pve/vm-1-disk-0",
    ]
    assert "-L" not in build_snapshot_command("/dev/pve/vm-1-disk-0", "vm-1-disk-0-snapshot-a", None)


def test_lvm_tool_against_fake_node(fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-104-disk-0", 32)
    fake_node.vg_free_gb["pve"] = 120.0
    lvm = LvmTool(node=fake_node)

    assert lvm.list_volume_groups() == ["pve"]
    assert lvm.get_vg_free_gb("pve") == 120.0
    volume = lvm.get_logical_volume("/dev/pve/vm-104-disk-0")
    assert volume is not None
    assert volume.size_bytes == 32 * BYTES_PER_GB
    assert lvm.get_logical_volume("/dev/pve/vm-999-disk-0") is None


def test_activation_retries_with_auto_activation(fake_node: FakeNode) -> None:
    fake_node.failing_commands.append(("lvchange", "-ay"))
    lvm = LvmTool(node=fake_node)

    assert lvm.activate("pve", "vm-104-disk-0")
    assert fake_node.count_commands("lvchange", "-aay") == 1
