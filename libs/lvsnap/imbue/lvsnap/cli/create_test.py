import json

import pluggy
from click.testing import CliRunner

from imbue.lvsnap.cli.create import create
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.utils.testing import FakeNode


def _add_vm(node: FakeNode) -> None:
    node.add_instance(
        "104",
        InstanceKind.VM,
        config_lines=["scsi0: pve:vm-104-disk-0,size=32G", "scsi1: pve:vm-104-disk-1,size=100G"],
    )
    node.add_volume("vm-104-disk-0", 32)
    node.add_volume("vm-104-disk-1", 100)


def test_create_command_snapshots_the_instance(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    plugin_manager: pluggy.PluginManager,
) -> None:
    _add_vm(cli_fake_node)

    result = cli_runner.invoke(create, ["104", "pre-upgrade"], obj=plugin_manager)

    assert result.exit_code == 0, result.output
    assert "Created snapshot 'pre-upgrade' of instance 104: 2 disk(s)" in result.stdout
    assert cli_fake_node.snapshot_lv_names() == [
        "vm-104-disk-0-snapshot-pre-upgrade",
        "vm-104-disk-1-snapshot-pre-upgrade",
    ]


def test_create_command_emits_json(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    plugin_manager: pluggy.PluginManager,
) -> None:
    _add_vm(cli_fake_node)

    result = cli_runner.invoke(create, ["104", "pre", "--format", "json", "-q"], obj=plugin_manager)

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout.strip().splitlines()[-1])
    assert data["instance_id"] == "104"
    assert data["quiesce_method"] == "none"
    assert [item["disk"] for item in data["snapshots"]] == ["scsi0", "scsi1"]


def test_create_command_requires_a_snapshot_name(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    plugin_manager: pluggy.PluginManager,
) -> None:
    result = cli_runner.invoke(create, ["104"], obj=plugin_manager)

    assert result.exit_code == 2


def test_create_command_reports_validation_failures(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    plugin_manager: pluggy.PluginManager,
) -> None:
    _add_vm(cli_fake_node)
    cli_fake_node.add_volume("vm-104-disk-0-snapshot-pre", 4, origin="vm-104-disk-0")

    result = cli_runner.invoke(create, ["104", "pre"], obj=plugin_manager)

    assert result.exit_code == 1
    assert "already exists" in result.output
    assert cli_fake_node.snapshot_lv_names() == ["vm-104-disk-0-snapshot-pre"]
