import pluggy
import pytest
from click.testing import CliRunner

from imbue.lvsnap.cli.delete import delete
from imbue.lvsnap.cli.instance_command import InstanceCliOptions
from imbue.lvsnap.cli.instance_command import build_run_options
from imbue.lvsnap.cli.list import list_command
from imbue.lvsnap.config.data_types import LvsnapContext
from imbue.lvsnap.errors import UserInputError
from imbue.lvsnap.primitives import CreateStrategy
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import SnapshotAction
from imbue.lvsnap.utils.locking import lock_instance
from imbue.lvsnap.utils.testing import FakeNode
from imbue.lvsnap.utils.testing import make_fake_node


def _cli_options(**updates: object) -> InstanceCliOptions:
    values: dict[str, object] = {
        "output_format": "human",
        "quiet": False,
        "verbose": 0,
        "debug": False,
        "log_file": None,
        "instance_id": "104",
        "snapshot_name": "pre",
        "vm": False,
        "container": False,
        "interactive": None,
        "autostart": True,
        "keep_snapshot": None,
        "atomic": True,
        "test_atomic": False,
        "size_opt": True,
        "force_local": False,
        "cluster_sync": False,
        "no_banner": False,
    }
    values.update(updates)
    return InstanceCliOptions(**values)


def test_build_run_options_maps_flags() -> None:
    options = build_run_options(
        SnapshotAction.CREATE,
        _cli_options(container=True, atomic=False, size_opt=False, debug=True),
        is_interactive=False,
    )

    assert options.kind_override == InstanceKind.CONTAINER
    assert options.strategy == CreateStrategy.FAST
    assert not options.is_size_optimization
    assert options.verbosity == 1


def test_build_run_options_rejects_conflicting_kinds() -> None:
    with pytest.raises(UserInputError):
        build_run_options(SnapshotAction.CREATE, _cli_options(vm=True, container=True), is_interactive=False)


@pytest.mark.parametrize(
    "updates",
    [
        {"instance_id": "abc"},
        {"instance_id": "0"},
        {"snapshot_name": "-leading-dash"},
        {"snapshot_name": "has space"},
    ],
)
def test_build_run_options_rejects_invalid_identifiers(updates: dict[str, object]) -> None:
    with pytest.raises(UserInputError):
        build_run_options(SnapshotAction.CREATE, _cli_options(**updates), is_interactive=False)


def test_busy_instance_lock_fails_the_command(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    temp_lvsnap_ctx: LvsnapContext,
    plugin_manager: pluggy.PluginManager,
) -> None:
    cli_fake_node.add_instance("104", InstanceKind.VM, config_lines=["scsi0: pve:vm-104-disk-0,size=32G"])
    cli_fake_node.add_volume("vm-104-disk-0", 32)

    with lock_instance(temp_lvsnap_ctx.config.lock_dir, InstanceId("104"), timeout_seconds=0.0):
        result = cli_runner.invoke(delete, ["104", "pre"], obj=plugin_manager)

    assert result.exit_code == 1
    assert "locked" in result.output


def test_command_is_dispatched_to_the_owning_node(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    remote_nodes: dict[str, FakeNode],
    plugin_manager: pluggy.PluginManager,
) -> None:
    cli_fake_node.files["/etc/pve/corosync.conf"] = "totem {}\n"
    cli_fake_node.pvecm_status_output = "Name: pve2\n"
    cli_fake_node.cluster_resources = [{"vmid": 104, "type": "qemu", "node": "pve2"}]
    remote = make_fake_node("pve2", is_local=False)
    remote.canned_outputs[("lvsnap",)] = "Snapshots for instance 104:\n"
    remote_nodes["pve2"] = remote

    result = cli_runner.invoke(list_command, ["104"], obj=plugin_manager)

    assert result.exit_code == 0, result.output
    assert "Snapshots for instance 104:" in result.stdout
    assert remote.commands_run[0][:3] == ("lvsnap", "list", "104")
    assert "--force-local" in remote.commands_run[0]
    assert cli_fake_node.count_commands("lvs") == 0


def test_force_local_skips_dispatch(
    cli_runner: CliRunner,
    cli_fake_node: FakeNode,
    remote_nodes: dict[str, FakeNode],
    plugin_manager: pluggy.PluginManager,
) -> None:
    cli_fake_node.files["/etc/pve/corosync.conf"] = "totem {}\n"
    cli_fake_node.pvecm_status_output = "Name: pve2\n"
    cli_fake_node.add_instance("104", InstanceKind.VM, config_lines=["scsi0: pve:vm-104-disk-0,size=32G"])
    cli_fake_node.add_volume("vm-104-disk-0", 32)

    result = cli_runner.invoke(list_command, ["104", "--force-local"], obj=plugin_manager)

    assert result.exit_code == 0, result.output
    assert "No snapshots found for instance 104" in result.stdout
    assert cli_fake_node.count_commands("pvecm") == 0
