from collections.abc import Callable
from pathlib import Path

import pytest

import imbue.lvsnap.cli.instance_command as instance_command_module
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.config.data_types import LvsnapContext
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.utils.testing import FakeNode

_FAST_SETTINGS = """
[waits]
state_poll_interval_seconds = 0.0
merge_initial_delay_seconds = 0.0
merge_poll_interval_seconds = 0.0
merge_timeout_seconds = 1.0
activation_settle_seconds = 0.0
lock_timeout_seconds = 0.2

[sizing]
is_throughput_sampling_enabled = false
"""


@pytest.fixture
def cli_fake_node(
    temp_data_dir: Path,
    fake_node: FakeNode,
    remote_nodes: dict[str, FakeNode],
    monkeypatch: pytest.MonkeyPatch,
) -> FakeNode:
    """Make CLI commands run against the fake node instead of this machine.

    Also writes a user settings file with every wait shortened.
    """
    (temp_data_dir / "settings.toml").write_text(_FAST_SETTINGS)

    def _create_fake_environment(
        ctx: LvsnapContext,
        confirm: Callable[[str, bool], bool],
    ) -> HostEnvironment:
        def connect_to_node(node_name: NodeName) -> NodeInterface:
            return remote_nodes[node_name]

        return HostEnvironment(ctx=ctx, local_node=fake_node, node_connector=connect_to_node, confirm=confirm)

    monkeypatch.setattr(instance_command_module, "create_host_environment", _create_fake_environment)
    return fake_node
