"""Shared pytest fixtures for lvsnap tests."""

from collections.abc import Generator
from pathlib import Path

import pluggy
import pytest
from click.testing import CliRunner

from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.config.data_types import CacheConfig
from imbue.lvsnap.config.data_types import LvsnapConfig
from imbue.lvsnap.config.data_types import LvsnapContext
from imbue.lvsnap.config.data_types import SizingConfig
from imbue.lvsnap.config.data_types import WaitsConfig
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.plugins import hookspecs
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.runtimes.registry import load_runtimes_from_plugins
from imbue.lvsnap.runtimes.registry import reset_runtime_registry
from imbue.lvsnap.utils.cleanup import reset_cleanup_state
from imbue.lvsnap.utils.testing import FakeNode
from imbue.lvsnap.utils.testing import make_fake_node


@pytest.fixture
def temp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory so tests never write to /var/lib/lvsnap."""
    data_dir = tmp_path / "lvsnap"
    data_dir.mkdir()
    return data_dir


@pytest.fixture(autouse=True)
def setup_test_lvsnap_env(temp_data_dir: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Point every config source at the temporary directory.

    This keeps tests from reading /etc/lvsnap/settings.toml or the real data dir.
    """
    monkeypatch.setenv("LVSNAP_DATA_DIR", str(temp_data_dir))
    monkeypatch.setenv("LVSNAP_SYSTEM_CONFIG", str(tmp_path / "no-system-settings.toml"))


@pytest.fixture(autouse=True)
def plugin_manager() -> Generator[pluggy.PluginManager, None, None]:
    """Create a plugin manager with the lvsnap hookspecs and the built-in runtimes.

    Also resets the runtime registry and the cleanup callbacks for test isolation.
    """
    reset_runtime_registry()
    reset_cleanup_state()
    pm = pluggy.PluginManager("lvsnap")
    pm.add_hookspecs(hookspecs)
    load_runtimes_from_plugins(pm)

    yield pm

    reset_runtime_registry()
    reset_cleanup_state()


@pytest.fixture
def temp_config(temp_data_dir: Path) -> LvsnapConfig:
    """A config with every wait shortened so polling tests finish immediately."""
    return LvsnapConfig(
        data_dir=temp_data_dir,
        cache=CacheConfig(is_enabled=True),
        waits=WaitsConfig(
            stop_poll_attempts=3,
            start_poll_attempts=3,
            state_poll_interval_seconds=0.0,
            merge_initial_delay_seconds=0.0,
            merge_poll_interval_seconds=0.0,
            merge_timeout_seconds=1.0,
            activation_settle_seconds=0.0,
            lock_timeout_seconds=0.2,
            command_timeout_seconds=5.0,
        ),
        sizing=SizingConfig(is_throughput_sampling_enabled=False),
    )


@pytest.fixture
def temp_lvsnap_ctx(temp_config: LvsnapConfig, plugin_manager: pluggy.PluginManager) -> LvsnapContext:
    return LvsnapContext(config=temp_config, pm=plugin_manager)


@pytest.fixture
def fake_node() -> FakeNode:
    """The simulated node lvsnap runs on."""
    return make_fake_node("pve1")


@pytest.fixture
def remote_nodes() -> dict[str, FakeNode]:
    """Other cluster members, keyed by name. Tests add nodes as needed."""
    return {}


@pytest.fixture
def host_env(
    temp_lvsnap_ctx: LvsnapContext,
    fake_node: FakeNode,
    remote_nodes: dict[str, FakeNode],
) -> HostEnvironment:
    """A HostEnvironment on the fake node, reaching remote fake nodes by name."""

    def connect_to_node(node_name: NodeName) -> NodeInterface:
        return remote_nodes[node_name]

    return HostEnvironment(ctx=temp_lvsnap_ctx, local_node=fake_node, node_connector=connect_to_node)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner for testing CLI commands."""
    return CliRunner()
