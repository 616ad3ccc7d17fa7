import pluggy
import pytest

from imbue.lvsnap import hookimpl
from imbue.lvsnap.errors import UnknownRuntimeError
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.plugins import hookspecs
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.runtimes.lxc import LxcRuntime
from imbue.lvsnap.runtimes.registry import build_runtime
from imbue.lvsnap.runtimes.registry import get_runtime_class
from imbue.lvsnap.runtimes.registry import load_runtimes_from_plugins
from imbue.lvsnap.runtimes.registry import register_builtin_runtimes
from imbue.lvsnap.runtimes.registry import reset_runtime_registry
from imbue.lvsnap.utils.testing import FakeNode


class _CustomContainerRuntime(LxcRuntime):
    """A container runtime whose freeze always succeeds."""

    def freeze_filesystems(self, instance_id: InstanceId) -> bool:
        return True


class _CustomRuntimePlugin:
    @hookimpl
    def register_instance_runtime(self) -> tuple[InstanceKind, type[InstanceRuntimeInterface]]:
        return (InstanceKind.CONTAINER, _CustomContainerRuntime)


def test_builtin_runtimes_are_registered(fake_node: FakeNode) -> None:
    runtime = build_runtime(InstanceKind.CONTAINER, fake_node, timeout_seconds=5.0)

    assert isinstance(runtime, LxcRuntime)
    assert runtime.timeout_seconds == 5.0


def test_unknown_kind_raises() -> None:
    reset_runtime_registry()

    with pytest.raises(UnknownRuntimeError):
        get_runtime_class(InstanceKind.VM)


def test_external_plugin_replaces_a_builtin_runtime() -> None:
    reset_runtime_registry()
    pm = pluggy.PluginManager("lvsnap")
    pm.add_hookspecs(hookspecs)
    register_builtin_runtimes(pm)
    pm.register(_CustomRuntimePlugin())

    load_runtimes_from_plugins(pm)

    assert get_runtime_class(InstanceKind.CONTAINER) is _CustomContainerRuntime
