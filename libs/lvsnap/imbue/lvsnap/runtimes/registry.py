import pluggy
from loguru import logger

import imbue.lvsnap.runtimes.lxc as lxc_runtime_module
import imbue.lvsnap.runtimes.qemu as qemu_runtime_module
from imbue.lvsnap.errors import UnknownRuntimeError
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceKind

# Cache for registered runtimes
runtime_registry: dict[InstanceKind, type[InstanceRuntimeInterface]] = {}

_BUILTIN_RUNTIME_MODULES = {
    "qemu": qemu_runtime_module,
    "lxc": lxc_runtime_module,
}


def register_builtin_runtimes(pm: pluggy.PluginManager) -> None:
    """Register the built-in qm and pct runtime modules with the plugin manager.

    Call this before loading external plugins: pluggy calls the most recently
    registered hooks first, so external runtimes then take precedence.
    """
    for name, module in _BUILTIN_RUNTIME_MODULES.items():
        if not pm.is_registered(module):
            pm.register(module, name=f"runtime-{name}")


def load_runtimes_from_plugins(pm: pluggy.PluginManager) -> None:
    """Collect every runtime registration. The first registration for a kind wins."""
    register_builtin_runtimes(pm)
    for registration in pm.hook.register_instance_runtime():
        if registration is None:
            continue
        kind, runtime_class = registration
        if kind not in runtime_registry:
            logger.trace("Registered {} runtime {}", kind, runtime_class.__name__)
            runtime_registry[kind] = runtime_class


def reset_runtime_registry() -> None:
    """Forget every registered runtime. Used for test isolation."""
    runtime_registry.clear()


def get_runtime_class(kind: InstanceKind) -> type[InstanceRuntimeInterface]:
    try:
        return runtime_registry[kind]
    except KeyError as e:
        raise UnknownRuntimeError(f"No runtime registered for instance kind {kind}") from e


def build_runtime(kind: InstanceKind, node: NodeInterface, timeout_seconds: float) -> InstanceRuntimeInterface:
    """Build the runtime for an instance kind, bound to a node."""
    runtime_class = get_runtime_class(kind)
    return runtime_class(node=node, timeout_seconds=timeout_seconds)
