from typing import Any

import pluggy

from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceKind

hookspec = pluggy.HookspecMarker("lvsnap")


@hookspec
def register_instance_runtime() -> tuple[InstanceKind, type[InstanceRuntimeInterface]] | None:
    """Register the command surface for an instance kind.

    Return a tuple of (kind, runtime_class), or None if not registering a runtime.
    A runtime registered later for the same kind replaces the built-in one.
    """


@hookspec
def on_load_config(config_dict: dict[str, Any]) -> None:
    """Called when loading configuration, before final validation.

    The config_dict is passed by reference, so plugins can modify it in place,
    e.g. to point paths at a different metadata directory or change wait bounds.
    """
