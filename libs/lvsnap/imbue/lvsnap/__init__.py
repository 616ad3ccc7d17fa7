import pluggy

hookimpl = pluggy.HookimplMarker("lvsnap")
