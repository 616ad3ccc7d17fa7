"""A simulated Proxmox node for tests.

FakeNode implements NodeInterface with an in-memory filesystem and a small
model of the LVM, qm, pct, pvesh and pvecm command surface, so the engines
can be exercised without root, real volumes or a cluster.
"""

import json
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from pathlib import PurePosixPath
from typing import Final

from pydantic import Field

from imbue.lvsnap.base import MutableModel
from imbue.lvsnap.errors import NodeConnectionError
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.storage.lvm import BYTES_PER_GB
from imbue.lvsnap.utils.commands import FinishedProcess

DEFAULT_VG: Final[str] = "pve"
THIN_POOL: Final[str] = "data"
_LV_TIME_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S +0000"
_FAILURE_EXIT_CODE: Final[int] = 5


class FakeLogicalVolume(MutableModel):
    """A simulated logical volume."""

    vg_name: str
    lv_name: str
    size_bytes: int
    data_percent: float | None = None
    origin: str | None = None
    pool_lv: str | None = None
    attr: str = "-wi-a-----"
    lv_time: str = Field(default_factory=lambda: datetime.now().strftime(_LV_TIME_FORMAT))
    # Number of lvs listings a merging snapshot survives before the merge finishes
    merge_polls_remaining: int | None = None

    @property
    def path(self) -> str:
        return f"/dev/{self.vg_name}/{self.lv_name}"

    @property
    def is_active(self) -> bool:
        return self.attr[4:5] == "a"

    @property
    def is_thick_snapshot(self) -> bool:
        return bool(self.origin) and self.pool_lv is None


class FakeInstance(MutableModel):
    """A simulated VM or container."""

    instance_id: str
    kind: InstanceKind
    state: str = "stopped"
    config_lines: list[str] = Field(default_factory=list)
    has_guest_agent: bool = True
    # When set, a plain stop leaves the instance running and only a forced stop works
    is_stop_ignored: bool = False


class FakeNode(NodeInterface):
    """A simulated Proxmox node."""

    is_local_node: bool = True
    files: dict[str, str] = Field(default_factory=dict)
    mtimes: dict[str, datetime] = Field(default_factory=dict)
    symlinks: dict[str, str] = Field(default_factory=dict)
    vg_free_gb: dict[str, float] = Field(default_factory=lambda: {DEFAULT_VG: 500.0})
    volumes: list[FakeLogicalVolume] = Field(default_factory=list)
    instances: dict[str, FakeInstance] = Field(default_factory=dict)
    # argv prefixes that fail with a non-zero exit code
    failing_commands: list[tuple[str, ...]] = Field(default_factory=list)
    # Canned stdout for commands that are not otherwise simulated, keyed by argv prefix
    canned_outputs: dict[tuple[str, ...], str] = Field(default_factory=dict)
    merge_polls: int = 0
    # When set, lvconvert --merge only schedules the merge for the next activation
    is_merge_deferred: bool = False
    cluster_resources: list[dict[str, object]] | None = None
    pvecm_nodes_output: str | None = None
    pvecm_status_output: str | None = None
    commands_run: list[tuple[str, ...]] = Field(default_factory=list)
    # When set, every command raises NodeConnectionError like a dead SSH session
    is_unreachable: bool = False
    disconnect_count: int = 0
    # Remote path -> local file of every upload
    uploaded_files: dict[str, Path] = Field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        return self.is_local_node

    # =========================================================================
    # Setup helpers
    # =========================================================================

    def add_volume(
        self,
        lv_name: str,
        size_gb: float,
        vg_name: str = DEFAULT_VG,
        is_thin: bool = False,
        data_percent: float | None = None,
        origin: str | None = None,
        lv_time: str | None = None,
        is_active: bool = True,
    ) -> FakeLogicalVolume:
        volume = FakeLogicalVolume(
            vg_name=vg_name,
            lv_name=lv_name,
            size_bytes=int(size_gb * BYTES_PER_GB),
            data_percent=data_percent,
            origin=origin,
            pool_lv=THIN_POOL if is_thin else None,
            attr=("V" if is_thin else ("s" if origin else "-")) + ("wi-a-----" if is_active else "wi-------"),
        )
        if lv_time is not None:
            volume.lv_time = lv_time
        self.volumes.append(volume)
        self.vg_free_gb.setdefault(vg_name, 500.0)
        return volume

    def add_instance(
        self,
        instance_id: str,
        kind: InstanceKind,
        state: str = "stopped",
        config_lines: Sequence[str] = (),
        has_guest_agent: bool = True,
        pve_dir: str = "/etc/pve",
    ) -> FakeInstance:
        instance = FakeInstance(
            instance_id=instance_id,
            kind=kind,
            state=state,
            config_lines=list(config_lines),
            has_guest_agent=has_guest_agent,
        )
        self.instances[instance_id] = instance
        subdir = "qemu-server" if kind == InstanceKind.VM else "lxc"
        self.files[f"{pve_dir}/{subdir}/{instance_id}.conf"] = "\n".join(config_lines) + "\n"
        return instance

    def find_volume(self, lv_name: str, vg_name: str = DEFAULT_VG) -> FakeLogicalVolume | None:
        for volume in self.volumes:
            if volume.vg_name == vg_name and volume.lv_name == lv_name:
                return volume
        return None

    def find_volume_by_path(self, path: str) -> FakeLogicalVolume | None:
        for volume in self.volumes:
            if volume.path == path:
                return volume
        return None

    def snapshot_lv_names(self) -> list[str]:
        return sorted(volume.lv_name for volume in self.volumes if volume.origin)

    def count_commands(self, *prefix: str) -> int:
        return sum(1 for command in self.commands_run if command[: len(prefix)] == prefix)

    # =========================================================================
    # NodeInterface
    # =========================================================================

    def read_text(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_text(self, path: str, content: str) -> None:
        self.files[path] = content
        self.mtimes[path] = datetime.now()

    def upload_file(self, local_path: Path, path: str) -> None:
        if self.is_unreachable:
            raise NodeConnectionError(f"Could not connect to {self.name}")
        self.uploaded_files[path] = local_path
        self.files[path] = ""

    def exists(self, path: str) -> bool:
        if path in self.files or path in self.symlinks:
            return True
        # Only active volumes have a device node
        volume = self.find_volume_by_path(path)
        if volume is not None:
            return volume.is_active
        prefix = path.rstrip("/") + "/"
        return any(existing.startswith(prefix) for existing in self.files)

    def disconnect(self) -> None:
        self.disconnect_count += 1

    def remove(self, path: str) -> None:
        self.files.pop(path, None)
        self.mtimes.pop(path, None)

    def get_mtime(self, path: str) -> datetime | None:
        if path in self.mtimes:
            return self.mtimes[path]
        return datetime.now() if self.exists(path) else None

    def resolve_path(self, path: str) -> str:
        return self.symlinks.get(path, path)

    def run(self, command: Sequence[str], timeout_seconds: float | None = None) -> FinishedProcess:
        if self.is_unreachable:
            raise NodeConnectionError(f"Could not connect to {self.name}")
        argv = tuple(command)
        self.commands_run.append(argv)
        for failing_prefix in self.failing_commands:
            if argv[: len(failing_prefix)] == failing_prefix:
                return self._fail(argv, "simulated failure")
        for canned_prefix, stdout in self.canned_outputs.items():
            if argv[: len(canned_prefix)] == canned_prefix:
                return self._ok(argv, stdout)
        match argv[0] if argv else "":
            case "qm":
                return self._run_runtime(argv, InstanceKind.VM)
            case "pct":
                return self._run_runtime(argv, InstanceKind.CONTAINER)
            case "pvesh":
                return self._run_pvesh(argv)
            case "pvecm":
                return self._run_pvecm(argv)
            case "vgs":
                return self._run_vgs(argv)
            case "lvs":
                return self._run_lvs(argv)
            case "lvcreate":
                return self._run_lvcreate(argv)
            case "lvremove":
                return self._run_lvremove(argv)
            case "lvconvert":
                return self._run_lvconvert(argv)
            case "lvchange" | "udevadm":
                return self._ok(argv, "")
            case "blockdev":
                volume = self.find_volume_by_path(self.resolve_path(argv[-1]))
                if volume is None:
                    return self._fail(argv, f"blockdev: cannot open {argv[-1]}")
                return self._ok(argv, f"{volume.size_bytes}\n")
            case _:
                return FinishedProcess(returncode=127, stdout="", stderr=f"{argv[0]}: not found", command=argv)

    # =========================================================================
    # Command simulation
    # =========================================================================

    @staticmethod
    def _ok(argv: tuple[str, ...], stdout: str) -> FinishedProcess:
        return FinishedProcess(returncode=0, stdout=stdout, stderr="", command=argv)

    @staticmethod
    def _fail(argv: tuple[str, ...], stderr: str) -> FinishedProcess:
        return FinishedProcess(returncode=_FAILURE_EXIT_CODE, stdout="", stderr=stderr, command=argv)

    def _run_runtime(self, argv: tuple[str, ...], kind: InstanceKind) -> FinishedProcess:
        action = argv[1] if len(argv) > 1 else ""
        if action == "list":
            return self._ok(argv, self._render_listing(kind))
        instance_id = argv[3] if action == "guest" and len(argv) > 3 else (argv[2] if len(argv) > 2 else "")
        instance = self.instances.get(instance_id)
        if instance is None or instance.kind != kind:
            return FinishedProcess(
                returncode=2,
                stdout="",
                stderr=f"Configuration file '{instance_id}.conf' does not exist",
                command=argv,
            )
        match action:
            case "status":
                return self._ok(argv, f"status: {instance.state}\n")
            case "config":
                return self._ok(argv, "\n".join(instance.config_lines) + "\n")
            case "start":
                instance.state = "running"
                return self._ok(argv, "")
            case "stop":
                if instance.is_stop_ignored and "--skiplock" not in argv:
                    return self._ok(argv, "")
                instance.state = "stopped"
                return self._ok(argv, "")
            case "suspend":
                instance.state = "paused"
                return self._ok(argv, "")
            case "resume":
                instance.state = "running"
                return self._ok(argv, "")
            case "guest":
                if not instance.has_guest_agent or instance.state != "running":
                    return FinishedProcess(
                        returncode=255, stdout="", stderr="QEMU guest agent is not running", command=argv
                    )
                return self._ok(argv, "")
            case _:
                return self._fail(argv, f"unknown action {action}")

    def _render_listing(self, kind: InstanceKind) -> str:
        if kind == InstanceKind.VM:
            lines = ["      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID"]
            for instance in self.instances.values():
                if instance.kind == kind:
                    lines.append(f"       {instance.instance_id} vm{instance.instance_id}    {instance.state}  2048  32.00  0")
        else:
            lines = ["VMID       Status     Lock         Name"]
            for instance in self.instances.values():
                if instance.kind == kind:
                    lines.append(f"{instance.instance_id}        {instance.state}                 ct{instance.instance_id}")
        return "\n".join(lines) + "\n"

    def _run_pvesh(self, argv: tuple[str, ...]) -> FinishedProcess:
        if self.cluster_resources is None:
            return FinishedProcess(returncode=127, stdout="", stderr="pvesh: not found", command=argv)
        return self._ok(argv, json.dumps(self.cluster_resources))

    def _run_pvecm(self, argv: tuple[str, ...]) -> FinishedProcess:
        output = self.pvecm_nodes_output if argv[1:2] == ("nodes",) else self.pvecm_status_output
        if output is None:
            return self._fail(argv, "Corosync config '/etc/pve/corosync.conf' does not exist")
        return self._ok(argv, output)

    def _run_vgs(self, argv: tuple[str, ...]) -> FinishedProcess:
        if "vg_free" in argv:
            vg_name = argv[-1]
            if vg_name not in self.vg_free_gb:
                return self._fail(argv, f"Volume group \"{vg_name}\" not found")
            return self._ok(argv, f"  {self.vg_free_gb[vg_name]:.2f}\n")
        return self._ok(argv, "".join(f"  {vg}\n" for vg in sorted(self.vg_free_gb)))

    def _advance_merges(self) -> None:
        for volume in list(self.volumes):
            if volume.merge_polls_remaining is None:
                continue
            if volume.merge_polls_remaining <= 0:
                self.volumes.remove(volume)
            else:
                volume.merge_polls_remaining -= 1

    def _run_lvs(self, argv: tuple[str, ...]) -> FinishedProcess:
        self._advance_merges()
        target = None if argv[-2] == "-o" else argv[-1]
        rows = []
        for volume in self.volumes:
            if target is not None:
                if target.startswith("/dev/"):
                    if volume.path != self.resolve_path(target) and volume.path != target:
                        continue
                elif volume.vg_name != target:
                    continue
            data_percent = "" if volume.data_percent is None else f"{volume.data_percent:.2f}"
            rows.append(
                "  "
                + "|".join(
                    [
                        volume.vg_name,
                        volume.lv_name,
                        str(volume.size_bytes),
                        data_percent,
                        volume.origin or "",
                        volume.pool_lv or "",
                        volume.attr,
                        volume.lv_time,
                    ]
                )
            )
        if target is not None and target.startswith("/dev/") and not rows:
            return self._fail(argv, f"Failed to find logical volume \"{target}\"")
        return self._ok(argv, "\n".join(rows) + ("\n" if rows else ""))

    def _run_lvcreate(self, argv: tuple[str, ...]) -> FinishedProcess:
        args = list(argv[1:])
        size_gb: int | None = None
        name = ""
        origin_path = args[-1]
        if "-L" in args:
            size_gb = int(args[args.index("-L") + 1].rstrip("Gg"))
        if "-n" in args:
            name = args[args.index("-n") + 1]
        origin = self.find_volume_by_path(self.resolve_path(origin_path))
        if origin is None:
            return self._fail(argv, f"Failed to find logical volume \"{origin_path}\"")
        if origin.is_thick_snapshot:
            return self._fail(argv, "Snapshots of snapshots are not supported.")
        if self.find_volume(name, origin.vg_name) is not None:
            return self._fail(argv, f"Logical volume \"{name}\" already exists in volume group \"{origin.vg_name}\"")
        if size_gb is not None:
            free = self.vg_free_gb.get(origin.vg_name, 0.0)
            if free < size_gb:
                return self._fail(argv, f"Volume group \"{origin.vg_name}\" has insufficient free space")
            self.vg_free_gb[origin.vg_name] = free - size_gb
            snapshot = FakeLogicalVolume(
                vg_name=origin.vg_name,
                lv_name=name,
                size_bytes=size_gb * BYTES_PER_GB,
                data_percent=0.0,
                origin=origin.lv_name,
                attr="swi-a-s---",
            )
        else:
            snapshot = FakeLogicalVolume(
                vg_name=origin.vg_name,
                lv_name=name,
                size_bytes=origin.size_bytes,
                data_percent=origin.data_percent,
                origin=origin.lv_name,
                pool_lv=origin.pool_lv,
                attr="Vwi---tz-k",
            )
        self.volumes.append(snapshot)
        return self._ok(argv, f"  Logical volume \"{name}\" created.\n")

    def _run_lvremove(self, argv: tuple[str, ...]) -> FinishedProcess:
        path = argv[-1]
        volume = self.find_volume_by_path(path)
        if volume is None:
            return self._fail(argv, f"Failed to find logical volume \"{path}\"")
        self.volumes.remove(volume)
        if volume.pool_lv is None and volume.origin:
            self.vg_free_gb[volume.vg_name] = self.vg_free_gb.get(volume.vg_name, 0.0) + volume.size_bytes / BYTES_PER_GB
        return self._ok(argv, f"  Logical volume \"{volume.lv_name}\" successfully removed\n")

    def _run_lvconvert(self, argv: tuple[str, ...]) -> FinishedProcess:
        path = argv[-1]
        volume = self.find_volume_by_path(path)
        if volume is None or not volume.origin:
            return self._fail(argv, f"\"{path}\" is not a mergeable logical volume")
        if self.is_merge_deferred:
            return self._ok(argv, f"  Merging of snapshot {volume.lv_name} will occur on next activation.\n")
        if self.merge_polls <= 0:
            self.volumes.remove(volume)
        else:
            volume.attr = "S" + volume.attr[1:]
            volume.merge_polls_remaining = self.merge_polls
        return self._ok(argv, f"  Merging of volume {PurePosixPath(path).name} started.\n")


def make_fake_node(name: str = "pve1", is_local: bool = True) -> FakeNode:
    return FakeNode(name=NodeName(name), is_local_node=is_local)
