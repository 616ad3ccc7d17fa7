from datetime import datetime
from typing import Final

from loguru import logger
from pydantic import Field

from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.base import pure
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.utils.commands import FinishedProcess

BYTES_PER_GB: Final[int] = 1024**3

# lv_time contains colons, so fields are separated with a pipe
_LVS_SEPARATOR: Final[str] = "|"
_LVS_FIELDS: Final[tuple[str, ...]] = (
    "vg_name",
    "lv_name",
    "lv_size",
    "data_percent",
    "origin",
    "pool_lv",
    "lv_attr",
    "lv_time",
)


class LogicalVolumeInfo(FrozenModel):
    """One row of lvs output."""

    vg_name: str
    lv_name: str
    size_bytes: int
    data_percent: float | None = Field(default=None, description="Live usage, reported for thin volumes and snapshots")
    origin: str | None = None
    pool_lv: str | None = None
    attr: str = ""
    created_at: datetime | None = None

    @property
    def path(self) -> str:
        return f"/dev/{self.vg_name}/{self.lv_name}"

    @property
    def size_gb(self) -> float:
        return self.size_bytes / BYTES_PER_GB

    @property
    def is_snapshot(self) -> bool:
        return bool(self.origin)

    @property
    def is_thin(self) -> bool:
        return bool(self.pool_lv)

    @property
    def is_merging(self) -> bool:
        # 'S' is a merging snapshot, 'O' an origin with a merging snapshot
        return self.attr[:1] in ("S", "O")


@pure
def _parse_optional_float(value: str) -> float | None:
    value = value.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


@pure
def _parse_lv_time(value: str) -> datetime | None:
    value = value.strip()
    if not value:
        return None
    for time_format in ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, time_format)
        except ValueError:
            continue
    return None


@pure
def parse_lvs_output(output: str) -> list[LogicalVolumeInfo]:
    """Parse `lvs --noheadings --separator '|' --units b --nosuffix -o <_LVS_FIELDS>` output."""
    volumes: list[LogicalVolumeInfo] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = [field.strip() for field in line.split(_LVS_SEPARATOR)]
        if len(fields) < len(_LVS_FIELDS):
            continue
        vg_name, lv_name, size, data_percent, origin, pool_lv, attr, lv_time = fields[: len(_LVS_FIELDS)]
        try:
            size_bytes = int(float(size))
        except ValueError:
            continue
        volumes.append(
            LogicalVolumeInfo(
                vg_name=vg_name,
                lv_name=lv_name,
                size_bytes=size_bytes,
                data_percent=_parse_optional_float(data_percent),
                origin=origin or None,
                pool_lv=pool_lv or None,
                attr=attr,
                created_at=_parse_lv_time(lv_time),
            )
        )
    return volumes


@pure
def build_snapshot_command(origin_path: str, snapshot_lv_name: str, size_gb: int | None) -> list[str]:
    """Build the lvcreate argv for a snapshot. Thin snapshots (size_gb None) take no size."""
    if size_gb is None:
        return ["lvcreate", "-s", "-n", snapshot_lv_name, origin_path]
    return ["lvcreate", "-L", f"{size_gb}G", "-s", "-n", snapshot_lv_name, origin_path]


class LvmTool(FrozenModel):
    """The LVM command line tools on one node."""

    node: NodeInterface
    timeout_seconds: float = 300.0

    def _run(self, command: list[str]) -> FinishedProcess:
        return self.node.run(command, timeout_seconds=self.timeout_seconds)

    def list_volume_groups(self) -> list[str]:
        result = self._run(["vgs", "--noheadings", "-o", "vg_name"])
        if not result.is_success:
            logger.debug("vgs failed: {}", result.stderr.strip())
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def get_vg_free_gb(self, vg_name: str) -> float | None:
        result = self._run(["vgs", "--noheadings", "--nosuffix", "--units", "g", "-o", "vg_free", vg_name])
        if not result.is_success:
            return None
        return _parse_optional_float(result.stdout)

    def list_logical_volumes(self, target: str | None = None) -> list[LogicalVolumeInfo]:
        """List logical volumes, optionally restricted to one VG or one LV path."""
        command = [
            "lvs",
            "--noheadings",
            "--separator",
            _LVS_SEPARATOR,
            "--units",
            "b",
            "--nosuffix",
            "-o",
            ",".join(_LVS_FIELDS),
        ]
        if target is not None:
            command.append(target)
        result = self._run(command)
        if not result.is_success:
            logger.trace("lvs {} failed: {}", target or "", result.stderr.strip())
            return []
        return parse_lvs_output(result.stdout)

    def get_logical_volume(self, path: str) -> LogicalVolumeInfo | None:
        volumes = self.list_logical_volumes(path)
        return volumes[0] if volumes else None

    def create_snapshot(self, origin_path: str, snapshot_lv_name: str, size_gb: int | None) -> FinishedProcess:
        return self._run(build_snapshot_command(origin_path, snapshot_lv_name, size_gb))

    def remove_volume(self, path: str) -> FinishedProcess:
        return self._run(["lvremove", "-y", path])

    def merge_snapshot(self, path: str) -> FinishedProcess:
        return self._run(["lvconvert", "--merge", path])

    def activate(self, vg_name: str, lv_name: str) -> bool:
        """Activate a volume, retrying with auto-activation if plain activation fails."""
        target = f"{vg_name}/{lv_name}"
        if self._run(["lvchange", "-ay", target]).is_success:
            return True
        logger.debug("lvchange -ay {} failed, retrying with -aay", target)
        return self._run(["lvchange", "-aay", target]).is_success

    def settle_devices(self) -> None:
        result = self._run(["udevadm", "settle"])
        if not result.is_success:
            logger.debug("udevadm settle failed: {}", result.stderr.strip())

    def get_device_size_bytes(self, path: str) -> int | None:
        result = self._run(["blockdev", "--getsize64", path])
        if not result.is_success:
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None
