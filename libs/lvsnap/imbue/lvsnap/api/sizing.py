"""Thick snapshot sizing.

A thick snapshot needs enough room for every block the origin rewrites while
the snapshot exists. The engine estimates that from how full the volume is and
what kind of device backs it, then rounds to a small set of increments and
clamps the result so that a snapshot never exceeds a fixed fraction of its
origin.
"""

import math
import re
from pathlib import PurePosixPath
from typing import Final

from loguru import logger

from imbue.lvsnap.api.data_types import Disk
from imbue.lvsnap.api.data_types import SizeDecision
from imbue.lvsnap.api.data_types import SizeProfile
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.base import pure
from imbue.lvsnap.config.data_types import SizingConfig
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import SizingStrategy
from imbue.lvsnap.storage.lvm import BYTES_PER_GB

DEFAULT_SIZE_GB: Final[int] = 2
_THROUGHPUT_PATTERN: Final[re.Pattern[str]] = re.compile(r"([\d.]+)\s*MB/sec")
_SIZE_HINT_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\s*([\d.]+)\s*([KMGT]?)B?\s*$", re.IGNORECASE)
_NETWORK_FILESYSTEMS: Final[tuple[str, ...]] = ("nfs", "cifs", "smb")
_UNIT_TO_GB: Final[dict[str, float]] = {
    "": 1.0,
    "K": 1.0 / 1024**2,
    "M": 1.0 / 1024,
    "G": 1.0,
    "T": 1024.0,
}


# =============================================================================
# Pure sizing rules
# =============================================================================


@pure
def round_to_increment(size_gb: float, rotational: bool | None, is_network_backed: bool) -> int:
    """Round a size up to the increments used for the storage class."""
    size = max(1, math.ceil(size_gb - 1e-9))
    if is_network_backed:
        steps, multiple = (1, 2, 3, 4, 6, 8), 4
    elif rotational is True:
        steps, multiple = (2, 4, 6, 8, 12), 4
    else:
        steps, multiple = (1, 2, 3, 4, 6), 2
    for step in steps:
        if size <= step:
            return step
    return math.ceil(size / multiple) * multiple


@pure
def clamp_size(size_gb: int, total_gb: float | None, max_fraction: float) -> int:
    """Clamp to [1, floor(max_fraction * total)]. Volumes too small for that get 1 GB."""
    if total_gb is None:
        return max(1, size_gb)
    upper = math.floor(max_fraction * total_gb)
    return max(1, min(size_gb, upper))


@pure
def parse_size_hint_gb(hint: str | None) -> float | None:
    """Parse a Proxmox size= value such as '32G' or '1T' into GB."""
    if not hint:
        return None
    match = _SIZE_HINT_PATTERN.match(hint)
    if match is None:
        return None
    return float(match.group(1)) * _UNIT_TO_GB[match.group(2).upper()]


@pure
def compute_intelligent_size(profile: SizeProfile, kind: InstanceKind, config: SizingConfig) -> float:
    """Estimate the changed-block volume, before history, rounding and clamping."""
    used_fraction = profile.used_fraction if profile.used_fraction is not None else config.default_usage_fraction
    used_gb = (profile.total_gb or 0.0) * used_fraction

    if profile.rotational is False:
        multiplier = 0.08
    elif profile.rotational is True:
        multiplier = 0.12
    else:
        multiplier = 0.10
    size = used_gb * multiplier

    if profile.throughput_sample_mbs is not None:
        if profile.throughput_sample_mbs > 300:
            size *= 0.8
        elif profile.throughput_sample_mbs < 50:
            size *= 1.1
    if profile.is_network_backed:
        size *= 1.15
    if profile.queue_depth is not None:
        if profile.queue_depth > 128:
            size *= 0.9
        elif profile.queue_depth < 32:
            size *= 1.05
    if kind == InstanceKind.CONTAINER:
        size *= 0.7
    return size


@pure
def apply_history(size_gb: float, historical_average_gb: float | None) -> float:
    """Prefer a slightly smaller historical average when it is within 20% of the estimate."""
    if historical_average_gb is None or size_gb <= 0:
        return size_gb
    if historical_average_gb < size_gb and (size_gb - historical_average_gb) / size_gb < 0.2:
        return historical_average_gb * 1.05
    return size_gb


@pure
def compute_fallback_size(
    total_gb: float | None,
    rotational: bool | None,
    is_network_backed: bool,
    max_fraction: float,
) -> SizeDecision:
    """Size by volume bucket when the volume could not be measured."""
    if total_gb is None:
        return SizeDecision(size_gb=DEFAULT_SIZE_GB, strategy=SizingStrategy.DEFAULT)
    whole_gb = math.floor(total_gb)
    if whole_gb < 10:
        base = 1.0
    elif whole_gb < 50:
        base = 2.0
    elif whole_gb < 200:
        base = 4.0
    else:
        base = math.floor(whole_gb * 0.03)
    if rotational is True:
        base *= 1.2
    elif is_network_backed:
        base *= 1.3
    size = clamp_size(round_to_increment(base, rotational, is_network_backed), total_gb, max_fraction)
    return SizeDecision(size_gb=size, strategy=SizingStrategy.FALLBACK)


@pure
def compute_hint_size(declared_size_hint: str | None, max_fraction: float) -> SizeDecision:
    """Size from the configured disk size alone, used when size optimization is off."""
    total_gb = parse_size_hint_gb(declared_size_hint)
    if total_gb is None:
        return SizeDecision(size_gb=DEFAULT_SIZE_GB, strategy=SizingStrategy.DEFAULT)
    if total_gb < 40:
        size = DEFAULT_SIZE_GB
    else:
        size = max(DEFAULT_SIZE_GB, math.ceil(total_gb * 0.05))
    return SizeDecision(size_gb=clamp_size(size, total_gb, max_fraction), strategy=SizingStrategy.HINT)


# =============================================================================
# Measurement
# =============================================================================


def _read_int(env: HostEnvironment, path: str) -> int | None:
    content = env.local_node.read_text_or_none(path)
    if content is None:
        return None
    try:
        return int(content.strip())
    except ValueError:
        return None


def _sample_throughput(env: HostEnvironment, device_path: str) -> float | None:
    sizing = env.config.sizing
    if not sizing.is_throughput_sampling_enabled:
        return None
    result = env.local_node.run(["hdparm", "-t", device_path], timeout_seconds=sizing.throughput_sample_timeout_seconds)
    if not result.is_success:
        return None
    match = _THROUGHPUT_PATTERN.search(result.stdout)
    return float(match.group(1)) if match else None


def _is_network_backed(env: HostEnvironment, device_path: str) -> bool:
    node = env.local_node
    timeout = env.config.sizing.throughput_sample_timeout_seconds
    iscsi = node.run(["iscsiadm", "-m", "session"], timeout_seconds=timeout)
    if iscsi.is_success and "tcp" in iscsi.stdout:
        logger.trace("Active iSCSI sessions found")
        return True

    device_name = PurePosixPath(device_path).name
    if node.exists(f"{env.config.paths.dev_dir}/mapper/{device_name}"):
        multipath = node.run(["multipath", "-l"], timeout_seconds=timeout)
        if multipath.is_success and device_name in multipath.stdout:
            logger.trace("{} is a multipath device", device_name)
            return True

    device_dir = str(PurePosixPath(device_path).parent)
    for line in (node.read_text_or_none(env.config.paths.proc_mounts) or "").splitlines():
        fields = line.split()
        if len(fields) >= 3 and fields[2].startswith(_NETWORK_FILESYSTEMS) and device_dir in line:
            logger.trace("Network filesystem mounted under {}", device_dir)
            return True
    return False


def _historical_average_gb(env: HostEnvironment, disk: Disk) -> float | None:
    """Average size of the most recent thick snapshots of the same origin."""
    sizing = env.config.sizing
    snapshots = [
        volume
        for volume in env.lvm().list_logical_volumes(disk.vg_name)
        if volume.origin == disk.lv_name and not volume.is_thin
    ]
    snapshots.sort(key=lambda volume: volume.created_at.timestamp() if volume.created_at else 0.0)
    recent = snapshots[-sizing.history_window :]
    if len(recent) < sizing.history_minimum:
        return None
    return sum(volume.size_gb for volume in recent) / len(recent)


def measure_profile(env: HostEnvironment, disk: Disk) -> SizeProfile:
    """Collect everything the sizing rules look at. Missing measurements are left as None."""
    total_gb: float | None = None
    used_fraction: float | None = None
    volume = env.lvm().get_logical_volume(disk.device_path)
    if volume is not None:
        total_gb = volume.size_gb
        used_fraction = volume.data_percent / 100 if volume.data_percent is not None else None
    else:
        size_bytes = env.lvm().get_device_size_bytes(disk.device_path)
        if size_bytes is not None:
            total_gb = size_bytes / BYTES_PER_GB

    device_name = PurePosixPath(env.local_node.resolve_path(disk.device_path)).name
    queue_dir = f"{env.config.paths.sys_block_dir}/{device_name}/queue"
    rotational_flag = _read_int(env, f"{queue_dir}/rotational")

    return SizeProfile(
        total_gb=total_gb,
        used_fraction=used_fraction,
        rotational=None if rotational_flag is None else rotational_flag == 1,
        queue_depth=_read_int(env, f"{queue_dir}/nr_requests"),
        throughput_sample_mbs=_sample_throughput(env, disk.device_path),
        is_network_backed=_is_network_backed(env, disk.device_path),
        historical_average_gb=_historical_average_gb(env, disk),
    )


def compute_size(
    env: HostEnvironment,
    disk: Disk,
    kind: InstanceKind,
    is_optimized: bool = True,
) -> SizeDecision | None:
    """Choose the size of a snapshot of `disk`. Thin disks need no size and return None."""
    if disk.is_thin_provisioned:
        return None
    sizing = env.config.sizing
    if not is_optimized:
        decision = compute_hint_size(disk.declared_size_hint, sizing.max_fraction_of_volume)
        logger.debug("{}: {}G from the declared size", disk.config_key, decision.size_gb)
        return decision

    profile = measure_profile(env, disk)
    if profile.total_gb is None:
        decision = compute_fallback_size(
            parse_size_hint_gb(disk.declared_size_hint),
            profile.rotational,
            profile.is_network_backed,
            sizing.max_fraction_of_volume,
        )
        logger.debug("{}: could not measure volume, {} size {}G", disk.config_key, decision.strategy.lower(), decision.size_gb)
        return decision.model_copy(update={"profile": profile})

    estimate = apply_history(compute_intelligent_size(profile, kind, sizing), profile.historical_average_gb)
    rounded = round_to_increment(estimate, profile.rotational, profile.is_network_backed)
    size_gb = clamp_size(rounded, profile.total_gb, sizing.max_fraction_of_volume)
    logger.debug(
        "{}: total {:.1f}G, estimate {:.2f}G, snapshot {}G",
        disk.config_key,
        profile.total_gb,
        estimate,
        size_gb,
    )
    return SizeDecision(size_gb=size_gb, strategy=SizingStrategy.INTELLIGENT, profile=profile)
