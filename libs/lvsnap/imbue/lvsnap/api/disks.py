from typing import Final

from loguru import logger

from imbue.lvsnap.api.data_types import Disk
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.base import pure
from imbue.lvsnap.errors import NoDisksFoundError
from imbue.lvsnap.interfaces.runtime import InstanceRuntimeInterface
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.storage.lvm import LvmTool
from imbue.lvsnap.utils.cleanup import register_cleanup

_DISK_CACHE: Final[str] = "disks"
_SKIPPED_STORAGES: Final[frozenset[str]] = frozenset({"local"})


class DiskEntry(FrozenModel):
    """A disk line of an instance configuration, before its device is resolved."""

    config_key: str
    volume_ref: str
    options: dict[str, str]

    @property
    def storage(self) -> str:
        return self.volume_ref.split(":", 1)[0]

    @property
    def volume_name(self) -> str:
        return self.volume_ref.split(":", 1)[1]


@pure
def parse_disk_entries(config_text: str, runtime: InstanceRuntimeInterface) -> list[DiskEntry]:
    """Extract the storage-backed disk lines of a `qm config` / `pct config` dump.

    Entries on `local:` storage, CD-ROM media, `none` volumes and bind mounts
    (no storage prefix) are skipped.
    """
    entries: list[DiskEntry] = []
    for line in config_text.splitlines():
        key, separator, value = line.partition(":")
        key = key.strip()
        if not separator or not runtime.is_disk_key(key):
            continue
        fields = [field.strip() for field in value.strip().split(",")]
        volume_ref = fields[0]
        options = {}
        for option in fields[1:]:
            option_key, option_separator, option_value = option.partition("=")
            if option_separator:
                options[option_key] = option_value
        if volume_ref == "none" or ":" not in volume_ref:
            logger.trace("Skipping {} without a storage volume: {}", key, volume_ref)
            continue
        storage, volume_name = volume_ref.split(":", 1)
        if storage in _SKIPPED_STORAGES or not volume_name:
            logger.trace("Skipping {} on {} storage", key, storage)
            continue
        if options.get("media") == "cdrom":
            logger.trace("Skipping CD-ROM entry {}", key)
            continue
        entries.append(DiskEntry(config_key=key, volume_ref=volume_ref, options=options))
    return entries


@pure
def mapper_name(storage: str, volume_name: str) -> str:
    """Device mapper node name for an LV: hyphens inside each part are doubled."""
    return f"{storage.replace('-', '--')}-{volume_name.replace('-', '--')}"


def resolve_device_path(env: HostEnvironment, lvm: LvmTool, entry: DiskEntry) -> str:
    """Find the block device of a disk entry, as /dev/<vg>/<lv>. Returns "" if nothing exists."""
    node = env.local_node
    dev_dir = env.config.paths.dev_dir
    direct_path = f"{dev_dir}/{entry.storage}/{entry.volume_name}"
    if node.exists(f"{dev_dir}/mapper/{mapper_name(entry.storage, entry.volume_name)}"):
        # The mapper node exists, so the storage name is the VG name
        return direct_path
    if node.exists(direct_path):
        return direct_path
    for vg_name in lvm.list_volume_groups():
        candidate = f"{dev_dir}/{vg_name}/{entry.volume_name}"
        if node.exists(candidate):
            return candidate
    logger.warning("Could not find a block device for {} ({})", entry.config_key, entry.volume_ref)
    return ""


def _disk_cache_key(instance_id: InstanceId) -> str:
    return f"instance-{instance_id}"


def list_disks(env: HostEnvironment, instance: Instance, is_cache_used: bool = True) -> list[Disk]:
    """Map an instance's configured disks to storage volumes.

    Raises NoDisksFoundError when no storage-backed disk remains after filtering.
    Unresolved disks are returned with an empty device path.
    """
    cache = env.cache(_DISK_CACHE, env.config.cache.disk_listing_ttl_seconds)
    cache_key = _disk_cache_key(instance.id)
    if is_cache_used:
        cached = cache.get(cache_key)
        if isinstance(cached, list) and cached:
            try:
                return [Disk.model_validate(item) for item in cached]
            except ValueError as e:
                logger.trace("Ignoring unusable disk cache entry: {}", e)

    runtime = env.runtime(instance.kind)
    config_text = runtime.get_config(instance.id)
    entries = parse_disk_entries(config_text, runtime)
    if not entries:
        raise NoDisksFoundError(instance.id)

    lvm = env.lvm()
    disks: list[Disk] = []
    for entry in entries:
        device_path = resolve_device_path(env, lvm, entry)
        is_thin = False
        if device_path:
            volume = lvm.get_logical_volume(device_path)
            is_thin = volume is not None and volume.is_thin
        disks.append(
            Disk(
                instance_id=instance.id,
                config_key=entry.config_key,
                volume_ref=entry.volume_ref,
                device_path=device_path,
                declared_size_hint=entry.options.get("size"),
                is_thin_provisioned=is_thin,
            )
        )
        logger.debug("Disk {}: {} -> {}", entry.config_key, entry.volume_ref, device_path or "unresolved")

    cache.set(cache_key, [disk.model_dump(mode="json") for disk in disks])
    register_cleanup(f"disk-cache-{instance.id}", lambda: cache.remove(cache_key))
    return disks


def forget_disks(env: HostEnvironment, instance_id: InstanceId) -> None:
    """Drop the cached disk listing of an instance, after its volumes changed."""
    env.cache(_DISK_CACHE, env.config.cache.disk_listing_ttl_seconds).remove(_disk_cache_key(instance_id))
