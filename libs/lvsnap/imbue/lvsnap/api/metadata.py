from typing import Final

from loguru import logger

from imbue.lvsnap.api.data_types import SnapshotMetadata
from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.base import pure
from imbue.lvsnap.interfaces.node import NodeInterface

TIME_SUFFIX: Final[str] = ".time"
META_SUFFIX: Final[str] = ".meta"


@pure
def render_meta_file(metadata: SnapshotMetadata) -> str:
    """Render the key=value lines of a .meta file. Unset fields are omitted."""
    lines = []
    if metadata.timestamp is not None:
        lines.append(f"timestamp={metadata.timestamp}")
    if metadata.optimized_size is not None:
        lines.append(f"optimized_size={metadata.optimized_size}")
    if metadata.optimization_type is not None:
        lines.append(f"optimization_type={metadata.optimization_type}")
    if metadata.is_thin is not None:
        lines.append(f"is_thin={'true' if metadata.is_thin else 'false'}")
    if metadata.transaction_id is not None:
        lines.append(f"transaction_id={metadata.transaction_id}")
    return "\n".join(lines) + "\n"


@pure
def parse_meta_file(content: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in content.splitlines():
        key, separator, value = line.partition("=")
        if separator and key.strip():
            values[key.strip()] = value.strip()
    return values


@pure
def _parse_timestamp(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class MetadataStore(FrozenModel):
    """The <snapshot lv>.time and <snapshot lv>.meta files of one node.

    A .time file holds the epoch seconds at which the snapshot set was
    committed. The optional .meta file holds key=value lines describing how
    the snapshot was sized.
    """

    node: NodeInterface
    directory: str

    def time_path(self, lv_name: str) -> str:
        return f"{self.directory}/{lv_name}{TIME_SUFFIX}"

    def meta_path(self, lv_name: str) -> str:
        return f"{self.directory}/{lv_name}{META_SUFFIX}"

    def write(self, metadata: SnapshotMetadata) -> None:
        if metadata.timestamp is not None:
            self.node.write_text(self.time_path(metadata.lv_name), f"{metadata.timestamp}\n")
        if metadata.optimized_size is not None or metadata.transaction_id is not None:
            self.node.write_text(self.meta_path(metadata.lv_name), render_meta_file(metadata))

    def read_timestamp(self, lv_name: str) -> int | None:
        return _parse_timestamp(self.node.read_text_or_none(self.time_path(lv_name)))

    def read(self, lv_name: str) -> SnapshotMetadata | None:
        """Return the metadata of a snapshot, or None if neither file exists."""
        timestamp = self.read_timestamp(lv_name)
        meta_content = self.node.read_text_or_none(self.meta_path(lv_name))
        if timestamp is None and meta_content is None:
            return None
        values = parse_meta_file(meta_content or "")
        if timestamp is None:
            timestamp = _parse_timestamp(values.get("timestamp"))
        is_thin_value = values.get("is_thin")
        return SnapshotMetadata(
            lv_name=lv_name,
            timestamp=timestamp,
            optimized_size=values.get("optimized_size"),
            optimization_type=values.get("optimization_type"),
            is_thin=None if is_thin_value is None else is_thin_value == "true",
            transaction_id=values.get("transaction_id"),
        )

    def remove(self, lv_name: str) -> None:
        for path in (self.time_path(lv_name), self.meta_path(lv_name)):
            try:
                self.node.remove(path)
            except OSError as e:
                logger.warning("Could not remove metadata file {}: {}", path, e)
