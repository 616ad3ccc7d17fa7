from abc import ABC
from abc import abstractmethod
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from pydantic import Field

from imbue.lvsnap.base import MutableModel
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.utils.commands import FinishedProcess


class NodeInterface(MutableModel, ABC):
    """A cluster node that commands run on and files are read from.

    Paths are plain POSIX strings on the node, never local Path objects, since
    the node may be remote.
    """

    name: NodeName = Field(frozen=True, description="Short hostname of the node")

    @property
    @abstractmethod
    def is_local(self) -> bool:
        """Return True if this node is the machine lvsnap runs on."""
        ...

    # =========================================================================
    # Commands
    # =========================================================================

    @abstractmethod
    def run(self, command: Sequence[str], timeout_seconds: float | None = None) -> FinishedProcess:
        """Run an argv command and return its result. Non-zero exit codes do not raise."""
        ...

    def disconnect(self) -> None:
        """Close any open session to the node. Nodes without a session do nothing."""

    # =========================================================================
    # Files
    # =========================================================================

    @abstractmethod
    def read_text(self, path: str) -> str:
        """Read a text file. Raises FileNotFoundError if it does not exist."""
        ...

    @abstractmethod
    def write_text(self, path: str, content: str) -> None:
        """Write a text file, creating parent directories as needed."""
        ...

    @abstractmethod
    def upload_file(self, local_path: Path, path: str) -> None:
        """Copy a file from the machine lvsnap runs on to `path` on the node."""
        ...

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def remove(self, path: str) -> None:
        """Remove a file. A missing file is not an error."""
        ...

    @abstractmethod
    def get_mtime(self, path: str) -> datetime | None:
        """Return the modification time of a path, or None if it does not exist."""
        ...

    @abstractmethod
    def resolve_path(self, path: str) -> str:
        """Resolve symlinks, e.g. /dev/pve/vm-104-disk-0 -> /dev/dm-3."""
        ...

    def read_text_or_none(self, path: str) -> str | None:
        try:
            return self.read_text(path)
        except FileNotFoundError:
            return None
