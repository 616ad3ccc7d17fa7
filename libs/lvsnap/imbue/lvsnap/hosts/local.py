import os
import shutil
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.utils.commands import FinishedProcess
from imbue.lvsnap.utils.commands import run_local_command


class LocalNode(NodeInterface):
    """The node lvsnap is running on."""

    @property
    def is_local(self) -> bool:
        return True

    def run(self, command: Sequence[str], timeout_seconds: float | None = None) -> FinishedProcess:
        return run_local_command(command, timeout=timeout_seconds)

    def read_text(self, path: str) -> str:
        return Path(path).read_text()

    def write_text(self, path: str, content: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)

    def upload_file(self, local_path: Path, path: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def remove(self, path: str) -> None:
        Path(path).unlink(missing_ok=True)

    def get_mtime(self, path: str) -> datetime | None:
        try:
            return datetime.fromtimestamp(os.stat(path).st_mtime)
        except FileNotFoundError:
            return None

    def resolve_path(self, path: str) -> str:
        return os.path.realpath(path)
