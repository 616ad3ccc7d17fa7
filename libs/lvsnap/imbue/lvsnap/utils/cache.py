import json
import re
import time
from pathlib import Path
from typing import Any

from loguru import logger

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileCache:
    """A small TTL cache stored as one JSON file per key.

    Entries are advisory: a missing, stale, unreadable or corrupted entry is
    treated as a miss, so every caller must be able to recompute the value.
    """

    def __init__(self, directory: Path, namespace: str, ttl_seconds: float, is_enabled: bool = True) -> None:
        self.directory = directory / namespace
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self.is_enabled = is_enabled

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Any | None:
        if not self.is_enabled:
            return None
        path = self._path_for(key)
        try:
            entry = json.loads(path.read_text())
            stored_at = float(entry["stored_at"])
            value = entry["value"]
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.trace("Ignoring unreadable {} cache entry {}: {}", self.namespace, path, e)
            return None
        if time.time() - stored_at > self.ttl_seconds:
            logger.trace("Ignoring stale {} cache entry for {}", self.namespace, key)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if not self.is_enabled:
            return
        path = self._path_for(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps({"stored_at": time.time(), "value": value}))
            tmp_path.replace(path)
        except OSError as e:
            logger.trace("Could not write {} cache entry {}: {}", self.namespace, path, e)

    def remove(self, key: str) -> None:
        try:
            self._path_for(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.trace("Could not remove {} cache entry for {}: {}", self.namespace, key, e)

    def clear(self) -> None:
        if not self.directory.exists():
            return
        for path in self.directory.glob("*.json"):
            try:
                path.unlink()
            except OSError as e:
                logger.trace("Could not remove cache file {}: {}", path, e)
