"""Tests for the file-backed TTL cache."""

import json
import time
from pathlib import Path

from imbue.lvsnap.utils.cache import FileCache


def test_cache_returns_stored_value(tmp_path: Path) -> None:
    """A fresh entry should be returned unchanged."""
    cache = FileCache(tmp_path, "classification", ttl_seconds=60)

    cache.set("104", {"kind": "VM"})

    assert cache.get("104") == {"kind": "VM"}


def test_cache_miss_returns_none(tmp_path: Path) -> None:
    """A key that was never stored is a miss."""
    cache = FileCache(tmp_path, "classification", ttl_seconds=60)

    assert cache.get("999") is None


def test_cache_ignores_stale_entries(tmp_path: Path) -> None:
    """Entries older than the TTL should be ignored."""
    cache = FileCache(tmp_path, "classification", ttl_seconds=60)
    cache.set("104", "VM")
    path = tmp_path / "classification" / "104.json"
    entry = json.loads(path.read_text())
    entry["stored_at"] = time.time() - 120
    path.write_text(json.dumps(entry))

    assert cache.get("104") is None


def test_cache_ignores_corrupted_entries(tmp_path: Path) -> None:
    """A corrupted file should be treated as a miss rather than an error."""
    cache = FileCache(tmp_path, "connectivity", ttl_seconds=60)
    (tmp_path / "connectivity").mkdir()
    (tmp_path / "connectivity" / "node2.json").write_text("{not json")

    assert cache.get("node2") is None


def test_disabled_cache_never_stores(tmp_path: Path) -> None:
    """A disabled cache neither reads nor writes."""
    cache = FileCache(tmp_path, "classification", ttl_seconds=60, is_enabled=False)

    cache.set("104", "VM")

    assert cache.get("104") is None
    assert not (tmp_path / "classification").exists()


def test_cache_clear_removes_all_entries(tmp_path: Path) -> None:
    """clear() should drop every entry in the namespace."""
    cache = FileCache(tmp_path, "disks", ttl_seconds=60)
    cache.set("104", ["a"])
    cache.set("105", ["b"])

    cache.clear()

    assert cache.get("104") is None
    assert cache.get("105") is None


def test_cache_keys_are_sanitized(tmp_path: Path) -> None:
    """Keys containing path separators must stay inside the cache directory."""
    cache = FileCache(tmp_path, "disks", ttl_seconds=60)

    cache.set("../escape", 1)

    assert cache.get("../escape") == 1
    assert not (tmp_path / "escape.json").exists()
