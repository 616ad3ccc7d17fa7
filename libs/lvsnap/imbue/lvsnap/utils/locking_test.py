"""Tests for the per-instance advisory lock."""

import fcntl
from pathlib import Path

import pytest

from imbue.lvsnap.errors import InstanceLockedError
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.utils.locking import lock_instance


def test_lock_instance_creates_lock_file(tmp_path: Path) -> None:
    """Acquiring the lock should create <lock_dir>/<id>.lock."""
    with lock_instance(tmp_path / "locks", InstanceId("104")):
        assert (tmp_path / "locks" / "104.lock").exists()


def test_lock_instance_can_be_reacquired_after_release(tmp_path: Path) -> None:
    """The lock should be released when the block exits."""
    with lock_instance(tmp_path, InstanceId("104"), timeout_seconds=0.2):
        pass
    with lock_instance(tmp_path, InstanceId("104"), timeout_seconds=0.2):
        pass


def test_lock_instance_raises_when_held_elsewhere(tmp_path: Path) -> None:
    """A lock held through another file descriptor should time out with InstanceLockedError."""
    lock_path = tmp_path / "104.lock"
    with open(lock_path, "w") as other:
        fcntl.flock(other.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        with pytest.raises(InstanceLockedError, match="locked by another lvsnap process"):
            with lock_instance(tmp_path, InstanceId("104"), timeout_seconds=0.3):
                pass
        fcntl.flock(other.fileno(), fcntl.LOCK_UN)


def test_locks_on_different_instances_are_independent(tmp_path: Path) -> None:
    """Locking one instance must not block another."""
    with lock_instance(tmp_path, InstanceId("104"), timeout_seconds=0.2):
        with lock_instance(tmp_path, InstanceId("105"), timeout_seconds=0.2):
            pass
