import fcntl
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from imbue.lvsnap.errors import InstanceLockedError
from imbue.lvsnap.primitives import InstanceId


@contextmanager
def lock_instance(lock_dir: Path, instance_id: InstanceId, timeout_seconds: float = 10.0) -> Iterator[None]:
    """Hold an advisory lock on an instance for the duration of the block.

    Raises InstanceLockedError if another process still holds it after timeout_seconds.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file_path = lock_dir / f"{instance_id}.lock"

    start_time = time.time()
    elapsed_time = 0.0

    logger.debug("Acquiring instance lock at {}", lock_file_path)
    lock_file = open(str(lock_file_path), "w")
    try:
        while elapsed_time <= timeout_seconds:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                logger.trace("Lock acquired after {:.2f}s", time.time() - start_time)
                break
            except BlockingIOError:
                time.sleep(0.1)
                elapsed_time = time.time() - start_time
        else:
            raise InstanceLockedError(instance_id, timeout_seconds)

        lock_file.write(str(os.getpid()))
        lock_file.flush()
        yield
    finally:
        logger.trace("Releasing instance lock")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()
