import re
from enum import auto
from typing import Final
from typing import Self
from uuid import uuid4

from imbue.lvsnap.base import NonEmptyStr
from imbue.lvsnap.base import UpperCaseStrEnum

# === Enums ===


class LogLevel(UpperCaseStrEnum):
    """Log verbosity level."""

    TRACE = auto()
    DEBUG = auto()
    INFO = auto()
    WARN = auto()
    ERROR = auto()
    NONE = auto()


class OutputFormat(UpperCaseStrEnum):
    """Output format mode."""

    HUMAN = auto()
    JSON = auto()
    JSONL = auto()


class InstanceKind(UpperCaseStrEnum):
    """Whether an instance is a QEMU virtual machine or an LXC container."""

    VM = auto()
    CONTAINER = auto()


class RunningState(UpperCaseStrEnum):
    """Power state of an instance as reported by its runtime."""

    RUNNING = auto()
    STOPPED = auto()
    UNKNOWN = auto()


class Confidence(UpperCaseStrEnum):
    """How trustworthy an instance classification is."""

    HIGH = auto()
    LOW = auto()
    NONE = auto()


class DetectionMethod(UpperCaseStrEnum):
    """The checks tried, in order, when classifying an instance."""

    OVERRIDE = auto()
    CACHE = auto()
    CONFIG_FILE = auto()
    STATUS_QUERY = auto()
    LOCAL_LISTING = auto()
    CLUSTER_RESOURCES = auto()
    REMOTE_NODES = auto()
    VOLUME_NAMING = auto()


class ProvisioningType(UpperCaseStrEnum):
    """Thin volumes draw from a pool; thick volumes have a fixed allocation."""

    THIN = auto()
    THICK = auto()


class MergeState(UpperCaseStrEnum):
    """Progress of a snapshot merge back into its origin."""

    NONE = auto()
    MERGING = auto()
    MERGED = auto()


class TransactionPhase(UpperCaseStrEnum):
    """Phases of a snapshot create transaction."""

    VALIDATING = auto()
    ALLOCATING = auto()
    COMMITTED = auto()
    PARTIALLY_FAILED = auto()
    ROLLED_BACK = auto()


class RevertPhase(UpperCaseStrEnum):
    """Phases of a revert."""

    RESOLVING = auto()
    QUIESCING = auto()
    MERGING = auto()
    PRESERVING = auto()
    AWAITING_MERGE_COMPLETION = auto()
    RESTORING = auto()
    DONE = auto()


class ErrorKind(UpperCaseStrEnum):
    """Category of a failure, used to decide how it propagates."""

    VALIDATION = auto()
    EXECUTION = auto()
    TIMEOUT = auto()
    CONNECTIVITY = auto()
    CONSISTENCY = auto()


class CreateStrategy(UpperCaseStrEnum):
    """ATOMIC validates everything (including free space) before allocating; FAST skips the space check."""

    ATOMIC = auto()
    FAST = auto()


class SizingStrategy(UpperCaseStrEnum):
    """How a thick snapshot's size was chosen."""

    INTELLIGENT = auto()
    FALLBACK = auto()
    HINT = auto()
    DEFAULT = auto()


class QuiesceMethod(UpperCaseStrEnum):
    """How a running instance was held still while its snapshots were allocated."""

    NONE = auto()
    FREEZE = auto()
    SUSPEND = auto()
    STOP = auto()


class DispatchTransport(UpperCaseStrEnum):
    """Channel used to run an operation on another cluster node."""

    PYINFRA = auto()
    OPENSSH = auto()


class PollResult(UpperCaseStrEnum):
    """Outcome of a bounded wait."""

    COMPLETED = auto()
    TIMED_OUT = auto()


class SnapshotAction(UpperCaseStrEnum):
    """Top-level operations."""

    LIST = auto()
    CREATE = auto()
    DELETE = auto()
    REVERT = auto()


# === ID Types ===


class InstanceId(NonEmptyStr):
    """Numeric Proxmox VMID/CTID."""

    def __new__(cls, value: str | int) -> Self:
        text = str(value).strip()
        if not text.isdigit() or int(text) <= 0:
            raise ValueError(f"Instance ID must be a positive integer, got {value!r}")
        return super().__new__(cls, text)


_SNAPSHOT_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.+-]*$")


class SnapshotName(NonEmptyStr):
    """Name of a snapshot set, usable inside an LVM logical volume name."""

    def __new__(cls, value: str) -> Self:
        if not _SNAPSHOT_NAME_PATTERN.match(value.strip()):
            raise ValueError(
                f"Invalid snapshot name {value!r}: use letters, digits, '.', '_', '+' and '-' "
                "(must start with a letter or digit)"
            )
        return super().__new__(cls, value)


class NodeName(NonEmptyStr):
    """Hostname of a cluster member."""


class TransactionId(NonEmptyStr):
    """Identifier of one create or revert invocation."""

    @classmethod
    def generate(cls) -> Self:
        return cls(uuid4().hex)
