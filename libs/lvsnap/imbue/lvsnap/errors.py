from collections.abc import Sequence
from typing import ClassVar

from click import ClickException

from imbue.lvsnap.api.data_types import Classification
from imbue.lvsnap.api.data_types import ValidationIssue
from imbue.lvsnap.primitives import ErrorKind
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.primitives import SnapshotName


class BaseLvsnapError(Exception):
    """Base exception for all lvsnap errors."""


class NodeConnectionError(BaseLvsnapError):
    """Raised when an SSH session to a node cannot be opened or breaks while in use."""


class LvsnapError(ClickException, BaseLvsnapError):
    """Base exception for all user-facing lvsnap errors.

    Subclasses declare the ErrorKind they belong to, and may provide a
    user_help_text that the CLI prints after the message.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.EXECUTION
    user_help_text: str | None = None

    def format_message(self) -> str:
        if self.user_help_text:
            return f"{self.message}\n  [{self.user_help_text}]"
        return self.message


# =============================================================================
# Validation
# =============================================================================


class UserInputError(LvsnapError):
    """Raised when user input is invalid."""

    kind = ErrorKind.VALIDATION
    user_help_text = "Check the command syntax with 'lvsnap --help' or 'lvsnap <command> --help'."


class SnapshotValidationError(LvsnapError):
    """Raised when pre-flight validation of a create finds problems. Nothing was changed."""

    kind = ErrorKind.VALIDATION

    def __init__(self, issues: Sequence[ValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"Snapshot validation failed ({len(self.issues)} issue(s)), nothing was created:"]
        lines.extend(f"  - {issue}" for issue in self.issues)
        super().__init__("\n".join(lines))


class NoDisksFoundError(LvsnapError):
    """Raised when an instance has no storage-backed disks."""

    kind = ErrorKind.VALIDATION
    user_help_text = "Only LVM-backed disks can be snapshotted; 'local:' storage and CD-ROM entries are skipped."

    def __init__(self, instance_id: InstanceId) -> None:
        self.instance_id = instance_id
        super().__init__(f"No storage-backed disks found for instance {instance_id}")


class InstanceNotFoundError(LvsnapError):
    """Raised when no detection method could find the instance."""

    kind = ErrorKind.VALIDATION

    def __init__(self, classification: Classification, available: str | None = None) -> None:
        self.classification = classification
        message = (
            f"Instance {classification.instance_id} was not found as a VM or container.\n"
            f"Detection methods attempted:\n{classification.describe_attempts()}"
        )
        if available:
            message += f"\nAvailable instances:\n{available}"
        super().__init__(message)


class LowConfidenceClassificationError(LvsnapError):
    """Raised in non-interactive mode when the instance kind was only guessed from volume names."""

    kind = ErrorKind.VALIDATION
    user_help_text = "Pass --vm or --container to state the instance type explicitly."

    def __init__(self, classification: Classification) -> None:
        self.classification = classification
        guessed = classification.kind.lower() if classification.kind is not None else "unknown"
        super().__init__(
            f"Instance {classification.instance_id} was classified as a {guessed} only from volume naming, "
            "refusing to act on a guess in non-interactive mode"
        )


class SnapshotNotFoundError(LvsnapError):
    """Raised when no disk of an instance has the named snapshot."""

    kind = ErrorKind.VALIDATION
    user_help_text = "Run 'lvsnap list <instance_id>' to see existing snapshots."

    def __init__(self, instance_id: InstanceId, snapshot_name: SnapshotName) -> None:
        self.instance_id = instance_id
        self.snapshot_name = snapshot_name
        super().__init__(f"Snapshot '{snapshot_name}' not found on any disk of instance {instance_id}")


class InstanceLockedError(LvsnapError):
    """Raised when another lvsnap process holds the instance lock."""

    kind = ErrorKind.VALIDATION
    user_help_text = "Wait for the other operation on this instance to finish, then retry."

    def __init__(self, instance_id: InstanceId, timeout_seconds: float) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} is locked by another lvsnap process (waited {timeout_seconds:g}s)")


# =============================================================================
# Execution
# =============================================================================


class CommandFailedError(LvsnapError):
    """Raised when an external command fails and the operation cannot continue."""

    kind = ErrorKind.EXECUTION


class PartialFailureError(LvsnapError):
    """Raised after a per-disk operation attempted every disk and some of them failed."""

    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, failures: Sequence[str]) -> None:
        self.failures = tuple(failures)
        lines = [message]
        lines.extend(f"  - {failure}" for failure in self.failures)
        super().__init__("\n".join(lines))


class SnapshotCreationFailedError(LvsnapError):
    """Raised when allocation failed on some disk and every created snapshot was rolled back."""

    kind = ErrorKind.EXECUTION

    def __init__(self, failures: Sequence[str]) -> None:
        self.failures = tuple(failures)
        lines = ["Snapshot creation failed, all created snapshots were rolled back:"]
        lines.extend(f"  - {failure}" for failure in self.failures)
        super().__init__("\n".join(lines))


class RollbackFailedError(LvsnapError):
    """Raised when a rollback could not remove every snapshot it created."""

    kind = ErrorKind.EXECUTION
    user_help_text = "Inspect the listed volumes with 'lvs' and remove them manually with 'lvremove'."

    def __init__(self, leftover_paths: Sequence[str]) -> None:
        self.leftover_paths = tuple(leftover_paths)
        lines = ["Rollback failed, these snapshot volumes were left behind:"]
        lines.extend(f"  - {path}" for path in self.leftover_paths)
        super().__init__("\n".join(lines))


class RevertFailedError(LvsnapError):
    """Raised when a revert merged no disk at all."""

    kind = ErrorKind.EXECUTION


# =============================================================================
# Connectivity and consistency
# =============================================================================


class RemoteConnectionError(LvsnapError):
    """Raised when a cluster node cannot be reached over SSH."""

    kind = ErrorKind.CONNECTIVITY

    def __init__(self, node: NodeName, reason: str) -> None:
        self.node = node
        self.user_help_text = f"Configure key-based root SSH between cluster nodes (ssh-copy-id root@{node})"
        super().__init__(f"Could not connect to node {node}: {reason}")


class RemoteCommandNotFoundError(LvsnapError):
    """Raised when the owning node has no lvsnap to run the operation with."""

    kind = ErrorKind.EXECUTION

    def __init__(self, node: NodeName, program: str) -> None:
        self.node = node
        self.program = program
        self.user_help_text = (
            f"Install lvsnap on every cluster node, set ssh.remote_command to its path on {node}, "
            "or set ssh.payload_path to an lvsnap zipapp to send it"
        )
        super().__init__(f"Node {node} cannot run '{program}': command not found")


class ConsistencyViolationError(LvsnapError):
    """Raised when the post-commit check finds a partial snapshot set."""

    kind = ErrorKind.CONSISTENCY

    def __init__(self, expected_count: int, actual_count: int, distinct_timestamps: int) -> None:
        self.expected_count = expected_count
        self.actual_count = actual_count
        self.distinct_timestamps = distinct_timestamps
        super().__init__(
            f"Consistency violation: expected {expected_count} snapshot(s), found {actual_count} "
            f"with {distinct_timestamps} distinct timestamp(s)"
        )


# =============================================================================
# Configuration
# =============================================================================


class ConfigError(LvsnapError):
    """Base class for configuration errors."""

    kind = ErrorKind.VALIDATION


class ConfigNotFoundError(ConfigError):
    """Raised when a config file is not found."""


class ConfigParseError(ConfigError):
    """Raised when a config file cannot be parsed."""


class UnknownRuntimeError(LvsnapError):
    """Raised when no runtime is registered for an instance kind."""

    kind = ErrorKind.VALIDATION
