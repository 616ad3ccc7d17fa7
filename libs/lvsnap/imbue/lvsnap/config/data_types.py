from pathlib import Path
from typing import Any
from typing import Self

import pluggy
from pydantic import Field

from imbue.lvsnap.base import FrozenModel
from imbue.lvsnap.primitives import CreateStrategy
from imbue.lvsnap.primitives import DispatchTransport
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import LogLevel
from imbue.lvsnap.primitives import OutputFormat
from imbue.lvsnap.primitives import SnapshotAction
from imbue.lvsnap.primitives import SnapshotName

SETTINGS_FILENAME = "settings.toml"
SYSTEM_CONFIG_PATH = Path("/etc/lvsnap") / SETTINGS_FILENAME
DEFAULT_DATA_DIR = Path("/var/lib/lvsnap")


class _ConfigSection(FrozenModel):
    """A config section parsed with model_construct, so that only keys present in a file count as set."""

    def merge_with(self, override: Self) -> Self:
        """Merge this section with an override. Fields set in the override win."""
        updates = {name: getattr(override, name) for name in override.model_fields_set}
        return self.model_validate({**self.model_dump(), **updates})


class PathsConfig(_ConfigSection):
    """Locations of the host files lvsnap reads and writes."""

    pve_dir: str = Field(
        default="/etc/pve",
        description="Proxmox cluster filesystem root",
    )
    metadata_dir: str = Field(
        default="/etc/pve/snapshot-metadata",
        description="Directory holding the <snapshot lv>.time and .meta files",
    )
    dev_dir: str = Field(
        default="/dev",
        description="Device node root",
    )
    sys_block_dir: str = Field(
        default="/sys/block",
        description="Sysfs block device directory",
    )
    proc_mounts: str = Field(
        default="/proc/mounts",
        description="Mount table",
    )

    @property
    def corosync_conf(self) -> str:
        return f"{self.pve_dir}/corosync.conf"

    def instance_config_path(self, kind: InstanceKind, instance_id: InstanceId) -> str:
        subdir = "qemu-server" if kind == InstanceKind.VM else "lxc"
        return f"{self.pve_dir}/{subdir}/{instance_id}.conf"


class CacheConfig(_ConfigSection):
    """Time-to-live of the advisory file caches, in seconds."""

    is_enabled: bool = Field(default=True, description="Whether the caches are consulted at all")
    classification_ttl_seconds: float = Field(default=300.0, description="Instance kind cache")
    disk_listing_ttl_seconds: float = Field(default=30.0, description="Per-run disk listing cache")
    connectivity_ttl_seconds: float = Field(default=120.0, description="SSH reachability cache")


class WaitsConfig(_ConfigSection):
    """Bounds for every polling loop."""

    stop_poll_attempts: int = Field(default=30, description="Polls while waiting for an instance to stop")
    start_poll_attempts: int = Field(default=30, description="Polls while waiting for an instance to start")
    state_poll_interval_seconds: float = Field(default=2.0, description="Interval between power state polls")
    merge_initial_delay_seconds: float = Field(default=5.0, description="Wait before the first merge poll")
    merge_poll_interval_seconds: float = Field(default=10.0, description="Interval between merge polls")
    merge_timeout_seconds: float = Field(default=300.0, description="Upper bound on the merge wait")
    activation_settle_seconds: float = Field(default=3.0, description="Pause after activating volumes")
    lock_timeout_seconds: float = Field(default=10.0, description="Wait for the per-instance lock")
    command_timeout_seconds: float = Field(default=300.0, description="Timeout for a single external command")


class SshConfig(_ConfigSection):
    """How lvsnap reaches other cluster nodes."""

    user: str = Field(default="root", description="Remote user")
    port: int = Field(default=22, description="Remote SSH port")
    key_path: Path | None = Field(default=None, description="Private key, None for the SSH default")
    known_hosts_file: Path | None = Field(default=None, description="Known hosts file, None for the SSH default")
    is_strict_host_key_checking: bool = Field(default=False, description="Reject unknown host keys")
    connect_timeout_seconds: float = Field(default=2.0, description="Connect timeout for probes")
    dispatch_connect_timeout_seconds: float = Field(default=3.0, description="Connect timeout for dispatch")
    transport: DispatchTransport = Field(default=DispatchTransport.PYINFRA, description="Preferred transport")
    remote_command: tuple[str, ...] = Field(default=("lvsnap",), description="argv prefix run on the remote node")
    payload_path: Path | None = Field(
        default=None,
        description="Local lvsnap zipapp sent to nodes where remote_command is not installed",
    )
    payload_remote_dir: str = Field(default="/tmp", description="Remote directory the zipapp is copied to")
    remote_python: str = Field(default="python3", description="Interpreter that runs the zipapp on the remote node")


class SizingConfig(_ConfigSection):
    """Tunables of the thick snapshot sizing engine."""

    default_usage_fraction: float = Field(default=0.25, description="Used fraction when LVM reports none")
    max_fraction_of_volume: float = Field(default=0.15, description="Upper bound as a fraction of the volume")
    history_window: int = Field(default=5, description="How many previous snapshots to average")
    history_minimum: int = Field(default=3, description="Minimum previous snapshots before history is used")
    is_throughput_sampling_enabled: bool = Field(default=True, description="Run hdparm -t on the device")
    throughput_sample_timeout_seconds: float = Field(default=3.0, description="Timeout for hdparm -t")


class LoggingConfig(_ConfigSection):
    """Logging configuration for lvsnap."""

    file_level: LogLevel = Field(
        default=LogLevel.DEBUG,
        description="Log level for file logging",
    )
    log_dir: Path = Field(
        default=Path("logs"),
        description="Directory for log files (relative to data_dir if relative)",
    )
    max_log_files: int = Field(
        default=100,
        description="Maximum number of log files to keep",
    )
    max_log_size_mb: int = Field(
        default=10,
        description="Maximum size of each log file in MB",
    )
    console_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Log level for console output",
    )


class CommandDefaults(FrozenModel):
    """Default values for CLI command parameters.

    Only parameters that were not explicitly set by the user will use these defaults.
    Field names should match the CLI parameter names (after click's conversion).
    """

    defaults: dict[str, Any] = Field(
        default_factory=dict,
        description="Map of parameter name to default value",
    )

    def merge_with(self, override: Self) -> Self:
        merged_defaults = {**self.defaults, **override.defaults}
        return self.__class__(defaults=merged_defaults)


class LvsnapConfig(FrozenModel):
    """Root configuration model for lvsnap."""

    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Directory for logs, caches and lock files",
    )
    paths: PathsConfig = Field(default_factory=PathsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    waits: WaitsConfig = Field(default_factory=WaitsConfig)
    ssh: SshConfig = Field(default_factory=SshConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    commands: dict[str, CommandDefaults] = Field(
        default_factory=dict,
        description="Default values for CLI command parameters (e.g., 'commands.create')",
    )

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"

    @property
    def lock_dir(self) -> Path:
        return self.data_dir / "locks"

    def merge_with(self, override: Self) -> Self:
        """Merge this config with an override config.

        Sections merge field by field; command defaults merge per command.
        """
        merged: dict[str, Any] = {}
        merged["data_dir"] = override.data_dir if "data_dir" in override.model_fields_set else self.data_dir
        for section_name in ("paths", "cache", "waits", "ssh", "sizing", "logging"):
            base_section = getattr(self, section_name)
            if section_name in override.model_fields_set:
                merged[section_name] = base_section.merge_with(getattr(override, section_name))
            else:
                merged[section_name] = base_section
        merged_commands = dict(self.commands)
        for command_name, command_defaults in override.commands.items():
            if command_name in merged_commands:
                merged_commands[command_name] = merged_commands[command_name].merge_with(command_defaults)
            else:
                merged_commands[command_name] = command_defaults
        merged["commands"] = merged_commands
        return self.__class__(**merged)


class LvsnapContext(FrozenModel):
    """Configuration plus plugin manager, passed through the application."""

    model_config = {"arbitrary_types_allowed": True}

    config: LvsnapConfig = Field(
        description="Configuration for lvsnap",
    )
    pm: pluggy.PluginManager = Field(
        description="Plugin manager for hooks and runtimes",
    )
    is_interactive: bool = Field(
        default=False,
        description="Whether the CLI may prompt the user",
    )


class OutputOptions(FrozenModel):
    """Options for command output formatting and logging."""

    output_format: OutputFormat = Field(
        default=OutputFormat.HUMAN,
        description="Output format for command results",
    )
    console_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Log level for console output",
    )
    log_file_path: Path | None = Field(
        default=None,
        description="Override path for log file (if None, uses <data_dir>/logs/<timestamp>-<pid>.json)",
    )


class RunOptions(FrozenModel):
    """Everything one invocation was asked to do, built once by the CLI and passed explicitly."""

    action: SnapshotAction
    instance_id: InstanceId
    snapshot_name: SnapshotName | None = None
    kind_override: InstanceKind | None = Field(default=None, description="Set by --vm or --container")
    is_interactive: bool = False
    is_autostart: bool = Field(default=True, description="Start the instance after a revert")
    keep_snapshot: bool | None = Field(default=None, description="None when neither flag was given")
    strategy: CreateStrategy = CreateStrategy.ATOMIC
    is_consistency_check: bool = Field(default=False, description="Run the post-commit consistency check")
    is_size_optimization: bool = True
    is_force_local: bool = False
    is_cluster_sync: bool = False
    verbosity: int = 0
