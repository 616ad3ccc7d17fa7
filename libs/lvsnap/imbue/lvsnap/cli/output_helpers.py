import json
import sys
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from typing import assert_never

from tabulate import tabulate

from imbue.lvsnap.api.data_types import SnapshotListing
from imbue.lvsnap.base import pure
from imbue.lvsnap.primitives import OutputFormat
from imbue.lvsnap.primitives import ProvisioningType

_SNAPSHOT_TABLE_HEADERS = ("Snapshot Name", "Disk", "Size", "Usage", "Type", "Creation Date")


def _write_json_line(data: Mapping[str, Any]) -> None:
    """Write a JSON object as a line to stdout.

    This is used for JSON and JSONL output formats where we need raw JSON
    without any logger formatting.
    """
    sys.stdout.write(json.dumps(data) + "\n")
    sys.stdout.flush()


def write_human_line(message: str, *args: Any) -> None:
    """Write a human-readable output line to stdout.

    Use this for actual command output (results, tables, status messages) in HUMAN format.
    For log/diagnostic messages, use logger.* instead (which goes to stderr).
    Accepts positional format args like loguru: write_human_line("Created {} items", count).
    """
    if args:
        formatted = message.format(*args)
    else:
        formatted = message
    sys.stdout.write(formatted + "\n")
    sys.stdout.flush()


def emit_event(
    # The type of event (e.g., "created", "deleted")
    event_type: str,
    # Event data dictionary. For HUMAN format, should include "message" key.
    data: Mapping[str, Any],
    output_format: OutputFormat,
) -> None:
    """Emit an event in the appropriate format."""
    match output_format:
        case OutputFormat.HUMAN:
            if "message" in data:
                write_human_line(str(data["message"]))
        case OutputFormat.JSONL:
            event = {"event": event_type, **data}
            _write_json_line(event)
        case OutputFormat.JSON:
            # JSON mode: silent until final output
            pass
        case _ as unreachable:
            assert_never(unreachable)


def emit_final_json(data: Mapping[str, Any]) -> None:
    """Emit final JSON output (for JSON format only)."""
    _write_json_line(data)


@pure
def _format_created_at(created_at: datetime | None) -> str:
    if created_at is None:
        return "unknown"
    return created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")


@pure
def render_snapshot_table(listings: Sequence[SnapshotListing]) -> str:
    rows = [
        (
            listing.snapshot_name,
            listing.disk,
            f"{listing.size_gb:.2f}G",
            f"{listing.usage_percent:.2f}%" if listing.usage_percent is not None else "-",
            "Thin" if listing.provisioning_type == ProvisioningType.THIN else "Thick",
            _format_created_at(listing.created_at),
        )
        for listing in listings
    ]
    return tabulate(rows, headers=_SNAPSHOT_TABLE_HEADERS, tablefmt="simple")


def emit_snapshot_listings(instance_id: str, listings: Sequence[SnapshotListing], output_format: OutputFormat) -> None:
    match output_format:
        case OutputFormat.HUMAN:
            if not listings:
                write_human_line("No snapshots found for instance {}", instance_id)
                return
            write_human_line("Snapshots for instance {}:", instance_id)
            write_human_line(render_snapshot_table(listings))
        case OutputFormat.JSON:
            emit_final_json(
                {
                    "instance_id": instance_id,
                    "snapshots": [listing.model_dump(mode="json") for listing in listings],
                }
            )
        case OutputFormat.JSONL:
            for listing in listings:
                _write_json_line({"event": "snapshot", **listing.model_dump(mode="json")})
        case _ as unreachable:
            assert_never(unreachable)
