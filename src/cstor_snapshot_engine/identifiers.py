from __future__ import annotations

from .errors import MalformedIdentifierError

SNAPSHOT_ID_SEPARATOR = "-velero-bkp-"


def encode_snapshot_id(volume_id: str, backup_name: str) -> str:
    _validate_component(volume_id, description="volume ID")
    _validate_component(backup_name, description="backup name")
    return f"{volume_id}{SNAPSHOT_ID_SEPARATOR}{backup_name}"


def decode_snapshot_id(snapshot_id: str) -> tuple[str, str]:
    volume_id, separator, backup_name = snapshot_id.partition(SNAPSHOT_ID_SEPARATOR)
    if not separator:
        raise MalformedIdentifierError(
            f"snapshot identifier {snapshot_id!r} does not contain {SNAPSHOT_ID_SEPARATOR!r}"
        )
    if not volume_id or not backup_name:
        raise MalformedIdentifierError(
            f"snapshot identifier {snapshot_id!r} has an empty volume ID or backup name"
        )
    return volume_id, backup_name


def backup_base_name(backup_name: str) -> str:
    """Name of the backup series that ``backup_name`` belongs to.

    Scheduled backups are named ``<schedule>-<timestamp>``; every member of a
    schedule shares the leading segments, which lets the control plane compute
    incremental deltas against the previous member of the series.
    """
    segments = backup_name.split("-")
    if len(segments) >= 2:
        return "-".join(segments[:-1])
    return backup_name


def _validate_component(value: str, *, description: str) -> None:
    if not value:
        raise MalformedIdentifierError(f"{description} must not be empty")
    if SNAPSHOT_ID_SEPARATOR in value:
        raise MalformedIdentifierError(
            f"{description} {value!r} contains the reserved separator {SNAPSHOT_ID_SEPARATOR!r}"
        )
