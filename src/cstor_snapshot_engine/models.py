from __future__ import annotations

from dataclasses import dataclass

STATUS_EMPTY = ""
STATUS_PENDING = "Pending"
STATUS_INIT = "Init"
STATUS_IN_PROGRESS = "InProgress"
STATUS_DONE = "Done"
STATUS_FAILED = "Failed"
STATUS_INVALID = "Invalid"

TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_FAILED, STATUS_INVALID})

CSTOR_VOLUME_KIND = "cstor-snapshot"


@dataclass(frozen=True)
class Volume:
    name: str
    namespace: str
    cas_type: str
    backup_name: str = ""
    backup_status: str = STATUS_EMPTY
    restore_status: str = STATUS_EMPTY


@dataclass(frozen=True)
class Snapshot:
    volume_id: str
    backup_name: str
    namespace: str

    def is_complete(self) -> bool:
        return bool(self.volume_id and self.backup_name and self.namespace)


@dataclass(frozen=True)
class BackupJob:
    namespace: str
    backup_name: str
    volume_name: str
    snapshot_name: str
    destination: str

    def to_payload(self) -> dict[str, object]:
        return {
            "metadata": {"namespace": self.namespace},
            "spec": {
                "backupName": self.backup_name,
                "volumeName": self.volume_name,
                "snapName": self.snapshot_name,
                "backupDest": self.destination,
            },
        }


@dataclass(frozen=True)
class RestoreJob:
    namespace: str
    restore_name: str
    volume_name: str
    source: str

    def to_payload(self) -> dict[str, object]:
        return {
            "metadata": {"namespace": self.namespace},
            "spec": {
                "restoreName": self.restore_name,
                "volumeName": self.volume_name,
                "restoreSrc": self.source,
            },
        }


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES
