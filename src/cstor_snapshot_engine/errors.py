from __future__ import annotations


class SnapshotEngineError(RuntimeError):
    """Base error for every failed engine operation.

    The message always reads ``"<phase> phase failed: <reason>"`` so callers can
    tell a command that never ran apart from data that moved but was never
    confirmed.
    """

    phase = "engine"

    def __init__(self, reason: str, *, phase: str | None = None) -> None:
        normalized_reason = reason.strip() or "unknown error"
        self.phase = phase or self.phase
        self.reason = normalized_reason
        super().__init__(f"{self.phase} phase failed: {normalized_reason}")


class ConfigurationError(SnapshotEngineError):
    phase = "config"


class VolumeNotFoundError(SnapshotEngineError):
    phase = "lookup"

    def __init__(self, volume_id: str, *, reason: str | None = None) -> None:
        super().__init__(reason or f"volume {volume_id!r} is not known to the engine")
        self.volume_id = volume_id


class InvalidBackupNameError(SnapshotEngineError):
    phase = "validation"


class InvalidVolumeKindError(SnapshotEngineError):
    phase = "validation"


class MalformedIdentifierError(SnapshotEngineError):
    phase = "validation"


class InsufficientMetadataError(SnapshotEngineError):
    phase = "validation"


class OperationInProgressError(SnapshotEngineError):
    phase = "validation"

    def __init__(self, volume_id: str) -> None:
        super().__init__(f"another backup or restore is already running for volume {volume_id!r}")
        self.volume_id = volume_id


class ControlPlaneUnreachableError(SnapshotEngineError):
    phase = "command"


class ControlPlaneRejectedError(SnapshotEngineError):
    phase = "command"

    def __init__(self, *, status: int, operation: str, detail: str = "") -> None:
        reason = f"{operation} rejected by control plane with HTTP status {status}"
        if detail.strip():
            reason = f"{reason} ({detail.strip()})"
        super().__init__(reason)
        self.status = status


class TransferFailedError(SnapshotEngineError):
    phase = "transfer"


class RemoteDeleteFailedError(SnapshotEngineError):
    phase = "transfer"


class BackupNotConfirmedError(SnapshotEngineError):
    phase = "confirmation"

    def __init__(self, *, snapshot_name: str, status: str) -> None:
        observed = status or "no status observed"
        super().__init__(f"backup {snapshot_name!r} was uploaded but control plane reported {observed}")
        self.status = status


class RestoreNotConfirmedError(SnapshotEngineError):
    phase = "confirmation"

    def __init__(self, *, volume_name: str, status: str) -> None:
        observed = status or "no status observed"
        super().__init__(f"restore into {volume_name!r} was downloaded but control plane reported {observed}")
        self.status = status


class ProvisioningError(SnapshotEngineError):
    phase = "provision"


class OperationTimeoutError(SnapshotEngineError):
    phase = "timeout"


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
