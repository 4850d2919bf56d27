from __future__ import annotations

from typing import Callable, Protocol

from loguru import logger

from .errors import RemoteDeleteFailedError, TransferFailedError, error_message

CLAIM_MANIFEST_SUFFIX = ".pvc"


class ObjectStoreTransfer(Protocol):
    """Data-plane capability supplied by the host.

    ``upload`` and ``download`` block until the control plane has finished
    streaming bytes through this engine's receiver (or ``finish`` is called).
    """

    def upload(self, remote_name: str) -> bool: ...

    def download(self, remote_name: str) -> bool: ...

    def delete(self, remote_name: str) -> bool: ...

    def upload_blob(self, remote_name: str, data: bytes) -> bool: ...

    def download_blob(self, remote_name: str) -> bytes | None: ...

    def finish(self) -> None: ...


def remote_object_name(
    volume_id: str,
    backup_name: str,
    *,
    prefix: str = "",
    backup_path_prefix: str = "",
) -> str:
    """Object-store key of the backup of ``volume_id`` taken by ``backup_name``.

    Layout: ``[<backup_path_prefix>/]backups/<backup_name>/[<prefix>-]<volume_id>-<backup_name>``.
    Depends only on its arguments so restore and delete after a restart find the
    object written at backup time.
    """
    file_name = f"{volume_id}-{backup_name}"
    if prefix:
        file_name = f"{prefix}-{file_name}"
    directory = f"backups/{backup_name}"
    path_prefix = backup_path_prefix.strip("/")
    if path_prefix:
        directory = f"{path_prefix}/{directory}"
    return f"{directory}/{file_name}"


def claim_manifest_name(remote_name: str) -> str:
    return f"{remote_name}{CLAIM_MANIFEST_SUFFIX}"


class TransferAdapter:
    """Turns the store's boolean results into engine errors."""

    def __init__(self, store: ObjectStoreTransfer) -> None:
        self.store = store

    def upload(self, remote_name: str) -> None:
        self._run(lambda: self.store.upload(remote_name), action="upload", remote_name=remote_name)

    def download(self, remote_name: str) -> None:
        self._run(lambda: self.store.download(remote_name), action="download", remote_name=remote_name)

    def delete(self, remote_name: str) -> None:
        try:
            deleted = self.store.delete(remote_name)
        except Exception as error:  # pylint: disable=broad-except
            raise RemoteDeleteFailedError(f"delete of {remote_name} raised: {error_message(error)}") from error
        if not deleted:
            raise RemoteDeleteFailedError(f"object store refused to delete {remote_name}")

    def upload_blob(self, remote_name: str, data: bytes) -> None:
        self._run(
            lambda: self.store.upload_blob(remote_name, data),
            action="upload",
            remote_name=remote_name,
        )

    def download_blob(self, remote_name: str) -> bytes:
        try:
            data = self.store.download_blob(remote_name)
        except Exception as error:  # pylint: disable=broad-except
            raise TransferFailedError(f"download of {remote_name} raised: {error_message(error)}") from error
        if data is None:
            raise TransferFailedError(f"download of {remote_name} failed")
        return data

    def finish(self) -> None:
        try:
            self.store.finish()
        except Exception as error:  # pylint: disable=broad-except
            logger.warning("Failed to signal data-plane completion: {}", error_message(error))

    def _run(self, action_call: Callable[[], bool], *, action: str, remote_name: str) -> None:
        try:
            succeeded = action_call()
        except Exception as error:  # pylint: disable=broad-except
            raise TransferFailedError(f"{action} of {remote_name} raised: {error_message(error)}") from error
        if not succeeded:
            raise TransferFailedError(f"{action} of {remote_name} failed")
