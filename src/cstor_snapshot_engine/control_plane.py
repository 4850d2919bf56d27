from __future__ import annotations

from typing import Any

from loguru import logger
import requests

from .errors import ControlPlaneRejectedError, ControlPlaneUnreachableError, error_message
from .models import BackupJob, RestoreJob, STATUS_EMPTY

BACKUP_ENDPOINT = "/latest/backups/"
RESTORE_ENDPOINT = "/latest/restore/"
CAS_TYPE_CSTOR = "cstor"
DEFAULT_TIMEOUT_SECONDS = 60.0


class MayaApiClient:
    """REST client for the maya-apiserver backup and restore endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def create_backup(
        self,
        *,
        volume_id: str,
        backup_base_name: str,
        snapshot_name: str,
        destination: str,
        namespace: str,
    ) -> BackupJob:
        job = BackupJob(
            namespace=namespace,
            backup_name=backup_base_name,
            volume_name=volume_id,
            snapshot_name=snapshot_name,
            destination=destination,
        )
        self._request("POST", BACKUP_ENDPOINT, operation="create backup", json=job.to_payload())
        logger.info("Control plane accepted backup {} of volume {}", snapshot_name, volume_id)
        return job

    def create_restore(
        self,
        *,
        volume_id: str,
        restore_name: str,
        source: str,
        namespace: str,
    ) -> RestoreJob:
        job = RestoreJob(
            namespace=namespace,
            restore_name=restore_name,
            volume_name=volume_id,
            source=source,
        )
        self._request("POST", RESTORE_ENDPOINT, operation="create restore", json=job.to_payload())
        logger.info("Control plane accepted restore {} into volume {}", restore_name, volume_id)
        return job

    def delete_backup(self, *, volume_id: str, backup_name: str, namespace: str) -> None:
        try:
            self._request(
                "DELETE",
                f"{BACKUP_ENDPOINT}{backup_name}",
                operation="delete backup",
                params={"volume": volume_id, "namespace": namespace, "casType": CAS_TYPE_CSTOR},
            )
        except ControlPlaneRejectedError as error:
            if error.status != requests.codes.not_found:
                raise
            logger.info("Backup {} of volume {} already absent on control plane", backup_name, volume_id)

    def get_backup_status(self, job: BackupJob) -> str:
        response = self._request("GET", BACKUP_ENDPOINT, operation="read backup status", json=job.to_payload())
        return _status_from_response(response)

    def get_restore_status(self, job: RestoreJob) -> str:
        response = self._request("GET", RESTORE_ENDPOINT, operation="read restore status", json=job.to_payload())
        return _status_from_response(response)

    def _request(self, method: str, path: str, *, operation: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as error:
            raise ControlPlaneUnreachableError(
                f"{operation} could not reach control plane at {self.base_url}: {error_message(error)}"
            ) from error

        if response.status_code != requests.codes.ok:
            raise ControlPlaneRejectedError(
                status=response.status_code,
                operation=operation,
                detail=_response_detail(response),
            )
        return response


def _status_from_response(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return STATUS_EMPTY
    if not isinstance(body, dict):
        return STATUS_EMPTY
    status = body.get("status")
    return status if isinstance(status, str) else STATUS_EMPTY


def _response_detail(response: requests.Response) -> str:
    text = (response.text or "").strip()
    if len(text) > 200:
        text = f"{text[:200]}..."
    return text
