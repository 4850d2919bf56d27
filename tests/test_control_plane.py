from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests

from cstor_snapshot_engine.control_plane import MayaApiClient
from cstor_snapshot_engine.errors import ControlPlaneRejectedError, ControlPlaneUnreachableError
from cstor_snapshot_engine.models import BackupJob, RestoreJob


def _response(status_code: int = 200, body: object = None, text: str = "") -> SimpleNamespace:
    def _json() -> object:
        if body is None:
            raise ValueError("no JSON body")
        return body

    return SimpleNamespace(status_code=status_code, text=text, json=_json)


def _client(session: Mock) -> MayaApiClient:
    return MayaApiClient(base_url="http://10.0.0.5:5656/", timeout_seconds=60, session=session)


def test_create_backup_posts_backup_spec_with_base_name_and_timeout() -> None:
    session = Mock()
    session.request.return_value = _response()

    job = _client(session).create_backup(
        volume_id="pvc-1",
        backup_base_name="daily",
        snapshot_name="daily-01",
        destination="10.1.1.1:9000",
        namespace="apps",
    )

    assert job == BackupJob(
        namespace="apps",
        backup_name="daily",
        volume_name="pvc-1",
        snapshot_name="daily-01",
        destination="10.1.1.1:9000",
    )
    session.request.assert_called_once_with(
        "POST",
        "http://10.0.0.5:5656/latest/backups/",
        timeout=60,
        json={
            "metadata": {"namespace": "apps"},
            "spec": {
                "backupName": "daily",
                "volumeName": "pvc-1",
                "snapName": "daily-01",
                "backupDest": "10.1.1.1:9000",
            },
        },
    )


def test_create_restore_posts_restore_spec() -> None:
    session = Mock()
    session.request.return_value = _response()

    job = _client(session).create_restore(
        volume_id="pvc-new",
        restore_name="full-01",
        source="10.1.1.1:9000",
        namespace="apps",
    )

    assert job == RestoreJob(namespace="apps", restore_name="full-01", volume_name="pvc-new", source="10.1.1.1:9000")
    _, url = session.request.call_args.args
    assert url == "http://10.0.0.5:5656/latest/restore/"
    assert session.request.call_args.kwargs["json"]["spec"] == {
        "restoreName": "full-01",
        "volumeName": "pvc-new",
        "restoreSrc": "10.1.1.1:9000",
    }


def test_create_backup_with_transport_error_raises_control_plane_unreachable() -> None:
    session = Mock()
    session.request.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(ControlPlaneUnreachableError) as error:
        _client(session).create_backup(
            volume_id="pvc-1",
            backup_base_name="full",
            snapshot_name="full-01",
            destination="10.1.1.1:9000",
            namespace="apps",
        )

    assert str(error.value).startswith("command phase failed")
    assert "connection refused" in str(error.value)


def test_create_restore_with_error_status_raises_control_plane_rejected() -> None:
    session = Mock()
    session.request.return_value = _response(status_code=500, text="volume not healthy")

    with pytest.raises(ControlPlaneRejectedError) as error:
        _client(session).create_restore(
            volume_id="pvc-new",
            restore_name="full-01",
            source="10.1.1.1:9000",
            namespace="apps",
        )

    assert error.value.status == 500
    assert "volume not healthy" in str(error.value)


def test_delete_backup_sends_volume_namespace_and_cas_type_query() -> None:
    session = Mock()
    session.request.return_value = _response()

    _client(session).delete_backup(volume_id="pvc-1", backup_name="full-01", namespace="apps")

    session.request.assert_called_once_with(
        "DELETE",
        "http://10.0.0.5:5656/latest/backups/full-01",
        timeout=60,
        params={"volume": "pvc-1", "namespace": "apps", "casType": "cstor"},
    )


def test_delete_backup_with_not_found_status_is_treated_as_deleted() -> None:
    session = Mock()
    session.request.return_value = _response(status_code=404)

    _client(session).delete_backup(volume_id="pvc-1", backup_name="full-01", namespace="apps")


def test_delete_backup_with_server_error_raises_control_plane_rejected() -> None:
    session = Mock()
    session.request.return_value = _response(status_code=503)

    with pytest.raises(ControlPlaneRejectedError) as error:
        _client(session).delete_backup(volume_id="pvc-1", backup_name="full-01", namespace="apps")

    assert error.value.status == 503


def test_get_backup_status_reads_status_field() -> None:
    session = Mock()
    session.request.return_value = _response(body={"spec": {}, "status": "InProgress"})
    job = BackupJob(namespace="apps", backup_name="full", volume_name="pvc-1", snapshot_name="full-01", destination="d")

    assert _client(session).get_backup_status(job) == "InProgress"
    assert session.request.call_args.args[0] == "GET"


def test_get_restore_status_with_non_json_body_returns_empty_status() -> None:
    session = Mock()
    session.request.return_value = _response(body=None, text="<html>")
    job = RestoreJob(namespace="apps", restore_name="full-01", volume_name="pvc-new", source="s")

    assert _client(session).get_restore_status(job) == ""
