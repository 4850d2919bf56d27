from __future__ import annotations

from unittest.mock import Mock

import pytest

from cstor_snapshot_engine.errors import RemoteDeleteFailedError, TransferFailedError
from cstor_snapshot_engine.transfer import TransferAdapter, claim_manifest_name, remote_object_name


def test_remote_object_name_without_prefixes_uses_backup_directory() -> None:
    assert remote_object_name("pvc-1", "full-01") == "backups/full-01/pvc-1-full-01"


def test_remote_object_name_with_prefixes_places_object_under_path_prefix() -> None:
    name = remote_object_name("pvc-1", "full-01", prefix="cstor", backup_path_prefix="/cluster-a/")

    assert name == "cluster-a/backups/full-01/cstor-pvc-1-full-01"


def test_remote_object_name_is_identical_across_calls() -> None:
    first = remote_object_name("pvc-1", "daily-02", prefix="cstor")
    second = remote_object_name("pvc-1", "daily-02", prefix="cstor")

    assert first == second
    assert remote_object_name("pvc-1", "daily-03", prefix="cstor") != first


def test_claim_manifest_name_appends_pvc_suffix() -> None:
    assert claim_manifest_name("backups/b/pvc-1-b") == "backups/b/pvc-1-b.pvc"


def test_transfer_adapter_with_false_upload_raises_transfer_failed() -> None:
    store = Mock()
    store.upload.return_value = False

    with pytest.raises(TransferFailedError) as error:
        TransferAdapter(store).upload("backups/b/pvc-1-b")

    assert "transfer phase failed: upload of backups/b/pvc-1-b failed" == str(error.value)


def test_transfer_adapter_with_raising_download_wraps_error() -> None:
    store = Mock()
    store.download.side_effect = ConnectionResetError("peer closed")

    with pytest.raises(TransferFailedError) as error:
        TransferAdapter(store).download("obj")

    assert "peer closed" in str(error.value)
    assert isinstance(error.value.__cause__, ConnectionResetError)


def test_transfer_adapter_with_false_delete_raises_remote_delete_failed() -> None:
    store = Mock()
    store.delete.return_value = False

    with pytest.raises(RemoteDeleteFailedError):
        TransferAdapter(store).delete("obj")


def test_transfer_adapter_with_missing_blob_raises_transfer_failed() -> None:
    store = Mock()
    store.download_blob.return_value = None

    with pytest.raises(TransferFailedError):
        TransferAdapter(store).download_blob("obj.pvc")


def test_transfer_adapter_finish_with_store_error_does_not_raise() -> None:
    store = Mock()
    store.finish.side_effect = RuntimeError("receiver already closed")

    TransferAdapter(store).finish()

    store.finish.assert_called_once_with()
