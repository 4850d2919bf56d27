from __future__ import annotations

import pytest

from cstor_snapshot_engine.errors import MalformedIdentifierError
from cstor_snapshot_engine.identifiers import (
    SNAPSHOT_ID_SEPARATOR,
    backup_base_name,
    decode_snapshot_id,
    encode_snapshot_id,
)


def test_encode_snapshot_id_joins_volume_and_backup_with_separator() -> None:
    assert encode_snapshot_id("pvc-1", "full-01") == "pvc-1-velero-bkp-full-01"


@pytest.mark.parametrize(
    ("volume_id", "backup_name"),
    [
        ("pvc-1", "full-01"),
        ("pvc-3f2a-11e9", "daily"),
        ("vol", "schedule-20260101120000"),
    ],
)
def test_decode_snapshot_id_recovers_encoded_components(volume_id: str, backup_name: str) -> None:
    assert decode_snapshot_id(encode_snapshot_id(volume_id, backup_name)) == (volume_id, backup_name)


def test_decode_snapshot_id_with_repeated_separator_splits_on_first_occurrence() -> None:
    snapshot_id = f"pvc-1{SNAPSHOT_ID_SEPARATOR}weekly{SNAPSHOT_ID_SEPARATOR}01"

    assert decode_snapshot_id(snapshot_id) == ("pvc-1", f"weekly{SNAPSHOT_ID_SEPARATOR}01")


@pytest.mark.parametrize(
    "snapshot_id",
    [
        "pvc-1-full-01",
        "-velero-bkp-full-01",
        "pvc-1-velero-bkp-",
        "",
    ],
)
def test_decode_snapshot_id_with_missing_parts_raises_malformed_identifier(snapshot_id: str) -> None:
    with pytest.raises(MalformedIdentifierError) as error:
        decode_snapshot_id(snapshot_id)

    assert str(error.value).startswith("validation phase failed")


@pytest.mark.parametrize(
    ("volume_id", "backup_name"),
    [
        ("", "full-01"),
        ("pvc-1", ""),
        ("pvc-velero-bkp-1", "full-01"),
        ("pvc-1", "full-velero-bkp-01"),
    ],
)
def test_encode_snapshot_id_with_ambiguous_components_raises_malformed_identifier(
    volume_id: str,
    backup_name: str,
) -> None:
    with pytest.raises(MalformedIdentifierError):
        encode_snapshot_id(volume_id, backup_name)


@pytest.mark.parametrize(
    ("backup_name", "expected"),
    [
        ("daily-01", "daily"),
        ("daily", "daily"),
        ("a-b-c", "a-b"),
        ("nightly-schedule-20260101120000", "nightly-schedule"),
    ],
)
def test_backup_base_name_drops_last_hyphen_segment(backup_name: str, expected: str) -> None:
    assert backup_base_name(backup_name) == expected
