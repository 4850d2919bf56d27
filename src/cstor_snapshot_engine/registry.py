from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
import threading
from typing import Iterator

from .errors import OperationInProgressError, VolumeNotFoundError
from .models import Snapshot, Volume


class VolumeRegistry:
    """Process-lifetime table of volumes known to the engine.

    Records are frozen; every update swaps in a new record under the lock, so
    readers on other threads never observe a half-written volume.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._volumes: dict[str, Volume] = {}
        self._in_flight: set[str] = set()

    def get(self, volume_id: str) -> Volume | None:
        with self._lock:
            return self._volumes.get(volume_id)

    def require(self, volume_id: str) -> Volume:
        volume = self.get(volume_id)
        if volume is None:
            raise VolumeNotFoundError(volume_id)
        return volume

    def get_or_create(self, volume: Volume) -> Volume:
        with self._lock:
            existing = self._volumes.get(volume.name)
            if existing is not None:
                return existing
            self._volumes[volume.name] = volume
            return volume

    def put(self, volume: Volume) -> Volume:
        with self._lock:
            self._volumes[volume.name] = volume
            return volume

    def update(self, volume_id: str, **changes: str) -> Volume:
        with self._lock:
            current = self.require(volume_id)
            updated = replace(current, **changes)
            self._volumes[volume_id] = updated
            return updated

    def set_backup_status(self, volume_id: str, status: str) -> Volume:
        return self.update(volume_id, backup_status=status)

    def set_restore_status(self, volume_id: str, status: str) -> Volume:
        return self.update(volume_id, restore_status=status)

    def is_busy(self, volume_id: str) -> bool:
        with self._lock:
            return volume_id in self._in_flight

    @contextmanager
    def claim(self, volume_id: str) -> Iterator[None]:
        with self._lock:
            if volume_id in self._in_flight:
                raise OperationInProgressError(volume_id)
            self._in_flight.add(volume_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(volume_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._volumes)


class SnapshotRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshots: dict[str, Snapshot] = {}

    def get(self, snapshot_id: str) -> Snapshot | None:
        with self._lock:
            return self._snapshots.get(snapshot_id)

    def put(self, snapshot_id: str, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshots[snapshot_id] = snapshot

    def remove(self, snapshot_id: str) -> Snapshot | None:
        with self._lock:
            return self._snapshots.pop(snapshot_id, None)

    def __contains__(self, snapshot_id: object) -> bool:
        with self._lock:
            return snapshot_id in self._snapshots
