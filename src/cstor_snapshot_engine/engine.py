from __future__ import annotations

from dataclasses import replace
import copy
import json
import socket
import threading
import time
from typing import Any, Callable, Mapping, Protocol

from loguru import logger

from .config import DEFAULT_RECEIVER_PORT, EngineConfig
from .control_plane import MayaApiClient
from .errors import (
    BackupNotConfirmedError,
    ConfigurationError,
    InsufficientMetadataError,
    InvalidBackupNameError,
    InvalidVolumeKindError,
    MalformedIdentifierError,
    OperationTimeoutError,
    ProvisioningError,
    RestoreNotConfirmedError,
    SnapshotEngineError,
    TransferFailedError,
    VolumeNotFoundError,
    error_message,
)
from .identifiers import backup_base_name, decode_snapshot_id, encode_snapshot_id
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesLookupError,
    KubernetesVolumeDirectory,
    KubernetesVolumeProvisioner,
    load_kubernetes_clients,
    volume_from_persistent_volume,
)
from .logging_setup import setup_logging
from .models import CSTOR_VOLUME_KIND, STATUS_DONE, STATUS_EMPTY, Snapshot, Volume
from .poller import StatusPoller
from .registry import SnapshotRegistry, VolumeRegistry
from .transfer import ObjectStoreTransfer, TransferAdapter, claim_manifest_name, remote_object_name


class VolumeDirectory(Protocol):
    def lookup_namespace(self, volume_id: str) -> str: ...

    def read_claim_manifest(self, volume_id: str) -> dict[str, Any]: ...


class VolumeProvisioner(Protocol):
    def provision(self, *, volume_id: str, backup_name: str, manifest: Mapping[str, Any]) -> Volume: ...


class SnapshotEngine:
    """Backs up, restores and deletes cStor volume snapshots.

    Each backup or restore issues the control-plane command first, then runs the
    data transfer while a ``StatusPoller`` follows the remote job. The result is
    decided after the transfer returns, from the last status the poller stored
    in the volume registry.
    """

    def __init__(
        self,
        *,
        control_plane: MayaApiClient,
        store: ObjectStoreTransfer,
        config: EngineConfig,
        server_address: str,
        volume_directory: VolumeDirectory | None = None,
        provisioner: VolumeProvisioner | None = None,
        volumes: VolumeRegistry | None = None,
        snapshots: SnapshotRegistry | None = None,
    ) -> None:
        self.control_plane = control_plane
        self.transfer = TransferAdapter(store)
        self.config = config
        self.server_address = server_address
        self.volume_directory = volume_directory
        self.provisioner = provisioner
        self.volumes = volumes if volumes is not None else VolumeRegistry()
        self.snapshots = snapshots if snapshots is not None else SnapshotRegistry()

    def get_volume_id(self, pv: Mapping[str, Any]) -> str:
        volume = volume_from_persistent_volume(pv)
        if volume is None:
            return ""
        return self.volumes.get_or_create(volume).name

    def set_volume_id(self, pv: Mapping[str, Any], volume_id: str) -> dict[str, Any]:
        updated = copy.deepcopy(dict(pv))
        metadata = dict(updated.get("metadata") or {})
        metadata["name"] = volume_id
        updated["metadata"] = metadata
        return updated

    def get_volume_info(self, volume_id: str, zone: str = "") -> tuple[str, int | None]:
        return CSTOR_VOLUME_KIND, None

    def create_snapshot(self, volume_id: str, backup_name: str, timeout_seconds: float | None = None) -> str:
        if self.volumes.get(volume_id) is None:
            raise VolumeNotFoundError(volume_id)
        if not backup_name.strip():
            raise InvalidBackupNameError("backup name must not be empty")
        try:
            snapshot_id = encode_snapshot_id(volume_id, backup_name)
        except MalformedIdentifierError as error:
            raise InvalidBackupNameError(error.reason) from error

        deadline = self._deadline(timeout_seconds)
        with self.volumes.claim(volume_id):
            volume = self.volumes.update(volume_id, backup_name=backup_name, backup_status=STATUS_EMPTY)
            remote_name = self._remote_name(volume_id, backup_name)
            self._save_claim_manifest(volume_id, remote_name)

            logger.info("Creating snapshot {} of volume {}", backup_name, volume_id)
            job = self.control_plane.create_backup(
                volume_id=volume_id,
                backup_base_name=backup_base_name(backup_name),
                snapshot_name=backup_name,
                destination=self.server_address,
                namespace=volume.namespace,
            )

            poller = StatusPoller(
                name=f"backup-{snapshot_id}",
                probe=lambda: self.control_plane.get_backup_status(job),
                on_status=lambda status: self.volumes.set_backup_status(volume_id, status),
                interval_seconds=self.config.status_poll_interval_seconds,
                on_terminal=self.transfer.finish,
            )
            poller.start()
            try:
                self._run_transfer(
                    lambda: self.transfer.upload(remote_name),
                    deadline=deadline,
                    description=f"upload of {remote_name}",
                )
                self._await_confirmation(poller, deadline=deadline, description=f"backup {snapshot_id}")
            finally:
                poller.cancel(join_timeout=self._poller_join_timeout())

            status = self.volumes.require(volume_id).backup_status
            if status != STATUS_DONE:
                logger.warning(
                    "Backup {} uploaded {} but was not confirmed (status={!r}); the object is left in place",
                    snapshot_id,
                    remote_name,
                    status,
                )
                raise BackupNotConfirmedError(snapshot_name=backup_name, status=status)

        self.snapshots.put(
            snapshot_id,
            Snapshot(volume_id=volume_id, backup_name=backup_name, namespace=volume.namespace),
        )
        logger.info("Snapshot {} completed", snapshot_id)
        return snapshot_id

    def create_volume_from_snapshot(
        self,
        snapshot_id: str,
        volume_kind: str,
        zone: str = "",
        iops: int | None = None,
        timeout_seconds: float | None = None,
    ) -> str:
        if volume_kind != CSTOR_VOLUME_KIND:
            raise InvalidVolumeKindError(f"invalid volume type {volume_kind!r}, expected {CSTOR_VOLUME_KIND!r}")

        volume_id, backup_name = decode_snapshot_id(snapshot_id)
        logger.info("Restoring snapshot {} of volume {}", backup_name, volume_id)
        deadline = self._deadline(timeout_seconds)
        remote_name = self._remote_name(volume_id, backup_name)
        target = self._provision_restore_target(volume_id, backup_name, remote_name)
        if target.name == volume_id:
            raise ProvisioningError(f"restore target for {volume_id} resolved to the source volume itself")
        logger.info("Restore target volume {} provisioned in namespace {}", target.name, target.namespace)

        with self.volumes.claim(target.name):
            target = self.volumes.put(replace(target, backup_name=backup_name, restore_status=STATUS_EMPTY))
            job = self.control_plane.create_restore(
                volume_id=target.name,
                restore_name=backup_name,
                source=self.server_address,
                namespace=target.namespace,
            )

            poller = StatusPoller(
                name=f"restore-{target.name}",
                probe=lambda: self.control_plane.get_restore_status(job),
                on_status=lambda status: self.volumes.set_restore_status(target.name, status),
                interval_seconds=self.config.status_poll_interval_seconds,
                on_terminal=self.transfer.finish,
            )
            poller.start()
            try:
                self._run_transfer(
                    lambda: self.transfer.download(remote_name),
                    deadline=deadline,
                    description=f"download of {remote_name}",
                )
                self._await_confirmation(poller, deadline=deadline, description=f"restore into {target.name}")
            finally:
                poller.cancel(join_timeout=self._poller_join_timeout())

            status = self.volumes.require(target.name).restore_status
            if status != STATUS_DONE:
                raise RestoreNotConfirmedError(volume_name=target.name, status=status)

        logger.info("Restore of {} into volume {} completed", snapshot_id, target.name)
        return target.name

    def delete_snapshot(self, snapshot_id: str) -> None:
        logger.info("Deleting snapshot {}", snapshot_id)
        snapshot = self.snapshots.get(snapshot_id) or self._reconstruct_snapshot(snapshot_id)
        if not snapshot.is_complete():
            raise InsufficientMetadataError(
                f"got insufficient info vol:{{{snapshot.volume_id}}} "
                f"snap:{{{snapshot.backup_name}}} ns:{{{snapshot.namespace}}}"
            )

        self.control_plane.delete_backup(
            volume_id=snapshot.volume_id,
            backup_name=snapshot.backup_name,
            namespace=snapshot.namespace,
        )
        remote_name = self._remote_name(snapshot.volume_id, snapshot.backup_name)
        self.transfer.delete(remote_name)
        if self.volume_directory is not None:
            self._delete_claim_manifest(remote_name)

        self.snapshots.remove(snapshot_id)
        logger.info("Snapshot {} deleted", snapshot_id)

    def _reconstruct_snapshot(self, snapshot_id: str) -> Snapshot:
        volume_id, backup_name = decode_snapshot_id(snapshot_id)
        namespace = ""
        if self.volume_directory is not None:
            try:
                namespace = self.volume_directory.lookup_namespace(volume_id)
            except KubernetesLookupError as error:
                logger.warning("Unable to resolve namespace of volume {}: {}", volume_id, error_message(error))
        if not namespace:
            known_volume = self.volumes.get(volume_id)
            namespace = known_volume.namespace if known_volume else ""
        return Snapshot(volume_id=volume_id, backup_name=backup_name, namespace=namespace)

    def _save_claim_manifest(self, volume_id: str, remote_name: str) -> None:
        if self.volume_directory is None:
            return
        try:
            manifest = self.volume_directory.read_claim_manifest(volume_id)
        except KubernetesLookupError as error:
            raise VolumeNotFoundError(volume_id, reason=error_message(error)) from error
        data = json.dumps(manifest, sort_keys=True).encode("utf-8")
        self.transfer.upload_blob(claim_manifest_name(remote_name), data)

    def _delete_claim_manifest(self, remote_name: str) -> None:
        try:
            self.transfer.delete(claim_manifest_name(remote_name))
        except SnapshotEngineError as error:
            logger.warning("Claim manifest for {} was not removed: {}", remote_name, error.reason)

    def _provision_restore_target(self, volume_id: str, backup_name: str, remote_name: str) -> Volume:
        if self.provisioner is None:
            raise ProvisioningError("no volume provisioner is configured for restores")

        data = self.transfer.download_blob(claim_manifest_name(remote_name))
        try:
            manifest = json.loads(data.decode("utf-8"))
        except ValueError as error:
            raise TransferFailedError(f"claim manifest for {remote_name} is not valid JSON") from error
        if not isinstance(manifest, dict):
            raise TransferFailedError(f"claim manifest for {remote_name} is not a JSON object")

        try:
            return self.provisioner.provision(volume_id=volume_id, backup_name=backup_name, manifest=manifest)
        except SnapshotEngineError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise ProvisioningError(f"restore target for {volume_id}: {error_message(error)}") from error

    def _remote_name(self, volume_id: str, backup_name: str) -> str:
        return remote_object_name(
            volume_id,
            backup_name,
            prefix=self.config.prefix,
            backup_path_prefix=self.config.backup_path_prefix,
        )

    def _deadline(self, timeout_seconds: float | None = None) -> float | None:
        if timeout_seconds is None:
            timeout_seconds = self.config.operation_timeout_seconds
        if timeout_seconds is None:
            return None
        if timeout_seconds <= 0:
            raise ConfigurationError(f"operation timeout must be positive, got {timeout_seconds}")
        return time.monotonic() + timeout_seconds

    def _poller_join_timeout(self) -> float:
        return self.config.rest_api_timeout_seconds + self.config.status_poll_interval_seconds

    def _run_transfer(self, action: Callable[[], None], *, deadline: float | None, description: str) -> None:
        if deadline is None:
            action()
            return

        failures: list[Exception] = []

        def _target() -> None:
            try:
                action()
            except Exception as error:  # pylint: disable=broad-except
                failures.append(error)

        worker = threading.Thread(target=_target, name="SnapshotTransfer", daemon=True)
        worker.start()
        worker.join(max(0.0, deadline - time.monotonic()))
        if worker.is_alive():
            self.transfer.finish()
            raise OperationTimeoutError(f"{description} did not finish before the operation deadline")
        if failures:
            raise failures[0]

    def _await_confirmation(self, poller: StatusPoller, *, deadline: float | None, description: str) -> None:
        wait_seconds = self.config.confirmation_wait_seconds
        if deadline is not None:
            wait_seconds = min(wait_seconds, max(0.0, deadline - time.monotonic()))
        if poller.wait_for_terminal(wait_seconds):
            return
        if deadline is not None and time.monotonic() >= deadline:
            raise OperationTimeoutError(f"{description} was not confirmed before the operation deadline")


def build_engine(
    plugin_config: Mapping[str, Any],
    *,
    store: ObjectStoreTransfer,
    clients: KubernetesClients | None = None,
    base_config: EngineConfig | None = None,
) -> SnapshotEngine:
    """Create an engine from the snapshot location's ``spec.config`` map."""

    config = EngineConfig.from_plugin_config(plugin_config, base=base_config)
    setup_logging(config.log_level)

    if clients is None and not config.maya_address:
        try:
            clients = load_kubernetes_clients(in_cluster=True)
        except KubernetesAuthenticationError as error:
            raise ConfigurationError(
                f"maya-apiserver address is not set and Kubernetes access is unavailable: {error_message(error)}"
            ) from error

    volume_directory: KubernetesVolumeDirectory | None = None
    provisioner: KubernetesVolumeProvisioner | None = None
    if clients is not None:
        volume_directory = KubernetesVolumeDirectory(clients)
        provisioner = KubernetesVolumeProvisioner(clients, timeout_seconds=config.provision_timeout_seconds)

    maya_address = config.maya_address
    if not maya_address and volume_directory is not None:
        try:
            maya_address = volume_directory.discover_maya_address(config.openebs_namespace)
        except KubernetesLookupError as error:
            raise ConfigurationError(error_message(error)) from error

    server_address = config.server_address or default_server_address()
    if not server_address:
        raise ConfigurationError("unable to determine the data-plane listener address")
    logger.info("Using maya-apiserver at {} and data-plane address {}", maya_address, server_address)

    return SnapshotEngine(
        control_plane=MayaApiClient(base_url=maya_address, timeout_seconds=config.rest_api_timeout_seconds),
        store=store,
        config=config,
        server_address=server_address,
        volume_directory=volume_directory,
        provisioner=provisioner,
    )


def default_server_address(port: int = DEFAULT_RECEIVER_PORT) -> str:
    """First non-loopback IPv4 address of this host, joined with the receiver port."""

    try:
        addresses = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError as error:
        logger.error("Failed to resolve interface addresses: {}", error_message(error))
        return ""
    for _, _, _, _, sockaddr in addresses:
        ip_address = str(sockaddr[0])
        if not ip_address.startswith("127."):
            return f"{ip_address}:{port}"
    return ""
