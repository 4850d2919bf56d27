from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import time
from typing import Any, Callable, Mapping, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
from loguru import logger

from .errors import ProvisioningError, VolumeNotFoundError, error_message
from .models import Volume

OPENEBS_CAS_TYPE_LABEL = "openebs.io/cas-type"
CAS_TYPE_CSTOR = "cstor"
MAYA_APISERVER_SERVICE_LABEL = "openebs.io/component-name=maya-apiserver-svc"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
MAX_CLAIM_NAME_LENGTH = 253
_INVALID_NAME_CHARACTERS = re.compile(r"[^a-z0-9.-]+")
_UNUSABLE_PV_PHASES = {"Released", "Failed"}
_SERVER_POPULATED_METADATA = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "selfLink",
    "managedFields",
    "ownerReferences",
    "finalizers",
    "generation",
)
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesLookupError(RuntimeError):
    """Raised when a Kubernetes read needed by the engine fails."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None = None,
    context: str | None = None,
    in_cluster: bool = True,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        source = "in-cluster service account" if in_cluster else expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Kubernetes authentication setup failed while loading {source}: {error_message(error)}"
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(api_client=api_client, core_api=client.CoreV1Api(api_client))


def volume_from_persistent_volume(pv: Mapping[str, Any]) -> Volume | None:
    """Build a ``Volume`` from an unstructured PersistentVolume.

    Returns ``None`` for PVs that are not cStor volumes or lack the fields the
    engine needs; those are skipped rather than rejected.
    """
    metadata = pv.get("metadata") or {}
    spec = pv.get("spec") or {}
    status = pv.get("status") or {}
    labels = metadata.get("labels") or {}
    claim_ref = spec.get("claimRef")

    name = metadata.get("name") or ""
    storage_class = spec.get("storageClassName") or ""
    if not name or not storage_class or not labels:
        return None
    if claim_ref is not None and not claim_ref.get("namespace"):
        return None
    if labels.get(OPENEBS_CAS_TYPE_LABEL) != CAS_TYPE_CSTOR:
        return None

    phase = status.get("phase")
    if phase in _UNUSABLE_PV_PHASES:
        raise VolumeNotFoundError(name, reason=f"persistent volume {name!r} is in {phase} phase")

    namespace = claim_ref.get("namespace", "") if claim_ref else ""
    return Volume(name=name, namespace=namespace, cas_type=storage_class)


class KubernetesVolumeDirectory:
    """Read-only lookups against the cluster's PVs, PVCs and services."""

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds

    def lookup_namespace(self, volume_id: str) -> str:
        pv = _safe_kubernetes_call(
            operation=f"read PersistentVolume '{volume_id}'",
            hint="Confirm the volume still exists and RBAC allows get on persistentvolumes.",
            func=lambda: self.clients.core_api.read_persistent_volume(
                name=volume_id,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        claim_ref = pv.spec.claim_ref if pv.spec else None
        namespace = claim_ref.namespace if claim_ref and claim_ref.namespace else ""
        if not namespace:
            raise KubernetesLookupError(f"No namespace in spec.claimRef for PersistentVolume '{volume_id}'")
        return namespace

    def read_claim_manifest(self, volume_id: str) -> dict[str, Any]:
        pv = _safe_kubernetes_call(
            operation=f"read PersistentVolume '{volume_id}'",
            hint="Confirm the volume still exists and RBAC allows get on persistentvolumes.",
            func=lambda: self.clients.core_api.read_persistent_volume(
                name=volume_id,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        claim_ref = pv.spec.claim_ref if pv.spec else None
        if claim_ref is None or not claim_ref.name or not claim_ref.namespace:
            raise KubernetesLookupError(f"PersistentVolume '{volume_id}' is not bound to a claim")

        pvc = _safe_kubernetes_call(
            operation=f"read PersistentVolumeClaim '{claim_ref.namespace}/{claim_ref.name}'",
            hint="Verify RBAC allows get on persistentvolumeclaims.",
            func=lambda: self.clients.core_api.read_namespaced_persistent_volume_claim(
                name=claim_ref.name,
                namespace=claim_ref.namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return self.clients.api_client.sanitize_for_serialization(pvc)

    def discover_maya_address(self, namespace: str) -> str:
        services = _safe_kubernetes_call(
            operation=f"list maya-apiserver services in namespace '{namespace}'",
            hint="Check the OpenEBS namespace setting and RBAC verbs for services.",
            func=lambda: self.clients.core_api.list_namespaced_service(
                namespace=namespace,
                label_selector=MAYA_APISERVER_SERVICE_LABEL,
                _request_timeout=self.request_timeout_seconds,
            ).items,
        )
        for service in services:
            spec = service.spec
            if spec is None or not spec.cluster_ip or not spec.ports:
                continue
            return f"http://{spec.cluster_ip}:{spec.ports[0].port}"
        raise KubernetesLookupError(
            f"No maya-apiserver service labelled '{MAYA_APISERVER_SERVICE_LABEL}' found in namespace '{namespace}'"
        )


class KubernetesVolumeProvisioner:
    """Recreates a backed-up PVC and waits for it to bind to a fresh PV."""

    def __init__(
        self,
        clients: KubernetesClients,
        *,
        timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.clients = clients
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def provision(self, *, volume_id: str, backup_name: str, manifest: Mapping[str, Any]) -> Volume:
        body = _restorable_claim(manifest)
        metadata = body["metadata"]
        namespace = metadata.get("namespace") or ""
        claim_name = metadata.get("name") or ""
        if not namespace or not claim_name:
            raise ProvisioningError(f"saved claim for volume {volume_id!r} has no name or namespace")

        if not self._create_claim(namespace=namespace, body=body, volume_id=volume_id):
            existing = self._read_claim(namespace=namespace, claim_name=claim_name)
            if _bound_volume_name(existing) == volume_id:
                source_claim = claim_name
                claim_name = _restore_claim_name(source_claim, backup_name)
                metadata["name"] = claim_name
                logger.info(
                    "Claim {}/{} is still bound to source volume {}, restoring into claim {}",
                    namespace,
                    source_claim,
                    volume_id,
                    claim_name,
                )
                self._create_claim(namespace=namespace, body=body, volume_id=volume_id)

        pv_name = self._wait_for_bound_volume(namespace=namespace, claim_name=claim_name)
        if pv_name == volume_id:
            raise ProvisioningError(
                f"claim {namespace}/{claim_name} is bound to source volume {volume_id}, refusing to restore over it"
            )
        storage_class = (body.get("spec") or {}).get("storageClassName") or ""
        return Volume(name=pv_name, namespace=namespace, cas_type=storage_class, backup_name=backup_name)

    def _create_claim(self, *, namespace: str, body: dict[str, Any], volume_id: str) -> bool:
        """Create the claim; ``False`` means a claim with that name already exists."""
        claim_name = body["metadata"]["name"]
        try:
            self.clients.core_api.create_namespaced_persistent_volume_claim(namespace=namespace, body=body)
        except ApiException as error:
            if error.status != 409:
                raise ProvisioningError(
                    f"creating claim {namespace}/{claim_name} failed: API status {error.status} ({error.reason})"
                ) from error
            logger.info("Claim {}/{} already exists", namespace, claim_name)
            return False
        logger.info("Created claim {}/{} to restore volume {}", namespace, claim_name, volume_id)
        return True

    def _read_claim(self, *, namespace: str, claim_name: str) -> Any:
        try:
            return self.clients.core_api.read_namespaced_persistent_volume_claim(
                name=claim_name,
                namespace=namespace,
            )
        except ApiException as error:
            raise ProvisioningError(
                f"reading claim {namespace}/{claim_name} failed: API status {error.status} ({error.reason})"
            ) from error

    def _wait_for_bound_volume(self, *, namespace: str, claim_name: str) -> str:
        deadline = time.monotonic() + self.timeout_seconds
        last_phase = "Unknown"
        while time.monotonic() < deadline:
            pvc = self._read_claim(namespace=namespace, claim_name=claim_name)
            last_phase = pvc.status.phase if pvc.status and pvc.status.phase else "Unknown"
            volume_name = _bound_volume_name(pvc)
            if last_phase == "Bound" and volume_name:
                return volume_name
            if last_phase == "Lost":
                raise ProvisioningError(f"claim {namespace}/{claim_name} lost its volume")
            time.sleep(self.poll_interval_seconds)

        raise ProvisioningError(
            f"claim {namespace}/{claim_name} did not bind in time (last observed phase={last_phase})"
        )


def _bound_volume_name(pvc: Any) -> str:
    spec = getattr(pvc, "spec", None)
    return (spec.volume_name if spec else None) or ""


def _restore_claim_name(claim_name: str, backup_name: str) -> str:
    candidate = _INVALID_NAME_CHARACTERS.sub("-", f"{claim_name}-restore-{backup_name}".lower())
    return candidate[:MAX_CLAIM_NAME_LENGTH].strip("-.") or "restore"


def _restorable_claim(manifest: Mapping[str, Any]) -> dict[str, Any]:
    metadata = dict(manifest.get("metadata") or {})
    for key in _SERVER_POPULATED_METADATA:
        metadata.pop(key, None)
    annotations = {
        key: value
        for key, value in (metadata.get("annotations") or {}).items()
        if not key.startswith("pv.kubernetes.io/")
    }
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)

    spec = dict(manifest.get("spec") or {})
    spec.pop("volumeName", None)
    return {
        "apiVersion": manifest.get("apiVersion", "v1"),
        "kind": manifest.get("kind", "PersistentVolumeClaim"),
        "metadata": metadata,
        "spec": spec,
    }


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        status = error.status if error.status is not None else "unknown"
        reason = error.reason or "no reason provided"
        raise KubernetesLookupError(
            f"Kubernetes lookup failed while trying to {operation}: API status {status} ({reason}). {hint}"
        ) from error
    except Exception as error:
        raise KubernetesLookupError(
            f"Kubernetes lookup failed while trying to {operation}: {error}. {hint}"
        ) from error


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())
