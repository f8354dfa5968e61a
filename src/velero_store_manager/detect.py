from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Any, Callable, Iterable

from .errors import TransientInfrastructureError
from .k8s import KubernetesClients, is_not_found, safe_kubernetes_read
from .logging import get_logger
from .models import HEALTH_NOT_READY, HEALTH_READY, DetectionResult, EngineStatus

logger = get_logger(__name__)

VELERO_API_GROUP = "velero.io"
VELERO_API_VERSION = "v1"
BACKUP_STORAGE_LOCATION_PLURAL = "backupstoragelocations"
DEFAULT_BACKUP_STORAGE_LOCATION = "default"

# CLI installs label workloads with component=velero, the Helm chart with app.kubernetes.io/name=velero.
ENGINE_LABEL_SELECTORS = ("component=velero", "app.kubernetes.io/name=velero")

_IMAGE_REFERENCE_PATTERN = re.compile(r"(?:([^/]+)/)?(?:([^/]+)/)?([^@:/]+)(?:[@:](.+))")


@dataclass(frozen=True)
class ImageReference:
    repository: str
    version: str | None


def parse_image_reference(image: str | None) -> ImageReference:
    """Split ``[registry/][namespace/]repository[:tag|@digest]``; version is unset when absent."""
    if not image:
        return ImageReference(repository="", version=None)
    match = _IMAGE_REFERENCE_PATTERN.search(image)
    if match is None:
        return ImageReference(repository=image, version=None)
    registry, namespace, name, version = match.groups()
    repository = "/".join(part for part in (registry, namespace, name) if part)
    return ImageReference(repository=repository, version=version)


class EngineDetector:
    def __init__(self, *, clients: KubernetesClients) -> None:
        self.clients = clients

    def detect(self) -> DetectionResult:
        try:
            namespace = self.detect_namespace()
            if not namespace:
                return DetectionResult.not_found()
            status = self._scan_namespace(namespace)
        except TransientInfrastructureError as error:
            logger.warning("engine_detection_failed", reason=str(error))
            return DetectionResult.failed(error)

        if status is None:
            return DetectionResult.not_found()
        return DetectionResult.found(status)

    def detect_namespace(self) -> str | None:
        try:
            response = safe_kubernetes_read(
                operation="list backup storage locations",
                hint="Confirm the velero.io CRDs are installed and RBAC allows listing backupstoragelocations.",
                func=lambda: self.clients.custom_objects_api.list_cluster_custom_object(
                    group=VELERO_API_GROUP,
                    version=VELERO_API_VERSION,
                    plural=BACKUP_STORAGE_LOCATION_PLURAL,
                ),
            )
        except TransientInfrastructureError as error:
            if is_not_found(error.__cause__):
                return None
            raise
        for item in (response or {}).get("items", []):
            metadata = item.get("metadata") or {}
            if metadata.get("name") == DEFAULT_BACKUP_STORAGE_LOCATION:
                return metadata.get("namespace")
        return None

    def list_engine_deployments(self, namespace: str) -> list[Any]:
        return self._list_by_engine_labels(
            kind="deployments",
            namespace=namespace,
            lister=self.clients.apps_api.list_namespaced_deployment,
        )

    def list_companion_daemonsets(self, namespace: str) -> list[Any]:
        return self._list_by_engine_labels(
            kind="daemonsets",
            namespace=namespace,
            lister=self.clients.apps_api.list_namespaced_daemon_set,
        )

    def restart_engine(self) -> int:
        """Delete engine and companion pods so their controllers recreate them. Returns pods deleted."""
        namespace = self.detect_namespace()
        if not namespace:
            return 0

        deleted = 0
        workloads = [*self.list_engine_deployments(namespace), *self.list_companion_daemonsets(namespace)]
        for workload in workloads:
            labels = (workload.spec.selector.match_labels if workload.spec.selector else None) or {}
            if not labels:
                continue
            selector = ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
            pods = self.clients.core_api.list_namespaced_pod(namespace=namespace, label_selector=selector).items
            for pod in pods:
                self.clients.core_api.delete_namespaced_pod(name=pod.metadata.name, namespace=namespace)
                deleted += 1
        logger.info("engine_restarted", namespace=namespace, pods_deleted=deleted)
        return deleted

    def _scan_namespace(self, namespace: str) -> EngineStatus | None:
        deployments = self.list_engine_deployments(namespace)
        daemonsets = self.list_companion_daemonsets(namespace)
        if not deployments and not daemonsets:
            return None

        plugins: list[str] = []
        for deployment in deployments:
            for init_container in _pod_spec(deployment).init_containers or []:
                if init_container.name not in plugins:
                    plugins.append(init_container.name)

        version, health = _first_versioned(deployments, _deployment_health) or (None, HEALTH_NOT_READY)
        companion_version, companion_health = _first_versioned(daemonsets, _daemonset_health) or (
            None,
            HEALTH_NOT_READY,
        )
        return EngineStatus(
            version=version,
            health=health,
            companion_version=companion_version,
            companion_health=companion_health,
            plugins=tuple(plugins),
            namespace=namespace,
        )

    def _list_by_engine_labels(self, *, kind: str, namespace: str, lister: Callable[..., Any]) -> list[Any]:
        found: dict[str, Any] = {}
        for selector in ENGINE_LABEL_SELECTORS:
            items = safe_kubernetes_read(
                operation=f"list {kind} in namespace '{namespace}' with selector '{selector}'",
                hint=f"Verify RBAC allows listing {kind} in the backup engine namespace.",
                func=lambda selector=selector: lister(namespace=namespace, label_selector=selector).items,
            )
            for item in items:
                found.setdefault(item.metadata.name, item)
        return list(found.values())


def _first_versioned(workloads: Iterable[Any], health: Callable[[Any], str]) -> tuple[str, str] | None:
    for workload in workloads:
        containers = _pod_spec(workload).containers or []
        if not containers:
            continue
        reference = parse_image_reference(containers[0].image)
        if reference.version is not None:
            return reference.version, health(workload)
    return None


def _deployment_health(deployment: Any) -> str:
    available = (deployment.status.available_replicas if deployment.status else None) or 0
    return HEALTH_READY if available > 0 else HEALTH_NOT_READY


def _daemonset_health(daemonset: Any) -> str:
    status = daemonset.status
    available = (status.number_available if status else None) or 0
    unavailable = (status.number_unavailable if status else None) or 0
    return HEALTH_READY if available > 0 and unavailable == 0 else HEALTH_NOT_READY


def _pod_spec(workload: Any) -> Any:
    return workload.spec.template.spec
