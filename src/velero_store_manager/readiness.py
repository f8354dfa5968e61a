from __future__ import annotations

import time
from typing import Any

from kubernetes.client import ApiException

from .errors import ReadinessTimeoutError
from .k8s import KubernetesClients, error_message
from .logging import get_logger

logger = get_logger(__name__)

ENGINE_DEPLOYMENT_NAME = "velero"
COMPANION_DAEMONSET_NAME = "restic"


class ReadinessWaiter:
    """Polls workload status until ready. Readiness is only observable through periodic reads."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        namespace: str,
        poll_interval_seconds: float = 2,
    ) -> None:
        self.clients = clients
        self.namespace = namespace
        self.poll_interval_seconds = poll_interval_seconds

    def wait_ready(self, timeout_seconds: float) -> None:
        deadline = time.time() + timeout_seconds
        last_detail = "no status observed"
        while time.time() < deadline:
            deployment_ready, deployment_detail = self._deployment_ready(ENGINE_DEPLOYMENT_NAME, self.namespace)
            daemonset_ready, daemonset_detail = self._daemonset_ready(COMPANION_DAEMONSET_NAME, self.namespace)
            last_detail = f"{deployment_detail}; {daemonset_detail}"
            if deployment_ready and daemonset_ready:
                logger.info("engine_ready", namespace=self.namespace)
                return
            time.sleep(self.poll_interval_seconds)

        raise ReadinessTimeoutError(
            f"backup engine in namespace {self.namespace} did not become ready within "
            f"{timeout_seconds:g}s ({last_detail})"
        )

    def wait_for_deployment(self, *, name: str, namespace: str, timeout_seconds: float) -> None:
        deadline = time.time() + timeout_seconds
        last_detail = "no status observed"
        while time.time() < deadline:
            ready, last_detail = self._deployment_ready(name, namespace)
            if ready:
                return
            time.sleep(self.poll_interval_seconds)

        raise ReadinessTimeoutError(
            f"deployment {namespace}/{name} did not become ready within {timeout_seconds:g}s ({last_detail})"
        )

    def _deployment_ready(self, name: str, namespace: str) -> tuple[bool, str]:
        deployment = self._read(self.clients.apps_api.read_namespaced_deployment, name, namespace)
        if deployment is None:
            return False, f"deployment {name} not found"
        available = _status_count(deployment, "available_replicas")
        return available > 0, f"deployment {name} available={available}"

    def _daemonset_ready(self, name: str, namespace: str) -> tuple[bool, str]:
        daemonset = self._read(self.clients.apps_api.read_namespaced_daemon_set, name, namespace)
        if daemonset is None:
            return False, f"daemonset {name} not found"
        desired = _status_count(daemonset, "desired_number_scheduled")
        available = _status_count(daemonset, "number_available")
        unavailable = _status_count(daemonset, "number_unavailable")
        ready = desired > 0 and available >= desired and unavailable == 0
        return ready, f"daemonset {name} available={available}/{desired}"

    def _read(self, reader: Any, name: str, namespace: str) -> Any | None:
        try:
            return reader(name=name, namespace=namespace)
        except ApiException as error:
            if error.status == 404:
                return None
            logger.debug("status_read_failed", namespace=namespace, name=name, reason=error_message(error))
            return None


def _status_count(workload: Any, attribute: str) -> int:
    status = getattr(workload, "status", None)
    return int(getattr(status, attribute, None) or 0) if status is not None else 0
