from __future__ import annotations

import base64
import hashlib
import secrets
import threading
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .errors import ConflictError, FatalInstallError
from .images import registry_rewrite_function
from .k8s import KubernetesClients, error_message, is_openshift
from .logging import get_logger
from .models import BackendEndpoint, NFSConfig, RegistryOptions
from .readiness import ReadinessWaiter

logger = get_logger(__name__)

BACKEND_NAME = "kotsadm-fs-minio"
BACKEND_SECRET_NAME = "kotsadm-fs-minio-creds"
BACKEND_IMAGE = "minio/minio:RELEASE.2021-08-05T22-01-19Z"
BACKEND_PORT = 9000
BACKEND_BUCKET = "velero"
BACKEND_REGION = "us-east-1"
BACKEND_PROVIDER = "aws"
BACKEND_DATA_VOLUME = "data"
BACKEND_DATA_PATH = "/export"
CREDENTIALS_ANNOTATION = "velero-store-manager/credentials-checksum"
BACKEND_RUN_AS_USER = 1001


class BackendLockRegistry:
    """Hands out one lock per backend key so reconfiguration of a backend is serialized."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())


DEFAULT_LOCK_REGISTRY = BackendLockRegistry()


class SelfHostedBackend:
    """MinIO deployment serving an S3-compatible API from an NFS export."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        namespace: str,
        registry_options: RegistryOptions | None = None,
        waiter: ReadinessWaiter | None = None,
        locks: BackendLockRegistry = DEFAULT_LOCK_REGISTRY,
        openshift: bool | None = None,
    ) -> None:
        self.clients = clients
        self.namespace = namespace
        self.registry_options = registry_options or RegistryOptions()
        self.waiter = waiter or ReadinessWaiter(clients=clients, namespace=namespace)
        self.locks = locks
        self.openshift = openshift

    def reconcile(self, desired: NFSConfig, force_reset: bool = False) -> BackendEndpoint:
        with self.locks.lock_for(self.namespace):
            current = self.get_current_nfs_config()
            if current is not None and current == desired and not force_reset:
                logger.debug("backend_unchanged", server=desired.server, path=desired.path)
                access_key_id, secret_access_key = self._read_credentials()
                try:
                    cluster_ip = self._ensure_service()
                except ApiException as error:
                    raise FatalInstallError(stage="backend/service", reason=error_message(error)) from error
                return self._endpoint(desired, access_key_id, secret_access_key, cluster_ip)

            if current is not None and current != desired and not force_reset:
                raise ConflictError(desired=desired, current=current)

            # Discovery runs before any mutation.
            self.is_openshift()
            if current is not None:
                logger.info(
                    "backend_reset",
                    previous=f"{current.server}:{current.path}",
                    server=desired.server,
                    path=desired.path,
                )
                self._delete_credentials()
            return self._provision(desired, replacing=current is not None)

    def get_current_nfs_config(self) -> NFSConfig | None:
        deployment = self._read_deployment()
        if deployment is None:
            return None
        for volume in deployment.spec.template.spec.volumes or []:
            if volume.name == BACKEND_DATA_VOLUME and volume.nfs is not None:
                return NFSConfig(server=volume.nfs.server, path=volume.nfs.path)
        return None

    def current_endpoint(self) -> BackendEndpoint | None:
        nfs_config = self.get_current_nfs_config()
        if nfs_config is None:
            return None
        access_key_id, secret_access_key = self._read_credentials()
        try:
            service = self._read_service()
        except ApiException as error:
            raise FatalInstallError(stage="backend/service", reason=error_message(error)) from error
        cluster_ip = (service.spec.cluster_ip if service is not None and service.spec else None) or ""
        return self._endpoint(nfs_config, access_key_id, secret_access_key, cluster_ip)

    def wait_ready(self, timeout_seconds: float) -> None:
        self.waiter.wait_for_deployment(name=BACKEND_NAME, namespace=self.namespace, timeout_seconds=timeout_seconds)

    def _provision(self, desired: NFSConfig, *, replacing: bool) -> BackendEndpoint:
        stage = "credentials"
        try:
            access_key_id, secret_access_key = self._ensure_credentials()
            stage = "deployment"
            self._apply_deployment(desired, access_key_id, secret_access_key)
            stage = "service"
            cluster_ip = self._ensure_service()
        except ApiException as error:
            raise FatalInstallError(
                stage=f"backend/{stage}",
                reason=error_message(error),
                partially_applied=replacing or stage != "credentials",
            ) from error

        logger.info("backend_configured", server=desired.server, path=desired.path, replaced=replacing)
        return self._endpoint(desired, access_key_id, secret_access_key, cluster_ip)

    def is_openshift(self) -> bool:
        if self.openshift is None:
            self.openshift = is_openshift(self.clients)
        return self.openshift

    def _endpoint(
        self,
        nfs_config: NFSConfig,
        access_key_id: str,
        secret_access_key: str,
        cluster_ip: str,
    ) -> BackendEndpoint:
        return BackendEndpoint(
            endpoint=f"http://{BACKEND_NAME}.{self.namespace}:{BACKEND_PORT}",
            public_url=f"http://{cluster_ip}:{BACKEND_PORT}" if cluster_ip else "",
            region=BACKEND_REGION,
            bucket=BACKEND_BUCKET,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            object_store_cluster_ip=cluster_ip,
            nfs_config=nfs_config,
        )

    def _read_deployment(self) -> Any | None:
        try:
            return self.clients.apps_api.read_namespaced_deployment(name=BACKEND_NAME, namespace=self.namespace)
        except ApiException as error:
            if error.status == 404:
                return None
            raise FatalInstallError(stage="backend/read", reason=error_message(error)) from error

    def _read_service(self) -> Any | None:
        try:
            return self.clients.core_api.read_namespaced_service(name=BACKEND_NAME, namespace=self.namespace)
        except ApiException as error:
            if error.status == 404:
                return None
            raise

    def _read_credentials(self) -> tuple[str, str]:
        try:
            secret = self.clients.core_api.read_namespaced_secret(name=BACKEND_SECRET_NAME, namespace=self.namespace)
        except ApiException as error:
            raise FatalInstallError(stage="backend/credentials", reason=error_message(error)) from error
        data = secret.data or {}
        return _decode(data.get("MINIO_ACCESS_KEY")), _decode(data.get("MINIO_SECRET_KEY"))

    def _ensure_credentials(self) -> tuple[str, str]:
        try:
            secret = self.clients.core_api.read_namespaced_secret(name=BACKEND_SECRET_NAME, namespace=self.namespace)
        except ApiException as error:
            if error.status != 404:
                raise
        else:
            data = secret.data or {}
            return _decode(data.get("MINIO_ACCESS_KEY")), _decode(data.get("MINIO_SECRET_KEY"))

        access_key_id = secrets.token_hex(10)
        secret_access_key = secrets.token_hex(20)
        self.clients.core_api.create_namespaced_secret(
            namespace=self.namespace,
            body=client.V1Secret(
                metadata=client.V1ObjectMeta(name=BACKEND_SECRET_NAME, labels=_labels()),
                string_data={"MINIO_ACCESS_KEY": access_key_id, "MINIO_SECRET_KEY": secret_access_key},
            ),
        )
        return access_key_id, secret_access_key

    def _delete_credentials(self) -> None:
        try:
            self.clients.core_api.delete_namespaced_secret(name=BACKEND_SECRET_NAME, namespace=self.namespace)
        except ApiException as error:
            if error.status != 404:
                raise FatalInstallError(stage="backend/reset", reason=error_message(error)) from error

    def _apply_deployment(self, nfs_config: NFSConfig, access_key_id: str, secret_access_key: str) -> None:
        checksum = hashlib.sha256(f"{access_key_id}:{secret_access_key}".encode("utf-8")).hexdigest()[:16]
        body = self._deployment(nfs_config, checksum)
        try:
            self.clients.apps_api.create_namespaced_deployment(namespace=self.namespace, body=body)
        except ApiException as error:
            if error.status != 409:
                raise
            self.clients.apps_api.replace_namespaced_deployment(name=BACKEND_NAME, namespace=self.namespace, body=body)

    def _ensure_service(self) -> str:
        service = self._read_service()
        if service is None:
            service = self.clients.core_api.create_namespaced_service(
                namespace=self.namespace,
                body=client.V1Service(
                    metadata=client.V1ObjectMeta(name=BACKEND_NAME, labels=_labels()),
                    spec=client.V1ServiceSpec(
                        type="ClusterIP",
                        selector=_labels(),
                        ports=[client.V1ServicePort(name="http", port=BACKEND_PORT, target_port=BACKEND_PORT)],
                    ),
                ),
            )
        return (service.spec.cluster_ip if service is not None and service.spec else None) or ""

    def _deployment(self, nfs_config: NFSConfig, credentials_checksum: str) -> client.V1Deployment:
        image, pull_secrets = registry_rewrite_function(self.registry_options)(BACKEND_IMAGE)
        # OpenShift assigns pod UIDs from the namespace range and rejects a fixed runAsUser.
        security_context = None
        if not self.is_openshift():
            security_context = client.V1PodSecurityContext(
                run_as_user=BACKEND_RUN_AS_USER,
                run_as_group=BACKEND_RUN_AS_USER,
                fs_group=BACKEND_RUN_AS_USER,
            )
        secret_env = [
            client.V1EnvVar(
                name=key,
                value_from=client.V1EnvVarSource(
                    secret_key_ref=client.V1SecretKeySelector(name=BACKEND_SECRET_NAME, key=key)
                ),
            )
            for key in ("MINIO_ACCESS_KEY", "MINIO_SECRET_KEY")
        ]
        return client.V1Deployment(
            metadata=client.V1ObjectMeta(name=BACKEND_NAME, labels=_labels()),
            spec=client.V1DeploymentSpec(
                replicas=1,
                strategy=client.V1DeploymentStrategy(type="Recreate"),
                selector=client.V1LabelSelector(match_labels=_labels()),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(
                        labels=_labels(),
                        annotations={CREDENTIALS_ANNOTATION: credentials_checksum},
                    ),
                    spec=client.V1PodSpec(
                        security_context=security_context,
                        image_pull_secrets=[client.V1LocalObjectReference(name=name) for name in pull_secrets],
                        containers=[
                            client.V1Container(
                                name="minio",
                                image=image,
                                command=[
                                    "/bin/sh",
                                    "-ce",
                                    f"mkdir -p {BACKEND_DATA_PATH}/{BACKEND_BUCKET} && "
                                    f"minio --quiet server {BACKEND_DATA_PATH}",
                                ],
                                env=secret_env,
                                ports=[client.V1ContainerPort(container_port=BACKEND_PORT)],
                                volume_mounts=[
                                    client.V1VolumeMount(name=BACKEND_DATA_VOLUME, mount_path=BACKEND_DATA_PATH)
                                ],
                                readiness_probe=client.V1Probe(
                                    http_get=client.V1HTTPGetAction(path="/minio/health/ready", port=BACKEND_PORT),
                                    period_seconds=5,
                                ),
                            )
                        ],
                        volumes=[
                            client.V1Volume(
                                name=BACKEND_DATA_VOLUME,
                                nfs=client.V1NFSVolumeSource(server=nfs_config.server, path=nfs_config.path),
                            )
                        ],
                    ),
                ),
            ),
        )


def _labels() -> dict[str, str]:
    return {"app": BACKEND_NAME}


def _decode(value: str | None) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")
