from __future__ import annotations

from typing import Callable

from kubernetes.client import ApiException

from .backend import SelfHostedBackend
from .config import AppConfig
from .detect import EngineDetector
from .errors import FatalInstallError, ReadinessTimeoutError, TransientInfrastructureError, ValidationError
from .images import ImageRewriter
from .installer import EngineInstaller, build_install_options
from .k8s import KubernetesClients, error_message, is_cluster_scoped, is_embedded_cluster
from .location import BackupLocationStore, internal_backend_endpoint
from .logging import get_logger
from .models import (
    BackendEndpoint,
    GlobalSnapshotSettings,
    InternalStore,
    NFSConfig,
    NFSStore,
    SettingsRequest,
    SettingsResult,
)
from .readiness import ReadinessWaiter
from .store import build_store, redact_store

logger = get_logger(__name__)

MINIMAL_RBAC_MESSAGE = (
    "The current identity cannot create cluster-scoped resources, so the backup engine and the "
    "self-hosted backend cannot be installed from here. Run the NFS configuration with cluster-admin credentials."
)


class SnapshotStorageConfigurator:
    """Applies a storage destination to the backup engine, installing the engine when it is absent."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: AppConfig,
        installer: EngineInstaller,
        detector: EngineDetector | None = None,
        backend: SelfHostedBackend | None = None,
        rewriter: ImageRewriter | None = None,
        location: BackupLocationStore | None = None,
        waiter: ReadinessWaiter | None = None,
    ) -> None:
        self.clients = clients
        self.config = config
        self.installer = installer
        self.registry_options = config.registry_options()
        self.detector = detector or EngineDetector(clients=clients)
        self.backend = backend or SelfHostedBackend(
            clients=clients,
            namespace=config.namespace,
            registry_options=self.registry_options,
            waiter=ReadinessWaiter(
                clients=clients,
                namespace=config.namespace,
                poll_interval_seconds=config.poll_interval_seconds,
            ),
        )
        self._rewriter = rewriter
        self._location = location
        self._waiter = waiter

    def engine_installed(self) -> bool:
        return self.detector.detect().is_installed

    def configure_nfs(self, nfs_config: NFSConfig, force_reset: bool = False) -> SettingsResult:
        if not is_cluster_scoped(self.clients):
            logger.warning("minimal_rbac_detected", namespace=self.config.namespace)
            return SettingsResult(
                success=False,
                nfs_config=nfs_config,
                minimal_rbac=True,
                message=MINIMAL_RBAC_MESSAGE,
            )
        return self.update_settings(
            SettingsRequest(provider=NFSStore.kind, nfs=nfs_config, force_reset=force_reset)
        )

    def update_settings(self, request: SettingsRequest) -> SettingsResult:
        detection = self.detector.detect()
        status = detection.status
        engine_namespace = status.namespace if status is not None and status.namespace else self.config.engine_namespace
        location = self.location_for(engine_namespace)
        current = location.read_store() if detection.is_installed else None

        messages: list[str] = []
        backend_endpoint = self._backend_endpoint(request)
        ready = True
        if request.provider == NFSStore.kind:
            ready = self._wait(self.backend.wait_ready, self.config.backend_ready_timeout_seconds, messages)
        update = build_store(request, current, backend_endpoint)

        rewriter = self.rewriter_for(engine_namespace)
        images = rewriter.rewrite(self.registry_options)

        installed = False
        if not detection.is_installed:
            options = build_install_options(
                update.store,
                images,
                namespace=engine_namespace,
                registry_options=self.registry_options,
            )
            self.installer.install(options)
            rewriter.apply(images, self.registry_options)
            installed = True
            logger.info("engine_installed", namespace=engine_namespace)
        else:
            rewriter.apply(images, self.registry_options)
            if update.changed:
                location.write_store(update.store)
                self._restart_engine()

        if installed or update.changed:
            waiter = self.waiter_for(engine_namespace)
            ready = self._wait(waiter.wait_ready, self.config.readiness_timeout_seconds, messages) and ready
        elif not messages:
            messages.append("storage settings unchanged")

        return SettingsResult(
            success=True,
            store=redact_store(update.store),
            nfs_config=request.nfs,
            installed=installed,
            changed=installed or update.changed,
            ready=ready,
            message="; ".join(messages),
        )

    def get_settings(self) -> GlobalSnapshotSettings:
        detection = self.detector.detect()
        status = detection.status
        warnings: list[str] = []
        if detection.cause is not None:
            warnings.append(f"backup engine detection failed: {detection.cause}")

        store = None
        if status is not None:
            persisted = self.location_for(status.namespace or self.config.engine_namespace).read_store()
            store = redact_store(persisted) if persisted is not None else None

        nfs_config = None
        try:
            nfs_config = self.backend.get_current_nfs_config()
        except FatalInstallError as error:
            warnings.append(f"unable to read self-hosted backend: {error}")

        return GlobalSnapshotSettings(
            engine_version=status.version if status else None,
            engine_plugins=status.plugins if status else (),
            is_engine_running=bool(status and status.is_ready),
            companion_version=status.companion_version if status else None,
            is_companion_running=bool(status and status.is_companion_ready),
            is_embedded_cluster=is_embedded_cluster(self.clients),
            store=store,
            nfs_config=nfs_config,
            warnings=warnings,
        )

    def location_for(self, namespace: str) -> BackupLocationStore:
        return self._location or BackupLocationStore(clients=self.clients, namespace=namespace)

    def rewriter_for(self, namespace: str) -> ImageRewriter:
        return self._rewriter or ImageRewriter(
            clients=self.clients,
            admin_namespace=self.config.namespace,
            engine_namespace=namespace,
        )

    def waiter_for(self, namespace: str) -> ReadinessWaiter:
        return self._waiter or ReadinessWaiter(
            clients=self.clients,
            namespace=namespace,
            poll_interval_seconds=self.config.poll_interval_seconds,
        )

    def _backend_endpoint(self, request: SettingsRequest) -> BackendEndpoint | None:
        if request.provider == NFSStore.kind:
            if request.nfs is None:
                raise ValidationError("nfs server and path are required")
            return self.backend.reconcile(request.nfs, force_reset=request.force_reset)
        if request.provider == InternalStore.kind:
            return internal_backend_endpoint(self.clients)
        return None

    def _restart_engine(self) -> None:
        try:
            self.detector.restart_engine()
        except (ApiException, TransientInfrastructureError) as error:
            raise FatalInstallError(
                stage="restart",
                reason=error_message(error),
                partially_applied=True,
            ) from error

    def _wait(self, wait: Callable[[float], None], timeout_seconds: float, messages: list[str]) -> bool:
        try:
            wait(timeout_seconds)
        except ReadinessTimeoutError as error:
            logger.warning("readiness_timeout", reason=str(error))
            messages.append(str(error))
            return False
        return True
