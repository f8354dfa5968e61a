from __future__ import annotations

import base64
import json
from typing import Callable

from kubernetes import client
from kubernetes.client import ApiException

from .detect import parse_image_reference
from .errors import FatalInstallError
from .k8s import KubernetesClients, error_message, is_embedded_cluster
from .logging import get_logger
from .models import RegistryOptions, RewrittenImages
from .readiness import COMPANION_DAEMONSET_NAME, ENGINE_DEPLOYMENT_NAME

logger = get_logger(__name__)

DEFAULT_VELERO_IMAGE = "velero/velero:v1.5.1"
DEFAULT_VELERO_AWS_PLUGIN_IMAGE = "velero/velero-plugin-for-aws:v1.1.0"
DEFAULT_VELERO_RESTIC_RESTORE_HELPER_IMAGE = "velero/velero-restic-restore-helper:v1.5.1"

PRIVATE_REGISTRY_SECRET_NAME = "kotsadm-private-registry"
RESTIC_CONFIG_MAP_NAME = "restic-restore-action-config"
DEFAULT_NAMESPACE = "default"

ImageRewriteFunction = Callable[[str], tuple[str, tuple[str, ...]]]


def registry_rewrite_function(options: RegistryOptions) -> ImageRewriteFunction:
    """Build a function mapping an upstream image to ``(image, pull_secret_names)`` for ``options``."""
    pull_secrets: tuple[str, ...] = (PRIVATE_REGISTRY_SECRET_NAME,) if options.has_credentials else ()

    def rewrite(upstream_image: str) -> tuple[str, tuple[str, ...]]:
        if not options.is_configured:
            return upstream_image, ()
        reference = parse_image_reference(upstream_image)
        if reference.version is None:
            raise ValueError(f"image reference '{upstream_image}' has no tag or digest")
        name = reference.repository.rsplit("/", 1)[-1]
        separator = "@" if reference.version.startswith("sha256:") else ":"
        destination = "/".join(
            part.strip("/") for part in (options.endpoint, options.namespace, name) if part and part.strip("/")
        )
        return f"{destination}{separator}{reference.version}", pull_secrets

    return rewrite


class ImageRewriter:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        admin_namespace: str,
        engine_namespace: str,
    ) -> None:
        self.clients = clients
        self.admin_namespace = admin_namespace
        self.engine_namespace = engine_namespace

    def should_skip(self) -> bool:
        # Embedded clusters installed into the default namespace never rewrite images.
        return self.admin_namespace == DEFAULT_NAMESPACE and is_embedded_cluster(self.clients)

    def rewrite(self, options: RegistryOptions) -> RewrittenImages:
        if self.should_skip():
            return _default_images()

        rewrite = registry_rewrite_function(options)
        rewritten: dict[str, str] = {}
        pull_secrets: tuple[str, ...] = ()
        for key, image in (
            ("velero", DEFAULT_VELERO_IMAGE),
            ("aws_plugin", DEFAULT_VELERO_AWS_PLUGIN_IMAGE),
            ("restic_restore_helper", DEFAULT_VELERO_RESTIC_RESTORE_HELPER_IMAGE),
        ):
            try:
                rewritten[key], secrets = rewrite(image)
            except Exception as error:  # pylint: disable=broad-except
                raise FatalInstallError(
                    stage="rewrite",
                    reason=f"failed to rewrite image {image}: {error_message(error)}",
                ) from error
            if key == "velero":
                pull_secrets = secrets
        return RewrittenImages(image_pull_secrets=pull_secrets, **rewritten)

    def apply(self, images: RewrittenImages, options: RegistryOptions) -> None:
        """Update only pull secrets and container images on the running engine workloads."""
        if self.should_skip():
            logger.debug("images_skipped_embedded_cluster", namespace=self.engine_namespace)
            return

        stage = "registry-secret"
        try:
            self._ensure_private_registry_secret(options)

            stage = "deployment"
            deployment = self.clients.apps_api.read_namespaced_deployment(
                name=ENGINE_DEPLOYMENT_NAME,
                namespace=self.engine_namespace,
            )
            pod_spec = deployment.spec.template.spec
            pod_spec.image_pull_secrets = _pull_secret_references(images)
            aws_plugin_name = _image_name(images.aws_plugin)
            for init_container in pod_spec.init_containers or []:
                # Plugins for other providers keep the image they were installed with.
                if _image_name(init_container.image) == aws_plugin_name:
                    init_container.image = images.aws_plugin
            pod_spec.containers[0].image = images.velero
            self.clients.apps_api.replace_namespaced_deployment(
                name=ENGINE_DEPLOYMENT_NAME,
                namespace=self.engine_namespace,
                body=deployment,
            )

            stage = "restic-config"
            self._ensure_restic_config_map(images.restic_restore_helper)

            stage = "daemonset"
            daemonset = self.clients.apps_api.read_namespaced_daemon_set(
                name=COMPANION_DAEMONSET_NAME,
                namespace=self.engine_namespace,
            )
            daemonset.spec.template.spec.image_pull_secrets = _pull_secret_references(images)
            daemonset.spec.template.spec.containers[0].image = images.velero
            self.clients.apps_api.replace_namespaced_daemon_set(
                name=COMPANION_DAEMONSET_NAME,
                namespace=self.engine_namespace,
                body=daemonset,
            )
        except ApiException as error:
            raise FatalInstallError(
                stage=f"images/{stage}",
                reason=error_message(error),
                partially_applied=stage in {"restic-config", "daemonset"},
            ) from error
        logger.info("images_applied", namespace=self.engine_namespace, velero=images.velero)

    def _ensure_restic_config_map(self, restore_helper_image: str) -> None:
        core_api = self.clients.core_api
        if restore_helper_image == DEFAULT_VELERO_RESTIC_RESTORE_HELPER_IMAGE:
            try:
                core_api.delete_namespaced_config_map(name=RESTIC_CONFIG_MAP_NAME, namespace=self.engine_namespace)
            except ApiException as error:
                if error.status != 404:
                    raise
            return

        try:
            config_map = core_api.read_namespaced_config_map(name=RESTIC_CONFIG_MAP_NAME, namespace=self.engine_namespace)
        except ApiException as error:
            if error.status != 404:
                raise
            core_api.create_namespaced_config_map(
                namespace=self.engine_namespace,
                body=restic_config_map(restore_helper_image),
            )
            return

        config_map.data = dict(config_map.data or {})
        config_map.data["image"] = restore_helper_image
        core_api.replace_namespaced_config_map(
            name=RESTIC_CONFIG_MAP_NAME,
            namespace=self.engine_namespace,
            body=config_map,
        )

    def _ensure_private_registry_secret(self, options: RegistryOptions) -> None:
        if not options.is_configured or not options.has_credentials:
            return
        body = private_registry_secret(options)
        try:
            self.clients.core_api.create_namespaced_secret(namespace=self.engine_namespace, body=body)
        except ApiException as error:
            if error.status != 409:
                raise
            self.clients.core_api.replace_namespaced_secret(
                name=PRIVATE_REGISTRY_SECRET_NAME,
                namespace=self.engine_namespace,
                body=body,
            )


def restic_config_map(image: str) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=RESTIC_CONFIG_MAP_NAME,
            labels={
                "velero.io/plugin-config": "",
                "velero.io/restic": "RestoreItemAction",
            },
        ),
        data={"image": image},
    )


def private_registry_secret(options: RegistryOptions) -> client.V1Secret:
    registry_host = options.endpoint.split("/", 1)[0]
    auth = base64.b64encode(f"{options.username}:{options.password}".encode("utf-8")).decode("ascii")
    docker_config = {"auths": {registry_host: {"auth": auth}}}
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=PRIVATE_REGISTRY_SECRET_NAME),
        type="kubernetes.io/dockerconfigjson",
        data={".dockerconfigjson": base64.b64encode(json.dumps(docker_config).encode("utf-8")).decode("ascii")},
    )


def _image_name(image: str | None) -> str:
    return parse_image_reference(image).repository.rsplit("/", 1)[-1]


def _pull_secret_references(images: RewrittenImages) -> list[client.V1LocalObjectReference]:
    return [client.V1LocalObjectReference(name=name) for name in images.image_pull_secrets]


def _default_images() -> RewrittenImages:
    return RewrittenImages(
        velero=DEFAULT_VELERO_IMAGE,
        aws_plugin=DEFAULT_VELERO_AWS_PLUGIN_IMAGE,
        restic_restore_helper=DEFAULT_VELERO_RESTIC_RESTORE_HELPER_IMAGE,
    )
