from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .errors import TransientInfrastructureError

EMBEDDED_CLUSTER_CONFIG_MAP = "kurl-config"
EMBEDDED_CLUSTER_CONFIG_NAMESPACE = "kube-system"
OPENSHIFT_API_GROUP = "config.openshift.io"
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_objects_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


def is_embedded_cluster(clients: KubernetesClients) -> bool:
    try:
        clients.core_api.read_namespaced_config_map(
            name=EMBEDDED_CLUSTER_CONFIG_MAP,
            namespace=EMBEDDED_CLUSTER_CONFIG_NAMESPACE,
        )
    except ApiException:
        return False
    return True


def is_openshift(clients: KubernetesClients) -> bool:
    groups = safe_kubernetes_read(
        operation="list API groups",
        hint="Verify the API server discovery endpoint is reachable.",
        func=lambda: client.ApisApi(clients.api_client).get_api_versions().groups,
    )
    return any(group.name == OPENSHIFT_API_GROUP for group in groups or [])


def is_cluster_scoped(clients: KubernetesClients) -> bool:
    """Whether the current identity may create CRDs, which installing the backup engine requires."""
    review = client.V1SelfSubjectAccessReview(
        spec=client.V1SelfSubjectAccessReviewSpec(
            resource_attributes=client.V1ResourceAttributes(
                verb="create",
                group="apiextensions.k8s.io",
                resource="customresourcedefinitions",
            )
        )
    )
    response = safe_kubernetes_read(
        operation="review cluster-scoped permissions",
        hint="Verify RBAC allows creating selfsubjectaccessreviews.",
        func=lambda: client.AuthorizationV1Api(clients.api_client).create_self_subject_access_review(body=review),
    )
    return bool(response.status and response.status.allowed)


def is_not_found(error: BaseException | None) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def safe_kubernetes_read(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise TransientInfrastructureError(
            format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error
    except Exception as error:  # pylint: disable=broad-except
        raise TransientInfrastructureError(
            f"Kubernetes request failed while trying to {operation}: {error}. {hint}"
        ) from error


def format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes request failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def error_message(error: Exception) -> str:
    if isinstance(error, ApiException):
        status = error.status if error.status is not None else "unknown"
        return f"API status {status} ({error.reason or 'no reason provided'})"
    message = str(error).strip()
    return message or error.__class__.__name__


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
