from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import shutil
import subprocess
import tempfile
from typing import Protocol

from .errors import FatalInstallError
from .images import registry_rewrite_function
from .location import location_settings
from .logging import get_logger
from .models import AzureStore, GCPStore, RegistryOptions, RewrittenImages, Store

logger = get_logger(__name__)

DEFAULT_VELERO_GCP_PLUGIN_IMAGE = "velero/velero-plugin-for-gcp:v1.1.0"
DEFAULT_VELERO_AZURE_PLUGIN_IMAGE = "velero/velero-plugin-for-microsoft-azure:v1.1.0"


@dataclass(frozen=True)
class EngineInstallOptions:
    namespace: str
    provider: str
    bucket: str
    prefix: str
    image: str
    plugin_image: str
    backup_location_config: dict[str, str] = field(default_factory=dict)
    snapshot_location_config: dict[str, str] = field(default_factory=dict)
    credentials: bytes = b""
    use_restic: bool = True
    default_volumes_to_restic: bool = True


class EngineInstaller(Protocol):
    def install(self, options: EngineInstallOptions) -> None:
        ...


def build_install_options(
    store: Store,
    images: RewrittenImages,
    *,
    namespace: str,
    registry_options: RegistryOptions | None = None,
) -> EngineInstallOptions:
    provider_name, location_config, credentials = location_settings(store)
    plugin_image = images.aws_plugin
    if isinstance(store.provider, (GCPStore, AzureStore)):
        upstream = (
            DEFAULT_VELERO_GCP_PLUGIN_IMAGE
            if isinstance(store.provider, GCPStore)
            else DEFAULT_VELERO_AZURE_PLUGIN_IMAGE
        )
        try:
            plugin_image, _ = registry_rewrite_function(registry_options or RegistryOptions())(upstream)
        except ValueError as error:
            raise FatalInstallError(stage="rewrite", reason=str(error)) from error

    return EngineInstallOptions(
        namespace=namespace,
        provider=provider_name,
        bucket=store.bucket,
        prefix=store.path,
        image=images.velero,
        plugin_image=plugin_image,
        backup_location_config=location_config,
        snapshot_location_config={"region": location_config["region"]} if location_config.get("region") else {},
        credentials=credentials,
    )


class VeleroCLIInstaller:
    """Installs the backup engine by shelling out to ``velero install``."""

    def __init__(
        self,
        *,
        binary: str = "velero",
        kubeconfig_path: str | None = None,
        context: str | None = None,
    ) -> None:
        self.binary = binary
        self.kubeconfig_path = kubeconfig_path
        self.context = context

    def install(self, options: EngineInstallOptions) -> None:
        velero = shutil.which(self.binary)
        if velero is None:
            raise FatalInstallError(
                stage="install",
                reason=f"{self.binary} is required to install the backup engine but was not found in PATH",
            )

        secret_file: Path | None = None
        try:
            if options.credentials:
                with tempfile.NamedTemporaryFile(mode="wb", suffix=".credentials", delete=False) as handle:
                    handle.write(options.credentials)
                    secret_file = Path(handle.name)
                os.chmod(secret_file, 0o600)

            command = self.build_command(velero, options, secret_file)
            logger.info("engine_install_started", namespace=options.namespace, provider=options.provider)
            completed = subprocess.run(command, check=False, capture_output=True, text=True)
            if completed.returncode != 0:
                raise FatalInstallError(
                    stage="install",
                    reason=completed.stderr.strip() or completed.stdout.strip() or "velero install failed",
                )
        finally:
            if secret_file is not None:
                secret_file.unlink(missing_ok=True)

    def build_command(self, velero: str, options: EngineInstallOptions, secret_file: Path | None) -> list[str]:
        command = [velero, "install"]
        if self.kubeconfig_path:
            command.extend(["--kubeconfig", str(Path(self.kubeconfig_path).expanduser())])
        if self.context:
            command.extend(["--kubecontext", self.context])

        command.extend(
            [
                "--namespace",
                options.namespace,
                "--provider",
                options.provider,
                "--plugins",
                options.plugin_image,
                "--bucket",
                options.bucket,
                "--image",
                options.image,
            ]
        )
        if options.prefix:
            command.extend(["--prefix", options.prefix])
        if options.backup_location_config:
            config_value = ",".join(f"{key}={value}" for key, value in options.backup_location_config.items())
            command.extend(["--backup-location-config", config_value])
        if options.snapshot_location_config:
            snapshot_value = ",".join(f"{key}={value}" for key, value in options.snapshot_location_config.items())
            command.extend(["--snapshot-location-config", snapshot_value])
        else:
            command.append("--use-volume-snapshots=false")
        if options.use_restic:
            command.append("--use-restic")
            if options.default_volumes_to_restic:
                command.append("--default-volumes-to-restic")
        if secret_file is not None:
            command.extend(["--secret-file", str(secret_file)])
        else:
            command.append("--no-secret")
        return command
