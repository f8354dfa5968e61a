from __future__ import annotations

import configparser
import io

from .errors import ValidationError

AWS_CREDENTIALS_SECTION = "default"

_AZURE_KEYS = (
    ("AZURE_SUBSCRIPTION_ID", "subscription_id"),
    ("AZURE_TENANT_ID", "tenant_id"),
    ("AZURE_CLIENT_ID", "client_id"),
    ("AZURE_CLIENT_SECRET", "client_secret"),
    ("AZURE_RESOURCE_GROUP", "resource_group"),
    ("AZURE_CLOUD_NAME", "cloud_name"),
)


def format_aws_credentials(access_key_id: str, secret_access_key: str) -> bytes:
    """Render an AWS shared-credentials file for the engine's cloud-credentials secret."""
    parser = configparser.ConfigParser(interpolation=None)
    parser[AWS_CREDENTIALS_SECTION] = {
        "aws_access_key_id": access_key_id,
        "aws_secret_access_key": secret_access_key,
    }
    buffer = io.StringIO()
    parser.write(buffer)
    return buffer.getvalue().encode("utf-8")


def parse_aws_credentials(data: bytes | str) -> tuple[str, str]:
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as error:
        raise ValidationError(f"invalid aws credentials file: {error}") from error
    if not parser.has_section(AWS_CREDENTIALS_SECTION):
        return "", ""
    section = parser[AWS_CREDENTIALS_SECTION]
    return section.get("aws_access_key_id", ""), section.get("aws_secret_access_key", "")


def format_azure_credentials(
    *,
    subscription_id: str,
    tenant_id: str,
    client_id: str,
    client_secret: str,
    resource_group: str,
    cloud_name: str,
) -> bytes:
    values = {
        "subscription_id": subscription_id,
        "tenant_id": tenant_id,
        "client_id": client_id,
        "client_secret": client_secret,
        "resource_group": resource_group,
        "cloud_name": cloud_name,
    }
    lines = [f"{env_name}={values[attribute]}" for env_name, attribute in _AZURE_KEYS]
    return ("\n".join(lines) + "\n").encode("utf-8")


def parse_azure_credentials(data: bytes | str) -> dict[str, str]:
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    env: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        env[key.strip()] = value.strip()
    return {attribute: env.get(env_name, "") for env_name, attribute in _AZURE_KEYS}
