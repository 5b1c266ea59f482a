"""Cloud providers for vmdeploy."""

from __future__ import annotations

from vmdeploy.deploy.providers.base import BaseCloudProvider, InstanceInfo
from vmdeploy.lib.errors import DeploymentError
from vmdeploy.models.credentials import Credential
from vmdeploy.models.pipeline import CloudProvider


def create_provider(provider: CloudProvider, credential: Credential) -> BaseCloudProvider:
    """Create a cloud provider client for the configured provider."""
    if provider == CloudProvider.DIGITALOCEAN:
        from vmdeploy.deploy.providers.digitalocean import DigitalOceanProvider

        return DigitalOceanProvider(credential)

    raise DeploymentError(
        operation="provision",
        message=f"Unsupported cloud provider: {provider}",
    )


__all__ = ["BaseCloudProvider", "InstanceInfo", "create_provider"]
