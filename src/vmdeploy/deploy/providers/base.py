"""Base interface for cloud providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from vmdeploy.models.pipeline import FirewallSpec, InstanceSpec

# Normalized instance payload returned by providers:
#   {"id": str, "name": str, "address": str | None, "status": str, "tags": list[str]}
InstanceInfo = dict[str, Any]


class BaseCloudProvider(ABC):
    """Abstract base class for cloud providers.

    Providers return normalized :data:`InstanceInfo` dictionaries so the
    provisioner never sees provider-specific payloads.
    """

    @abstractmethod
    def create_instance(
        self,
        spec: InstanceSpec,
        *,
        tags: list[str],
        ssh_key_ids: list[str],
    ) -> InstanceInfo:
        """Create an instance and return its (possibly address-less) info.

        Args:
            spec: Desired instance
            tags: Tags to apply, including the identifying tag
            ssh_key_ids: Provider SSH key identifiers to install

        Returns:
            Normalized instance info

        Raises:
            ProvisionError: If the provider rejects the request.
        """

    @abstractmethod
    def describe_instance(self, instance_id: str) -> InstanceInfo:
        """Return current info for an instance.

        Raises:
            ProvisionError: If the instance is unknown or the call fails.
        """

    @abstractmethod
    def find_instances_by_tag(self, tag: str) -> list[InstanceInfo]:
        """Return every instance carrying a tag."""

    @abstractmethod
    def list_instances(self) -> list[InstanceInfo]:
        """Return every instance visible to the credential."""

    @abstractmethod
    def resolve_ssh_keys(self, reference: str) -> list[str]:
        """Resolve an SSH key reference (id, fingerprint or name) to key ids.

        Raises:
            ProvisionError: If no key matches.
        """

    @abstractmethod
    def ensure_firewall(self, firewall: FirewallSpec, *, tag: str) -> str:
        """Create or reuse a firewall that applies to instances with ``tag``.

        Returns:
            Provider firewall identifier

        Raises:
            ProvisionError: If the firewall cannot be created or updated.
        """

    @abstractmethod
    def destroy_instance(self, instance_id: str) -> None:
        """Destroy an instance.

        Raises:
            DeploymentError: If the destroy call fails.
        """
