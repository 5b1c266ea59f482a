"""Instance provisioning.

The provisioner creates at most one instance per identifying tag: re-runs find
the existing instance through the tag and return its state unchanged, only
re-applying the tag-scoped firewall.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from vmdeploy.deploy.providers.base import BaseCloudProvider, InstanceInfo
from vmdeploy.lib.errors import ProvisionError
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.pipeline import InstanceSpec
from vmdeploy.models.results import InstanceState

logger = get_logger(__name__)

ACTIVE_STATUS = "active"


class Provisioner:
    """Create or reuse the instance described by an InstanceSpec."""

    def __init__(
        self,
        provider: BaseCloudProvider,
        *,
        poll_interval: float = 5.0,
        timeout: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the provisioner.

        Args:
            provider: Cloud provider client
            poll_interval: Seconds between describe calls while waiting
            timeout: Upper bound on the wait for an allocated address
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self._provider = provider
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def ensure_instance(self, spec: InstanceSpec) -> InstanceState:
        """Return the instance for ``spec``, creating it only if none exists.

        Args:
            spec: Desired instance

        Returns:
            InstanceState with an allocated address

        Raises:
            ProvisionError: If the provider rejects the spec, several instances
                carry the identifying tag, or no address appears in time.
        """
        tag = spec.identifying_tag
        matches = self._provider.find_instances_by_tag(tag)

        if len(matches) > 1:
            ids = ", ".join(m["id"] for m in matches)
            raise ProvisionError(
                f"Found {len(matches)} instances tagged '{tag}' ({ids}); "
                "expected at most one"
            )

        if matches:
            info = matches[0]
            logger.info(f"Reusing instance {info['id']} ({info['name']}) tagged {tag}")
            self._provider.ensure_firewall(spec.firewall, tag=tag)
            if not _is_ready(info):
                info = self._wait_for_address(info["id"])
            return to_instance_state(info, created=False)

        ssh_key_ids = self._provider.resolve_ssh_keys(spec.ssh_key)
        info = self._provider.create_instance(
            spec,
            tags=[tag, *spec.tags],
            ssh_key_ids=ssh_key_ids,
        )
        if not info.get("id"):
            raise ProvisionError("Provider did not return an instance identifier")
        # After the create so a rejected spec leaves no firewall behind
        self._provider.ensure_firewall(spec.firewall, tag=tag)
        logger.info(f"Created instance {info['id']}; waiting for an address")

        if not _is_ready(info):
            info = self._wait_for_address(info["id"])
        return to_instance_state(info, created=True)

    def _wait_for_address(self, instance_id: str) -> InstanceInfo:
        """Poll the provider until the instance is active with an address."""
        deadline = self._clock() + self._timeout
        while True:
            info = self._provider.describe_instance(instance_id)
            if _is_ready(info):
                logger.info(f"Instance {instance_id} is active at {info['address']}")
                return info
            if info.get("status") in ("errored", "archive"):
                raise ProvisionError(
                    f"Instance {instance_id} entered status '{info['status']}'"
                )
            if self._clock() + self._poll_interval > deadline:
                raise ProvisionError(
                    f"Instance {instance_id} had no address after "
                    f"{self._timeout:g}s (status: {info.get('status')})"
                )
            logger.debug(
                f"Instance {instance_id} status={info.get('status')}; "
                f"retrying in {self._poll_interval:g}s"
            )
            self._sleep(self._poll_interval)


def _is_ready(info: InstanceInfo) -> bool:
    return bool(info.get("address")) and info.get("status") == ACTIVE_STATUS


def to_instance_state(info: InstanceInfo, *, created: bool) -> InstanceState:
    return InstanceState(
        instance_id=info["id"],
        name=info.get("name", ""),
        address=info.get("address"),
        ready=_is_ready(info),
        status=info.get("status", "unknown"),
        created=created,
    )
