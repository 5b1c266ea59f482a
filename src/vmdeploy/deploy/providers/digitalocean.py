"""DigitalOcean provider.

Talks to the DigitalOcean v2 REST API with ``requests``. Droplets are found
again on re-runs through the identifying tag, and the firewall is attached by
tag so it follows the droplet.
"""

from __future__ import annotations

import contextlib
from typing import Any

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout

from vmdeploy.deploy.providers.base import BaseCloudProvider, InstanceInfo
from vmdeploy.lib.errors import DeploymentError, ProvisionError
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.credentials import Credential
from vmdeploy.models.pipeline import FirewallSpec, InstanceSpec

logger = get_logger(__name__)


class DigitalOceanProvider(BaseCloudProvider):
    """Cloud provider backed by DigitalOcean droplets.

    Example:
        >>> provider = DigitalOceanProvider(credential)
        >>> provider.find_instances_by_tag("vmdeploy:api")
        []
    """

    DEFAULT_BASE_URL = "https://api.digitalocean.com/v2"
    DEFAULT_TIMEOUT = 30.0  # seconds per API call
    PAGE_SIZE = 200

    def __init__(
        self,
        credential: Credential,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            credential: Cloud API credential (personal access token)
            base_url: API base URL
            timeout: Per-request timeout in seconds
            session: Optional preconfigured session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {credential.reveal()}",
                "Content-Type": "application/json",
            }
        )

    def create_instance(
        self,
        spec: InstanceSpec,
        *,
        tags: list[str],
        ssh_key_ids: list[str],
    ) -> InstanceInfo:
        """Create a droplet."""
        payload = {
            "name": spec.name,
            "region": spec.region,
            "size": spec.size,
            "image": spec.image,
            "ssh_keys": ssh_key_ids,
            "tags": tags,
            "monitoring": True,
        }
        logger.info(
            f"Creating droplet {spec.name} ({spec.size}, {spec.image}, {spec.region})"
        )
        data = self._request("POST", "/droplets", json=payload)
        return _normalize_droplet(data.get("droplet", {}))

    def describe_instance(self, instance_id: str) -> InstanceInfo:
        """Fetch a droplet by id."""
        data = self._request("GET", f"/droplets/{instance_id}")
        return _normalize_droplet(data.get("droplet", {}))

    def find_instances_by_tag(self, tag: str) -> list[InstanceInfo]:
        """List droplets carrying a tag."""
        return [
            _normalize_droplet(d)
            for d in self._paginate("/droplets", "droplets", {"tag_name": tag})
        ]

    def list_instances(self) -> list[InstanceInfo]:
        """List every droplet of the account."""
        return [_normalize_droplet(d) for d in self._paginate("/droplets", "droplets")]

    def resolve_ssh_keys(self, reference: str) -> list[str]:
        """Resolve an SSH key id, fingerprint or name."""
        for key in self._paginate("/account/keys", "ssh_keys"):
            if reference in (str(key.get("id")), key.get("fingerprint"), key.get("name")):
                return [str(key["id"])]
        raise ProvisionError(
            f"SSH key '{reference}' is not registered with the DigitalOcean account"
        )

    def ensure_firewall(self, firewall: FirewallSpec, *, tag: str) -> str:
        """Create the firewall or extend an existing one to cover the tag."""
        self._ensure_tag(tag)
        wanted_rules = [
            {
                "protocol": "tcp",
                "ports": str(port),
                "sources": {"addresses": list(firewall.source_addresses)},
            }
            for port in firewall.inbound_ports
        ]

        existing = next(
            (
                fw
                for fw in self._paginate("/firewalls", "firewalls")
                if fw.get("name") == firewall.name
            ),
            None,
        )
        if existing is None:
            logger.info(f"Creating firewall {firewall.name}")
            data = self._request(
                "POST",
                "/firewalls",
                json={
                    "name": firewall.name,
                    "inbound_rules": wanted_rules,
                    "outbound_rules": _ALLOW_ALL_OUTBOUND,
                    "tags": [tag],
                },
            )
            return str(data.get("firewall", {}).get("id", ""))

        firewall_id = str(existing["id"])
        opened = {
            str(rule.get("ports"))
            for rule in existing.get("inbound_rules", [])
            if rule.get("protocol") == "tcp"
        }
        missing = [rule for rule in wanted_rules if rule["ports"] not in opened]
        if missing:
            logger.info(
                f"Opening ports {[r['ports'] for r in missing]} on firewall "
                f"{firewall.name}"
            )
            self._request(
                "POST", f"/firewalls/{firewall_id}/rules", json={"inbound_rules": missing}
            )
        if tag not in existing.get("tags", []):
            self._request("POST", f"/firewalls/{firewall_id}/tags", json={"tags": [tag]})
        return firewall_id

    def destroy_instance(self, instance_id: str) -> None:
        """Delete a droplet."""
        try:
            self._request("DELETE", f"/droplets/{instance_id}")
        except ProvisionError as exc:
            raise DeploymentError(
                operation="destroy",
                message=f"Failed to destroy droplet {instance_id}: {exc.message}",
            ) from exc

    def _ensure_tag(self, tag: str) -> None:
        """Create a tag; an already existing tag is fine."""
        try:
            self._request("POST", "/tags", json={"name": tag})
        except ProvisionError as exc:
            if exc.status_code != 422:
                raise

    def _paginate(
        self,
        path: str,
        key: str,
        params: dict[str, str | int] | None = None,
    ) -> list[dict[str, Any]]:
        """Collect every page of a list endpoint."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query: dict[str, str | int] = {"page": page, "per_page": self.PAGE_SIZE}
            if params:
                query.update(params)
            data = self._request("GET", path, params=query)
            items.extend(data.get(key, []))
            if not data.get("links", {}).get("pages", {}).get("next"):
                return items
            page += 1

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str | int] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an API request with error handling.

        Args:
            method: HTTP method
            path: Path below the base URL
            params: Query parameters
            json: JSON body

        Returns:
            Decoded JSON body ({} for empty responses)

        Raises:
            ProvisionError: Connection/timeout issues or a non-2xx status
        """
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except (Timeout, RequestsConnectionError) as e:
            raise ProvisionError(
                f"DigitalOcean API unreachable ({method} {path}): {e}"
            ) from e

        if not response.ok:
            detail = None
            with contextlib.suppress(Exception):
                detail = response.json().get("message")
            raise ProvisionError(
                f"DigitalOcean API rejected {method} {path} "
                f"({response.status_code}): {detail or response.reason}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()


_ALLOW_ALL_OUTBOUND = [
    {
        "protocol": protocol,
        "ports": "all",
        "destinations": {"addresses": ["0.0.0.0/0", "::/0"]},
    }
    for protocol in ("tcp", "udp")
] + [{"protocol": "icmp", "destinations": {"addresses": ["0.0.0.0/0", "::/0"]}}]


def _normalize_droplet(droplet: dict[str, Any]) -> InstanceInfo:
    """Flatten a droplet payload into InstanceInfo."""
    address = None
    for network in droplet.get("networks", {}).get("v4", []):
        if network.get("type") == "public" and network.get("ip_address"):
            address = str(network["ip_address"])
            break
    return {
        "id": str(droplet.get("id", "")),
        "name": droplet.get("name", ""),
        "address": address,
        "status": droplet.get("status", "unknown"),
        "tags": list(droplet.get("tags", [])),
    }
