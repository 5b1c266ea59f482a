"""Pydantic models for pipeline configuration.

This module defines the configuration schema for a vmdeploy pipeline:
the desired instance, the deployment unit, credential references, and the
timeouts that bound every blocking operation.
"""

import re
from enum import Enum
from typing import Annotated

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from vmdeploy.config.defaults import (
    DEFAULT_APP_DIR_ROOT,
    DEFAULT_BOOTSTRAP_REMOTE_PATH,
    DEFAULT_LOCK_STALE_AFTER,
    DEFAULT_TIMEOUTS,
    TAG_PREFIX,
)


class CloudProvider(str, Enum):
    """Supported cloud providers."""

    DIGITALOCEAN = "digitalocean"


# Regex patterns for validation
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
BRANCH_PATTERN = re.compile(r"^[\w./-]+$")

Port = Annotated[int, Field(ge=1, le=65535)]


class FirewallSpec(BaseModel):
    """Firewall attached to the instance.

    Attributes:
        name: Firewall name (looked up by name, created when missing)
        inbound_ports: TCP ports opened for inbound traffic
        source_addresses: CIDR ranges allowed to reach the inbound ports
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Firewall name")
    inbound_ports: tuple[Port, ...] = Field(
        default=(22,), description="TCP ports opened for inbound traffic"
    )
    source_addresses: tuple[str, ...] = Field(
        default=("0.0.0.0/0", "::/0"),
        description="CIDR ranges allowed to reach the inbound ports",
    )

    @field_validator("inbound_ports")
    @classmethod
    def dedupe_ports(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        """Drop duplicate ports while keeping declaration order."""
        return tuple(dict.fromkeys(v))


class InstanceSpec(BaseModel):
    """Desired compute resource.

    Immutable for a deployment generation; changing it does not mutate an
    existing instance because lookup is by tag only.

    Attributes:
        name: Instance name
        image: Machine image identifier (e.g., ubuntu-24-04-x64)
        size: Size class (e.g., s-1vcpu-2gb)
        region: Provider region slug
        ssh_key: Provider SSH key reference (fingerprint, id, or name)
        firewall: Firewall permitting the login and service ports
        login_user: User for SSH sessions
        login_port: SSH port
        tags: Extra tags applied to the instance
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Instance name")
    image: str = Field(..., description="Machine image identifier")
    size: str = Field(..., description="Size class")
    region: str = Field(default="nyc3", description="Provider region slug")
    ssh_key: str = Field(..., description="Provider SSH key reference")
    firewall: FirewallSpec = Field(..., description="Firewall configuration")
    login_user: str = Field(default="root", description="SSH login user")
    login_port: Port = Field(default=22, description="SSH port")
    tags: tuple[str, ...] = Field(default=(), description="Extra instance tags")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate instance name is a valid hostname label."""
        if not NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid instance name: {v}. "
                "Must be lowercase letters, numbers and '-', at most 63 characters"
            )
        return v

    @field_validator("image", "size", "region")
    @classmethod
    def validate_slug(cls, v: str) -> str:
        """Validate provider slugs are non-empty identifiers."""
        if not SLUG_PATTERN.match(v):
            raise ValueError(f"Invalid identifier: {v!r}")
        return v

    @property
    def identifying_tag(self) -> str:
        """Stable tag used to find this instance on re-runs."""
        return f"{TAG_PREFIX}{self.name}"


class DeploymentUnit(BaseModel):
    """The application's source repository and service graph.

    Attributes:
        repository: Git URL of the application repository
        branch: Branch tracked by the convergence driver
        directory: Checkout directory on the instance
        compose_file: Compose file path relative to the checkout
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    repository: str = Field(..., description="Git URL of the application")
    branch: str = Field(default="main", description="Tracked branch")
    directory: str | None = Field(
        default=None, description="Checkout directory on the instance"
    )
    compose_file: str = Field(
        default="docker-compose.yml", description="Compose file in the checkout"
    )

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        """Reject branch names that would need shell quoting."""
        if not BRANCH_PATTERN.match(v):
            raise ValueError(f"Invalid branch name: {v}")
        return v

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, v: str | None) -> str | None:
        """Require an absolute checkout path (no ``~`` or relative paths)."""
        if v is not None and not v.startswith("/"):
            raise ValueError(
                f"Checkout directory must be an absolute path, got {v!r}"
            )
        return v

    @property
    def checkout_name(self) -> str:
        """Directory name derived from the repository URL."""
        tail = self.repository.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        return tail[:-4] if tail.endswith(".git") else tail

    def remote_directory(self, login_user: str) -> str:
        """Return the checkout directory on the instance for a login user."""
        if self.directory:
            return self.directory
        home = "/root" if login_user == "root" else f"/home/{login_user}"
        return f"{home}/{DEFAULT_APP_DIR_ROOT}/{self.checkout_name}"


class CredentialRef(BaseModel):
    """Where to read a secret from: an environment variable or a file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    env: str | None = Field(default=None, description="Environment variable name")
    file: str | None = Field(default=None, description="Path to a file")

    @model_validator(mode="after")
    def validate_single_source(self) -> "CredentialRef":
        """Exactly one of env or file must be set."""
        if (self.env is None) == (self.file is None):
            raise ValueError("Exactly one of 'env' or 'file' must be set")
        return self

    @property
    def reference(self) -> str:
        """Human-readable reference (never the secret itself)."""
        return f"env:{self.env}" if self.env else f"file:{self.file}"


class CredentialRefs(BaseModel):
    """Credential references for the cloud API and the host login."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cloud_api: CredentialRef = Field(
        default=CredentialRef(env="DIGITALOCEAN_TOKEN"),
        description="Cloud API token reference",
    )
    host_login: CredentialRef = Field(..., description="SSH private key reference")


class BootstrapConfig(BaseModel):
    """Bootstrap stage settings.

    Attributes:
        script: Path to a custom bootstrap script (default script when unset)
        remote_path: Upload location on the instance
        force: Re-run the script even when the instance is marked bootstrapped
    """

    model_config = ConfigDict(extra="forbid")

    script: str | None = Field(default=None, description="Custom script path")
    remote_path: str = Field(
        default=DEFAULT_BOOTSTRAP_REMOTE_PATH, description="Upload path"
    )
    force: bool = Field(default=False, description="Ignore the bootstrap marker")


class ConvergeConfig(BaseModel):
    """Convergence stage settings."""

    model_config = ConfigDict(extra="forbid")

    rollback_on_failure: bool = Field(
        default=True,
        description="Restore the previous revision when build or start fails",
    )
    lock_stale_after: float = Field(
        default=DEFAULT_LOCK_STALE_AFTER,
        gt=0,
        description="Seconds without a refresh before a remote lock is broken",
    )


class HealthCheckConfig(BaseModel):
    """Post-converge HTTP probe of the service."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Probe after converge")
    path: str = Field(default="/", description="HTTP path to probe")
    required: bool = Field(
        default=False, description="Fail the pipeline when the probe fails"
    )
    max_wait: float = Field(default=60.0, ge=0, description="Probe wait bound")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the probe path is absolute."""
        return v if v.startswith("/") else f"/{v}"


class TimeoutConfig(BaseModel):
    """Bounds, in seconds, for every blocking operation."""

    model_config = ConfigDict(extra="forbid")

    connect: float = Field(default=DEFAULT_TIMEOUTS["connect"], gt=0)
    command: float = Field(default=DEFAULT_TIMEOUTS["command"], gt=0)
    provision: float = Field(default=DEFAULT_TIMEOUTS["provision"], gt=0)
    poll_interval: float = Field(default=DEFAULT_TIMEOUTS["poll_interval"], gt=0)
    readiness: float = Field(default=DEFAULT_TIMEOUTS["readiness"], ge=0)
    readiness_interval: float = Field(
        default=DEFAULT_TIMEOUTS["readiness_interval"], gt=0
    )
    lock: float = Field(default=DEFAULT_TIMEOUTS["lock"], ge=0)


class PipelineConfig(BaseModel):
    """Main pipeline configuration model.

    Attributes:
        name: Deployment name; the instance tag is derived from the instance name
        provider: Cloud provider
        instance: Desired instance
        credentials: Credential references
        deployment_unit: Application repository
        service_port: Port the application listens on
        bootstrap: Bootstrap stage settings
        converge: Convergence stage settings
        health_check: Optional post-converge probe
        timeouts: Operation bounds
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Deployment name")
    provider: CloudProvider = Field(
        default=CloudProvider.DIGITALOCEAN, description="Cloud provider"
    )
    instance: InstanceSpec = Field(..., description="Desired instance")
    credentials: CredentialRefs = Field(..., description="Credential references")
    deployment_unit: DeploymentUnit = Field(..., description="Application source")
    service_port: Port = Field(default=9000, description="Application port")
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    converge: ConvergeConfig = Field(default_factory=ConvergeConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @model_validator(mode="after")
    def validate_firewall_ports(self) -> "PipelineConfig":
        """The firewall must admit both the login port and the service port."""
        opened = set(self.instance.firewall.inbound_ports)
        missing = [
            port
            for port in (self.instance.login_port, self.service_port)
            if port not in opened
        ]
        if missing:
            raise ValueError(
                f"Firewall '{self.instance.firewall.name}' must open ports "
                f"{sorted(missing)} (login port and service port)"
            )
        return self

    @model_validator(mode="after")
    def validate_lock_staleness(self) -> "PipelineConfig":
        """A lock refreshed between steps must outlive the longest step."""
        if self.converge.lock_stale_after <= self.timeouts.command:
            raise ValueError(
                f"converge.lock_stale_after ({self.converge.lock_stale_after:g}s) "
                f"must exceed timeouts.command ({self.timeouts.command:g}s)"
            )
        return self

    @property
    def app_directory(self) -> str:
        """Checkout directory of the deployment unit on the instance."""
        return self.deployment_unit.remote_directory(self.instance.login_user)
