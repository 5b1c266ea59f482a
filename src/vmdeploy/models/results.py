"""Result models returned by the pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command.

    Attributes:
        command: Command line as sent to the host
        exit_code: Exit status reported by the remote shell
        stdout: Captured standard output
        stderr: Captured standard error
    """

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True when the command exited with status 0."""
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr for error reports."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class InstanceState(BaseModel):
    """Observed state of the provisioned instance.

    Attributes:
        instance_id: Provider identifier
        name: Instance name
        address: Public IPv4 address
        ready: Provider reports the instance active with an address
        status: Raw provider status
        created: True only when this invocation created the instance
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    instance_id: str = Field(..., description="Provider instance identifier")
    name: str = Field(..., description="Instance name")
    address: str | None = Field(default=None, description="Public address")
    ready: bool = Field(default=False, description="Instance is active")
    status: str = Field(default="unknown", description="Provider status")
    created: bool = Field(default=False, description="Created by this call")

    def endpoint(self, port: int, scheme: str = "http") -> str | None:
        """Return the service URL for a port, if an address is known."""
        if not self.address:
            return None
        return f"{scheme}://{self.address}:{port}"


class BootstrapResult(BaseModel):
    """Result of the bootstrap stage."""

    model_config = ConfigDict(extra="forbid")

    skipped: bool = Field(default=False, description="Marker found, script not run")
    marker_path: str = Field(..., description="Bootstrap marker on the instance")
    exit_code: int | None = Field(default=None, description="Script exit status")
    output: str = Field(default="", description="Captured script output")


class ConvergeResult(BaseModel):
    """Result of the convergence stage.

    Attributes:
        previous_revision: Revision checked out before the pull (None on clone)
        revision: Revision running after the cycle
        cloned: The deployment unit was cloned during this run
        steps: Names of the steps that ran, in order
        healthy: Outcome of the optional service probe (None when not probed)
    """

    model_config = ConfigDict(extra="forbid")

    previous_revision: str | None = Field(default=None)
    revision: str = Field(..., description="Revision now running")
    cloned: bool = Field(default=False)
    steps: list[str] = Field(default_factory=list)
    healthy: bool | None = Field(default=None)

    @property
    def changed(self) -> bool:
        """Whether the running revision moved."""
        return self.previous_revision != self.revision


class PipelineResult(BaseModel):
    """Outcome of a full pipeline run."""

    model_config = ConfigDict(extra="forbid")

    instance: InstanceState
    bootstrap: BootstrapResult | None = None
    converge: ConvergeResult | None = None
    endpoint: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)

    def record(self, event: str, **details: Any) -> None:
        """Append a timestamped stage event."""
        self.history.append(
            {
                "event": event,
                "at": datetime.now(timezone.utc).isoformat(),
                **details,
            }
        )
