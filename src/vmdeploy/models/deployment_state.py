"""Deployment state models for persisted deployments."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from vmdeploy.models.pipeline import CloudProvider


class DeploymentRecord(BaseModel):
    """Persisted deployment record for a single deployment name."""

    model_config = ConfigDict(extra="forbid")

    provider: CloudProvider = Field(
        ..., description="Cloud provider for this deployment"
    )
    instance_id: str = Field(..., description="Provider-specific instance identifier")
    instance_name: str = Field(..., description="Instance name")
    address: str | None = Field(default=None, description="Public address")
    endpoint: str | None = Field(default=None, description="Service URL")
    status: str = Field(..., description="Deployment status")
    bootstrapped: bool = Field(default=False, description="Bootstrap completed")
    revision: str | None = Field(default=None, description="Running revision")
    created_at: datetime | None = Field(
        default=None, description="Initial deployment timestamp"
    )
    updated_at: datetime | None = Field(
        default=None, description="Last update timestamp"
    )
    config_hash: str = Field(..., description="Pipeline configuration hash")


class DeploymentState(BaseModel):
    """Top-level deployment state stored on disk."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="State file version")
    deployments: dict[str, DeploymentRecord] = Field(
        default_factory=dict, description="Deployments keyed by deployment name"
    )
