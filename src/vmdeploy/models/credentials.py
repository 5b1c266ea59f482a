"""Credential models.

Credentials are resolved once per invocation and only live in memory; they
are never part of the persisted deployment state.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class CredentialScope(str, Enum):
    """What a credential grants access to."""

    CLOUD_API = "cloud_api"
    HOST_LOGIN = "host_login"


class Credential(BaseModel):
    """Secret material for one scope.

    Attributes:
        scope: Cloud API token or host login key
        secret: Opaque secret value (masked in reprs and dumps)
        source: Reference the secret was read from, for error messages
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    scope: CredentialScope = Field(..., description="Credential scope")
    secret: SecretStr = Field(..., description="Secret value")
    source: str = Field(..., description="Reference the secret was read from")

    def reveal(self) -> str:
        """Return the raw secret value."""
        return self.secret.get_secret_value()


class Credentials(BaseModel):
    """Both credentials needed by a full pipeline run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    cloud_api: Credential = Field(..., description="Cloud API credential")
    host_login: Credential = Field(..., description="SSH login credential")
