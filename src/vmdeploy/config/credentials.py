"""Credential resolution.

Credential references from the configuration are resolved to secrets at the
start of every invocation. Secrets are kept in memory only.
"""

from __future__ import annotations

from pathlib import Path

from vmdeploy.config.env_loader import get_env_var
from vmdeploy.lib.errors import CredentialError
from vmdeploy.models.credentials import Credential, Credentials, CredentialScope
from vmdeploy.models.pipeline import CredentialRef, CredentialRefs


def resolve_credential(ref: CredentialRef, scope: CredentialScope) -> Credential:
    """Resolve one credential reference.

    Args:
        ref: Environment variable or file reference
        scope: Scope recorded on the resulting credential

    Returns:
        Credential holding the secret

    Raises:
        CredentialError: If the variable is unset or the file is unreadable/empty
    """
    if ref.env:
        value = get_env_var(ref.env)
        if value is None:
            raise CredentialError(
                ref.reference, f"environment variable {ref.env} is not set"
            )
    else:
        path = Path(ref.file or "").expanduser()
        try:
            value = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialError(
                ref.reference, f"cannot read {path}: {exc.strerror or exc}"
            ) from exc
        if scope is CredentialScope.CLOUD_API:
            value = value.strip()

    if not value.strip():
        raise CredentialError(ref.reference, "value is empty")

    return Credential(scope=scope, secret=value, source=ref.reference)


def resolve_credentials(refs: CredentialRefs) -> Credentials:
    """Resolve the cloud API and host login credentials of a pipeline."""
    return Credentials(
        cloud_api=resolve_credential(refs.cloud_api, CredentialScope.CLOUD_API),
        host_login=resolve_credential(refs.host_login, CredentialScope.HOST_LOGIN),
    )
