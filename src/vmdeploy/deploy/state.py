"""Local cache of deployment records.

The provider is the source of truth for what exists; this file only remembers
what the last run reported so ``vmdeploy status`` and ``vmdeploy destroy``
know which instance a config maps to. A cache that cannot be parsed is moved
aside and started afresh rather than failing the run that touches it.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from vmdeploy.config.defaults import STATE_DIR_NAME, STATE_FILE_NAME
from vmdeploy.lib.errors import DeploymentError
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.deployment_state import DeploymentRecord, DeploymentState
from vmdeploy.models.pipeline import PipelineConfig

logger = get_logger(__name__)

STATE_VERSION = "1.0"

# Record fields that describe progress on one instance and survive later stages
CARRIED_FIELDS = ("bootstrapped", "revision", "endpoint", "created_at")


def get_state_path(config_path: Path) -> Path:
    """Return the deployment state file path for a pipeline config."""
    return config_path.parent / STATE_DIR_NAME / STATE_FILE_NAME


def compute_config_hash(config: PipelineConfig) -> str:
    """Compute a deterministic hash for the pipeline configuration.

    Credential references are excluded so that moving a key file does not
    look like a new deployment generation.
    """
    payload = json.dumps(
        config.model_dump(mode="json", exclude={"credentials"}),
        sort_keys=True,
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


class DeploymentStore:
    """Deployment records keyed by deployment name, kept in one JSON file.

    Example:
        >>> store = DeploymentStore.for_config(Path("vmdeploy.yaml"))
        >>> record = store.get("api")
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_config(cls, config_path: Path) -> DeploymentStore:
        """Store kept beside a pipeline config file."""
        return cls(get_state_path(config_path))

    @property
    def quarantine_path(self) -> Path:
        """Where an unreadable cache is moved before starting afresh."""
        return self.path.with_suffix(self.path.suffix + ".corrupt")

    def get(self, name: str) -> DeploymentRecord | None:
        """Return the record for a deployment, if one was cached."""
        return self.load().deployments.get(name)

    def advance(self, name: str, record: DeploymentRecord) -> DeploymentRecord:
        """Store the latest stage of a deployment.

        Fields in ``CARRIED_FIELDS`` that ``record`` does not set explicitly
        are kept from the cached record when both describe the same instance.
        A different instance starts a fresh history.

        Raises:
            DeploymentError: If the cache cannot be written
        """
        state = self.load()
        existing = state.deployments.get(name)
        now = datetime.now(timezone.utc)

        updates: dict[str, object] = {"updated_at": now}
        if existing is not None and existing.instance_id == record.instance_id:
            for field in CARRIED_FIELDS:
                if field not in record.model_fields_set:
                    updates[field] = getattr(existing, field)
        if updates.get("created_at") is None and record.created_at is None:
            updates["created_at"] = now

        stored = record.model_copy(update=updates)
        state.deployments[name] = stored
        self.save(state)
        return stored

    def remove(self, name: str) -> bool:
        """Forget a deployment. Returns True if a record was cached."""
        state = self.load()
        if state.deployments.pop(name, None) is None:
            return False
        self.save(state)
        return True

    def load(self) -> DeploymentState:
        """Read the cache; a missing, blank or unreadable file reads as empty."""
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return DeploymentState(version=STATE_VERSION)
        except OSError as exc:
            logger.warning(f"Ignoring unreadable deployment cache {self.path}: {exc}")
            return DeploymentState(version=STATE_VERSION)

        if not content.strip():
            return DeploymentState(version=STATE_VERSION)

        try:
            return DeploymentState.model_validate_json(content)
        except ValidationError as exc:
            self._quarantine(exc)
            return DeploymentState(version=STATE_VERSION)

    def save(self, state: DeploymentState) -> None:
        """Write the cache atomically.

        Raises:
            DeploymentError: If the file cannot be written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(payload, encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            raise DeploymentError(
                operation="state",
                message=f"Failed to write deployment state to {self.path}: {exc}",
            ) from exc

    def _quarantine(self, exc: ValidationError) -> None:
        problem = exc.errors()[0]["msg"]
        try:
            self.path.replace(self.quarantine_path)
        except OSError as move_exc:
            logger.warning(
                f"Deployment cache {self.path} is corrupt ({problem}) and could "
                f"not be moved aside ({move_exc}); it will be overwritten"
            )
            return
        logger.warning(
            f"Deployment cache {self.path} is corrupt ({problem}); moved to "
            f"{self.quarantine_path.name} and starting afresh"
        )
