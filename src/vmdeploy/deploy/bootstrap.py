"""One-time instance bootstrap.

Uploads the bootstrap script, runs it, and leaves a marker file behind so the
next pipeline run skips the stage. The script itself is idempotent, so
``force`` re-runs are safe.
"""

from __future__ import annotations

import shlex

from vmdeploy.config.defaults import BOOTSTRAP_MARKER_PATH, DEFAULT_BOOTSTRAP_REMOTE_PATH
from vmdeploy.deploy.remote import Session, SessionFactory
from vmdeploy.lib.errors import (
    ConnectionFailed,
    RemoteConnectionError,
    ScriptExecutionFailed,
)
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.credentials import Credential
from vmdeploy.models.pipeline import DeploymentUnit
from vmdeploy.models.results import BootstrapResult, InstanceState

logger = get_logger(__name__)


class Bootstrapper:
    """Install the container runtime and perform the first deployment."""

    def __init__(
        self,
        session_factory: SessionFactory,
        deployment_unit: DeploymentUnit,
        *,
        login_user: str = "root",
        remote_path: str = DEFAULT_BOOTSTRAP_REMOTE_PATH,
        marker_path: str = BOOTSTRAP_MARKER_PATH,
        command_timeout: float | None = None,
        force: bool = False,
    ) -> None:
        """Initialize the bootstrapper.

        Args:
            session_factory: Builds a session from (address, credential)
            deployment_unit: Application repository to clone
            login_user: SSH user (decides the default checkout directory)
            remote_path: Where the script is uploaded
            marker_path: File whose presence means "already bootstrapped"
            command_timeout: Bound on the script run
            force: Run the script even when the marker exists
        """
        self._session_factory = session_factory
        self._unit = deployment_unit
        self._login_user = login_user
        self._remote_path = remote_path
        self._marker_path = marker_path
        self._command_timeout = command_timeout
        self._force = force

    @property
    def app_directory(self) -> str:
        """Checkout directory of the deployment unit on the instance."""
        return self._unit.remote_directory(self._login_user)

    def bootstrap(
        self, state: InstanceState, credential: Credential, script: str
    ) -> BootstrapResult:
        """Upload and run the bootstrap script unless already bootstrapped.

        Args:
            state: Provisioned instance (must have an address)
            credential: Host login credential
            script: Bootstrap script content

        Returns:
            BootstrapResult (``skipped`` when the marker was found)

        Raises:
            ConnectionFailed: If no session can be opened or the upload fails
            ScriptExecutionFailed: If the script exits non-zero
        """
        if not state.address:
            raise ConnectionFailed(f"Instance {state.instance_id} has no address")

        try:
            with self._session_factory(state.address, credential) as session:
                return self._run(session, script)
        except RemoteConnectionError as exc:
            raise ConnectionFailed(exc.message) from exc

    def _run(self, session: Session, script: str) -> BootstrapResult:
        marker = _home_path(self._marker_path)

        if not self._force and session.execute(f"test -f {marker}").ok:
            logger.info("Instance already bootstrapped; skipping")
            return BootstrapResult(skipped=True, marker_path=self._marker_path)

        logger.info(f"Uploading bootstrap script to {self._remote_path}")
        session.upload(script, self._remote_path, mode=0o755)

        env = {
            "REPO_URL": self._unit.repository,
            "BRANCH": self._unit.branch,
            "APP_DIR": self.app_directory,
            "COMPOSE_FILE": self._unit.compose_file,
            "LOGIN_USER": self._login_user,
        }
        logger.info("Running bootstrap script")
        result = session.execute(
            f"bash {shlex.quote(self._remote_path)}",
            timeout=self._command_timeout,
            env=env,
        )
        if not result.ok:
            logger.error(f"Bootstrap script failed with exit status {result.exit_code}")
            raise ScriptExecutionFailed(result.exit_code, result.stdout, result.stderr)

        mark = session.execute(
            f"mkdir -p $(dirname {marker}) && date -u +%Y-%m-%dT%H:%M:%SZ > {marker}"
        )
        if not mark.ok:
            raise ScriptExecutionFailed(mark.exit_code, mark.stdout, mark.stderr)

        logger.info("Bootstrap complete")
        return BootstrapResult(
            skipped=False,
            marker_path=self._marker_path,
            exit_code=result.exit_code,
            output=result.output,
        )


def _home_path(path: str) -> str:
    """Quote a remote path, leaving a leading ``~/`` for the shell to expand."""
    if path.startswith("~/"):
        return f"~/{shlex.quote(path[2:])}"
    return shlex.quote(path)
