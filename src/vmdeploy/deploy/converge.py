"""Convergence of the running service group to the tracked branch.

One cycle runs under the instance lock:

1. clone the deployment unit when its checkout is absent
2. fetch and hard-reset the checkout to ``origin/<branch>``
3. stop the service group
4. rebuild the images
5. start the service group

Steps are sequential and the first failing step ends the cycle. The lock is
refreshed before every step, and a cycle that finds it taken over stops. A
failure in build or start optionally restores the previous revision before the
error is raised.
"""

from __future__ import annotations

import shlex
import time
from collections.abc import Callable

from vmdeploy.config.defaults import DEFAULT_LOCK_STALE_AFTER
from vmdeploy.deploy.lock import InstanceLock
from vmdeploy.deploy.remote import Session, SessionFactory
from vmdeploy.lib.errors import (
    BuildFailed,
    ConvergeError,
    PullFailed,
    RemoteConnectionError,
    StartFailed,
)
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.credentials import Credential
from vmdeploy.models.pipeline import DeploymentUnit
from vmdeploy.models.results import CommandResult, ConvergeResult, InstanceState

logger = get_logger(__name__)


class ConvergenceDriver:
    """Bring the instance's running containers to the latest revision."""

    def __init__(
        self,
        session_factory: SessionFactory,
        deployment_unit: DeploymentUnit,
        *,
        login_user: str = "root",
        command_timeout: float | None = None,
        rollback_on_failure: bool = True,
        lock_timeout: float = 600.0,
        lock_stale_after: float = DEFAULT_LOCK_STALE_AFTER,
        lock_poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the driver.

        Args:
            session_factory: Builds a session from (address, credential)
            deployment_unit: Repository, branch and compose file to converge
            login_user: SSH user (decides the default checkout directory)
            command_timeout: Bound on each remote command
            rollback_on_failure: Restore the previous revision on build/start failure
            lock_timeout: Bound on the wait for the instance lock
            lock_stale_after: Seconds without a refresh before a remote lock is broken
            lock_poll_interval: Pause between lock attempts
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self._session_factory = session_factory
        self._unit = deployment_unit
        self._app_dir = deployment_unit.remote_directory(login_user)
        self._command_timeout = command_timeout
        self._rollback_on_failure = rollback_on_failure
        self._lock_timeout = lock_timeout
        self._lock_stale_after = lock_stale_after
        self._lock_poll_interval = lock_poll_interval
        self._sleep = sleep
        self._clock = clock

    @property
    def app_directory(self) -> str:
        """Checkout directory of the deployment unit on the instance."""
        return self._app_dir

    def converge(self, state: InstanceState, credential: Credential) -> ConvergeResult:
        """Run one convergence cycle against the instance.

        Args:
            state: Provisioned, bootstrapped instance
            credential: Host login credential

        Returns:
            ConvergeResult with the previous and new revision

        Raises:
            PullFailed: If cloning or fetching the revision fails
            ConvergeError: If stopping the service group or connecting fails
            BuildFailed: If the image rebuild fails
            StartFailed: If the service group does not start
            LockTimeoutError: If another run holds the instance lock too long
        """
        if not state.address:
            raise ConvergeError(
                f"Instance {state.instance_id} has no address", step="connect"
            )

        try:
            with self._session_factory(state.address, credential) as session:
                with InstanceLock(
                    session,
                    state.instance_id,
                    timeout=self._lock_timeout,
                    stale_after=self._lock_stale_after,
                    poll_interval=self._lock_poll_interval,
                    sleep=self._sleep,
                    clock=self._clock,
                ) as lock:
                    return self._cycle(session, lock)
        except RemoteConnectionError as exc:
            raise ConvergeError(exc.message, step="connect") from exc

    def _cycle(self, session: Session, lock: InstanceLock) -> ConvergeResult:
        app_dir = shlex.quote(self._app_dir)
        branch = shlex.quote(self._unit.branch)
        steps: list[str] = []

        cloned = False
        previous: str | None = None
        if session.execute(f"test -d {app_dir}/.git").ok:
            previous = self._revision(session)
        else:
            logger.info(f"Cloning {self._unit.repository} into {self._app_dir}")
            self._step(
                session,
                lock,
                "clone",
                f"mkdir -p $(dirname {app_dir}) && "
                f"git clone --branch {branch} {shlex.quote(self._unit.repository)} {app_dir}",
                PullFailed,
            )
            cloned = True
            steps.append("clone")

        logger.info(f"Fetching origin/{self._unit.branch}")
        self._step(
            session,
            lock,
            "pull",
            f"git -C {app_dir} fetch --prune origin {branch} && "
            f"git -C {app_dir} reset --hard origin/{branch}",
            PullFailed,
        )
        steps.append("pull")
        revision = self._revision(session) or "unknown"
        if previous and previous != revision:
            logger.info(f"Updating {previous[:12]} -> {revision[:12]}")
        else:
            logger.info(f"Revision {revision[:12]}")

        self._step(session, lock, "stop", self._compose("down"), ConvergeError)
        steps.append("stop")

        try:
            self._step(session, lock, "build", self._compose("build"), BuildFailed)
            steps.append("build")
            self._step(
                session,
                lock,
                "start",
                self._compose("up -d --remove-orphans"),
                StartFailed,
            )
            steps.append("start")
        except (BuildFailed, StartFailed) as exc:
            exc.rolled_back = self._rollback(session, lock, previous)
            raise

        logger.info(f"Service group running revision {revision[:12]}")
        return ConvergeResult(
            previous_revision=previous,
            revision=revision,
            cloned=cloned,
            steps=steps,
        )

    def _compose(self, action: str) -> str:
        compose_file = shlex.quote(self._unit.compose_file)
        return (
            f"cd {shlex.quote(self._app_dir)} && "
            f"docker compose -f {compose_file} {action}"
        )

    def _revision(self, session: Session) -> str | None:
        result = session.execute(
            f"git -C {shlex.quote(self._app_dir)} rev-parse HEAD"
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def _step(
        self,
        session: Session,
        lock: InstanceLock,
        step: str,
        command: str,
        error_class: type[ConvergeError],
    ) -> CommandResult:
        if not lock.refresh():
            raise ConvergeError(
                f"lost the deployment lock {lock.path} before step '{step}'",
                step=step,
            )
        result = session.execute(command, timeout=self._command_timeout)
        if not result.ok:
            logger.error(f"Convergence step '{step}' exited with status {result.exit_code}")
            raise error_class(
                f"step '{step}' exited with status {result.exit_code}",
                step=step,
                exit_code=result.exit_code,
                output=result.output,
            )
        return result

    def _rollback(
        self, session: Session, lock: InstanceLock, previous: str | None
    ) -> bool:
        """Restore and start ``previous``. Returns True when it is running again."""
        if not self._rollback_on_failure:
            logger.warning("Rollback disabled; service group left stopped")
            return False
        if previous is None:
            logger.warning("No previous revision to restore; service group left stopped")
            return False

        logger.warning(f"Rolling back to {previous[:12]}")
        app_dir = shlex.quote(self._app_dir)
        for command in (
            f"git -C {app_dir} reset --hard {shlex.quote(previous)}",
            self._compose("build"),
            self._compose("up -d --remove-orphans"),
        ):
            if not lock.refresh():
                return False
            result = session.execute(command, timeout=self._command_timeout)
            if not result.ok:
                logger.error(
                    f"Rollback to {previous[:12]} failed with status {result.exit_code}"
                )
                return False
        logger.info(f"Rolled back to {previous[:12]}")
        return True
