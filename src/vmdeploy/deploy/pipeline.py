"""End-to-end deployment pipeline.

Wires the stages together in a fixed order:

    provision -> readiness -> bootstrap -> converge -> health check

Stages are strictly sequential and the first failure aborts the run. The local
deployment record is refreshed after each stage so ``vmdeploy status`` can
report how far a failed run got.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from pathlib import Path

from vmdeploy.deploy.bootstrap import Bootstrapper
from vmdeploy.deploy.converge import ConvergenceDriver
from vmdeploy.deploy.providers.base import BaseCloudProvider
from vmdeploy.deploy.provisioner import Provisioner, to_instance_state
from vmdeploy.deploy.readiness import await_ready, wait_for_service
from vmdeploy.deploy.remote import SessionFactory
from vmdeploy.deploy.scripts import generate_bootstrap_script, load_script
from vmdeploy.deploy.state import DeploymentStore, compute_config_hash
from vmdeploy.lib.errors import DeploymentError, ProvisionError, ReadinessTimeout
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.credentials import Credential, Credentials
from vmdeploy.models.deployment_state import DeploymentRecord
from vmdeploy.models.pipeline import PipelineConfig
from vmdeploy.models.results import (
    BootstrapResult,
    ConvergeResult,
    InstanceState,
    PipelineResult,
)

logger = get_logger(__name__)


def resolve_bootstrap_script(
    config: PipelineConfig, base_dir: Path | None = None
) -> str:
    """Return the bootstrap script content for a pipeline.

    A configured ``bootstrap.script`` is read relative to ``base_dir`` (the
    config file's directory); otherwise the built-in script is rendered.

    Raises:
        FileNotFoundError: If the configured script does not exist
    """
    if config.bootstrap.script:
        script_path = Path(config.bootstrap.script).expanduser()
        if not script_path.is_absolute() and base_dir is not None:
            script_path = base_dir / script_path
        return load_script(script_path)
    return generate_bootstrap_script(
        branch=config.deployment_unit.branch,
        compose_file=config.deployment_unit.compose_file,
        login_user=config.instance.login_user,
    )


def write_outputs(path: str | Path, values: Mapping[str, str | None]) -> None:
    """Append ``key=value`` lines for downstream CI steps.

    Uses the format of the ``$GITHUB_OUTPUT`` file; keys with no value are
    skipped.

    Raises:
        DeploymentError: If the file cannot be written
    """
    lines = [f"{key}={value}\n" for key, value in values.items() if value]
    try:
        with Path(path).open("a", encoding="utf-8") as handle:
            handle.writelines(lines)
    except OSError as exc:
        raise DeploymentError(
            operation="outputs",
            message=f"Failed to write outputs to {path}: {exc}",
        ) from exc


class DeploymentPipeline:
    """Run the provisioning and deployment stages for one pipeline config.

    Example:
        >>> store = DeploymentStore.for_config(config_path)
        >>> pipeline = DeploymentPipeline(config, provider, factory, store)
        >>> result = pipeline.run(credentials)
        >>> print(result.endpoint)
    """

    def __init__(
        self,
        config: PipelineConfig,
        provider: BaseCloudProvider,
        session_factory: SessionFactory,
        store: DeploymentStore | None = None,
        *,
        script: str | None = None,
        script_base_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Validated pipeline configuration
            provider: Cloud provider client
            session_factory: Builds remote sessions from (address, credential)
            store: Local deployment record cache (no record kept when None)
            script: Bootstrap script content (resolved from the config when None)
            script_base_dir: Directory a relative ``bootstrap.script`` is read from
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self.config = config
        self.provider = provider
        self.store = store
        self._session_factory = session_factory
        self._script = script
        self._script_base_dir = script_base_dir
        self._sleep = sleep
        self._clock = clock
        self._config_hash = compute_config_hash(config)

        timeouts = config.timeouts
        self.provisioner = Provisioner(
            provider,
            poll_interval=timeouts.poll_interval,
            timeout=timeouts.provision,
            sleep=sleep,
            clock=clock,
        )
        self.driver = ConvergenceDriver(
            session_factory,
            config.deployment_unit,
            login_user=config.instance.login_user,
            command_timeout=timeouts.command,
            rollback_on_failure=config.converge.rollback_on_failure,
            lock_timeout=timeouts.lock,
            lock_stale_after=config.converge.lock_stale_after,
            lock_poll_interval=timeouts.poll_interval,
            sleep=sleep,
            clock=clock,
        )

    @property
    def script(self) -> str:
        """Bootstrap script content, rendered on first use."""
        if self._script is None:
            self._script = resolve_bootstrap_script(
                self.config, base_dir=self._script_base_dir
            )
        return self._script

    def provision(self) -> InstanceState:
        """Create or reuse the instance."""
        logger.info(f"Ensuring instance '{self.config.instance.name}'")
        state = self.provisioner.ensure_instance(self.config.instance)
        self._save_record(state, status="provisioned")
        return state

    def locate_instance(self) -> InstanceState | None:
        """Find the managed instance without creating one.

        Raises:
            ProvisionError: If several instances carry the identifying tag
        """
        tag = self.config.instance.identifying_tag
        matches = self.provider.find_instances_by_tag(tag)
        if not matches:
            return None
        if len(matches) > 1:
            raise ProvisionError(
                f"Found {len(matches)} instances tagged '{tag}'; expected at most one"
            )
        return to_instance_state(matches[0], created=False)

    def wait_until_ready(self, state: InstanceState) -> None:
        """Block until the login port accepts connections.

        Raises:
            ReadinessTimeout: If the port stays closed for the whole wait
        """
        port = self.config.instance.login_port
        max_wait = self.config.timeouts.readiness
        if not state.address:
            raise ReadinessTimeout("<no address>", port, max_wait)
        logger.info(f"Waiting for {state.address}:{port}")
        ready = await_ready(
            state.address,
            max_wait,
            port=port,
            interval=self.config.timeouts.readiness_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        if not ready:
            raise ReadinessTimeout(state.address, port, max_wait)

    def bootstrap(
        self, state: InstanceState, credential: Credential, *, force: bool = False
    ) -> BootstrapResult:
        """Run the bootstrap stage against a ready instance."""
        bootstrapper = Bootstrapper(
            self._session_factory,
            self.config.deployment_unit,
            login_user=self.config.instance.login_user,
            remote_path=self.config.bootstrap.remote_path,
            command_timeout=self.config.timeouts.command,
            force=force or self.config.bootstrap.force,
        )
        result = bootstrapper.bootstrap(state, credential, self.script)
        self._save_record(state, status="bootstrapped", bootstrapped=True)
        return result

    def converge(self, state: InstanceState, credential: Credential) -> ConvergeResult:
        """Run one convergence cycle and the optional health check."""
        result = self.driver.converge(state, credential)
        endpoint = state.endpoint(self.config.service_port)
        healthy = self.check_health(endpoint)
        if healthy is not None:
            result = result.model_copy(update={"healthy": healthy})
        self._save_record(
            state,
            status="deployed",
            bootstrapped=True,
            revision=result.revision,
            endpoint=endpoint,
        )
        return result

    def check_health(self, endpoint: str | None) -> bool | None:
        """Probe the service endpoint if the health check is enabled.

        Returns:
            None when disabled, otherwise the probe outcome

        Raises:
            DeploymentError: If the probe fails and the check is required
        """
        check = self.config.health_check
        if not check.enabled or endpoint is None:
            return None
        url = f"{endpoint}{check.path}"
        logger.info(f"Probing {url}")
        healthy = wait_for_service(
            url,
            check.max_wait,
            interval=self.config.timeouts.readiness_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        if not healthy:
            if check.required:
                raise DeploymentError(
                    operation="health_check",
                    message=f"{url} did not answer within {check.max_wait:g}s",
                )
            logger.warning(f"{url} did not answer within {check.max_wait:g}s")
        return healthy

    def run(self, credentials: Credentials, force_bootstrap: bool = False) -> PipelineResult:
        """Execute every stage in order.

        Args:
            credentials: Resolved cloud API and host login credentials
            force_bootstrap: Re-run the bootstrap script even if already done

        Returns:
            PipelineResult with the endpoint and per-stage history

        Raises:
            DeploymentError: The first stage failure, unchanged
        """
        state = self.provision()
        result = PipelineResult(instance=state)
        result.record(
            "provisioned",
            instance_id=state.instance_id,
            address=state.address,
            created=state.created,
        )

        try:
            self.wait_until_ready(state)
            result.record("ready", address=state.address)

            result.bootstrap = self.bootstrap(
                state, credentials.host_login, force=force_bootstrap
            )
            result.record("bootstrapped", skipped=result.bootstrap.skipped)

            result.converge = self.converge(state, credentials.host_login)
            result.record(
                "converged",
                revision=result.converge.revision,
                previous_revision=result.converge.previous_revision,
                healthy=result.converge.healthy,
            )
        except DeploymentError as exc:
            result.record("failed", kind=exc.kind, operation=exc.operation)
            self._save_record(state, status="failed")
            raise

        result.endpoint = state.endpoint(self.config.service_port)
        logger.info(f"Deployment '{self.config.name}' available at {result.endpoint}")
        return result

    def _save_record(self, state: InstanceState, *, status: str, **updates: object) -> None:
        if self.store is None:
            return
        record = DeploymentRecord(
            provider=self.config.provider,
            instance_id=state.instance_id,
            instance_name=state.name or self.config.instance.name,
            address=state.address,
            status=status,
            config_hash=self._config_hash,
            **updates,
        )
        try:
            self.store.advance(self.config.name, record)
        except DeploymentError as exc:
            logger.warning(f"Deployment record not saved: {exc.message}")
