"""CLI commands for running vmdeploy pipelines.

Implements the pipeline commands: ``run`` for the full pipeline, one command
per stage (``provision``, ``bootstrap``, ``converge``), and the ``status``,
``destroy`` and ``workflow`` helpers.
"""

from __future__ import annotations

import sys
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

import click

from vmdeploy.config.credentials import resolve_credential, resolve_credentials
from vmdeploy.config.defaults import DEFAULT_CONFIG_FILE
from vmdeploy.config.loader import ConfigLoader
from vmdeploy.deploy.pipeline import DeploymentPipeline, write_outputs
from vmdeploy.deploy.providers import create_provider
from vmdeploy.deploy.remote import session_factory
from vmdeploy.deploy.scripts import generate_github_workflow
from vmdeploy.deploy.state import DeploymentStore
from vmdeploy.lib.errors import (
    ConfigError,
    CredentialError,
    DeploymentError,
)
from vmdeploy.lib.errors import FileNotFoundError as ConfigFileNotFoundError
from vmdeploy.lib.logging_config import get_logger, setup_logging
from vmdeploy.models.credentials import Credential, CredentialScope
from vmdeploy.models.pipeline import PipelineConfig
from vmdeploy.models.results import InstanceState

logger = get_logger(__name__)

# Lines of remote output echoed on failure
OUTPUT_TAIL_LINES = 20


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in pipeline commands.

    Catches and handles configuration, credential, and deployment errors
    with appropriate logging, user feedback, and exit codes.

    Exit codes:
        2: Configuration or credential error
        3: Deployment/execution error
    """
    try:
        yield
    except (ConfigError, CredentialError, ConfigFileNotFoundError) as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e}", err=True)
        sys.exit(2)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e.operation} failed ({e.kind})", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        if e.output:
            tail = e.output.strip().splitlines()[-OUTPUT_TAIL_LINES:]
            click.echo("  Remote output:", err=True)
            for line in tail:
                click.echo(f"    {line}", err=True)
        if getattr(e, "rolled_back", False):
            click.secho("  Previous revision restored.", fg="yellow", err=True)
        sys.exit(3)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)


def config_argument(func):  # type: ignore[no-untyped-def]
    """Shared CONFIG argument."""
    return click.argument(
        "config_file",
        type=click.Path(exists=True, dir_okay=False),
        default=DEFAULT_CONFIG_FILE,
        required=False,
    )(func)


def verbosity_options(func):  # type: ignore[no-untyped-def]
    """Shared --verbose/--quiet options."""
    func = click.option(
        "--quiet", "-q", is_flag=True, help="Suppress progress output"
    )(func)
    return click.option(
        "--verbose", "-v", is_flag=True, help="Enable verbose debug logging"
    )(func)


@click.command(name="run")
@config_argument
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without executing",
)
@click.option(
    "--force-bootstrap",
    is_flag=True,
    help="Run the bootstrap script even if the instance is already bootstrapped",
)
@click.option(
    "--output-file",
    type=click.Path(dir_okay=False),
    envvar="GITHUB_OUTPUT",
    default=None,
    help="Append address/endpoint/instance_id for CI steps (default: $GITHUB_OUTPUT)",
)
@verbosity_options
def run(
    config_file: str,
    dry_run: bool,
    force_bootstrap: bool,
    output_file: str | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Run the full pipeline: provision, wait, bootstrap, converge.

    CONFIG_FILE is the path to the vmdeploy.yaml configuration file.

    Example:

        vmdeploy run

        vmdeploy run deploy/vmdeploy.yaml --force-bootstrap
    """
    with handle_deployment_errors():
        config, config_path, quiet = _load(config_file, verbose, quiet)

        if not quiet:
            _display_plan(config)

        if dry_run:
            click.secho("[DRY RUN] No instance was created or changed", fg="yellow")
            sys.exit(0)

        credentials = resolve_credentials(config.credentials)
        pipeline = _build_pipeline(config, config_path, credentials.cloud_api)
        result = pipeline.run(credentials, force_bootstrap=force_bootstrap)

        if output_file:
            write_outputs(
                output_file,
                {
                    "address": result.instance.address,
                    "endpoint": result.endpoint,
                    "instance_id": result.instance.instance_id,
                },
            )

        if quiet:
            click.echo(result.endpoint or "")
            sys.exit(0)

        click.echo()
        click.secho("Deployment Successful!", fg="green", bold=True)
        click.echo(f"  Instance:  {result.instance.instance_id}")
        click.echo(f"  Address:   {result.instance.address}")
        if result.bootstrap is not None:
            state = "skipped" if result.bootstrap.skipped else "ran"
            click.echo(f"  Bootstrap: {state}")
        if result.converge is not None:
            click.echo(f"  Revision:  {result.converge.revision[:12]}")
            if result.converge.healthy is not None:
                health = "ok" if result.converge.healthy else "not responding"
                click.echo(f"  Health:    {health}")
        click.echo(f"  Endpoint:  {result.endpoint}")
        click.echo()


@click.command(name="provision")
@config_argument
@verbosity_options
def provision(config_file: str, verbose: bool, quiet: bool) -> None:
    """Create the instance, or find the existing one."""
    with handle_deployment_errors():
        config, config_path, quiet = _load(config_file, verbose, quiet)
        cloud = resolve_credential(config.credentials.cloud_api, CredentialScope.CLOUD_API)
        pipeline = _build_pipeline(config, config_path, cloud)
        state = pipeline.provision()

        if quiet:
            click.echo(state.address or "")
            sys.exit(0)

        verb = "Created" if state.created else "Found existing"
        click.echo()
        click.secho(f"{verb} instance {state.instance_id}", fg="green", bold=True)
        click.echo(f"  Name:      {state.name}")
        click.echo(f"  Address:   {state.address}")
        click.echo(f"  Status:    {state.status}")
        click.echo()


@click.command(name="bootstrap")
@config_argument
@click.option(
    "--force",
    is_flag=True,
    help="Run the script even if the instance is already bootstrapped",
)
@verbosity_options
def bootstrap(config_file: str, force: bool, verbose: bool, quiet: bool) -> None:
    """Run the bootstrap script on the existing instance."""
    with handle_deployment_errors():
        config, config_path, quiet = _load(config_file, verbose, quiet)
        credentials = resolve_credentials(config.credentials)
        pipeline = _build_pipeline(config, config_path, credentials.cloud_api)
        state = _require_instance(pipeline, "bootstrap")
        pipeline.wait_until_ready(state)
        result = pipeline.bootstrap(state, credentials.host_login, force=force)

        if quiet:
            click.echo("skipped" if result.skipped else "bootstrapped")
            sys.exit(0)

        if result.skipped:
            click.secho("Instance already bootstrapped (use --force to re-run)", fg="yellow")
        else:
            click.secho("Bootstrap complete", fg="green", bold=True)


@click.command(name="converge")
@config_argument
@verbosity_options
def converge(config_file: str, verbose: bool, quiet: bool) -> None:
    """Update the running containers to the latest revision."""
    with handle_deployment_errors():
        config, config_path, quiet = _load(config_file, verbose, quiet)
        credentials = resolve_credentials(config.credentials)
        pipeline = _build_pipeline(config, config_path, credentials.cloud_api)
        state = _require_instance(pipeline, "converge")
        result = pipeline.converge(state, credentials.host_login)

        if quiet:
            click.echo(result.revision)
            sys.exit(0)

        click.echo()
        click.secho("Converged", fg="green", bold=True)
        if result.previous_revision and result.changed:
            click.echo(
                f"  Revision:  {result.previous_revision[:12]} -> {result.revision[:12]}"
            )
        else:
            click.echo(f"  Revision:  {result.revision[:12]} (unchanged)")
        click.echo(f"  Endpoint:  {state.endpoint(config.service_port)}")
        click.echo()


@click.command(name="status")
@config_argument
@verbosity_options
def status(config_file: str, verbose: bool, quiet: bool) -> None:
    """Show the recorded deployment, refreshed from the provider."""
    with handle_deployment_errors():
        config, config_path, quiet = _load(config_file, verbose, quiet)
        store = DeploymentStore.for_config(config_path)
        record = store.get(config.name)
        if record is None:
            raise ConfigError(
                field="deployment_state",
                message="No deployment record found. Run `vmdeploy run` first.",
            )

        cloud = resolve_credential(config.credentials.cloud_api, CredentialScope.CLOUD_API)
        provider = create_provider(config.provider, cloud)
        info = provider.describe_instance(record.instance_id)
        record = record.model_copy(
            update={
                "address": info.get("address") or record.address,
                "status": info.get("status") or record.status,
            }
        )
        record = store.advance(config.name, record)

        if quiet:
            click.echo(record.status or "unknown")
            sys.exit(0)

        click.echo()
        click.secho("Deployment Status", bold=True)
        click.echo(f"  Deployment: {config.name}")
        click.echo(f"  Provider:   {config.provider.value}")
        click.echo(f"  Instance:   {record.instance_id} ({record.instance_name})")
        click.echo(f"  Status:     {record.status}")
        click.echo(f"  Address:    {record.address or '(none)'}")
        click.echo(f"  Bootstrap:  {'done' if record.bootstrapped else 'pending'}")
        if record.revision:
            click.echo(f"  Revision:   {record.revision[:12]}")
        if record.endpoint:
            click.echo(f"  Endpoint:   {record.endpoint}")
        if record.updated_at:
            click.echo(f"  Updated:    {record.updated_at.isoformat()}")
        click.echo()


@click.command(name="destroy")
@config_argument
@click.option(
    "--force",
    is_flag=True,
    help="Skip confirmation prompt",
)
@verbosity_options
def destroy(config_file: str, force: bool, verbose: bool, quiet: bool) -> None:
    """Destroy the managed instance."""
    with handle_deployment_errors():
        config, config_path, quiet = _load(config_file, verbose, quiet)
        cloud = resolve_credential(config.credentials.cloud_api, CredentialScope.CLOUD_API)
        pipeline = _build_pipeline(config, config_path, cloud)
        state = _require_instance(pipeline, "destroy")

        if not force:
            confirm = click.confirm(
                f"Destroy instance '{state.name}' ({state.instance_id})?",
                default=False,
            )
            if not confirm:
                click.secho("Destroy aborted.", fg="yellow")
                sys.exit(0)

        pipeline.provider.destroy_instance(state.instance_id)
        DeploymentStore.for_config(config_path).remove(config.name)

        if quiet:
            click.echo("destroyed")
            sys.exit(0)

        click.echo()
        click.secho("Instance Destroyed", fg="green", bold=True)
        click.echo(f"  Instance:  {state.instance_id}")
        click.echo()


@click.command(name="workflow")
@config_argument
@click.option(
    "--branch",
    type=str,
    default=None,
    help="Branch whose pushes trigger the pipeline (default: deployment_unit.branch)",
)
@click.option(
    "--ssh-key-secret",
    type=str,
    default="VMDEPLOY_SSH_KEY",
    show_default=True,
    help="Repository secret holding the SSH private key",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write the workflow to this file instead of stdout",
)
def workflow(
    config_file: str, branch: str | None, ssh_key_secret: str, output: str | None
) -> None:
    """Generate a GitHub Actions workflow that runs the pipeline on push."""
    with handle_deployment_errors():
        config = ConfigLoader().load_pipeline_yaml(config_file)
        token_env = config.credentials.cloud_api.env or "DIGITALOCEAN_TOKEN"
        content = generate_github_workflow(
            config.name,
            config_path=config_file,
            branch=branch or config.deployment_unit.branch,
            api_token_env=token_env,
            api_token_secret=token_env,
            ssh_key_secret=ssh_key_secret,
        )

        if output is None:
            click.echo(content, nl=False)
            return

        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(content, encoding="utf-8")
        click.secho(f"Wrote workflow to {output_path}", fg="green")


def _load(
    config_file: str, verbose: bool, quiet: bool
) -> tuple[PipelineConfig, Path, bool]:
    """Load the config, then set up logging honouring VMDEPLOY_* overrides."""
    loader = ConfigLoader()
    flags = loader.runtime_flags()
    verbose = verbose or flags.get("verbose", False)
    quiet = quiet or flags.get("quiet", False)
    setup_logging(verbose=verbose, quiet=quiet)

    if not quiet:
        click.echo(f"Loading pipeline configuration from {config_file}...")
    config = loader.load_pipeline_yaml(config_file)
    return config, Path(config_file).resolve(), quiet


def _build_pipeline(
    config: PipelineConfig, config_path: Path, cloud_credential: Credential
) -> DeploymentPipeline:
    provider = create_provider(config.provider, cloud_credential)
    factory = session_factory(
        config.instance.login_user,
        port=config.instance.login_port,
        connect_timeout=config.timeouts.connect,
        command_timeout=config.timeouts.command,
    )
    return DeploymentPipeline(
        config,
        provider,
        factory,
        DeploymentStore.for_config(config_path),
        script_base_dir=config_path.parent,
    )


def _require_instance(pipeline: DeploymentPipeline, operation: str) -> InstanceState:
    state = pipeline.locate_instance()
    if state is None:
        raise DeploymentError(
            operation=operation,
            message=(
                f"No instance tagged '{pipeline.config.instance.identifying_tag}'. "
                "Run `vmdeploy provision` or `vmdeploy run` first."
            ),
        )
    return state


def _display_plan(config: PipelineConfig) -> None:
    click.echo()
    click.secho("Pipeline Configuration:", bold=True)
    click.echo(f"  Deployment: {config.name}")
    click.echo(f"  Provider:   {config.provider.value}")
    click.echo(
        f"  Instance:   {config.instance.name} "
        f"({config.instance.size}, {config.instance.image}, {config.instance.region})"
    )
    click.echo(f"  Tag:        {config.instance.identifying_tag}")
    click.echo(
        f"  Source:     {config.deployment_unit.repository} "
        f"@ {config.deployment_unit.branch}"
    )
    click.echo(f"  App dir:    {config.app_directory}")
    click.echo(f"  Port:       {config.service_port}")
    click.echo()
