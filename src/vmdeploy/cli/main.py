"""Entry point for the ``vmdeploy`` command."""

import click

from vmdeploy import __version__
from vmdeploy.cli.commands.deploy import (
    bootstrap,
    converge,
    destroy,
    provision,
    run,
    status,
    workflow,
)


@click.group(name="vmdeploy", invoke_without_command=True)
@click.version_option(__version__, prog_name="vmdeploy")
@click.pass_context
def main(ctx: click.Context) -> None:
    """Provision a VM and keep a compose service group on it up to date.

    \b
    Commands:
        run        Full pipeline (provision, wait, bootstrap, converge)
        provision  Create or find the instance
        bootstrap  Install the container runtime and first deployment
        converge   Pull, rebuild and restart the service group
        status     Show the recorded deployment
        destroy    Destroy the instance
        workflow   Generate a CI workflow that runs the pipeline on push

    Example:

        vmdeploy run vmdeploy.yaml
    """
    ctx.ensure_object(dict)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


for command in (run, provision, bootstrap, converge, status, destroy, workflow):
    main.add_command(command)


if __name__ == "__main__":
    main()
