"""HPC provisioner CLI (hpcprov).

Usage:
    hpcprov deploy --prefix hpc-demo --location westeurope
    hpcprov plan --prefix hpc-demo --location westeurope
    hpcprov remove --prefix hpc-demo --location westeurope

Every option can also be given through its environment variable; options
win over the environment.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError, StorageAuthMode
from .context import CancellationToken
from .layout import ResourceLayout
from .main import (
    EXIT_CONFIGURATION,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    RunReport,
    default_cloud_client,
    run_deployment,
    setup_logging,
)
from .repair import NoActionNeeded, RepairOutcome
from .resources import ProvisioningState, ResourceDescriptor
from .retry import RetryExecutor, RetryPolicies
from .security import SecretlessViolationError, enforce_secretless_architecture
from .spec_loader import SpecLoadError, load_spec
from .teardown import Teardown, TeardownResult

STATE_MARKS = {
    ProvisioningState.SUCCEEDED: "ok",
    ProvisioningState.SKIPPED: "skipped",
    ProvisioningState.FAILED: "FAILED",
}


def target_options(func):
    """Options that identify the deployment."""
    options = [
        click.option("--prefix", "-p", envvar="HPC_PREFIX", help="Name prefix for all resources"),
        click.option("--location", "-l", envvar="AZURE_LOCATION", help="Azure region"),
        click.option(
            "--subscription", "-s", envvar="AZURE_SUBSCRIPTION_ID", help="Azure subscription ID"
        ),
        click.option(
            "--resource-group", "-g", envvar="HPC_RESOURCE_GROUP", help="Resource group (default: rg-<prefix>)"
        ),
        click.option(
            "--spec",
            "spec_file",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            envvar="HPC_SPEC_FILE",
            help="Deployment spec YAML",
        ),
        click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs at INFO level"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def load_config(**overrides: Any) -> Config:
    """Build the configuration, exiting with code 2 when it is invalid."""
    try:
        return Config.from_env(**overrides)
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e


def configure_logging(verbose: bool) -> None:
    setup_logging(logging.INFO if verbose else logging.WARNING)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="hpcprov")
def cli() -> None:
    """HPC environment provisioner (hpcprov).

    \b
    Quick Start:
        hpcprov plan --prefix hpc-demo -l westeurope     # Show resource names
        hpcprov deploy --prefix hpc-demo -l westeurope   # Provision
        hpcprov remove --prefix hpc-demo -l westeurope   # Tear down staging
    """
    pass


# =============================================================================
# Deploy
# =============================================================================


@cli.command()
@target_options
@click.option("--admin-username", envvar="HPC_ADMIN_USERNAME", help="Cluster admin user")
@click.option("--admin-ssh-key", envvar="HPC_ADMIN_SSH_KEY", help="Cluster admin SSH public key")
@click.option(
    "--storage-auth-mode",
    type=click.Choice([m.value for m in StorageAuthMode]),
    envvar="HPC_STORAGE_AUTH_MODE",
    help="How the staging storage account authenticates (default: Keyless)",
)
@click.option(
    "--remediation",
    envvar="HPC_REMEDIATION",
    help="PublicNetwork, PrivateEndpoint, PolicyExemption, Custom or 1-4",
)
@click.option("--remediation-text", envvar="HPC_REMEDIATION_TEXT", help="Describe the remediation")
@click.option(
    "--create-private-endpoint/--no-create-private-endpoint",
    default=None,
    help="Automate private endpoint setup for the PrivateEndpoint remediation",
)
@click.option("--revert-after", type=int, help="Seconds before public access is reverted")
@click.option(
    "--templates-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    envvar="HPC_TEMPLATES_DIR",
    help="Directory holding compiled ARM templates",
)
@click.option("--non-interactive", is_flag=True, help="Never prompt for a remediation")
@click.option("--timeout", type=int, help="Deadline for the whole run in seconds")
@click.option("--force-fresh", is_flag=True, help="Delete and recreate the resource group")
def deploy(
    prefix: str | None,
    location: str | None,
    subscription: str | None,
    resource_group: str | None,
    spec_file: Path | None,
    verbose: bool,
    admin_username: str | None,
    admin_ssh_key: str | None,
    storage_auth_mode: str | None,
    remediation: str | None,
    remediation_text: str | None,
    create_private_endpoint: bool | None,
    revert_after: int | None,
    templates_dir: Path | None,
    non_interactive: bool,
    timeout: int | None,
    force_fresh: bool,
) -> None:
    """Provision the HPC environment, then apply the network remediation.

    \b
    Examples:
        hpcprov deploy -p hpc-demo -l westeurope --storage-auth-mode Keyless
        hpcprov deploy -p hpc-demo -l westeurope --remediation PrivateEndpoint \\
            --create-private-endpoint
    """
    configure_logging(verbose)
    config = load_config(
        prefix=prefix,
        location=location,
        subscription_id=subscription,
        resource_group_name=resource_group,
        spec_file=spec_file,
        admin_username=admin_username,
        admin_ssh_public_key=admin_ssh_key,
        storage_auth_mode=StorageAuthMode(storage_auth_mode) if storage_auth_mode else None,
        remediation_code=remediation,
        remediation_text=remediation_text,
        create_private_endpoint=create_private_endpoint,
        revert_after_seconds=revert_after,
        templates_dir=templates_dir,
        interactive=False if non_interactive else None,
        run_timeout_seconds=timeout,
        force_fresh=True if force_fresh else None,
    )

    click.echo(f"Deploying '{config.prefix}' to {config.effective_resource_group} ({config.location})")
    click.echo(f"  Storage auth mode: {config.storage_auth_mode.value}")

    try:
        report = asyncio.run(run_deployment(config))
    except SecretlessViolationError as e:
        click.secho(f"Security violation: {e}", fg="red", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e
    except SpecLoadError as e:
        click.secho(f"Invalid deployment spec: {e}", fg="red", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e

    print_report(report)
    raise SystemExit(report.exit_code)


def print_report(report: RunReport) -> None:
    click.echo("\nSteps:")
    for step, state in report.context.history.states().items():
        latest = report.context.history.latest(step)
        suffix = f" (via {latest.via})" if latest and latest.via != "pipeline" else ""
        click.echo(f"  {step:<32} {STATE_MARKS.get(state, state.value)}{suffix}")
        if latest and latest.error_signature is not None:
            signature = latest.error_signature
            click.echo(f"    {signature.code.value}: {signature.message} (attempts: {latest.attempts})")
        for warning in latest.warnings if latest else ():
            click.echo(f"    warning: {warning}")

    if isinstance(report.repair, RepairOutcome):
        click.echo(f"\nRepair: {report.repair.message}")
    elif isinstance(report.repair, NoActionNeeded):
        click.echo(f"\nRepair: no action, escalate ({report.repair.reason})")

    if report.decision is not None:
        click.echo(f"\nRemediation: {report.decision.message}")
        for line in report.decision.plan:
            click.echo(f"  {line}")
        for connection in report.decision.connections:
            click.echo(f"  connection {connection.get('name')}: {connection.get('status')}")

    outcome = report.pipeline
    if outcome.skipped_required:
        click.secho(f"\nRequired steps skipped: {', '.join(outcome.skipped_required)}", fg="red")
    if report.exit_code == EXIT_SUCCESS:
        click.secho(f"\nFinished: {outcome.state}", fg="green")
    else:
        click.secho(f"\nFinished: {outcome.state} (last reached {outcome.last_reached})", fg="red")


# =============================================================================
# Plan
# =============================================================================


@cli.command()
@target_options
def plan(
    prefix: str | None,
    location: str | None,
    subscription: str | None,
    resource_group: str | None,
    spec_file: Path | None,
    verbose: bool,
) -> None:
    """Show the resources a deployment would use (no Azure calls)."""
    configure_logging(verbose)
    config = load_config(
        prefix=prefix,
        location=location,
        subscription_id=subscription,
        resource_group_name=resource_group,
        spec_file=spec_file,
    )
    try:
        spec = load_spec(config.spec_file)
    except SpecLoadError as e:
        click.secho(f"Invalid deployment spec: {e}", fg="red", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e

    layout = ResourceLayout(config, spec, datetime.now(UTC))
    descriptors = [
        layout.resource_group(),
        layout.identity(),
        layout.nsg(),
        layout.vnet(),
        *layout.subnets(),
        layout.storage_account(),
        layout.storage_container(),
        layout.key_vault(),
    ]
    click.echo(f"Resources for '{config.prefix}' in {config.location}:")
    for descriptor in descriptors:
        _echo_descriptor(descriptor, config.subscription_id)
    click.echo(f"  {'ClusterDeployment':<18} {layout.cluster_deployment_name()}")


def _echo_descriptor(descriptor: ResourceDescriptor, subscription_id: str) -> None:
    click.echo(f"  {descriptor.kind.value:<18} {descriptor.name}")
    click.echo(f"  {'':<18} {descriptor.resource_id(subscription_id)}")


# =============================================================================
# Remove
# =============================================================================


@cli.command()
@target_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def remove(
    prefix: str | None,
    location: str | None,
    subscription: str | None,
    resource_group: str | None,
    spec_file: Path | None,
    verbose: bool,
    yes: bool,
) -> None:
    """Remove the staging storage, DNS resources and managed identity."""
    configure_logging(verbose)
    config = load_config(
        prefix=prefix,
        location=location,
        subscription_id=subscription,
        resource_group_name=resource_group,
        spec_file=spec_file,
    )
    try:
        enforce_secretless_architecture()
        spec = load_spec(config.spec_file)
    except (SecretlessViolationError, SpecLoadError) as e:
        click.secho(str(e), fg="red", err=True)
        raise SystemExit(EXIT_CONFIGURATION) from e

    layout = ResourceLayout(config, spec, datetime.now(UTC))

    def confirm(plan: list[ResourceDescriptor]) -> bool:
        click.echo(f"About to REMOVE resources in subscription {config.subscription_id}:")
        click.echo(f"  Resource Group: {layout.resource_group_name}")
        for descriptor in plan:
            click.echo(f"  {descriptor.kind.value}: {descriptor.name}")
        if yes:
            return True
        return click.confirm("Are you sure you want to proceed?", default=False)

    result = asyncio.run(_teardown(config, layout, confirm))

    if result.aborted:
        click.echo("Aborted by user. No resources were deleted.")
        raise SystemExit(EXIT_FAILURE)
    for label in result.deleted:
        click.echo(f"  removed {label}")
    for label in result.absent:
        click.echo(f"  not found {label}")
    if not result.success:
        message = result.error.message if result.error else "unknown error"
        click.secho(f"Teardown stopped at {result.failed}: {message}", fg="red", err=True)
        raise SystemExit(EXIT_FAILURE)
    click.secho("Done.", fg="green")


async def _teardown(
    config: Config,
    layout: ResourceLayout,
    confirm: Callable[[list[ResourceDescriptor]], bool],
) -> TeardownResult:
    token = CancellationToken(config.run_timeout_seconds)
    policies = RetryPolicies.from_settings(config.retry)
    executor = RetryExecutor(token, config.call_timeout_seconds)
    return await Teardown(default_cloud_client(config), executor, policies).run(layout, confirm)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
