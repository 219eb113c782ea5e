"""azwinrm CLI - enable WinRM HTTPS on the VMs of a resource group.

Examples:
    # Configure every VM in a resource group
    azwinrm -g my-rg -s 00000000-0000-0000-0000-000000000000

    # Stop at the first failing VM or security group
    azwinrm -g my-rg --fail-fast

    # Give up after 20 minutes
    azwinrm -g my-rg --timeout 1200
"""

import asyncio
import logging
import sys
from dataclasses import replace

import click
from azure.identity.aio import DefaultAzureCredential
from rich.console import Console
from rich.table import Table

from azwinrm import __version__
from azwinrm.config import WinRMConfig
from azwinrm.discovery import TopologyDiscovery
from azwinrm.exceptions import ConfigError, RemoteManagementError
from azwinrm.gateways import open_azure_gateways
from azwinrm.orchestrator import RemoteManagementOrchestrator, RemoteManagementResult

logger = logging.getLogger(__name__)


async def _configure(
    resource_group: str, subscription_id: str, config: WinRMConfig
) -> RemoteManagementResult:
    logger.debug(f"Configuring WinRM for {resource_group} in subscription {subscription_id}")
    async with DefaultAzureCredential() as credential:
        async with open_azure_gateways(
            credential, subscription_id, resource_group, config.nat_idle_timeout_minutes
        ) as (compute, network):
            discovery = TopologyDiscovery(compute, network, resource_group, config.https_port)
            topology = await discovery.discover()
            orchestrator = RemoteManagementOrchestrator(topology, compute, network, config)
            return await orchestrator.run_with_timeout()


def _print_result(result: RemoteManagementResult, console: Console) -> None:
    table = Table(title=f"WinRM configuration: {result.resource_group}", show_header=True)
    table.add_column("Phase", style="cyan", no_wrap=True)
    table.add_column("Resource", style="white")
    table.add_column("Result", style="green")

    for phase in result.phases:
        for name, outcome in phase.outcomes.items():
            table.add_row(phase.phase.value, name, outcome)
        for name in phase.skipped:
            table.add_row(phase.phase.value, name, "[yellow]skipped[/yellow]")
        for failure in phase.failed:
            table.add_row(phase.phase.value, failure.item, f"[red]failed: {failure.error}[/red]")

    console.print(table)
    console.print(f"{result.summary()} in {result.duration_seconds:.1f}s")


@click.command()
@click.option("--resource-group", "-g", required=True, help="Resource group to configure")
@click.option(
    "--subscription",
    "-s",
    envvar="AZURE_SUBSCRIPTION_ID",
    required=True,
    help="Subscription id (default: $AZURE_SUBSCRIPTION_ID)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (default: ~/.azwinrm/config.toml)",
)
@click.option("--timeout", type=float, default=None, help="Abort the run after N seconds")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Stop at the first failing resource",
)
@click.option("--max-concurrent", type=click.IntRange(min=1), default=None)
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.version_option(version=__version__)
def main(
    resource_group: str,
    subscription: str,
    config_path: str | None,
    timeout: float | None,
    fail_fast: bool | None,
    max_concurrent: int | None,
    verbose: bool,
) -> None:
    """Make the VMs of a resource group manageable over WinRM HTTPS.

    \b
    Adds inbound NAT rules for VMs behind load balancers, installs the
    WinRM Custom Script Extension on Windows VMs and opens port 5986 on
    every network security group.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")

    try:
        config = WinRMConfig.load(config_path)
        overrides = {
            key: value
            for key, value in {
                "timeout_seconds": timeout,
                "fail_fast": fail_fast,
                "max_concurrent": max_concurrent,
            }.items()
            if value is not None
        }
        config = replace(config, **overrides)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    try:
        result = asyncio.run(_configure(resource_group, subscription, config))
    except RemoteManagementError as e:
        raise click.ClickException(str(e)) from e

    _print_result(result, Console())
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
