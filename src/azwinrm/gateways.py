"""Provider gateways for the compute and network management APIs.

The reconciliation phases talk to Azure only through the ComputeGateway and
NetworkGateway protocols, which allows abstraction over the Azure SDK and the
in-memory fakes used by tests.

Philosophy:
- Ruthless simplicity: thin wrappers over azure-mgmt-compute / azure-mgmt-network
- Not-found is data (None), every other query failure is an error
- Mutations raise the SDK error unchanged; callers add resource context

Public API:
    ComputeGateway: Protocol for extension and instance-view calls
    NetworkGateway: Protocol for load balancer, NIC and NSG calls
    AzureComputeGateway: Azure SDK implementation of ComputeGateway
    AzureNetworkGateway: Azure SDK implementation of NetworkGateway
    open_azure_gateways: Async context manager owning both SDK clients
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol, runtime_checkable

from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import HttpResponseError, ServiceRequestError, ServiceResponseError
from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.compute.models import (
    VirtualMachineExtension,
    VirtualMachineExtensionProperties,
)
from azure.mgmt.network.aio import NetworkManagementClient
from azure.mgmt.network.models import InboundNatRule as SdkInboundNatRule
from azure.mgmt.network.models import SecurityRule as SdkSecurityRule
from azure.mgmt.network.models import SubResource

from azwinrm.exceptions import ResourceQueryError
from azwinrm.models import (
    Extension,
    ExtensionSettings,
    InboundNatRule,
    InstanceViewStatus,
    SecurityGroup,
    SecurityRule,
    VirtualMachine,
)
from azwinrm.retry_handler import is_not_found, retry_async, safe_error_message

logger = logging.getLogger(__name__)

# Listing is read-only, so transport hiccups are retried here
_list_retry = retry_async(
    max_attempts=3,
    initial_delay=1.0,
    jitter=True,
    retryable_exceptions=(ServiceRequestError, ServiceResponseError),
)


@runtime_checkable
class ComputeGateway(Protocol):
    """Compute management capability used by the extension phase."""

    async def list_virtual_machines(self) -> list[Any]:
        """List VMs of the resource group as SDK models."""
        ...

    async def get_extension(self, vm_name: str, extension_name: str) -> Extension | None:
        """Get an extension by name.

        Returns:
            Extension, or None when the provider reports it does not exist

        Raises:
            ResourceQueryError: For any other failure
        """
        ...

    async def get_extension_statuses(
        self, vm_name: str, extension_name: str
    ) -> list[InstanceViewStatus]:
        """Substatuses of one extension from the VM instance view."""
        ...

    async def create_extension(
        self,
        vm: VirtualMachine,
        extension_name: str,
        settings: ExtensionSettings,
        *,
        publisher: str,
        extension_type: str,
        handler_version: str,
    ) -> Extension:
        """Create or update an extension and wait for the operation."""
        ...

    async def delete_extension(self, vm_name: str, extension_name: str) -> None:
        """Delete an extension and wait for the operation."""
        ...


@runtime_checkable
class NetworkGateway(Protocol):
    """Network management capability used by the NAT and NSG phases."""

    async def list_load_balancers(self) -> list[Any]:
        ...

    async def list_network_interfaces(self) -> list[Any]:
        ...

    async def list_public_ip_addresses(self) -> list[Any]:
        ...

    async def list_security_groups(self) -> list[SecurityGroup]:
        ...

    async def add_inbound_nat_rule(self, load_balancer_name: str, rule: InboundNatRule) -> str:
        """Append rule to the load balancer, push it, return the new rule id."""
        ...

    async def bind_nat_rule(
        self, nic_name: str, ip_configuration_name: str, rule_id: str
    ) -> None:
        """Reference rule_id from the NIC IP configuration and push the NIC."""
        ...

    async def get_security_rule(self, group_name: str, rule_name: str) -> SecurityRule | None:
        ...

    async def create_security_rule(self, group_name: str, rule: SecurityRule) -> SecurityRule:
        ...


def _query_error(what: str, error: Exception) -> ResourceQueryError:
    return ResourceQueryError(f"Failed to get {what}: {safe_error_message(error)}")


class AzureComputeGateway:
    """ComputeGateway over azure.mgmt.compute.aio.ComputeManagementClient."""

    def __init__(self, client: ComputeManagementClient, resource_group: str):
        self.client = client
        self.resource_group = resource_group

    @_list_retry
    async def list_virtual_machines(self) -> list[Any]:
        return [vm async for vm in self.client.virtual_machines.list(self.resource_group)]

    async def get_extension(self, vm_name: str, extension_name: str) -> Extension | None:
        try:
            result = await self.client.virtual_machine_extensions.get(
                self.resource_group, vm_name, extension_name
            )
        except HttpResponseError as e:
            if is_not_found(e):
                logger.debug(f"Extension {extension_name} not found on vm {vm_name}")
                return None
            raise _query_error(f"extension {extension_name} on vm {vm_name}", e) from e
        return _extension_from_sdk(result, extension_name)

    async def get_extension_statuses(
        self, vm_name: str, extension_name: str
    ) -> list[InstanceViewStatus]:
        try:
            vm = await self.client.virtual_machines.get(
                self.resource_group, vm_name, expand="instanceView"
            )
        except HttpResponseError as e:
            raise _query_error(f"instance view of vm {vm_name}", e) from e

        instance_view = getattr(vm, "instance_view", None)
        for extension_view in getattr(instance_view, "extensions", None) or []:
            if extension_view.name == extension_name:
                return [
                    InstanceViewStatus(code=status.code, message=status.message)
                    for status in extension_view.substatuses or []
                ]
        return []

    async def create_extension(
        self,
        vm: VirtualMachine,
        extension_name: str,
        settings: ExtensionSettings,
        *,
        publisher: str,
        extension_type: str,
        handler_version: str,
    ) -> Extension:
        parameters = VirtualMachineExtension(
            location=vm.location,
            properties=VirtualMachineExtensionProperties(
                publisher=publisher,
                type=extension_type,
                type_handler_version=handler_version,
                settings={
                    "fileUris": list(settings.file_uris),
                    "commandToExecute": settings.command_to_execute,
                },
            ),
        )
        poller = await self.client.virtual_machine_extensions.begin_create_or_update(
            self.resource_group, vm.name, extension_name, parameters
        )
        result = await poller.result()
        return _extension_from_sdk(result, extension_name)

    async def delete_extension(self, vm_name: str, extension_name: str) -> None:
        poller = await self.client.virtual_machine_extensions.begin_delete(
            self.resource_group, vm_name, extension_name
        )
        await poller.result()


class AzureNetworkGateway:
    """NetworkGateway over azure.mgmt.network.aio.NetworkManagementClient."""

    def __init__(
        self,
        client: NetworkManagementClient,
        resource_group: str,
        idle_timeout_minutes: int = 4,
    ):
        self.client = client
        self.resource_group = resource_group
        self.idle_timeout_minutes = idle_timeout_minutes

    @_list_retry
    async def list_load_balancers(self) -> list[Any]:
        return [lb async for lb in self.client.load_balancers.list(self.resource_group)]

    @_list_retry
    async def list_network_interfaces(self) -> list[Any]:
        return [nic async for nic in self.client.network_interfaces.list(self.resource_group)]

    @_list_retry
    async def list_public_ip_addresses(self) -> list[Any]:
        return [ip async for ip in self.client.public_ip_addresses.list(self.resource_group)]

    async def list_security_groups(self) -> list[SecurityGroup]:
        try:
            groups = [
                nsg async for nsg in self.client.network_security_groups.list(self.resource_group)
            ]
        except HttpResponseError as e:
            raise ResourceQueryError(
                f"Failed to list network security groups in {self.resource_group}: "
                f"{safe_error_message(e)}"
            ) from e
        return [SecurityGroup(id=nsg.id, name=nsg.name) for nsg in groups]

    async def add_inbound_nat_rule(self, load_balancer_name: str, rule: InboundNatRule) -> str:
        lb = await self.client.load_balancers.get(self.resource_group, load_balancer_name)

        frontend_id = rule.frontend_ip_configuration_id
        if not frontend_id and lb.frontend_ip_configurations:
            frontend_id = lb.frontend_ip_configurations[0].id

        sdk_rule = SdkInboundNatRule(
            name=rule.name,
            frontend_ip_configuration=SubResource(id=frontend_id),
            protocol=rule.protocol,
            frontend_port=rule.frontend_port,
            backend_port=rule.backend_port,
            idle_timeout_in_minutes=self.idle_timeout_minutes,
            enable_floating_ip=False,
        )
        lb.inbound_nat_rules = list(lb.inbound_nat_rules or []) + [sdk_rule]

        logger.debug(f"Updating load balancer {load_balancer_name} with NAT rule {rule.name}")
        poller = await self.client.load_balancers.begin_create_or_update(
            self.resource_group, load_balancer_name, lb
        )
        updated = await poller.result()

        for created in updated.inbound_nat_rules or []:
            if created.name == rule.name:
                return created.id
        raise ResourceQueryError(
            f"Load balancer {load_balancer_name} did not return NAT rule {rule.name}"
        )

    async def bind_nat_rule(
        self, nic_name: str, ip_configuration_name: str, rule_id: str
    ) -> None:
        nic = await self.client.network_interfaces.get(self.resource_group, nic_name)

        ip_config = next(
            (ipc for ipc in nic.ip_configurations or [] if ipc.name == ip_configuration_name),
            None,
        )
        if ip_config is None:
            raise ResourceQueryError(
                f"IP configuration {ip_configuration_name} not found on nic {nic_name}"
            )

        existing = list(ip_config.load_balancer_inbound_nat_rules or [])
        if not any((ref.id or "").lower() == rule_id.lower() for ref in existing):
            existing.append(SdkInboundNatRule(id=rule_id))
        ip_config.load_balancer_inbound_nat_rules = existing

        logger.debug(f"Updating the loadBalancerInboundNatRules of nic {nic_name}")
        poller = await self.client.network_interfaces.begin_create_or_update(
            self.resource_group, nic_name, nic
        )
        await poller.result()

    async def get_security_rule(self, group_name: str, rule_name: str) -> SecurityRule | None:
        try:
            result = await self.client.security_rules.get(
                self.resource_group, group_name, rule_name
            )
        except HttpResponseError as e:
            if is_not_found(e):
                return None
            raise _query_error(f"security rule {rule_name} in {group_name}", e) from e
        return _security_rule_from_sdk(result)

    async def create_security_rule(self, group_name: str, rule: SecurityRule) -> SecurityRule:
        parameters = SdkSecurityRule(
            direction=rule.direction,
            access=rule.access,
            protocol=rule.protocol,
            source_address_prefix=rule.source_address_prefix,
            source_port_range=rule.source_port_range,
            destination_address_prefix=rule.destination_address_prefix,
            destination_port_range=rule.destination_port_range,
            priority=rule.priority,
        )
        poller = await self.client.security_rules.begin_create_or_update(
            self.resource_group, group_name, rule.name, parameters
        )
        result = await poller.result()
        return _security_rule_from_sdk(result)


def _extension_from_sdk(result: Any, extension_name: str) -> Extension:
    # Publisher, settings and state sit under .properties in the compute models
    properties = getattr(result, "properties", None) or result
    settings = getattr(properties, "settings", None) or {}
    return Extension(
        name=result.name or extension_name,
        settings=ExtensionSettings(
            file_uris=tuple(settings.get("fileUris") or ()),
            command_to_execute=settings.get("commandToExecute") or "",
        ),
        provisioning_state=getattr(properties, "provisioning_state", None),
    )


def _security_rule_from_sdk(result: Any) -> SecurityRule:
    return SecurityRule(
        name=result.name,
        priority=result.priority,
        direction=result.direction,
        access=result.access,
        protocol=result.protocol,
        source_address_prefix=result.source_address_prefix,
        source_port_range=result.source_port_range,
        destination_address_prefix=result.destination_address_prefix,
        destination_port_range=result.destination_port_range,
    )


@asynccontextmanager
async def open_azure_gateways(
    credential: AsyncTokenCredential,
    subscription_id: str,
    resource_group: str,
    idle_timeout_minutes: int = 4,
) -> AsyncIterator[tuple[AzureComputeGateway, AzureNetworkGateway]]:
    """Open compute and network SDK clients for one resource group.

    Example:
        >>> async with open_azure_gateways(cred, sub_id, "my-rg") as (compute, network):
        ...     groups = await network.list_security_groups()
    """
    async with ComputeManagementClient(credential, subscription_id) as compute_client:
        async with NetworkManagementClient(credential, subscription_id) as network_client:
            yield (
                AzureComputeGateway(compute_client, resource_group),
                AzureNetworkGateway(network_client, resource_group, idle_timeout_minutes),
            )


__all__ = [
    "AzureComputeGateway",
    "AzureNetworkGateway",
    "ComputeGateway",
    "NetworkGateway",
    "open_azure_gateways",
]
