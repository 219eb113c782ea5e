"""Topology data models for WinRM enablement.

Point-in-time view of a resource group: virtual machines, network interfaces,
load balancers and the pieces of them that the reconciliation phases read.

Philosophy:
- Plain dataclasses, no SDK types leak past the gateways
- Read-shared across phases
- Only the NAT phase writes to a VM record (address and port)

Public API:
    OSType: Operating system kind
    VirtualMachine, NetworkInterface, IPConfiguration: Compute/NIC records
    LoadBalancer, InboundNatRule: Load balancer records
    SecurityGroup, SecurityRule: NSG records
    ExtensionSettings, Extension, InstanceViewStatus: Extension records
    TopologySnapshot: The whole resource group view
"""

from dataclasses import dataclass, field
from enum import Enum

PROVISIONING_SUCCEEDED = "Succeeded"


class OSType(Enum):
    """Operating system kind reported on the VM's OS disk."""

    WINDOWS = "Windows"
    LINUX = "Linux"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: object) -> "OSType":
        """Map an Azure osType string (case-insensitive) to OSType."""
        if not value:
            return cls.OTHER
        # SDK enums carry the wire string in .value
        text = str(getattr(value, "value", value)).lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.OTHER


@dataclass
class VirtualMachine:
    """Virtual machine as seen by the reconciliation phases."""

    id: str
    name: str
    location: str
    os_type: OSType
    network_interface_ids: list[str] = field(default_factory=list)
    winrm_https_public_address: str | None = None
    winrm_https_port: int | None = None

    @property
    def is_windows(self) -> bool:
        return self.os_type == OSType.WINDOWS

    @property
    def has_public_winrm_address(self) -> bool:
        return bool(self.winrm_https_public_address)


@dataclass
class IPConfiguration:
    """IP configuration of a network interface."""

    id: str
    name: str
    backend_address_pool_ids: list[str] = field(default_factory=list)
    inbound_nat_rule_ids: list[str] = field(default_factory=list)
    public_ip_address_id: str | None = None


@dataclass
class NetworkInterface:
    """Network interface with its IP configurations."""

    id: str
    name: str
    ip_configurations: list[IPConfiguration] = field(default_factory=list)

    def ip_configuration_in_pools(self, pool_ids: list[str]) -> IPConfiguration | None:
        """Return the first IP configuration that belongs to one of pool_ids."""
        wanted = {pool_id.lower() for pool_id in pool_ids}
        for ip_config in self.ip_configurations:
            if any(pool_id.lower() in wanted for pool_id in ip_config.backend_address_pool_ids):
                return ip_config
        return None

    def references_nat_rule(self, rule_id: str) -> bool:
        return any(
            rule_id.lower() == ref.lower()
            for ip_config in self.ip_configurations
            for ref in ip_config.inbound_nat_rule_ids
        )


@dataclass
class InboundNatRule:
    """Inbound NAT rule on a load balancer."""

    name: str
    frontend_port: int
    backend_port: int
    protocol: str = "Tcp"
    id: str | None = None
    frontend_ip_configuration_id: str | None = None
    backend_ip_configuration_id: str | None = None


@dataclass
class LoadBalancer:
    """Load balancer fronting a set of NICs.

    frontend_ports_in_use seeds the per-run claimed-port table; the table itself
    lives in azwinrm.nat_rules.PortReservationTable.
    """

    id: str
    name: str
    frontend_ip_configuration_id: str | None = None
    inbound_nat_rules: list[InboundNatRule] = field(default_factory=list)
    backend_nic_ids: list[str] = field(default_factory=list)
    backend_address_pool_ids: list[str] = field(default_factory=list)
    frontend_ports_in_use: set[int] = field(default_factory=set)
    public_address: str | None = None

    def fronts_nic(self, nic_id: str) -> bool:
        return any(nic_id.lower() == backend.lower() for backend in self.backend_nic_ids)

    def find_rule(self, name: str) -> InboundNatRule | None:
        for rule in self.inbound_nat_rules:
            if rule.name == name:
                return rule
        return None


@dataclass
class SecurityGroup:
    """Network security group."""

    id: str
    name: str


@dataclass
class SecurityRule:
    """Named NSG rule. Presence is decided by name alone."""

    name: str
    priority: int
    direction: str = "Inbound"
    access: str = "Allow"
    protocol: str = "*"
    source_address_prefix: str = "*"
    source_port_range: str = "*"
    destination_address_prefix: str = "*"
    destination_port_range: str = "*"


@dataclass(frozen=True)
class ExtensionSettings:
    """Settings fingerprint of a Custom Script Extension."""

    file_uris: tuple[str, ...]
    command_to_execute: str


@dataclass
class Extension:
    """VM extension as returned by the compute API."""

    name: str
    settings: ExtensionSettings
    provisioning_state: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.provisioning_state == PROVISIONING_SUCCEEDED


@dataclass
class InstanceViewStatus:
    """Substatus entry from a VM instance view."""

    code: str | None
    message: str | None = None


@dataclass
class TopologySnapshot:
    """Resource group view supplied to the orchestrator."""

    resource_group: str
    virtual_machines: list[VirtualMachine] = field(default_factory=list)
    load_balancers: list[LoadBalancer] = field(default_factory=list)
    network_interfaces: list[NetworkInterface] = field(default_factory=list)

    def find_nic(self, nic_id: str) -> NetworkInterface | None:
        for nic in self.network_interfaces:
            if nic.id.lower() == nic_id.lower():
                return nic
        return None

    def load_balancer_for_vm(self, vm: VirtualMachine) -> tuple[LoadBalancer, str] | None:
        """First load balancer fronting one of the VM's NICs, in NIC order.

        Returns:
            (load balancer, matching NIC id) or None
        """
        for nic_id in vm.network_interface_ids:
            for lb in self.load_balancers:
                if lb.fronts_nic(nic_id):
                    return lb, nic_id
        return None

    def vms_needing_nat(self) -> list[VirtualMachine]:
        return [vm for vm in self.virtual_machines if not vm.has_public_winrm_address]

    def windows_vms(self) -> list[VirtualMachine]:
        return [vm for vm in self.virtual_machines if vm.is_windows]


__all__ = [
    "PROVISIONING_SUCCEEDED",
    "Extension",
    "ExtensionSettings",
    "IPConfiguration",
    "InboundNatRule",
    "InstanceViewStatus",
    "LoadBalancer",
    "NetworkInterface",
    "OSType",
    "SecurityGroup",
    "SecurityRule",
    "TopologySnapshot",
    "VirtualMachine",
]
