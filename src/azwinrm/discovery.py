"""Resource group topology discovery.

Reads VMs, NICs, load balancers and public IPs once and joins them into a
TopologySnapshot the reconciliation phases can share.

WinRM reachability of a VM is derived the same way the listener is reached:
- a NIC IP configuration with a public IP: that address on the HTTPS port
- otherwise a NAT rule to the HTTPS port bound to one of its IP
  configurations: the load balancer's public address on the rule's
  frontend port
"""

import asyncio
import logging
from typing import Any

from azwinrm.exceptions import TopologyDiscoveryError
from azwinrm.gateways import ComputeGateway, NetworkGateway
from azwinrm.models import (
    InboundNatRule,
    IPConfiguration,
    LoadBalancer,
    NetworkInterface,
    OSType,
    TopologySnapshot,
    VirtualMachine,
)
from azwinrm.retry_handler import safe_error_message

logger = logging.getLogger(__name__)


def nic_id_from_ip_configuration_id(ip_configuration_id: str) -> str:
    """Strip the /ipConfigurations/<name> suffix from an IP configuration id."""
    marker = "/ipconfigurations/"
    index = ip_configuration_id.lower().find(marker)
    return ip_configuration_id[:index] if index >= 0 else ip_configuration_id


def _ids(items: Any) -> list[str]:
    return [item.id for item in items or [] if getattr(item, "id", None)]


class TopologyDiscovery:
    """Build a TopologySnapshot from the provider."""

    def __init__(
        self,
        compute: ComputeGateway,
        network: NetworkGateway,
        resource_group: str,
        https_port: int = 5986,
    ):
        self.compute = compute
        self.network = network
        self.resource_group = resource_group
        self.https_port = https_port

    async def discover(self) -> TopologySnapshot:
        """Read the resource group.

        Raises:
            TopologyDiscoveryError: If any listing call fails
        """
        logger.debug(f"Reading topology of resource group {self.resource_group}")
        try:
            raw_vms, raw_nics, raw_lbs, raw_ips = await asyncio.gather(
                self.compute.list_virtual_machines(),
                self.network.list_network_interfaces(),
                self.network.list_load_balancers(),
                self.network.list_public_ip_addresses(),
            )
        except Exception as e:
            raise TopologyDiscoveryError(
                f"Failed to read resource group {self.resource_group}: {safe_error_message(e)}"
            ) from e

        public_addresses = self._public_addresses(raw_ips)
        nics = [self._network_interface(nic) for nic in raw_nics]
        load_balancers = [self._load_balancer(lb, public_addresses) for lb in raw_lbs]
        vms = [self._virtual_machine(vm) for vm in raw_vms]

        snapshot = TopologySnapshot(
            resource_group=self.resource_group,
            virtual_machines=vms,
            load_balancers=load_balancers,
            network_interfaces=nics,
        )
        for vm in vms:
            self._resolve_winrm_endpoint(vm, snapshot, public_addresses)

        logger.info(
            f"Found {len(vms)} VMs, {len(load_balancers)} load balancers and "
            f"{len(nics)} network interfaces in {self.resource_group}"
        )
        return snapshot

    @staticmethod
    def _public_addresses(raw_ips: list[Any]) -> dict[str, str]:
        addresses = {}
        for ip in raw_ips:
            fqdn = getattr(getattr(ip, "dns_settings", None), "fqdn", None)
            address = fqdn or getattr(ip, "ip_address", None)
            if address:
                addresses[ip.id.lower()] = address
        return addresses

    @staticmethod
    def _network_interface(raw: Any) -> NetworkInterface:
        ip_configurations = []
        for ipc in raw.ip_configurations or []:
            public_ip = getattr(ipc, "public_ip_address", None)
            ip_configurations.append(
                IPConfiguration(
                    id=ipc.id,
                    name=ipc.name,
                    backend_address_pool_ids=_ids(ipc.load_balancer_backend_address_pools),
                    inbound_nat_rule_ids=_ids(ipc.load_balancer_inbound_nat_rules),
                    public_ip_address_id=public_ip.id if public_ip else None,
                )
            )
        return NetworkInterface(id=raw.id, name=raw.name, ip_configurations=ip_configurations)

    @staticmethod
    def _load_balancer(raw: Any, public_addresses: dict[str, str]) -> LoadBalancer:
        frontend_configs = raw.frontend_ip_configurations or []
        frontend_id = frontend_configs[0].id if frontend_configs else None

        public_address = None
        for frontend in frontend_configs:
            public_ip = getattr(frontend, "public_ip_address", None)
            if public_ip and public_ip.id and public_ip.id.lower() in public_addresses:
                public_address = public_addresses[public_ip.id.lower()]
                break

        rules = []
        for rule in raw.inbound_nat_rules or []:
            frontend = getattr(rule, "frontend_ip_configuration", None)
            backend = getattr(rule, "backend_ip_configuration", None)
            rules.append(
                InboundNatRule(
                    name=rule.name,
                    frontend_port=rule.frontend_port,
                    backend_port=rule.backend_port,
                    protocol=rule.protocol or "Tcp",
                    id=rule.id,
                    frontend_ip_configuration_id=frontend.id if frontend else None,
                    backend_ip_configuration_id=backend.id if backend else None,
                )
            )

        ports_in_use = {rule.frontend_port for rule in rules if rule.frontend_port}
        ports_in_use.update(
            rule.frontend_port
            for rule in getattr(raw, "load_balancing_rules", None) or []
            if rule.frontend_port
        )

        backend_nic_ids: list[str] = []
        for pool in raw.backend_address_pools or []:
            for ipc_id in _ids(pool.backend_ip_configurations):
                nic_id = nic_id_from_ip_configuration_id(ipc_id)
                if nic_id not in backend_nic_ids:
                    backend_nic_ids.append(nic_id)

        return LoadBalancer(
            id=raw.id,
            name=raw.name,
            frontend_ip_configuration_id=frontend_id,
            inbound_nat_rules=rules,
            backend_nic_ids=backend_nic_ids,
            backend_address_pool_ids=_ids(raw.backend_address_pools),
            frontend_ports_in_use=ports_in_use,
            public_address=public_address,
        )

    @staticmethod
    def _virtual_machine(raw: Any) -> VirtualMachine:
        os_disk = getattr(getattr(raw, "storage_profile", None), "os_disk", None)
        network_profile = getattr(raw, "network_profile", None)
        return VirtualMachine(
            id=raw.id,
            name=raw.name,
            location=raw.location,
            os_type=OSType.parse(getattr(os_disk, "os_type", None)),
            network_interface_ids=_ids(getattr(network_profile, "network_interfaces", None)),
        )

    def _resolve_winrm_endpoint(
        self, vm: VirtualMachine, snapshot: TopologySnapshot, public_addresses: dict[str, str]
    ) -> None:
        nics = [nic for nic in map(snapshot.find_nic, vm.network_interface_ids) if nic]

        for nic in nics:
            for ipc in nic.ip_configurations:
                public_ip_id = (ipc.public_ip_address_id or "").lower()
                if public_ip_id in public_addresses:
                    vm.winrm_https_public_address = public_addresses[public_ip_id]
                    vm.winrm_https_port = self.https_port
                    return

        for nic in nics:
            for ipc in nic.ip_configurations:
                for lb in snapshot.load_balancers:
                    for rule in lb.inbound_nat_rules:
                        if (
                            rule.backend_port == self.https_port
                            and rule.id
                            and rule.id.lower() in (ref.lower() for ref in ipc.inbound_nat_rule_ids)
                            and lb.public_address
                        ):
                            vm.winrm_https_public_address = lb.public_address
                            vm.winrm_https_port = rule.frontend_port
                            return


__all__ = ["TopologyDiscovery", "nic_id_from_ip_configuration_id"]
