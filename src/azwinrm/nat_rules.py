"""Inbound NAT rule allocation for VMs without a public WinRM address.

For each such VM the allocator finds the load balancer fronting one of its
NICs, claims a free frontend port, adds a NAT rule to the WinRM HTTPS port
and binds the rule to the NIC IP configuration in the load balancer's
backend pool.

Philosophy:
- Deterministic rule names: re-runs converge instead of duplicating rules
- One lock per load balancer: claim, create and bind happen as one region
- Orphans are repaired, not recreated: a named rule that no NIC references
  is bound on the next run

Binding is two provider calls (load balancer, then NIC) with no rollback.
When the second call fails the rule stays on the load balancer unbound and
NatRuleAllocationError.orphaned_rule names it; the next run binds it.

Public API:
    NatRuleAllocator: Per-VM allocation entry point
    PortReservationTable: Claimed frontend ports per load balancer
    NatRuleOutcome, NatRuleResult: Allocation result
    select_free_port, nat_rule_name, find_orphaned_rules: Pure helpers
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum

from azwinrm.config import WinRMConfig
from azwinrm.exceptions import NatRuleAllocationError
from azwinrm.gateways import NetworkGateway
from azwinrm.models import (
    InboundNatRule,
    IPConfiguration,
    LoadBalancer,
    NetworkInterface,
    TopologySnapshot,
    VirtualMachine,
)
from azwinrm.retry_handler import safe_error_message

logger = logging.getLogger(__name__)

# Azure limit for NAT rule names
MAX_RULE_NAME_LENGTH = 80
MAX_PORT = 65535


class NatRuleOutcome(Enum):
    """What ensure_reachable did for a VM."""

    CREATED = "created"
    REPAIRED = "repaired"
    ALREADY_CONFIGURED = "already_configured"
    UNREACHABLE = "unreachable"


@dataclass
class NatRuleResult:
    """Result of ensuring one VM is reachable."""

    vm_name: str
    outcome: NatRuleOutcome
    load_balancer: str | None = None
    rule_name: str | None = None
    frontend_port: int | None = None


def select_free_port(claimed: set[int], start: int) -> int:
    """Smallest port >= start that is not in claimed.

    Raises:
        NatRuleAllocationError: If every port up to 65535 is claimed
    """
    port = start
    while port in claimed:
        port += 1
    if port > MAX_PORT:
        raise NatRuleAllocationError(f"No free frontend port at or above {start}")
    return port


def nat_rule_name(vm: VirtualMachine, prefix: str) -> str:
    """Deterministic NAT rule name for a VM."""
    name = f"{prefix}-{vm.name}"
    if len(name) <= MAX_RULE_NAME_LENGTH:
        return name
    digest = hashlib.sha1(vm.id.lower().encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


def find_orphaned_rules(
    snapshot: TopologySnapshot, backend_port: int
) -> list[tuple[LoadBalancer, InboundNatRule]]:
    """NAT rules to backend_port that no NIC IP configuration references."""
    orphans = []
    for lb in snapshot.load_balancers:
        for rule in lb.inbound_nat_rules:
            if rule.backend_port != backend_port or not rule.id:
                continue
            if rule.backend_ip_configuration_id:
                continue
            if not any(nic.references_nat_rule(rule.id) for nic in snapshot.network_interfaces):
                orphans.append((lb, rule))
    return orphans


class PortReservationTable:
    """Frontend ports claimed per load balancer during one run.

    Seeded from the ports each load balancer already uses, kept apart from the
    read-only snapshot. claim() and release() must be called while holding
    lock_for(load_balancer_id).
    """

    def __init__(self, load_balancers: list[LoadBalancer], start_port: int):
        self.start_port = start_port
        self._claimed: dict[str, set[int]] = {
            lb.id.lower(): set(lb.frontend_ports_in_use) for lb in load_balancers
        }
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, load_balancer_id: str) -> asyncio.Lock:
        return self._locks.setdefault(load_balancer_id.lower(), asyncio.Lock())

    def claimed(self, load_balancer_id: str) -> set[int]:
        return set(self._claimed.get(load_balancer_id.lower(), set()))

    def claim(self, load_balancer_id: str) -> int:
        ports = self._claimed.setdefault(load_balancer_id.lower(), set())
        port = select_free_port(ports, self.start_port)
        ports.add(port)
        logger.debug(f"Free port for load balancer {load_balancer_id} is {port}")
        return port

    def release(self, load_balancer_id: str, port: int) -> None:
        self._claimed.get(load_balancer_id.lower(), set()).discard(port)


class NatRuleAllocator:
    """Make VMs reachable on the WinRM HTTPS port through a load balancer."""

    def __init__(
        self,
        snapshot: TopologySnapshot,
        network: NetworkGateway,
        config: WinRMConfig,
        reservations: PortReservationTable | None = None,
    ):
        self.snapshot = snapshot
        self.network = network
        self.config = config
        self.reservations = reservations or PortReservationTable(
            snapshot.load_balancers, config.https_port
        )

    async def ensure_reachable(self, vm: VirtualMachine) -> NatRuleResult:
        """Ensure a NAT rule forwards a frontend port to the VM's WinRM port.

        Args:
            vm: VM without a public WinRM address

        Returns:
            NatRuleResult (UNREACHABLE when no load balancer fronts the VM)

        Raises:
            NatRuleAllocationError: If the load balancer or NIC update fails
        """
        match = self.snapshot.load_balancer_for_vm(vm)
        if match is None:
            logger.warning(
                f"There is no public address to reach the virtual machine {vm.name}: "
                "no load balancer fronts its network interfaces"
            )
            return NatRuleResult(vm_name=vm.name, outcome=NatRuleOutcome.UNREACHABLE)

        lb, nic_id = match
        logger.debug(f"Load balancer for the NAT rule of vm {vm.name} is {lb.id}")
        nic = self.snapshot.find_nic(nic_id)
        if nic is None:
            raise NatRuleAllocationError(
                f"Network interface {nic_id} of vm {vm.name} is not in resource group "
                f"{self.snapshot.resource_group}"
            )
        ip_config = nic.ip_configuration_in_pools(lb.backend_address_pool_ids)
        if ip_config is None:
            raise NatRuleAllocationError(
                f"No IP configuration of nic {nic.name} belongs to a backend pool of "
                f"load balancer {lb.name} (vm {vm.name})"
            )

        rule_name = nat_rule_name(vm, self.config.nat_rule_prefix)
        async with self.reservations.lock_for(lb.id):
            existing = lb.find_rule(rule_name)
            if existing is not None and existing.id:
                return await self._reuse_rule(vm, lb, nic, ip_config, existing)
            return await self._create_rule(vm, lb, nic, ip_config, rule_name)

    async def _reuse_rule(
        self,
        vm: VirtualMachine,
        lb: LoadBalancer,
        nic: NetworkInterface,
        ip_config: IPConfiguration,
        rule: InboundNatRule,
    ) -> NatRuleResult:
        rule_id = rule.id or ""
        if nic.references_nat_rule(rule_id):
            logger.debug(f"NAT rule {rule.name} for vm {vm.name} is already bound")
            self._record_endpoint(vm, lb, rule.frontend_port)
            return NatRuleResult(
                vm_name=vm.name,
                outcome=NatRuleOutcome.ALREADY_CONFIGURED,
                load_balancer=lb.name,
                rule_name=rule.name,
                frontend_port=rule.frontend_port,
            )

        logger.warning(
            f"Repairing orphaned NAT rule {rule.name} on load balancer {lb.name} "
            f"for vm {vm.name}"
        )
        await self._bind(vm, lb, nic, ip_config, rule.name, rule_id)
        self._record_endpoint(vm, lb, rule.frontend_port)
        return NatRuleResult(
            vm_name=vm.name,
            outcome=NatRuleOutcome.REPAIRED,
            load_balancer=lb.name,
            rule_name=rule.name,
            frontend_port=rule.frontend_port,
        )

    async def _create_rule(
        self,
        vm: VirtualMachine,
        lb: LoadBalancer,
        nic: NetworkInterface,
        ip_config: IPConfiguration,
        rule_name: str,
    ) -> NatRuleResult:
        port = self.reservations.claim(lb.id)
        rule = InboundNatRule(
            name=rule_name,
            frontend_port=port,
            backend_port=self.config.https_port,
            protocol="Tcp",
            frontend_ip_configuration_id=lb.frontend_ip_configuration_id,
        )

        logger.info(f"Adding inbound NAT rule for vm {vm.name} on load balancer {lb.name}")
        try:
            rule_id = await self.network.add_inbound_nat_rule(lb.name, rule)
        except Exception as e:
            self.reservations.release(lb.id, port)
            raise NatRuleAllocationError(
                f"Failed to add inbound NAT rule to load balancer {lb.name} for vm "
                f"{vm.name}: {safe_error_message(e)}"
            ) from e

        await self._bind(vm, lb, nic, ip_config, rule.name, rule_id)
        self._record_endpoint(vm, lb, port)
        logger.info(f"Added inbound NAT rule {rule_name} (port {port}) to nic {nic.name}")
        return NatRuleResult(
            vm_name=vm.name,
            outcome=NatRuleOutcome.CREATED,
            load_balancer=lb.name,
            rule_name=rule_name,
            frontend_port=port,
        )

    async def _bind(
        self,
        vm: VirtualMachine,
        lb: LoadBalancer,
        nic: NetworkInterface,
        ip_config: IPConfiguration,
        rule_name: str,
        rule_id: str,
    ) -> None:
        try:
            await self.network.bind_nat_rule(nic.name, ip_config.name, rule_id)
        except Exception as e:
            raise NatRuleAllocationError(
                f"Failed to bind inbound NAT rule {rule_name} of load balancer {lb.name} "
                f"to nic {nic.name} (vm {vm.name}): {safe_error_message(e)}",
                orphaned_rule=rule_name,
            ) from e

    def _record_endpoint(self, vm: VirtualMachine, lb: LoadBalancer, port: int) -> None:
        if lb.public_address:
            vm.winrm_https_public_address = lb.public_address
        vm.winrm_https_port = port


__all__ = [
    "NatRuleAllocator",
    "NatRuleOutcome",
    "NatRuleResult",
    "PortReservationTable",
    "find_orphaned_rules",
    "nat_rule_name",
    "select_free_port",
]
