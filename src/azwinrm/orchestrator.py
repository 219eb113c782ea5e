"""WinRM enablement orchestration.

Runs the three reconciliation phases over a topology snapshot in fixed order:

1. NAT rules: VMs without a public WinRM address get a load balancer NAT rule
2. Extensions: Windows VMs get a healthy WinRM Custom Script Extension
3. Security rules: every NSG gets the inbound rule for the WinRM port

NAT rules come first because the extension command line is built from the
VM's reachable DNS name.

Error policy:
- Default: items of a phase run independently (bounded concurrency), failures
  are collected and the run continues with the next item and phase
- fail_fast: items run one at a time in enumeration order and the first error
  aborts the run

Public API:
    RemoteManagementOrchestrator: Runs the phases
    configure_remote_management: Convenience entry point
    Phase, PhaseResult, ItemFailure, RemoteManagementResult: Results
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from azwinrm.config import WinRMConfig, get_config
from azwinrm.exceptions import ExtensionProvisioningError, RemoteManagementTimeoutError
from azwinrm.extensions import ExtensionProvisioner, ExtensionState
from azwinrm.gateways import ComputeGateway, NetworkGateway
from azwinrm.models import SecurityGroup, TopologySnapshot, VirtualMachine
from azwinrm.nat_rules import NatRuleAllocator, NatRuleOutcome, find_orphaned_rules
from azwinrm.retry_handler import safe_error_message
from azwinrm.security_rules import SecurityRuleEnsurer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Phase(Enum):
    """Reconciliation phases, in execution order."""

    NAT_RULES = "nat_rules"
    EXTENSIONS = "extensions"
    SECURITY_RULES = "security_rules"


@dataclass
class ItemFailure:
    """A phase item that failed."""

    phase: Phase
    item: str
    error: str
    exception: BaseException | None = field(default=None, repr=False, compare=False)


@dataclass
class PhaseResult:
    """Outcome of one phase."""

    phase: Phase
    outcomes: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    failed: list[ItemFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class RemoteManagementResult:
    """Aggregated result of a run."""

    resource_group: str
    phases: list[PhaseResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return all(phase.success for phase in self.phases)

    @property
    def failures(self) -> list[ItemFailure]:
        return [failure for phase in self.phases for failure in phase.failed]

    def phase(self, phase: Phase) -> PhaseResult | None:
        for result in self.phases:
            if result.phase == phase:
                return result
        return None

    def summary(self) -> str:
        succeeded = sum(len(phase.outcomes) for phase in self.phases)
        skipped = sum(len(phase.skipped) for phase in self.phases)
        return (
            f"{self.resource_group}: {succeeded} succeeded, {skipped} skipped, "
            f"{len(self.failures)} failed"
        )


class RemoteManagementOrchestrator:
    """Run NAT rule, extension and security rule phases over a snapshot.

    Example:
        >>> orchestrator = RemoteManagementOrchestrator(topology, compute, network)
        >>> result = await orchestrator.run_with_timeout(600)
        >>> print(result.summary())
    """

    def __init__(
        self,
        topology: TopologySnapshot,
        compute: ComputeGateway,
        network: NetworkGateway,
        config: WinRMConfig | None = None,
    ):
        self.topology = topology
        self.compute = compute
        self.network = network
        self.config = config or get_config()
        self.nat_allocator = NatRuleAllocator(topology, network, self.config)
        self.extension_provisioner = ExtensionProvisioner(compute, self.config)
        self.security_rule_ensurer = SecurityRuleEnsurer(network, self.config)

    async def run(self) -> RemoteManagementResult:
        """Run all phases once.

        Returns:
            RemoteManagementResult with per-phase outcomes and failures

        Raises:
            RemoteManagementError: In fail_fast mode, the first item error
        """
        start = time.time()
        result = RemoteManagementResult(resource_group=self.topology.resource_group)

        nat_result = await self._nat_phase()
        result.phases.append(nat_result)
        result.phases.append(
            await self._extension_phase({failure.item for failure in nat_result.failed})
        )
        result.phases.append(await self._security_phase())

        result.duration_seconds = time.time() - start
        if result.success:
            logger.info(f"WinRM configuration completed: {result.summary()}")
        else:
            logger.error(f"WinRM configuration completed with failures: {result.summary()}")
        return result

    async def run_with_timeout(self, timeout: float | None = None) -> RemoteManagementResult:
        """Run all phases, cancelling pending provider calls after timeout seconds.

        Raises:
            RemoteManagementTimeoutError: If the run does not finish in time
        """
        timeout = timeout if timeout is not None else self.config.timeout_seconds
        if timeout is None:
            return await self.run()
        try:
            return await asyncio.wait_for(self.run(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RemoteManagementTimeoutError(
                f"WinRM configuration of {self.topology.resource_group} did not finish "
                f"within {timeout}s"
            ) from e

    async def _nat_phase(self) -> PhaseResult:
        logger.debug("Trying to add inbound NAT rules to the load balancers")
        for lb, rule in find_orphaned_rules(self.topology, self.config.https_port):
            logger.warning(
                f"NAT rule {rule.name} on load balancer {lb.name} is not bound to any "
                "network interface"
            )

        async def handle(vm: VirtualMachine) -> str | None:
            nat_result = await self.nat_allocator.ensure_reachable(vm)
            if nat_result.outcome == NatRuleOutcome.UNREACHABLE:
                return None
            return nat_result.outcome.value

        return await self._run_items(
            Phase.NAT_RULES, self.topology.vms_needing_nat(), lambda vm: vm.name, handle
        )

    async def _extension_phase(self, nat_failed: set[str]) -> PhaseResult:
        """Install extensions; VMs in nat_failed are failed without any provider call."""

        async def handle(vm: VirtualMachine) -> str | None:
            # The listener certificate is issued for the address the NAT phase resolves
            if vm.is_windows and vm.name in nat_failed:
                raise ExtensionProvisioningError(
                    f"Extension not installed on vm {vm.name}: its inbound NAT rule could "
                    "not be configured"
                )
            state = await self.extension_provisioner.ensure_extension(vm)
            return state.value if state else None

        return await self._run_items(
            Phase.EXTENSIONS,
            self.topology.virtual_machines,
            lambda vm: vm.name,
            handle,
            failure_label=ExtensionState.FAILED.value,
        )

    async def _security_phase(self) -> PhaseResult:
        try:
            groups = await self.network.list_security_groups()
        except Exception as e:
            if self.config.fail_fast:
                raise
            logger.error(
                f"Failed to get the list of network security groups: {safe_error_message(e)}"
            )
            return PhaseResult(
                phase=Phase.SECURITY_RULES,
                failed=[
                    ItemFailure(
                        phase=Phase.SECURITY_RULES,
                        item=self.topology.resource_group,
                        error=safe_error_message(e),
                        exception=e,
                    )
                ],
            )

        if groups:
            logger.debug("Trying to add a network security group rule")

        async def handle(group: SecurityGroup) -> str | None:
            rule_result = await self.security_rule_ensurer.ensure_rule(group)
            return rule_result.outcome.value

        return await self._run_items(
            Phase.SECURITY_RULES, groups, lambda group: group.name, handle
        )

    async def _run_items(
        self,
        phase: Phase,
        items: Sequence[T],
        name_of: Callable[[T], str],
        handler: Callable[[T], Awaitable[str | None]],
        failure_label: str = "failed",
    ) -> PhaseResult:
        """Run handler over items; None from handler marks the item skipped."""
        result = PhaseResult(phase=phase)
        if not items:
            logger.debug(f"Nothing to do in phase {phase.value}")
            return result

        if self.config.fail_fast:
            for item in items:
                try:
                    outcome = await handler(item)
                except Exception as e:
                    logger.error(
                        f"{phase.value}: {name_of(item)} {failure_label}: {safe_error_message(e)}"
                    )
                    raise
                self._record(result, name_of(item), outcome)
            return result

        semaphore = asyncio.Semaphore(self.config.max_concurrent)

        async def guarded(item: T) -> tuple[str, str | None, Exception | None]:
            async with semaphore:
                try:
                    return name_of(item), await handler(item), None
                except Exception as e:
                    return name_of(item), None, e

        for name, outcome, error in await asyncio.gather(*(guarded(item) for item in items)):
            if error is None:
                self._record(result, name, outcome)
                continue
            message = safe_error_message(error)
            logger.error(f"{phase.value}: {name} {failure_label}: {message}")
            result.failed.append(
                ItemFailure(phase=phase, item=name, error=message, exception=error)
            )
        return result

    @staticmethod
    def _record(result: PhaseResult, name: str, outcome: str | None) -> None:
        if outcome is None:
            result.skipped.append(name)
        else:
            result.outcomes[name] = outcome


async def configure_remote_management(
    topology: TopologySnapshot,
    compute: ComputeGateway,
    network: NetworkGateway,
    config: WinRMConfig | None = None,
) -> RemoteManagementResult:
    """Configure WinRM HTTPS access for every VM in topology.

    Example:
        >>> result = await configure_remote_management(topology, compute, network)
        >>> if not result.success:
        ...     for failure in result.failures:
        ...         print(failure.item, failure.error)
    """
    orchestrator = RemoteManagementOrchestrator(topology, compute, network, config)
    return await orchestrator.run_with_timeout()


__all__ = [
    "ItemFailure",
    "Phase",
    "PhaseResult",
    "RemoteManagementOrchestrator",
    "RemoteManagementResult",
    "configure_remote_management",
]
