"""
Shared test fixtures for azwinrm tests.

This module provides common fixtures used across all test modules:
- In-memory compute and network gateways that record every call
- A topology builder for resource-group snapshots
- Isolation of the AZWINRM_* environment and the global config
"""

import os

import pytest

from azwinrm.config import WinRMConfig, reset_config
from azwinrm.models import (
    Extension,
    ExtensionSettings,
    InboundNatRule,
    InstanceViewStatus,
    IPConfiguration,
    LoadBalancer,
    NetworkInterface,
    OSType,
    SecurityGroup,
    SecurityRule,
    TopologySnapshot,
    VirtualMachine,
)

SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"
RESOURCE_GROUP = "winrm-rg"
PROVIDERS = f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{RESOURCE_GROUP}/providers"

MUTATING_CALLS = {
    "add_inbound_nat_rule",
    "bind_nat_rule",
    "create_security_rule",
    "create_extension",
    "delete_extension",
}


# ============================================================================
# ENVIRONMENT FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep user config files and AZWINRM_* variables out of every test."""
    for name in list(os.environ):
        if name.startswith("AZWINRM_"):
            monkeypatch.delenv(name)
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    monkeypatch.setenv("HOME", str(home_dir))
    reset_config()
    yield home_dir
    reset_config()


@pytest.fixture
def config():
    """Default configuration."""
    return WinRMConfig()


# ============================================================================
# TOPOLOGY FIXTURES
# ============================================================================


class TopologyBuilder:
    """Build resource ids and topology records with consistent naming."""

    resource_group = RESOURCE_GROUP

    @staticmethod
    def vm_id(name):
        return f"{PROVIDERS}/Microsoft.Compute/virtualMachines/{name}"

    @staticmethod
    def nic_id(name):
        return f"{PROVIDERS}/Microsoft.Network/networkInterfaces/{name}"

    @staticmethod
    def lb_id(name):
        return f"{PROVIDERS}/Microsoft.Network/loadBalancers/{name}"

    @classmethod
    def pool_id(cls, lb_name, pool="backend"):
        return f"{cls.lb_id(lb_name)}/backendAddressPools/{pool}"

    @classmethod
    def nat_rule_id(cls, lb_name, rule_name):
        return f"{cls.lb_id(lb_name)}/inboundNatRules/{rule_name}"

    @classmethod
    def nsg_id(cls, name):
        return f"{PROVIDERS}/Microsoft.Network/networkSecurityGroups/{name}"

    @classmethod
    def vm(cls, name, nics=(), os_type=OSType.WINDOWS, address=None, port=None):
        return VirtualMachine(
            id=cls.vm_id(name),
            name=name,
            location="eastus",
            os_type=os_type,
            network_interface_ids=[cls.nic_id(nic) for nic in nics],
            winrm_https_public_address=address,
            winrm_https_port=port,
        )

    @classmethod
    def nic(cls, name, pools=(), nat_rule_ids=(), ip_config="ipconfig1"):
        return NetworkInterface(
            id=cls.nic_id(name),
            name=name,
            ip_configurations=[
                IPConfiguration(
                    id=f"{cls.nic_id(name)}/ipConfigurations/{ip_config}",
                    name=ip_config,
                    backend_address_pool_ids=list(pools),
                    inbound_nat_rule_ids=list(nat_rule_ids),
                )
            ],
        )

    @classmethod
    def load_balancer(cls, name, nics=(), ports=(), rules=(), public_address=None):
        return LoadBalancer(
            id=cls.lb_id(name),
            name=name,
            frontend_ip_configuration_id=f"{cls.lb_id(name)}/frontendIPConfigurations/frontend",
            inbound_nat_rules=list(rules),
            backend_nic_ids=[cls.nic_id(nic) for nic in nics],
            backend_address_pool_ids=[cls.pool_id(name)],
            frontend_ports_in_use=set(ports),
            public_address=public_address,
        )

    @classmethod
    def nat_rule(cls, lb_name, rule_name, frontend_port, backend_port=5986):
        return InboundNatRule(
            name=rule_name,
            frontend_port=frontend_port,
            backend_port=backend_port,
            id=cls.nat_rule_id(lb_name, rule_name),
        )

    @classmethod
    def snapshot(cls, vms=(), load_balancers=(), nics=()):
        return TopologySnapshot(
            resource_group=cls.resource_group,
            virtual_machines=list(vms),
            load_balancers=list(load_balancers),
            network_interfaces=list(nics),
        )

    @classmethod
    def security_group(cls, name):
        return SecurityGroup(id=cls.nsg_id(name), name=name)


@pytest.fixture
def builder():
    """Topology record builder."""
    return TopologyBuilder


@pytest.fixture
def lb_topology():
    """vm1 behind lb1 through nic1; lb1 already forwards port 5986."""
    b = TopologyBuilder
    return b.snapshot(
        vms=[b.vm("vm1", nics=["nic1"])],
        load_balancers=[
            b.load_balancer("lb1", nics=["nic1"], ports=[5986], public_address="lb1.example.com")
        ],
        nics=[b.nic("nic1", pools=[b.pool_id("lb1")])],
    )


@pytest.fixture
def two_vm_topology():
    """vm1 and vm2 behind the same load balancer, neither publicly reachable."""
    b = TopologyBuilder
    return b.snapshot(
        vms=[b.vm("vm1", nics=["nic1"]), b.vm("vm2", nics=["nic2"])],
        load_balancers=[
            b.load_balancer(
                "lb1", nics=["nic1", "nic2"], ports=[5986], public_address="lb1.example.com"
            )
        ],
        nics=[
            b.nic("nic1", pools=[b.pool_id("lb1")]),
            b.nic("nic2", pools=[b.pool_id("lb1")]),
        ],
    )


# ============================================================================
# GATEWAY FAKES
# ============================================================================


class _RecordingGateway:
    """Call log plus queued failures per method name."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.errors: dict[str, list[BaseException]] = {}

    def fail(self, method, *errors):
        """Queue errors raised by the next calls to method, in order."""
        self.errors.setdefault(method, []).extend(errors)

    def _record(self, method, *args):
        self.calls.append((method, *args))
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)

    def calls_to(self, method):
        return [call for call in self.calls if call[0] == method]

    @property
    def mutating_calls(self):
        return [call for call in self.calls if call[0] in MUTATING_CALLS]


class FakeNetworkGateway(_RecordingGateway):
    """In-memory NetworkGateway."""

    def __init__(self, security_groups=(), security_rules=None):
        super().__init__()
        self.raw_load_balancers: list = []
        self.raw_network_interfaces: list = []
        self.raw_public_ip_addresses: list = []
        self.security_groups = list(security_groups)
        self.security_rules: dict[tuple[str, str], SecurityRule] = dict(security_rules or {})
        self.nat_rules: dict[str, list[InboundNatRule]] = {}
        self.bindings: list[tuple[str, str, str]] = []

    async def list_load_balancers(self):
        self._record("list_load_balancers")
        return list(self.raw_load_balancers)

    async def list_network_interfaces(self):
        self._record("list_network_interfaces")
        return list(self.raw_network_interfaces)

    async def list_public_ip_addresses(self):
        self._record("list_public_ip_addresses")
        return list(self.raw_public_ip_addresses)

    async def list_security_groups(self):
        self._record("list_security_groups")
        return list(self.security_groups)

    async def add_inbound_nat_rule(self, load_balancer_name, rule):
        self._record("add_inbound_nat_rule", load_balancer_name, rule.name, rule.frontend_port)
        self.nat_rules.setdefault(load_balancer_name, []).append(rule)
        return TopologyBuilder.nat_rule_id(load_balancer_name, rule.name)

    async def bind_nat_rule(self, nic_name, ip_configuration_name, rule_id):
        self._record("bind_nat_rule", nic_name, ip_configuration_name, rule_id)
        self.bindings.append((nic_name, ip_configuration_name, rule_id))

    async def get_security_rule(self, group_name, rule_name):
        self._record("get_security_rule", group_name, rule_name)
        return self.security_rules.get((group_name, rule_name))

    async def create_security_rule(self, group_name, rule):
        self._record("create_security_rule", group_name, rule.name, rule.priority)
        self.security_rules[(group_name, rule.name)] = rule
        return rule


class FakeComputeGateway(_RecordingGateway):
    """In-memory ComputeGateway.

    created_state is the provisioning state reported by create_extension.
    """

    def __init__(self, created_state="Succeeded"):
        super().__init__()
        self.raw_virtual_machines: list = []
        self.extensions: dict[str, Extension] = {}
        self.statuses: dict[str, list[InstanceViewStatus]] = {}
        self.created_state = created_state

    async def list_virtual_machines(self):
        self._record("list_virtual_machines")
        return list(self.raw_virtual_machines)

    async def get_extension(self, vm_name, extension_name):
        self._record("get_extension", vm_name, extension_name)
        extension = self.extensions.get(vm_name)
        if extension is not None and extension.name == extension_name:
            return extension
        return None

    async def get_extension_statuses(self, vm_name, extension_name):
        self._record("get_extension_statuses", vm_name, extension_name)
        return list(self.statuses.get(vm_name, []))

    async def create_extension(
        self, vm, extension_name, settings, *, publisher, extension_type, handler_version
    ):
        self._record("create_extension", vm.name, extension_name, settings)
        extension = Extension(
            name=extension_name, settings=settings, provisioning_state=self.created_state
        )
        self.extensions[vm.name] = extension
        self.statuses.pop(vm.name, None)
        return extension

    async def delete_extension(self, vm_name, extension_name):
        self._record("delete_extension", vm_name, extension_name)
        self.extensions.pop(vm_name, None)
        self.statuses.pop(vm_name, None)

    def install(self, vm_name, config, dns_name, state="Succeeded", statuses=()):
        """Pre-install the WinRM extension as a previous run would have."""
        self.extensions[vm_name] = Extension(
            name=config.extension_name,
            settings=ExtensionSettings(
                file_uris=tuple(config.extension_file_uris),
                command_to_execute=config.command_for(dns_name),
            ),
            provisioning_state=state,
        )
        self.statuses[vm_name] = list(statuses)


@pytest.fixture
def network_gateway():
    """Empty in-memory network gateway."""
    return FakeNetworkGateway()


@pytest.fixture
def compute_gateway():
    """Empty in-memory compute gateway."""
    return FakeComputeGateway()


# ============================================================================
# SDK MODEL HELPERS
# ============================================================================


class AsyncPager:
    """Async iterator standing in for azure.core.async_paging.AsyncItemPaged."""

    def __init__(self, items=()):
        self._items = list(items)

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for item in self._items:
            yield item


@pytest.fixture
def async_pager():
    """Factory for AsyncItemPaged stand-ins."""
    return AsyncPager
