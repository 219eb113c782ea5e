"""Custom exceptions for WinRM enablement."""


class RemoteManagementError(Exception):
    """Base exception for WinRM enablement errors."""

    pass


class ConfigError(RemoteManagementError):
    """Configuration file or environment value is invalid."""

    pass


class ResourceQueryError(RemoteManagementError):
    """A get/list call failed for a reason other than not-found."""

    pass


class TopologyDiscoveryError(RemoteManagementError):
    """Resource group topology could not be read."""

    pass


class NatRuleAllocationError(RemoteManagementError):
    """Load balancer or NIC update rejected while binding a NAT rule.

    orphaned_rule is set when the rule was added to the load balancer but
    could not be bound to the NIC.
    """

    def __init__(self, message: str, orphaned_rule: str | None = None):
        super().__init__(message)
        self.orphaned_rule = orphaned_rule


class ExtensionProvisioningError(RemoteManagementError):
    """Extension create/delete rejected or not provisioned successfully."""

    pass


class SecurityRuleError(RemoteManagementError):
    """Security rule could not be created in a network security group."""

    pass


class RemoteManagementTimeoutError(RemoteManagementError):
    """The run did not finish within its timeout."""

    pass
