"""Custom Script Extension provisioning for the WinRM HTTPS listener.

Each Windows VM gets the CustomScriptExtension that downloads
ConfigureWinRM.ps1 and its helpers and runs it with the VM's DNS name, which
creates the certificate and the HTTPS listener.

State machine per VM:

    ABSENT ───────────────────────────────► install ─► INSTALLED | FAILED
    found ─► UNKNOWN (file list differs) ─► install
          └► MATCHING ─► HEALTHY ─────────► INSTALLED (no calls)
                     └► UNHEALTHY ────────► delete ─► install
                        (or not Succeeded)

Health: the instance view entry for the extension must not carry a
substatus on the StdErr channel with a non-empty message.
"""

import logging
from enum import Enum

from azwinrm.config import WinRMConfig
from azwinrm.exceptions import ExtensionProvisioningError
from azwinrm.gateways import ComputeGateway
from azwinrm.models import Extension, ExtensionSettings, InstanceViewStatus, VirtualMachine
from azwinrm.retry_handler import safe_error_message

logger = logging.getLogger(__name__)

STDERR_STATUS_MARKER = "ComponentStatus/StdErr"


class ExtensionState(Enum):
    """States of the extension provisioning state machine."""

    ABSENT = "absent"
    UNKNOWN = "unknown"
    MATCHING = "matching"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INSTALLED = "installed"
    FAILED = "failed"


def has_error_output(statuses: list[InstanceViewStatus]) -> bool:
    """True if any substatus reports a non-empty message on the StdErr channel."""
    for status in statuses:
        if status.code and STDERR_STATUS_MARKER in status.code and status.message:
            return True
    return False


class ExtensionProvisioner:
    """Install, validate and repair the WinRM extension on Windows VMs."""

    def __init__(self, compute: ComputeGateway, config: WinRMConfig):
        self.compute = compute
        self.config = config

    def expected_settings(self, vm: VirtualMachine) -> ExtensionSettings:
        return ExtensionSettings(
            file_uris=tuple(self.config.extension_file_uris),
            command_to_execute=self.config.command_for(self.dns_name_for(vm)),
        )

    def dns_name_for(self, vm: VirtualMachine) -> str:
        if vm.winrm_https_public_address:
            return vm.winrm_https_public_address
        logger.warning(f"No public WinRM address known for vm {vm.name}, using its name")
        return vm.name

    async def ensure_extension(self, vm: VirtualMachine) -> ExtensionState | None:
        """Bring the WinRM extension on vm to a healthy, installed state.

        Args:
            vm: Virtual machine from the topology snapshot

        Returns:
            ExtensionState.INSTALLED, or None when vm is not Windows

        Raises:
            ExtensionProvisioningError: If delete/create fails or the extension
                does not reach the Succeeded provisioning state
            ResourceQueryError: If the extension or instance view query fails
        """
        if not vm.is_windows:
            logger.debug(
                f"WinRM extension cannot be enabled on the virtual machine {vm.name} "
                f"since the OS type is {vm.os_type.value}"
            )
            return None

        name = self.config.extension_name
        logger.debug(f"Checking if the extension {name} is present on vm {vm.name}")
        existing = await self.compute.get_extension(vm.name, name)
        state = await self.evaluate(vm, existing)
        logger.debug(f"Extension {name} on vm {vm.name} is {state.value}")

        if state == ExtensionState.HEALTHY:
            logger.info(f"Extension {name} on vm {vm.name} is already configured")
            return ExtensionState.INSTALLED

        if state == ExtensionState.UNHEALTHY:
            await self._remove(vm)

        await self._install(vm)
        return ExtensionState.INSTALLED

    async def evaluate(self, vm: VirtualMachine, existing: Extension | None) -> ExtensionState:
        """Classify the installed extension.

        Returns ABSENT, UNKNOWN, HEALTHY or UNHEALTHY. MATCHING is the
        intermediate state resolved here into HEALTHY or UNHEALTHY.
        """
        if existing is None:
            return ExtensionState.ABSENT

        if list(existing.settings.file_uris) != list(self.config.extension_file_uris):
            return ExtensionState.UNKNOWN

        logger.debug(f"Custom Script extension is for enabling Https Listener on vm {vm.name}")
        if not existing.succeeded:
            return ExtensionState.UNHEALTHY

        statuses = await self.compute.get_extension_statuses(vm.name, existing.name)
        if has_error_output(statuses):
            logger.warning(f"Extension {existing.name} on vm {vm.name} reported errors")
            return ExtensionState.UNHEALTHY
        return ExtensionState.HEALTHY

    async def _remove(self, vm: VirtualMachine) -> None:
        name = self.config.extension_name
        logger.debug(f"Removing the extension {name} from vm {vm.name}")
        try:
            await self.compute.delete_extension(vm.name, name)
        except Exception as e:
            raise ExtensionProvisioningError(
                f"Failed to delete the extension {name} on vm {vm.name}: {safe_error_message(e)}"
            ) from e
        logger.debug(f"Successfully removed the extension {name} from vm {vm.name}")

    async def _install(self, vm: VirtualMachine) -> Extension:
        name = self.config.extension_name
        settings = self.expected_settings(vm)
        logger.info(f"Adding extension {name} to vm {vm.name}")
        try:
            result = await self.compute.create_extension(
                vm,
                name,
                settings,
                publisher=self.config.extension_publisher,
                extension_type=self.config.extension_type,
                handler_version=self.config.extension_handler_version,
            )
        except Exception as e:
            raise ExtensionProvisioningError(
                f"Creation of extension {name} failed on vm {vm.name}: {safe_error_message(e)}"
            ) from e

        if not result.succeeded:
            raise ExtensionProvisioningError(
                f"Provisioning state of extension {name} on vm {vm.name} is "
                f"{result.provisioning_state}, expected Succeeded"
            )
        logger.info(f"Added extension {name} to vm {vm.name}")
        return result


__all__ = [
    "ExtensionProvisioner",
    "ExtensionState",
    "STDERR_STATUS_MARKER",
    "has_error_output",
]
