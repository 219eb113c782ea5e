"""Inbound security rule for the WinRM HTTPS port on every NSG.

A rule is present when a rule of the exact configured name exists; its
content is never inspected or repaired. An absent rule is created with a
bounded number of attempts.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from azwinrm.config import WinRMConfig
from azwinrm.exceptions import SecurityRuleError
from azwinrm.gateways import NetworkGateway
from azwinrm.models import SecurityGroup, SecurityRule
from azwinrm.retry_handler import call_with_retry, safe_error_message

logger = logging.getLogger(__name__)


class SecurityRuleOutcome(Enum):
    """What ensure_rule did for a security group."""

    CREATED = "created"
    ALREADY_PRESENT = "already_present"


@dataclass
class SecurityRuleResult:
    """Result of ensuring the rule on one security group."""

    group_name: str
    outcome: SecurityRuleOutcome
    rule_name: str


class SecurityRuleEnsurer:
    """Ensure the WinRM inbound-allow rule exists on security groups."""

    def __init__(self, network: NetworkGateway, config: WinRMConfig):
        self.network = network
        self.config = config

    def desired_rule(self) -> SecurityRule:
        return SecurityRule(
            name=self.config.security_rule_name,
            priority=self.config.security_rule_priority,
            direction="Inbound",
            access="Allow",
            protocol="*",
            source_address_prefix="*",
            source_port_range="*",
            destination_address_prefix="*",
            destination_port_range=str(self.config.https_port),
        )

    async def ensure_rule(self, group: SecurityGroup) -> SecurityRuleResult:
        """Create the WinRM rule in group unless a rule of that name exists.

        Raises:
            ResourceQueryError: If the existence check fails (other than not-found)
            SecurityRuleError: If every creation attempt fails
        """
        rule = self.desired_rule()
        logger.debug(
            f"Getting the network security rule config {rule.name} under security group "
            f"{group.name}"
        )
        existing = await self.network.get_security_rule(group.name, rule.name)
        if existing is not None:
            logger.info(f"Rule {rule.name} already exists under security group {group.name}")
            return SecurityRuleResult(
                group_name=group.name,
                outcome=SecurityRuleOutcome.ALREADY_PRESENT,
                rule_name=rule.name,
            )

        logger.debug(f"Rule {rule.name} not found under security group {group.name}")
        logger.info(f"Adding security rule for WinRM port to security group {group.name}")
        attempts = self.config.security_rule_max_attempts
        try:
            # Same priority on every attempt
            await call_with_retry(
                self.network.create_security_rule,
                group.name,
                rule,
                max_attempts=attempts,
                initial_delay=self.config.security_rule_retry_delay,
                retryable_exceptions=(Exception,),
                description=f"create security rule {rule.name} in {group.name}",
            )
        except Exception as e:
            raise SecurityRuleError(
                f"Failed to add the WinRM security rule to security group {group.name} "
                f"after {attempts} attempts: {safe_error_message(e)}"
            ) from e

        logger.info(
            f"Added rule {rule.name} with priority {rule.priority} for port "
            f"{rule.destination_port_range} under security group {group.name}"
        )
        return SecurityRuleResult(
            group_name=group.name,
            outcome=SecurityRuleOutcome.CREATED,
            rule_name=rule.name,
        )


__all__ = [
    "SecurityRuleEnsurer",
    "SecurityRuleOutcome",
    "SecurityRuleResult",
]
