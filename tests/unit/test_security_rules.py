"""Tests for the WinRM network security group rule."""

from dataclasses import replace

import pytest

from azwinrm.exceptions import ResourceQueryError, SecurityRuleError
from azwinrm.models import SecurityRule
from azwinrm.security_rules import SecurityRuleEnsurer, SecurityRuleOutcome


@pytest.fixture
def nsg(builder):
    return builder.security_group("nsg1")


class TestDesiredRule:
    """Tests for SecurityRuleEnsurer.desired_rule()."""

    def test_default_rule(self, network_gateway, config):
        rule = SecurityRuleEnsurer(network_gateway, config).desired_rule()

        assert rule.name == "VSO-Custom-WinRM-Https-Port"
        assert rule.priority == 3986
        assert rule.direction == "Inbound"
        assert rule.access == "Allow"
        assert rule.protocol == "*"
        assert rule.source_address_prefix == "*"
        assert rule.source_port_range == "*"
        assert rule.destination_address_prefix == "*"
        assert rule.destination_port_range == "5986"

    def test_port_follows_config(self, network_gateway, config):
        rule = SecurityRuleEnsurer(network_gateway, replace(config, https_port=6000)).desired_rule()
        assert rule.destination_port_range == "6000"


class TestEnsureRule:
    """Tests for SecurityRuleEnsurer.ensure_rule()."""

    @pytest.mark.asyncio
    async def test_existing_rule_is_not_touched(self, network_gateway, config, nsg):
        """A rule with the right name counts as present whatever its content."""
        network_gateway.security_rules[("nsg1", "VSO-Custom-WinRM-Https-Port")] = SecurityRule(
            name="VSO-Custom-WinRM-Https-Port", priority=100, destination_port_range="22"
        )
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        result = await ensurer.ensure_rule(nsg)

        assert result.outcome == SecurityRuleOutcome.ALREADY_PRESENT
        assert network_gateway.calls == [
            ("get_security_rule", "nsg1", "VSO-Custom-WinRM-Https-Port")
        ]

    @pytest.mark.asyncio
    async def test_absent_rule_is_created(self, network_gateway, config, nsg):
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        result = await ensurer.ensure_rule(nsg)

        assert result.outcome == SecurityRuleOutcome.CREATED
        assert result.group_name == "nsg1"
        assert network_gateway.calls_to("create_security_rule") == [
            ("create_security_rule", "nsg1", "VSO-Custom-WinRM-Https-Port", 3986)
        ]
        assert network_gateway.security_rules[("nsg1", "VSO-Custom-WinRM-Https-Port")] == (
            ensurer.desired_rule()
        )

    @pytest.mark.asyncio
    async def test_succeeds_on_second_attempt(self, network_gateway, config, nsg):
        network_gateway.fail("create_security_rule", RuntimeError("priority conflict"))
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        result = await ensurer.ensure_rule(nsg)

        assert result.outcome == SecurityRuleOutcome.CREATED
        assert len(network_gateway.calls_to("create_security_rule")) == 2

    @pytest.mark.asyncio
    async def test_third_attempt_can_succeed(self, network_gateway, config, nsg):
        network_gateway.fail("create_security_rule", RuntimeError("one"), RuntimeError("two"))
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        result = await ensurer.ensure_rule(nsg)

        assert result.outcome == SecurityRuleOutcome.CREATED
        assert len(network_gateway.calls_to("create_security_rule")) == 3

    @pytest.mark.asyncio
    async def test_fails_after_three_attempts(self, network_gateway, config, nsg):
        network_gateway.fail(
            "create_security_rule", RuntimeError("one"), RuntimeError("two"), RuntimeError("three")
        )
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        with pytest.raises(SecurityRuleError, match="nsg1") as exc_info:
            await ensurer.ensure_rule(nsg)

        assert "3 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert len(network_gateway.calls_to("create_security_rule")) == 3

    @pytest.mark.asyncio
    async def test_every_attempt_uses_same_priority(self, network_gateway, config, nsg):
        network_gateway.fail("create_security_rule", RuntimeError("a"), RuntimeError("b"))
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        await ensurer.ensure_rule(nsg)

        priorities = {call[3] for call in network_gateway.calls_to("create_security_rule")}
        assert priorities == {3986}

    @pytest.mark.asyncio
    async def test_attempts_follow_config(self, network_gateway, config, nsg):
        network_gateway.fail("create_security_rule", *(RuntimeError(str(i)) for i in range(5)))
        ensurer = SecurityRuleEnsurer(
            network_gateway, replace(config, security_rule_max_attempts=5)
        )

        with pytest.raises(SecurityRuleError, match="5 attempts"):
            await ensurer.ensure_rule(nsg)

        assert len(network_gateway.calls_to("create_security_rule")) == 5

    @pytest.mark.asyncio
    async def test_lookup_failure_propagates(self, network_gateway, config, nsg):
        network_gateway.fail("get_security_rule", ResourceQueryError("forbidden"))
        ensurer = SecurityRuleEnsurer(network_gateway, config)

        with pytest.raises(ResourceQueryError):
            await ensurer.ensure_rule(nsg)

        assert network_gateway.calls_to("create_security_rule") == []
