"""Tests for the azwinrm command line."""

from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from azwinrm import __version__
from azwinrm.cli import main
from azwinrm.exceptions import RemoteManagementTimeoutError
from azwinrm.orchestrator import ItemFailure, Phase, PhaseResult, RemoteManagementResult

SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"


def make_result(failed=False):
    phases = [
        PhaseResult(phase=Phase.NAT_RULES, outcomes={"vm1": "created"}),
        PhaseResult(phase=Phase.EXTENSIONS, outcomes={"vm1": "installed"}, skipped=["linux1"]),
        PhaseResult(phase=Phase.SECURITY_RULES, outcomes={"nsg1": "already_present"}),
    ]
    if failed:
        phases[2].failed.append(
            ItemFailure(phase=Phase.SECURITY_RULES, item="nsg2", error="forbidden")
        )
    return RemoteManagementResult(resource_group="winrm-rg", phases=phases, duration_seconds=1.2)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_configure():
    with patch("azwinrm.cli._configure", new=AsyncMock(return_value=make_result())) as mock:
        yield mock


class TestMain:
    """Tests for the azwinrm command."""

    def test_successful_run(self, runner, mock_configure):
        result = runner.invoke(main, ["-g", "winrm-rg", "-s", SUBSCRIPTION])

        assert result.exit_code == 0, result.output
        assert "winrm-rg: 3 succeeded, 1 skipped, 0 failed" in result.output
        resource_group, subscription, config = mock_configure.await_args.args
        assert (resource_group, subscription) == ("winrm-rg", SUBSCRIPTION)
        assert config.fail_fast is False

    def test_subscription_from_environment(self, runner, mock_configure):
        result = runner.invoke(
            main, ["-g", "winrm-rg"], env={"AZURE_SUBSCRIPTION_ID": SUBSCRIPTION}
        )

        assert result.exit_code == 0, result.output
        assert mock_configure.await_args.args[1] == SUBSCRIPTION

    def test_resource_group_is_required(self, runner, mock_configure):
        result = runner.invoke(main, ["-s", SUBSCRIPTION])

        assert result.exit_code == 2
        assert "resource-group" in result.output
        mock_configure.assert_not_awaited()

    def test_options_override_config(self, runner, mock_configure):
        result = runner.invoke(
            main,
            [
                "-g",
                "winrm-rg",
                "-s",
                SUBSCRIPTION,
                "--fail-fast",
                "--timeout",
                "300",
                "--max-concurrent",
                "4",
            ],
        )

        assert result.exit_code == 0, result.output
        config = mock_configure.await_args.args[2]
        assert config.fail_fast is True
        assert config.timeout_seconds == 300.0
        assert config.max_concurrent == 4

    def test_config_file(self, runner, mock_configure, tmp_path):
        path = tmp_path / "winrm.toml"
        path.write_text("[winrm]\nsecurity_rule_priority = 4000\n")

        result = runner.invoke(
            main, ["-g", "winrm-rg", "-s", SUBSCRIPTION, "--config", str(path)]
        )

        assert result.exit_code == 0, result.output
        assert mock_configure.await_args.args[2].security_rule_priority == 4000

    def test_missing_config_file_is_an_error(self, runner, mock_configure, tmp_path):
        result = runner.invoke(
            main,
            ["-g", "winrm-rg", "-s", SUBSCRIPTION, "--config", str(tmp_path / "missing.toml")],
        )

        assert result.exit_code == 1
        assert "Config file not found" in result.output
        mock_configure.assert_not_awaited()

    def test_failures_exit_nonzero(self, runner):
        with patch(
            "azwinrm.cli._configure", new=AsyncMock(return_value=make_result(failed=True))
        ):
            result = runner.invoke(main, ["-g", "winrm-rg", "-s", SUBSCRIPTION])

        assert result.exit_code == 1
        assert "nsg2" in result.output
        assert "1 failed" in result.output

    def test_run_error_is_reported(self, runner):
        with patch(
            "azwinrm.cli._configure",
            new=AsyncMock(side_effect=RemoteManagementTimeoutError("did not finish within 5s")),
        ):
            result = runner.invoke(main, ["-g", "winrm-rg", "-s", SUBSCRIPTION])

        assert result.exit_code == 1
        assert "did not finish within 5s" in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output
