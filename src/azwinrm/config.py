"""Configuration for WinRM enablement.

Design Philosophy:
- Ruthless simplicity: Single configuration dataclass
- Sensible defaults: Works out of the box
- Layered: defaults < TOML file < environment variables

Config file (optional) lives at ~/.azwinrm/config.toml:

    [winrm]
    https_port = 5986
    security_rule_priority = 3986
    max_concurrent = 5
    fail_fast = false

Environment variables use the AZWINRM_ prefix, e.g. AZWINRM_HTTPS_PORT,
AZWINRM_SECURITY_RULE_MAX_ATTEMPTS, AZWINRM_FAIL_FAST.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import tomli

from azwinrm.exceptions import ConfigError

logger = logging.getLogger(__name__)

QUICKSTART_BASE_URL = (
    "https://raw.githubusercontent.com/Azure/azure-quickstart-templates/master/201-vm-winrm-windows"
)

DEFAULT_FILE_URIS = (
    f"{QUICKSTART_BASE_URL}/ConfigureWinRM.ps1",
    f"{QUICKSTART_BASE_URL}/makecert.exe",
    f"{QUICKSTART_BASE_URL}/winrmconf.cmd",
)

ENV_PREFIX = "AZWINRM_"


@dataclass
class WinRMConfig:
    """WinRM enablement settings.

    Defaults reproduce the behavior expected by existing deployments:
    port 5986, rule VSO-Custom-WinRM-Https-Port at priority 3986, and the
    CustomScriptExtension 1.7 running ConfigureWinRM.ps1.
    """

    # Listener
    https_port: int = 5986

    # NAT rules
    nat_rule_prefix: str = "winrm-https"
    nat_idle_timeout_minutes: int = 4

    # Security rules
    security_rule_name: str = "VSO-Custom-WinRM-Https-Port"
    security_rule_priority: int = 3986
    security_rule_max_attempts: int = 3
    security_rule_retry_delay: float = 0.0

    # Custom Script Extension
    extension_name: str = "CustomScriptExtension"
    extension_publisher: str = "Microsoft.Compute"
    extension_type: str = "CustomScriptExtension"
    extension_handler_version: str = "1.7"
    extension_file_uris: tuple[str, ...] = DEFAULT_FILE_URIS
    extension_command_template: str = "powershell.exe -File ConfigureWinRM.ps1 {dns_name}"

    # Orchestration
    max_concurrent: int = 10
    fail_fast: bool = False
    timeout_seconds: float | None = None

    def __post_init__(self):
        """Validate configuration."""
        if not 1 <= self.https_port <= 65535:
            raise ConfigError(f"https_port must be between 1 and 65535, got {self.https_port}")
        if self.security_rule_max_attempts < 1:
            raise ConfigError("security_rule_max_attempts must be at least 1")
        if self.security_rule_retry_delay < 0:
            raise ConfigError("security_rule_retry_delay cannot be negative")
        if self.max_concurrent < 1:
            raise ConfigError("max_concurrent must be at least 1")
        if not self.extension_file_uris:
            raise ConfigError("extension_file_uris cannot be empty")
        if "{dns_name}" not in self.extension_command_template:
            raise ConfigError("extension_command_template must contain {dns_name}")

    def command_for(self, dns_name: str) -> str:
        return self.extension_command_template.format(dns_name=dns_name)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WinRMConfig":
        """Build a config from a plain dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

        values = {key: value for key, value in data.items() if key in known}
        if "extension_file_uris" in values:
            values["extension_file_uris"] = tuple(values["extension_file_uris"])
        return cls(**values)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "WinRMConfig":
        """Load configuration from TOML file then apply environment overrides.

        Args:
            path: Config file path (default: ~/.azwinrm/config.toml)

        Returns:
            WinRMConfig

        Raises:
            ConfigError: If the file cannot be parsed or values are invalid
        """
        config_path = Path(path).expanduser() if path else get_default_config_path()
        data: dict[str, Any] = {}

        if config_path.exists():
            try:
                with open(config_path, "rb") as f:
                    data = tomli.load(f).get("winrm", {})
                logger.debug(f"Loaded config from: {config_path}")
            except (OSError, tomli.TOMLDecodeError) as e:
                raise ConfigError(f"Failed to load config {config_path}: {e}") from e
        elif path:
            raise ConfigError(f"Config file not found: {config_path}")
        else:
            logger.debug("Config file not found, using defaults")

        try:
            base = cls.from_dict(data)
        except TypeError as e:
            raise ConfigError(f"Invalid config in {config_path}: {e}") from e
        return base.with_environment()

    def with_environment(self) -> "WinRMConfig":
        """Return a copy with AZWINRM_* environment overrides applied."""
        overrides: dict[str, Any] = {}
        for f in fields(self):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _parse_env_value(f.name, raw, getattr(self, f.name))
        return replace(self, **overrides) if overrides else self


def _parse_env_value(name: str, raw: str, current: Any) -> Any:
    try:
        if isinstance(current, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float) or (current is None and name == "timeout_seconds"):
            return float(raw) if raw.strip() else None
        if isinstance(current, tuple):
            return tuple(item.strip() for item in raw.split(",") if item.strip())
    except ValueError as e:
        raise ConfigError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw


def get_default_config_path() -> Path:
    return Path.home() / ".azwinrm" / "config.toml"


# Global configuration instance (lazily loaded)
_config: WinRMConfig | None = None


def get_config() -> WinRMConfig:
    """Get global configuration (loaded from file and environment on first access)."""
    global _config
    if _config is None:
        _config = WinRMConfig.load()
    return _config


def reset_config() -> None:
    """Reset global configuration.

    Forces reload on next access. Useful for testing.
    """
    global _config
    _config = None


__all__ = [
    "DEFAULT_FILE_URIS",
    "WinRMConfig",
    "get_config",
    "get_default_config_path",
    "reset_config",
]
