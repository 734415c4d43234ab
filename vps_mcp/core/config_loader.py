"""Configuration management for VPS MCP server."""

import asyncio
import os
import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from ..models.host import VPSHost
from .exceptions import ConfigurationError
from .settings import PlanProviderSettings, PoolSettings

logger = structlog.get_logger()

ALLOWED_ENV_VARS = {
    "HOME",
    "USER",
    "XDG_CONFIG_HOME",
    "XDG_DATA_HOME",
    "VPS_HOSTS_CONFIG",
    "VPS_MCP_CONFIG_DIR",
    "VPS_MCP_DATA_DIR",
    "VPS_TEMPLATES_FILE",
    "FASTMCP_HOST",
    "FASTMCP_PORT",
    "LOG_LEVEL",
}
# Host secrets may be kept out of the YAML file as ${VPS_SECRET_<NAME>}
SECRET_ENV_PREFIX = "VPS_SECRET_"


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="127.0.0.1", alias="FASTMCP_HOST")
    port: int = Field(default=8000, alias="FASTMCP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = {"populate_by_name": True}


class VPSMCPConfig(BaseSettings):
    """Main configuration for VPS MCP server."""

    hosts: dict[str, VPSHost] = Field(default_factory=dict)
    server: ServerConfig = Field(default_factory=ServerConfig)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    plan_provider: PlanProviderSettings = Field(default_factory=PlanProviderSettings)
    templates_file: str | None = Field(default=None, alias="VPS_TEMPLATES_FILE")
    config_file: str = Field(default="config/hosts.yml", alias="VPS_HOSTS_CONFIG")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


def get_config_dir() -> Path:
    """Directory holding hosts.yml and templates.yml."""
    if env_dir := os.getenv("VPS_MCP_CONFIG_DIR"):
        return Path(env_dir)
    if xdg := os.getenv("XDG_CONFIG_HOME"):
        return Path(xdg) / "vps-mcp"
    return Path.home() / ".config" / "vps-mcp"


def get_data_dir() -> Path:
    """Directory holding logs and the deployment history database."""
    if env_dir := os.getenv("VPS_MCP_DATA_DIR"):
        return Path(env_dir)
    if xdg := os.getenv("XDG_DATA_HOME"):
        return Path(xdg) / "vps-mcp"
    return Path.home() / ".local" / "share" / "vps-mcp"


def load_config(config_path: str | None = None) -> VPSMCPConfig:
    """Load configuration (synchronous interface).

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded configuration

    Note:
        For async code, use load_config_async() instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(load_config_async(config_path))
    raise RuntimeError(
        "load_config() cannot be called from within an async context. "
        "Use 'await load_config_async()' instead."
    )


async def load_config_async(config_path: str | None = None) -> VPSMCPConfig:
    """Load configuration from .env, the YAML hosts file and the environment.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: The file exists but cannot be parsed or validated
    """
    load_dotenv()

    config = VPSMCPConfig()
    default_config_file = os.getenv("VPS_HOSTS_CONFIG", str(get_config_dir() / "hosts.yml"))
    project_config_path = Path(config_path or default_config_file)
    await _load_config_file(config, project_config_path)
    config.config_file = str(project_config_path)

    if config.templates_file is None:
        config.templates_file = str(project_config_path.parent / "templates.yml")

    # Environment variables beat the file
    _apply_env_overrides(config)
    return config


async def _load_config_file(config: VPSMCPConfig, config_path: Path) -> None:
    """Load and apply configuration from a YAML file."""
    if not config_path.exists():
        logger.info("No hosts file found; starting with no hosts", path=str(config_path))
        return

    yaml_config = await _load_yaml_config(config_path)
    _apply_host_config(config, yaml_config)
    _apply_server_config(config, yaml_config)
    config.pool = _apply_settings_section(config.pool, yaml_config.get("pool"), "pool")
    config.plan_provider = _apply_settings_section(
        config.plan_provider, yaml_config.get("plan_provider"), "plan_provider"
    )
    if templates_file := yaml_config.get("templates_file"):
        if not os.getenv("VPS_TEMPLATES_FILE"):
            config.templates_file = os.path.expanduser(str(templates_file))


def parse_hosts(raw_hosts: Any) -> dict[str, VPSHost]:
    """Build validated hosts from the ``hosts`` mapping of the YAML file."""
    hosts: dict[str, VPSHost] = {}
    if not raw_hosts:
        return hosts
    if not isinstance(raw_hosts, dict):
        raise ConfigurationError("'hosts' must be a mapping of host id to host settings")
    for host_id, host_data in raw_hosts.items():
        data = dict(host_data or {})
        if data.get("private_key_path"):
            data["private_key_path"] = os.path.expanduser(str(data["private_key_path"]))
        try:
            hosts[str(host_id)] = VPSHost(**{**data, "id": str(host_id)})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid host '{host_id}': {e}") from e
    return hosts


def _apply_host_config(config: VPSMCPConfig, yaml_config: dict[str, Any]) -> None:
    """Apply host configuration from YAML data."""
    config.hosts = parse_hosts(yaml_config.get("hosts"))


def _apply_server_config(config: VPSMCPConfig, yaml_config: dict[str, Any]) -> None:
    """Apply server configuration from YAML data."""
    for key, value in (yaml_config.get("server") or {}).items():
        if hasattr(config.server, key):
            setattr(config.server, key, value)


def _apply_settings_section(current: BaseSettings, section: Any, name: str) -> Any:
    """Overlay a YAML section on a settings object, leaving env-set fields alone."""
    if not section:
        return current
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{name}' must be a mapping")

    settings_cls = type(current)
    merged = current.model_dump()
    for key, value in section.items():
        field = settings_cls.model_fields.get(key)
        if field is None:
            logger.warning("Unknown configuration key ignored", section=name, key=key)
            continue
        if field.alias and os.getenv(field.alias) is not None:
            continue
        merged[key] = value
    try:
        return settings_cls(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid '{name}' settings: {e}") from e


def _apply_env_overrides(config: VPSMCPConfig) -> None:
    """Apply environment variable overrides."""
    if os.getenv("FASTMCP_HOST"):
        config.server.host = os.getenv("FASTMCP_HOST", config.server.host)
    if port_env := os.getenv("FASTMCP_PORT"):
        config.server.port = int(port_env)
    if os.getenv("LOG_LEVEL"):
        config.server.log_level = os.getenv("LOG_LEVEL", config.server.log_level)


async def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = await asyncio.to_thread(config_path.read_text)
        loaded = yaml.safe_load(_expand_yaml_config(content))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e
    # safe_load may return None or a scalar for odd files
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _env_allowed(var_name: str) -> bool:
    return var_name in ALLOWED_ENV_VARS or var_name.startswith(SECRET_ENV_PREFIX)


def _expand_yaml_config(content: str) -> str:
    """Expand ``${VAR}`` and ``$VAR`` for allow-listed environment variables only."""

    def replace_if_allowed(match: re.Match) -> str:
        var_name = match.group(1) or match.group(2)
        original = match.group(0)
        if _env_allowed(var_name):
            return os.getenv(var_name, original)
        logger.warning(
            "Environment variable not in allowlist, skipping expansion",
            variable=var_name,
        )
        return original

    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", replace_if_allowed, content)


def save_config(config: VPSMCPConfig, config_path: str | None = None) -> None:
    """Write the hosts file.

    Only hosts and non-default pool/plan provider values are written; server
    settings stay in the environment. The file holds credentials, so it is
    created readable by the owner only.

    Raises:
        ConfigurationError: The file could not be written
    """
    path = Path(config_path or config.config_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        yaml_data = _build_yaml_data(config)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            _write_yaml_header(f)
            f.write(yaml.safe_dump(yaml_data, default_flow_style=False, sort_keys=False))
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to save configuration", path=str(path), error=str(e))
        raise ConfigurationError(f"Failed to save configuration to {path}: {e}") from e

    logger.info("Configuration saved", path=str(path), hosts=len(config.hosts))


def _build_yaml_data(config: VPSMCPConfig) -> dict[str, Any]:
    yaml_data: dict[str, Any] = {
        "hosts": {host_id: _build_host_data(host) for host_id, host in config.hosts.items()}
    }
    pool = config.pool.model_dump(exclude_defaults=True)
    if pool:
        yaml_data["pool"] = pool
    plan_provider = config.plan_provider.model_dump(exclude_defaults=True)
    if plan_provider:
        yaml_data["plan_provider"] = plan_provider
    if config.templates_file:
        yaml_data["templates_file"] = config.templates_file
    return yaml_data


def _build_host_data(host: VPSHost) -> dict[str, Any]:
    """Host mapping without the id key and without empty optional fields."""
    host_data: dict[str, Any] = {"address": host.address, "username": host.username}
    conditional_fields = [
        ("name", host.name, bool(host.name)),
        ("port", host.port, host.port != 22),
        ("password", host.password, bool(host.password)),
        ("private_key_path", host.private_key_path, bool(host.private_key_path)),
        ("passphrase", host.passphrase, bool(host.passphrase)),
        ("description", host.description, bool(host.description)),
        ("tags", list(host.tags), bool(host.tags)),
    ]
    for field_name, field_value, condition in conditional_fields:
        if condition:
            host_data[field_name] = field_value
    return host_data


def _write_yaml_header(f) -> None:
    f.write("# VPS MCP host configuration\n")
    f.write("# Server settings are configured via .env (FASTMCP_HOST, FASTMCP_PORT, LOG_LEVEL)\n")
    f.write("# Secrets can be referenced as ${VPS_SECRET_<NAME>}\n")
    f.write("\n")


def make_config_persister(
    config: VPSMCPConfig,
) -> Callable[[dict[str, VPSHost]], Awaitable[None]]:
    """Registry persister that writes host changes back to the config file."""

    async def _persist(hosts: dict[str, VPSHost]) -> None:
        config.hosts = dict(hosts)
        await asyncio.to_thread(save_config, config)

    return _persist
