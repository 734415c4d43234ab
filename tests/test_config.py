"""Tests for configuration loading and saving."""

import stat

import pytest

from vps_mcp.core.config_loader import (
    VPSMCPConfig,
    get_config_dir,
    get_data_dir,
    load_config,
    load_config_async,
    make_config_persister,
    parse_hosts,
    save_config,
)
from vps_mcp.core.exceptions import ConfigurationError
from vps_mcp.models.host import VPSHost

HOSTS_YAML = """
hosts:
  web1:
    name: Web One
    address: 203.0.113.10
    username: deploy
    password: ${VPS_SECRET_WEB1}
    description: Uses $PATH literally
    tags: [web, prod]
  db1:
    address: db1.example.com
    port: 2222
    username: root
    private_key_path: ~/.ssh/id_ed25519
pool:
  max_pool_size: 3
  command_timeout: 45
plan_provider:
  webhook_url: https://n8n.example.com/webhook/plan
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in (
        "VPS_HOSTS_CONFIG",
        "VPS_TEMPLATES_FILE",
        "VPS_MAX_POOL_SIZE",
        "VPS_COMMAND_TIMEOUT",
        "VPS_PLAN_WEBHOOK_URL",
        "FASTMCP_HOST",
        "FASTMCP_PORT",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    # Keep load_dotenv from picking up a developer's .env
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def hosts_file(tmp_path, monkeypatch):
    monkeypatch.setenv("VPS_SECRET_WEB1", "s3cret")
    path = tmp_path / "config" / "hosts.yml"
    path.parent.mkdir()
    path.write_text(HOSTS_YAML)
    return path


class TestLoadConfig:
    async def test_hosts_and_sections_are_loaded(self, hosts_file):
        config = await load_config_async(str(hosts_file))

        assert sorted(config.hosts) == ["db1", "web1"]
        web1 = config.hosts["web1"]
        assert web1.password == "s3cret"
        assert web1.description == "Uses $PATH literally"
        assert web1.tags == ["web", "prod"]
        db1 = config.hosts["db1"]
        assert db1.port == 2222
        assert not db1.private_key_path.startswith("~")
        assert config.pool.max_pool_size == 3
        assert config.pool.command_timeout == 45
        assert config.plan_provider.webhook_url == "https://n8n.example.com/webhook/plan"
        assert config.config_file == str(hosts_file)
        assert config.templates_file == str(hosts_file.parent / "templates.yml")

    async def test_environment_beats_file(self, hosts_file, monkeypatch):
        monkeypatch.setenv("VPS_MAX_POOL_SIZE", "7")
        monkeypatch.setenv("FASTMCP_PORT", "9001")

        config = await load_config_async(str(hosts_file))

        assert config.pool.max_pool_size == 7
        assert config.pool.command_timeout == 45
        assert config.server.port == 9001

    async def test_missing_file_means_no_hosts(self, tmp_path):
        config = await load_config_async(str(tmp_path / "absent.yml"))

        assert config.hosts == {}
        assert config.pool.max_pool_size == 10

    async def test_invalid_host_is_rejected(self, tmp_path):
        path = tmp_path / "hosts.yml"
        path.write_text("hosts:\n  bad:\n    address: not_a host\n    username: x\n    password: y\n")

        with pytest.raises(ConfigurationError, match="bad"):
            await load_config_async(str(path))

    async def test_broken_yaml(self, tmp_path):
        path = tmp_path / "hosts.yml"
        path.write_text("hosts: [unclosed\n")

        with pytest.raises(ConfigurationError):
            await load_config_async(str(path))

    async def test_invalid_pool_value(self, tmp_path):
        path = tmp_path / "hosts.yml"
        path.write_text("pool:\n  max_pool_size: 0\n")

        with pytest.raises(ConfigurationError, match="pool"):
            await load_config_async(str(path))

    def test_sync_loader(self, hosts_file):
        assert sorted(load_config(str(hosts_file)).hosts) == ["db1", "web1"]

    async def test_sync_loader_refuses_running_loop(self, hosts_file):
        with pytest.raises(RuntimeError):
            load_config(str(hosts_file))


class TestParseHosts:
    def test_requires_mapping(self):
        with pytest.raises(ConfigurationError):
            parse_hosts(["web1"])

    def test_empty(self):
        assert parse_hosts(None) == {}

    def test_both_credentials_rejected(self):
        host_data = {
            "address": "10.0.0.1",
            "username": "a",
            "password": "p",
            "private_key_path": "/k",
        }
        with pytest.raises(ConfigurationError):
            parse_hosts({"web1": host_data})


class TestSaveConfig:
    async def test_round_trip_with_owner_only_permissions(self, hosts_file, tmp_path):
        config = await load_config_async(str(hosts_file))
        target = tmp_path / "out" / "hosts.yml"

        save_config(config, str(target))

        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        text = target.read_text()
        assert text.startswith("# VPS MCP host configuration")
        assert "server:" not in text
        reloaded = await load_config_async(str(target))
        assert {k: h.model_dump() for k, h in reloaded.hosts.items()} == {
            k: h.model_dump() for k, h in config.hosts.items()
        }
        assert reloaded.pool.max_pool_size == 3

    async def test_persister_writes_registry_hosts(self, tmp_path):
        config = VPSMCPConfig(config_file=str(tmp_path / "hosts.yml"))
        persist = make_config_persister(config)
        host = VPSHost(id="web9", address="198.51.100.9", username="ops", password="pw")

        await persist({host.id: host})

        reloaded = await load_config_async(str(tmp_path / "hosts.yml"))
        assert reloaded.hosts["web9"].model_dump() == host.model_dump()


class TestDirectories:
    def test_explicit_directories(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VPS_MCP_CONFIG_DIR", str(tmp_path / "cfg"))
        monkeypatch.setenv("VPS_MCP_DATA_DIR", str(tmp_path / "data"))
        assert get_config_dir() == tmp_path / "cfg"
        assert get_data_dir() == tmp_path / "data"

    def test_xdg_directories(self, monkeypatch, tmp_path):
        monkeypatch.delenv("VPS_MCP_CONFIG_DIR", raising=False)
        monkeypatch.delenv("VPS_MCP_DATA_DIR", raising=False)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "share"))
        assert get_config_dir() == tmp_path / "xdg" / "vps-mcp"
        assert get_data_dir() == tmp_path / "share" / "vps-mcp"
