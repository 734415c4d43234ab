"""Tests for the FastMCP server wiring and its tools."""

import pytest
from fastmcp import Client

from vps_mcp.core.config_loader import VPSMCPConfig
from vps_mcp.core.plan_provider import KeywordPlanProvider, WebhookPlanProvider
from vps_mcp.core.settings import PlanProviderSettings
from vps_mcp.server import VPSMCPServer, _env_bool, _env_int, parse_args


@pytest.fixture
def config(tmp_path, monkeypatch, host, second_host, pool_settings) -> VPSMCPConfig:
    monkeypatch.chdir(tmp_path)
    return VPSMCPConfig(
        hosts={host.id: host, second_host.id: second_host},
        pool=pool_settings,
        config_file=str(tmp_path / "hosts.yml"),
    )


@pytest.fixture
def server(config, tmp_path, sessions) -> VPSMCPServer:
    return VPSMCPServer(config, data_dir=tmp_path / "data", session_factory=sessions)


@pytest.fixture
async def started_server(server):
    await server.startup()
    yield server
    await server.shutdown()


class TestTools:
    async def test_list_hosts(self, started_server):
        result = await started_server.vps_hosts()

        assert result["success"] is True
        assert [h["id"] for h in result["hosts"]] == ["web1", "web2"]

    async def test_parameter_errors(self, started_server):
        result = await started_server.vps_hosts(action="remove")

        assert result["success"] is False
        assert result["error"].startswith("Parameter validation failed")
        assert result["action"] == "remove"

        result = await started_server.vps_deploy(action="launch")
        assert result["success"] is False

    async def test_added_host_is_persisted(self, started_server, config, tmp_path):
        result = await started_server.vps_hosts(
            action="add", host_id="web3", address="198.51.100.3", username="ops", password="pw"
        )

        assert result["success"] is True
        assert "web3:" in (tmp_path / "hosts.yml").read_text()

    async def test_removed_host_loses_its_connection(self, started_server, sessions):
        await started_server.vps_hosts(action="test_connection", host_id="web1")
        assert started_server.pool.get_entry("web1") is not None

        result = await started_server.vps_hosts(action="remove", host_id="web1")

        assert result["success"] is True
        assert started_server.pool.get_entry("web1") is None
        assert sessions.sessions[0].closed

    async def test_new_credentials_force_a_fresh_connection(self, started_server, sessions):
        await started_server.vps_hosts(action="test_connection", host_id="web1")

        await started_server.vps_hosts(action="edit", host_id="web1", password="rotated")
        await started_server.vps_hosts(action="test_connection", host_id="web1")

        assert len(sessions.sessions) == 2
        assert sessions.sessions[1].host.password == "rotated"

    async def test_deploy_from_template(self, started_server, sessions):
        created = await started_server.vps_deploy(
            action="create",
            host_id="web1",
            template_id="nginx",
            variables={"domain": "example.com", "port": 8080},
        )
        task_id = created["task"]["id"]

        result = await started_server.vps_deploy(action="execute", task_id=task_id)

        assert result["task"]["status"] == "completed"
        assert result["task"]["variables"]["port"] == "8080"
        session = sessions.sessions[0]
        assert "listen 8080;" in session.writes["/etc/nginx/sites-available/example.com.conf"]

    async def test_history_survives_restart(self, server, config, tmp_path, sessions):
        await server.startup()
        created = await server.vps_deploy(action="create", host_id="web2", template_id="docker")
        await server.vps_deploy(action="execute", task_id=created["task"]["id"])
        await server.shutdown()

        restarted = VPSMCPServer(config, data_dir=tmp_path / "data", session_factory=sessions)
        await restarted.startup()
        try:
            result = await restarted.vps_deploy(action="status", task_id=created["task"]["id"])
        finally:
            await restarted.shutdown()

        assert result["task"]["status"] == "completed"

    async def test_pool_tool(self, started_server):
        await started_server.vps_hosts(action="test_connection", host_id="web2")

        stats = await started_server.vps_pool()
        assert stats["pool"]["total_connections"] == 1
        assert stats["monitor_running"] is True

        evicted = await started_server.vps_pool(action="evict", host_id="web2")
        assert evicted["evicted"] is True


class TestInMemoryClient:
    async def test_tools_over_mcp(self, server):
        server._initialize_app()

        async with Client(server.app) as client:
            tools = await client.list_tools()
            assert {tool.name for tool in tools} == {"vps_hosts", "vps_deploy", "vps_pool"}

            result = await client.call_tool("vps_hosts", {"action": "list"})
            assert result.data["success"] is True
            assert result.data["count"] == 2

            result = await client.call_tool(
                "vps_deploy", {"action": "preview", "template_id": "docker"}
            )
            assert result.data["success"] is True
            assert "sudo usermod -aG docker root" in result.data["commands"]


class TestPlanProviderSelection:
    def test_keyword_provider_by_default(self, server):
        assert isinstance(server.plan_provider, KeywordPlanProvider)

    def test_webhook_provider_when_configured(self, config, tmp_path, sessions):
        config.plan_provider = PlanProviderSettings(
            webhook_url="https://n8n.example.com/webhook/plan", timeout=30
        )

        server = VPSMCPServer(config, data_dir=tmp_path / "data", session_factory=sessions)

        assert isinstance(server.plan_provider, WebhookPlanProvider)


class TestCommandLine:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        for name in ("FASTMCP_HOST", "FASTMCP_PORT", "LOG_LEVEL", "VPS_HOSTS_CONFIG"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("VPS_MCP_CONFIG_DIR", str(tmp_path / "cfg"))

        args = parse_args([])

        assert args.host == "127.0.0.1"
        assert args.port == 8000
        assert args.transport == "http"
        assert args.config == str(tmp_path / "cfg" / "hosts.yml")
        assert args.validate_config is False

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("FASTMCP_PORT", "9100")

        args = parse_args(["--transport", "stdio", "--log-level", "DEBUG", "--validate-config"])

        assert args.port == 9100
        assert args.transport == "stdio"
        assert args.log_level == "DEBUG"
        assert args.validate_config is True

    def test_env_helpers(self, monkeypatch):
        monkeypatch.setenv("VPS_TEST_INT", "abc")
        monkeypatch.setenv("VPS_TEST_BOOL", "Yes")
        monkeypatch.delenv("VPS_TEST_MISSING", raising=False)

        assert _env_int("VPS_TEST_INT", 5) == 5
        assert _env_bool("VPS_TEST_BOOL", False) is True
        assert _env_bool("VPS_TEST_MISSING", True) is True
