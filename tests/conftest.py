"""Shared pytest fixtures for VPS MCP tests.

Remote hosts are simulated by ``FakeSession`` objects injected through the
pool's session factory, so no test opens a real SSH connection.
"""

import asyncio
import inspect
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from vps_mcp.core.exceptions import SSHConnectionError
from vps_mcp.core.host_registry import HostRegistry
from vps_mcp.core.orchestrator import DeploymentOrchestrator
from vps_mcp.core.plan_provider import KeywordPlanProvider
from vps_mcp.core.settings import PoolSettings
from vps_mcp.core.ssh_pool import ConnectionPool
from vps_mcp.core.task_store import TaskStore
from vps_mcp.core.template_store import TemplateStore
from vps_mcp.models.connection import CommandResult
from vps_mcp.models.host import VPSHost


class FakeSession:
    """In-memory stand-in for a paramiko session."""

    def __init__(self, factory: "FakeSessionFactory", host: VPSHost):
        self.factory = factory
        self.host = host
        self.active = False
        self.closed = False
        self.commands: list[str] = []
        self.writes: dict[str, str] = {}
        self.keepalives = 0

    async def connect(self) -> None:
        if self.factory.connect_delay:
            await asyncio.sleep(self.factory.connect_delay)
        if self.factory.connect_failures > 0:
            self.factory.connect_failures -= 1
            raise SSHConnectionError(f"Connection refused by {self.host.endpoint}")
        if self.factory.connect_error is not None:
            raise self.factory.connect_error
        self.active = True

    async def run(self, command: str, timeout: float) -> CommandResult:
        if not self.active:
            raise SSHConnectionError("Session is not connected")
        self.commands.append(command)
        self.factory.executed.append((self.host.id, command))
        self.factory.running += 1
        self.factory.max_running = max(self.factory.max_running, self.factory.running)
        try:
            result = self.factory.handler(command)
            if inspect.isawaitable(result):
                result = await result
        finally:
            self.factory.running -= 1
        if isinstance(result, CommandResult):
            return result
        exit_status, stdout, stderr = result
        return CommandResult(command=command, exit_status=exit_status, stdout=stdout, stderr=stderr)

    async def write_file(self, path: str, content: str, timeout: float) -> None:
        if not self.active:
            raise SSHConnectionError("Session is not connected")
        if self.factory.write_delay:
            await asyncio.sleep(self.factory.write_delay)
        self.writes[path] = content
        self.factory.executed.append((self.host.id, f"<write {path}>"))

    async def keepalive(self) -> None:
        if self.factory.keepalive_error is not None:
            raise self.factory.keepalive_error
        self.keepalives += 1

    def is_active(self) -> bool:
        return self.active

    async def close(self) -> None:
        self.active = False
        self.closed = True


def ok_handler(command: str) -> tuple[int, str, str]:
    return 0, "", ""


class FakeSessionFactory:
    """Session factory recording every session and command it serves."""

    def __init__(self):
        self.sessions: list[FakeSession] = []
        self.executed: list[tuple[str, str]] = []
        self.handler: Callable[[str], Any] = ok_handler
        self.connect_failures = 0
        self.connect_error: Exception | None = None
        self.connect_delay = 0.0
        self.write_delay = 0.0
        self.keepalive_error: Exception | None = None
        self.running = 0
        self.max_running = 0

    def __call__(self, host: VPSHost, settings: PoolSettings) -> FakeSession:
        session = FakeSession(self, host)
        self.sessions.append(session)
        return session

    def commands_for(self, host_id: str) -> list[str]:
        return [command for hid, command in self.executed if hid == host_id]


@pytest.fixture
def host() -> VPSHost:
    return VPSHost(id="web1", address="203.0.113.10", username="deploy", password="s3cret")


@pytest.fixture
def second_host() -> VPSHost:
    return VPSHost(
        id="web2",
        address="web2.example.com",
        port=2222,
        username="deploy",
        private_key_path="/home/deploy/.ssh/id_ed25519",
    )


@pytest.fixture
def registry(host: VPSHost, second_host: VPSHost) -> HostRegistry:
    return HostRegistry({host.id: host, second_host.id: second_host})


@pytest.fixture
def sessions() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def pool_settings() -> PoolSettings:
    return PoolSettings(
        max_pool_size=5,
        max_concurrent_connections=5,
        connection_timeout=1.0,
        command_timeout=5.0,
        acquire_timeout=2.0,
        probe_timeout=1.0,
        max_reconnect_attempts=3,
        reconnect_base_delay=0.0,
    )


@pytest.fixture
async def pool(registry, pool_settings, sessions):
    pool = ConnectionPool(registry.get, pool_settings, sessions)
    yield pool
    await pool.close_all()


@pytest.fixture
def templates() -> TemplateStore:
    return TemplateStore(None)


@pytest.fixture
async def task_store(tmp_path) -> TaskStore:
    store = TaskStore(tmp_path / "data")
    await store.initialize()
    return store


@pytest.fixture
async def orchestrator(pool, registry, templates):
    orchestrator = DeploymentOrchestrator(pool, registry, templates, KeywordPlanProvider())
    registry.on_deleted(orchestrator.handle_host_deleted)
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def mock_context():
    """Mock MiddlewareContext for middleware unit tests."""
    context = MagicMock()
    context.method = "tools/call"
    context.source = "client"
    context.type = "request"
    context.message = SimpleNamespace(
        name="vps_hosts",
        arguments={"action": "add", "host_id": "web1", "password": "hunter2"},
    )
    return context


class MockCall:
    """Mock call_next function for middleware testing."""

    def __init__(self, return_value=None, exception=None):
        self.return_value = return_value or {"success": True}
        self.exception = exception
        self.call_count = 0

    async def __call__(self, context):
        self.call_count += 1
        if self.exception:
            raise self.exception
        return self.return_value


@pytest.fixture
def mock_call():
    return MockCall


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_for

