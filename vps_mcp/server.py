"""
FastMCP VPS Deployment Server

A FastMCP server for managing remote VPS hosts over pooled SSH connections
and running template-driven deployments on them.
"""

import argparse
import os
import sys
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import Field, ValidationError

from .core.config_loader import (
    VPSMCPConfig,
    get_config_dir,
    get_data_dir,
    load_config,
    make_config_persister,
)
from .core.exceptions import ConfigurationError
from .core.file_watcher import HotReloadManager
from .core.health_monitor import HealthMonitor
from .core.host_registry import HostRegistry
from .core.logging_config import get_server_logger, setup_logging
from .core.orchestrator import DeploymentOrchestrator
from .core.plan_provider import KeywordPlanProvider, PlanProvider, WebhookPlanProvider
from .core.ssh_pool import ConnectionPool
from .core.task_store import TaskStore
from .core.template_store import TemplateStore
from .core.templates import TemplateResolver
from .middleware import ErrorHandlingMiddleware, LoggingMiddleware
from .models.enums import DeployAction, HostAction, PoolAction
from .models.params import VPSDeployParams, VPSHostsParams, VPSPoolParams
from .services import DeploymentService, HostService, PoolService


class VPSMCPServer:
    """FastMCP server for VPS host management and deployments."""

    def __init__(
        self,
        config: VPSMCPConfig,
        config_path: str | None = None,
        data_dir: Path | None = None,
        session_factory=None,
    ):
        self.config = config
        self._config_path: str = config_path or config.config_file
        self.logger = get_server_logger()

        # Core components
        self.registry = HostRegistry(config.hosts, persister=make_config_persister(config))
        self.pool = ConnectionPool(self.registry.get, config.pool, session_factory)
        self.monitor = HealthMonitor(self.pool)
        self.store = TaskStore(data_dir or get_data_dir())
        self.templates = TemplateStore(
            Path(config.templates_file).expanduser() if config.templates_file else None
        )
        self.resolver = TemplateResolver()
        self.plan_provider = self._build_plan_provider()
        self.orchestrator = DeploymentOrchestrator(
            self.pool,
            self.registry,
            self.templates,
            self.plan_provider,
            store=self.store,
        )

        # A removed host loses its pooled session and its tasks; new credentials
        # mean the next acquire connects fresh
        self.registry.on_deleted(self._on_host_deleted)
        self.registry.on_credentials_changed(self._on_credentials_changed)

        # Service layer
        self.host_service = HostService(self.registry, self.pool)
        self.deployment_service = DeploymentService(
            self.orchestrator, self.templates, self.resolver
        )
        self.pool_service = PoolService(self.pool, self.monitor)

        self.hot_reload_manager = HotReloadManager(self.registry)
        self.hot_reload_manager.setup_hot_reload(self._config_path)

        self.app: FastMCP | None = None

        self.logger.info(
            "VPS MCP Server initialized",
            hosts=sorted(config.hosts),
            server_config=config.server.model_dump(),
            plan_provider=type(self.plan_provider).__name__,
            config_path=self._config_path,
        )

    def _build_plan_provider(self) -> PlanProvider:
        keyword = KeywordPlanProvider(self.resolver)
        settings = self.config.plan_provider
        if not settings.webhook_url:
            return keyword
        return WebhookPlanProvider(
            settings.webhook_url,
            timeout=settings.timeout,
            cache_ttl=settings.cache_ttl,
            fallback=keyword,
            resolver=self.resolver,
        )

    async def _on_host_deleted(self, host_id: str) -> None:
        await self.pool.evict(host_id, reason="host removed")
        await self.orchestrator.handle_host_deleted(host_id)

    async def _on_credentials_changed(self, host_id: str) -> None:
        await self.pool.evict(host_id, reason="credentials changed")

    # -- lifecycle ----------------------------------------------------------

    async def startup(self) -> None:
        """Open stores, restore task history and start background workers."""
        await self.store.initialize()
        await self.templates.load()
        restored = await self.orchestrator.load_history()
        await self.monitor.start()
        await self.hot_reload_manager.start_hot_reload()
        self.logger.info(
            "VPS MCP Server started",
            restored_tasks=restored,
            templates=len(self.templates.list_templates()),
        )

    async def shutdown(self) -> None:
        """Stop workers, then close every pooled connection."""
        await self.hot_reload_manager.stop_hot_reload()
        await self.orchestrator.shutdown()
        await self.monitor.stop()
        await self.pool.close_all()
        self.logger.info("VPS MCP Server stopped")

    @asynccontextmanager
    async def lifespan(self, app: FastMCP) -> AsyncIterator[None]:
        await self.startup()
        try:
            yield
        finally:
            await self.shutdown()

    def _initialize_app(self) -> None:
        """Initialize FastMCP app, middleware, and register tools."""
        self.app = FastMCP("VPS Deployment Manager", lifespan=self.lifespan)
        self._configure_middleware()

        self.app.tool(
            self.vps_hosts,
            annotations={
                "title": "VPS Host Management",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": False,
                "openWorldHint": True,
            },
        )
        self.app.tool(
            self.vps_deploy,
            annotations={
                "title": "VPS Deployments",
                "readOnlyHint": False,
                "destructiveHint": True,
                "idempotentHint": False,
                "openWorldHint": True,
            },
        )
        self.app.tool(
            self.vps_pool,
            annotations={
                "title": "SSH Connection Pool",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": True,
            },
        )

    def _configure_middleware(self) -> None:
        """Configure FastMCP middleware stack (first added = first executed)."""
        if self.app is None:
            return
        self.app.add_middleware(
            ErrorHandlingMiddleware(
                include_traceback=self.config.server.log_level.upper() == "DEBUG",
                track_error_stats=True,
            )
        )
        self.app.add_middleware(
            LoggingMiddleware(
                include_payloads=_env_bool("LOG_INCLUDE_PAYLOADS", True),
                max_payload_length=_env_int("LOG_MAX_PAYLOAD_LENGTH", 1000),
            )
        )

    # -- tools --------------------------------------------------------------

    async def vps_hosts(
        self,
        action: Annotated[
            str | None,
            Field(default=None, description="Action to perform (defaults to list)"),
        ] = None,
        host_id: Annotated[str, Field(default="", description="Host identifier")] = "",
        name: Annotated[str | None, Field(default=None, description="Display name")] = None,
        address: Annotated[str, Field(default="", description="Hostname or IP address")] = "",
        port: Annotated[int, Field(default=22, ge=1, le=65535, description="SSH port")] = 22,
        username: Annotated[str, Field(default="", description="SSH username")] = "",
        password: Annotated[str | None, Field(default=None, description="SSH password")] = None,
        private_key_path: Annotated[
            str | None, Field(default=None, description="Path to SSH private key file")
        ] = None,
        passphrase: Annotated[
            str | None, Field(default=None, description="Private key passphrase")
        ] = None,
        description: Annotated[
            str | None, Field(default=None, description="Host description")
        ] = None,
        tags: Annotated[list[str] | None, Field(default=None, description="Host tags")] = None,
    ) -> dict[str, Any]:
        """Manage the VPS hosts deployments run against.

        Actions:
        • list: List hosts with their pooled connection state
        • add: Register a host
          - Required: host_id, address, username and one of password / private_key_path
          - Optional: port (default: 22), name, passphrase, description, tags
        • edit: Change credentials, name, description or tags
          - Required: host_id
          - address, port and username cannot be edited
        • remove: Remove a host; its connection is closed and its tasks cancelled
          - Required: host_id
        • test_connection: Connect through the pool and run the liveness probe
          - Required: host_id
        • system_info: OS, kernel, CPU, memory, disk, uptime and load average
          - Required: host_id
        • monitor: Sample CPU, memory, disk and network usage (last 100 kept)
          - Required: host_id
        """
        try:
            params = VPSHostsParams(
                action=action or HostAction.LIST,
                host_id=host_id,
                name=name,
                address=address,
                port=port,
                username=username,
                password=password,
                private_key_path=private_key_path,
                passphrase=passphrase,
                description=description,
                tags=tags,
            )
        except ValidationError as e:
            return _parameter_error(e, action)

        return await self.host_service.handle_action(
            params.action, **params.model_dump(exclude={"action"})
        )

    async def vps_deploy(
        self,
        action: Annotated[
            str | None,
            Field(default=None, description="Action to perform (defaults to list)"),
        ] = None,
        host_id: Annotated[str, Field(default="", description="Target host identifier")] = "",
        template_id: Annotated[
            str, Field(default="", description="Deployment template identifier")
        ] = "",
        task_id: Annotated[str, Field(default="", description="Deployment task identifier")] = "",
        variables: Annotated[
            dict[str, Any] | None, Field(default=None, description="Template variable values")
        ] = None,
        description: Annotated[
            str, Field(default="", description="Natural-language deployment request")
        ] = "",
        background: Annotated[
            bool, Field(default=True, description="Run retries in the background")
        ] = True,
        wait_timeout: Annotated[
            float | None,
            Field(default=None, ge=0, description="Seconds to wait for a started task"),
        ] = None,
        category: Annotated[
            str | None, Field(default=None, description="Template category filter")
        ] = None,
    ) -> dict[str, Any]:
        """Deploy services to VPS hosts from templates or descriptions.

        Actions:
        • templates: List deployment templates
          - Optional: category
        • preview: Render a template's commands and config file without running them
          - Required: template_id
          - Optional: variables
        • create: Create a task from a template (validation errors fail the task)
          - Required: host_id, template_id
          - Optional: variables
        • create_from_description: Create a task from a natural-language request
          - Required: host_id, description
        • execute: Run a pending task and wait for it
          - Required: task_id
        • start: Run a pending task in the background
          - Required: task_id
          - Optional: wait_timeout
        • status: Task state, progress and logs
          - Required: task_id
        • list: List tasks
          - Optional: host_id
        • cancel: Stop a running task after its current step
          - Required: task_id
        • retry: Run a finished task again, optionally with new variables
          - Required: task_id
          - Optional: variables, background (default: true), wait_timeout
        • delete: Delete a task that is not running
          - Required: task_id
        """
        try:
            params = VPSDeployParams(
                action=action or DeployAction.LIST,
                host_id=host_id,
                template_id=template_id,
                task_id=task_id,
                variables=variables,
                description=description,
                background=background,
                wait_timeout=wait_timeout,
                category=category,
            )
        except ValidationError as e:
            return _parameter_error(e, action)

        return await self.deployment_service.handle_action(
            params.action, **params.model_dump(exclude={"action"})
        )

    async def vps_pool(
        self,
        action: Annotated[
            str | None,
            Field(default=None, description="Action to perform (defaults to stats)"),
        ] = None,
        host_id: Annotated[str, Field(default="", description="Host identifier (evict)")] = "",
    ) -> dict[str, Any]:
        """Inspect and maintain the SSH connection pool.

        Actions:
        • stats: Pool counters, utilization and health rates, per-host metrics
        • health_check: Probe every idle connection now
        • evict: Close a host's pooled connection
          - Required: host_id
        """
        try:
            params = VPSPoolParams(action=action or PoolAction.STATS, host_id=host_id)
        except ValidationError as e:
            return _parameter_error(e, action)

        return await self.pool_service.handle_action(
            params.action, **params.model_dump(exclude={"action"})
        )

    def run(self, transport: str = "http") -> None:
        """Run the FastMCP server."""
        self._initialize_app()
        if self.app is None:
            raise RuntimeError("FastMCP app not initialized")

        self.logger.info(
            "Starting VPS MCP Server",
            transport=transport,
            host=self.config.server.host,
            port=self.config.server.port,
        )
        if transport == "stdio":
            self.app.run(transport="stdio")
        else:
            self.app.run(
                transport="http",
                host=self.config.server.host,
                port=self.config.server.port,
            )


def _parameter_error(error: ValidationError, action: Any) -> dict[str, Any]:
    return {
        "success": False,
        "error": f"Parameter validation failed: {error.errors()[0]['msg']}",
        "action": str(action) if action else "unknown",
    }


def _env_int(var_name: str, default: int) -> int:
    try:
        return int(os.getenv(var_name, default))
    except ValueError:
        return default


def _env_bool(var_name: str, default: bool) -> bool:
    value = os.getenv(var_name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    default_host = os.getenv("FASTMCP_HOST", "127.0.0.1")
    default_port = _env_int("FASTMCP_PORT", 8000)
    default_log_level = os.getenv("LOG_LEVEL", "INFO")
    default_config = os.getenv("VPS_HOSTS_CONFIG", str(get_config_dir() / "hosts.yml"))

    parser = argparse.ArgumentParser(description="FastMCP VPS Deployment Manager")
    parser.add_argument("--host", default=default_host, help="Server host")
    parser.add_argument("--port", type=int, default=default_port, help="Server port")
    parser.add_argument("--config", default=default_config, help="Hosts configuration file path")
    parser.add_argument(
        "--transport", default="http", choices=["http", "stdio"], help="MCP transport"
    )
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )
    return parser.parse_args(argv)


def main() -> None:
    """Main entry point."""
    args = parse_args()
    logger = _setup_logging_system(args, _setup_log_directory())

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e), config_path=args.config)
        sys.exit(1)

    config.server.host = args.host
    config.server.port = args.port
    config.server.log_level = args.log_level

    if args.validate_config:
        logger.info("Configuration is valid", hosts=sorted(config.hosts))
        return

    server = VPSMCPServer(config, config_path=config.config_file)
    try:
        server.run(args.transport)
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


def _setup_log_directory() -> Path | None:
    """First writable log directory, or None for console-only logging."""
    candidates = [
        os.getenv("LOG_DIR"),
        str(get_data_dir() / "logs"),
        str(Path(tempfile.gettempdir()) / "vps-mcp-logs"),
    ]
    for candidate in candidates:
        if not candidate:
            continue
        path = Path(candidate)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        if os.access(path, os.W_OK):
            return path
    return None


def _setup_logging_system(args: argparse.Namespace, log_dir: Path | None):
    """Configure logging; fall back to the temp directory when no log dir is writable."""
    max_file_size_mb = _env_int("LOG_FILE_SIZE_MB", 10)
    if max_file_size_mb < 1 or max_file_size_mb > 100:
        max_file_size_mb = 10

    setup_logging(
        log_dir=log_dir or Path(tempfile.gettempdir()),
        log_level=args.log_level,
        max_file_size_mb=max_file_size_mb,
    )
    return get_server_logger()


if __name__ == "__main__":
    main()
