"""Connection pool and plan provider settings for VPS MCP.

Provides centralized tuning using Pydantic BaseSettings with environment
variable support. Values are read once at startup; changing them later does
not resize connections that are already open.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PoolSettings(BaseSettings):
    """SSH connection pool, health monitoring and execution timeouts."""

    max_concurrent_connections: int = Field(
        10,
        ge=1,
        alias="VPS_MAX_CONCURRENT_CONNECTIONS",
        description="Maximum connections handed out at the same time",
    )
    max_pool_size: int = Field(
        10, ge=1, alias="VPS_MAX_POOL_SIZE", description="Maximum pooled connection entries"
    )
    connection_timeout: float = Field(
        5.0, gt=0, alias="VPS_CONNECTION_TIMEOUT", description="SSH connect timeout in seconds"
    )
    command_timeout: float = Field(
        30.0, gt=0, alias="VPS_COMMAND_TIMEOUT", description="Per-command timeout in seconds"
    )
    acquire_timeout: float = Field(
        30.0,
        gt=0,
        alias="VPS_ACQUIRE_TIMEOUT",
        description="Maximum wait for pool capacity in seconds",
    )
    fail_fast: bool = Field(
        False,
        alias="VPS_POOL_FAIL_FAST",
        description="Fail immediately instead of queueing when the pool is exhausted",
    )
    keep_alive_interval: float = Field(
        30.0, gt=0, alias="VPS_KEEP_ALIVE_INTERVAL", description="Idle seconds before a keepalive"
    )
    max_idle_time: float = Field(
        300.0, gt=0, alias="VPS_MAX_IDLE_TIME", description="Idle seconds before a connection closes"
    )
    health_check_interval: float = Field(
        60.0, gt=0, alias="VPS_HEALTH_CHECK_INTERVAL", description="Seconds between health checks"
    )
    probe_timeout: float = Field(
        5.0, gt=0, alias="VPS_PROBE_TIMEOUT", description="Liveness probe timeout in seconds"
    )
    probe_command: str = Field(
        "echo 'health_check'", alias="VPS_PROBE_COMMAND", description="Liveness probe command"
    )
    max_reconnect_attempts: int = Field(
        3,
        ge=1,
        alias="VPS_MAX_RECONNECT_ATTEMPTS",
        description="Consecutive failures before a connection is unrecoverable",
    )
    reconnect_base_delay: float = Field(
        2.0, ge=0, alias="VPS_RECONNECT_BASE_DELAY", description="First reconnect backoff in seconds"
    )
    reconnect_multiplier: float = Field(
        2.0, ge=1, alias="VPS_RECONNECT_MULTIPLIER", description="Backoff growth factor"
    )
    reconnect_max_delay: float = Field(
        30.0, ge=0, alias="VPS_RECONNECT_MAX_DELAY", description="Backoff ceiling in seconds"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    def reconnect_delay(self, failure_streak: int) -> float:
        """Backoff before the next reconnection attempt after ``failure_streak`` failures."""
        if failure_streak <= 0:
            return 0.0
        delay = self.reconnect_base_delay * self.reconnect_multiplier ** (failure_streak - 1)
        return min(delay, self.reconnect_max_delay)


class PlanProviderSettings(BaseSettings):
    """Natural-language plan generation webhook."""

    webhook_url: str | None = Field(
        None, alias="VPS_PLAN_WEBHOOK_URL", description="AI plan generation webhook URL"
    )
    timeout: float = Field(
        120.0, gt=0, alias="VPS_PLAN_TIMEOUT", description="Webhook request timeout in seconds"
    )
    cache_ttl: float = Field(
        300.0, ge=0, alias="VPS_PLAN_CACHE_TTL", description="Generated plan cache lifetime"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)
