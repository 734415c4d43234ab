"""Connection pool data models."""

from pydantic import BaseModel, Field, computed_field


class CommandResult(BaseModel):
    """Outcome of one remote command."""

    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class ConnectionMetrics(BaseModel):
    """Per-host connection counters, accumulated across evictions."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    last_error: str | None = None
    average_response_time_ms: float = 0.0
    average_connect_time_ms: float = 0.0
    response_samples: int = Field(default=0, exclude=True)
    connect_samples: int = Field(default=0, exclude=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.successful_attempts / self.total_attempts * 100

    def record_attempt(self) -> None:
        self.total_attempts += 1

    def record_success(self, connect_time_ms: float | None = None) -> None:
        """Count a successful connect; its handshake time has its own average."""
        self.successful_attempts += 1
        if connect_time_ms is not None:
            self.connect_samples += 1
            self.average_connect_time_ms += (
                connect_time_ms - self.average_connect_time_ms
            ) / self.connect_samples

    def record_failure(self, error: str) -> None:
        self.failed_attempts += 1
        self.last_error = error

    def record_response_time(self, response_time_ms: float) -> None:
        """Fold a round-trip sample into the running average."""
        self.response_samples += 1
        self.average_response_time_ms += (
            response_time_ms - self.average_response_time_ms
        ) / self.response_samples


class PoolStats(BaseModel):
    """Aggregate pool view computed from the current entries."""

    total_connections: int
    active_connections: int
    in_use_connections: int
    idle_connections: int
    healthy_connections: int
    utilization_rate: float
    health_rate: float
    max_pool_size: int
    max_concurrent_connections: int
