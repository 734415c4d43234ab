"""Host system information and resource usage models."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field, computed_field


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


class SystemInfo(BaseModel):
    """Static facts about a host, gathered over SSH."""

    host_id: str
    os_name: str = ""
    kernel_version: str = ""
    cpu_model: str = ""
    cpu_cores: int = 1
    memory_total: int = Field(default=0, description="Bytes")
    memory_available: int = Field(default=0, description="Bytes")
    disk_total: int = Field(default=0, description="Bytes, root filesystem")
    disk_available: int = Field(default=0, description="Bytes, root filesystem")
    uptime_seconds: float = 0.0
    load_average: list[float] = Field(default_factory=list)
    collected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def memory_usage(self) -> float:
        return _percent(self.memory_total - self.memory_available, self.memory_total)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def disk_usage(self) -> float:
        return _percent(self.disk_total - self.disk_available, self.disk_total)


class MonitoringSample(BaseModel):
    """A point-in-time resource usage reading."""

    host_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    disk_usage: float = 0.0
    network_in: int = Field(default=0, description="Received bytes since boot")
    network_out: int = Field(default=0, description="Sent bytes since boot")
    load_average: list[float] = Field(default_factory=list)
