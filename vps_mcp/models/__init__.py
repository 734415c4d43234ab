"""Data models for VPS MCP."""

from .connection import (  # noqa: F401
    CommandResult,
    ConnectionMetrics,
    PoolStats,
)
from .deployment import (  # noqa: F401
    ConfigFile,
    DeploymentLog,
    DeploymentPlan,
    DeploymentTask,
    DeploymentTemplate,
    TaskEvent,
    TemplateVariable,
    VisibilityCondition,
    VisibilityRule,
)
from .enums import (  # noqa: F401
    ConnectionHealth,
    ConnectionState,
    DeployAction,
    DeploymentStatus,
    ErrorKind,
    HostAction,
    LogLevel,
    PoolAction,
    TaskEventKind,
    VariableType,
)
from .host import VPSHost  # noqa: F401
from .params import (  # noqa: F401
    VPSDeployParams,
    VPSHostsParams,
    VPSPoolParams,
)
from .system import MonitoringSample, SystemInfo  # noqa: F401

__all__ = [
    # Connection models
    "CommandResult",
    "ConnectionMetrics",
    "PoolStats",
    # Deployment models
    "ConfigFile",
    "DeploymentLog",
    "DeploymentPlan",
    "DeploymentTask",
    "DeploymentTemplate",
    "TaskEvent",
    "TemplateVariable",
    "VisibilityCondition",
    "VisibilityRule",
    # Enums
    "ConnectionHealth",
    "ConnectionState",
    "DeployAction",
    "DeploymentStatus",
    "ErrorKind",
    "HostAction",
    "LogLevel",
    "PoolAction",
    "TaskEventKind",
    "VariableType",
    # Host models
    "VPSHost",
    # Parameter models
    "VPSDeployParams",
    "VPSHostsParams",
    "VPSPoolParams",
    # System models
    "MonitoringSample",
    "SystemInfo",
]
