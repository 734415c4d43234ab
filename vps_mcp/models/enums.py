"""Enum definitions for VPS MCP models and tools."""

from enum import Enum


class ConnectionState(Enum):
    """Raw state of a pooled SSH connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ConnectionHealth(Enum):
    """Coarse health classification used for reuse and eviction decisions."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"
    UNRECOVERABLE = "unrecoverable"
    DISCONNECTED = "disconnected"


class DeploymentStatus(Enum):
    """Lifecycle of one deployment execution epoch."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentStatus.COMPLETED,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        )


class ErrorKind(Enum):
    """Why a deployment task failed."""

    VALIDATION = "validation"
    CONNECTION = "connection"
    COMMAND = "command"
    TIMEOUT = "timeout"


class LogLevel(Enum):
    """Deployment log levels."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class VariableType(Enum):
    """Template variable input types."""

    TEXT = "text"
    PASSWORD = "password"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"


class TaskEventKind(Enum):
    """Kinds of task updates delivered to subscribers."""

    STATUS = "status"
    PROGRESS = "progress"
    LOG = "log"


class HostAction(Enum):
    """Actions for the vps_hosts tool."""

    LIST = "list"
    ADD = "add"
    EDIT = "edit"
    REMOVE = "remove"
    TEST_CONNECTION = "test_connection"
    SYSTEM_INFO = "system_info"
    MONITOR = "monitor"


class DeployAction(Enum):
    """Actions for the vps_deploy tool."""

    TEMPLATES = "templates"
    PREVIEW = "preview"
    CREATE = "create"
    CREATE_FROM_DESCRIPTION = "create_from_description"
    EXECUTE = "execute"
    START = "start"
    STATUS = "status"
    LIST = "list"
    CANCEL = "cancel"
    RETRY = "retry"
    DELETE = "delete"


class PoolAction(Enum):
    """Actions for the vps_pool tool."""

    STATS = "stats"
    HEALTH_CHECK = "health_check"
    EVICT = "evict"
