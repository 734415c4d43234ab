"""
VPS MCP Services

Service layer between the MCP tools and the core components.
"""

from .deployment import DeploymentService  # noqa: F401
from .host import HostService  # noqa: F401
from .pool import PoolService  # noqa: F401

__all__ = [
    "HostService",
    "DeploymentService",
    "PoolService",
]
