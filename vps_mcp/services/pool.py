"""
Connection Pool Service

Inspection and maintenance of the SSH connection pool.
"""

from typing import Any

import structlog

from ..core.error_response import VPSMCPErrorResponse
from ..core.health_monitor import HealthMonitor
from ..core.ssh_pool import ConnectionPool
from ..models.enums import PoolAction


class PoolService:
    """Service for connection pool statistics and health operations."""

    def __init__(self, pool: ConnectionPool, monitor: HealthMonitor):
        self.pool = pool
        self.monitor = monitor
        self.logger = structlog.get_logger()

    def stats(self) -> dict[str, Any]:
        return {"success": True, **self.monitor.summary(), "counters": self.pool.get_stats()}

    async def health_check(self) -> dict[str, Any]:
        results = await self.monitor.perform_health_check()
        return {"success": True, "results": results, "pool": self.pool.stats().model_dump()}

    async def evict(self, host_id: str) -> dict[str, Any]:
        if not host_id:
            return VPSMCPErrorResponse.validation_error(
                "host_id", host_id, "host_id is required for evict"
            )
        if self.pool.get_entry(host_id) is None:
            return {"success": True, "host_id": host_id, "evicted": False, "deferred": False}
        evicted = await self.pool.evict(host_id, reason="requested")
        return {"success": True, "host_id": host_id, "evicted": evicted, "deferred": not evicted}

    async def handle_action(self, action, **params) -> dict[str, Any]:
        """Unified action handler for pool operations."""
        if isinstance(action, str):
            try:
                action = PoolAction(action.lower().strip())
            except ValueError:
                return {
                    "success": False,
                    "error": f"Unknown action: {action}",
                    "valid_actions": [a.value for a in PoolAction],
                }

        if action is PoolAction.STATS:
            return self.stats()
        if action is PoolAction.HEALTH_CHECK:
            return await self.health_check()
        if action is PoolAction.EVICT:
            return await self.evict(params.get("host_id", ""))
        return {
            "success": False,
            "error": f"Unknown action: {action}",
            "valid_actions": [a.value for a in PoolAction],
        }
