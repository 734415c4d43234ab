"""Background health monitoring for pooled SSH connections."""

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

import structlog

from ..models.enums import ConnectionHealth
from .exceptions import HostNotFoundError, SSHConnectionError
from .settings import PoolSettings
from .ssh_pool import ConnectionEntry, ConnectionPool

logger = structlog.get_logger()


class HealthMonitor:
    """Probes, reconnects, pings and expires pooled connections on a timer.

    The monitor never runs deployment commands. It only touches entries it
    can own without waiting, so it never races a task using the same host.
    """

    def __init__(self, pool: ConnectionPool, settings: PoolSettings | None = None):
        self.pool = pool
        self.settings = settings or pool.settings
        self._task: asyncio.Task | None = None
        self._last_health_check: float | None = None
        self._last_check_at: datetime | None = None
        self._last_results: dict[str, int] = {}
        self._checks_run = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def perform_health_check(self) -> dict[str, int]:
        """Probe every idle entry once.

        Healthy entries run the liveness probe. Entries that failed before
        get one reconnection attempt once their backoff has elapsed. Entries
        whose failure streak reaches ``max_reconnect_attempts`` become
        unrecoverable and are evicted.

        Returns:
            Counts of checked, healthy, reconnected, failed, evicted, backoff
            and skipped (busy) entries
        """
        results = {
            "checked": 0,
            "healthy": 0,
            "reconnected": 0,
            "failed": 0,
            "evicted": 0,
            "backoff": 0,
            "skipped": 0,
        }
        for host_id in self.pool.host_ids():
            async with self.pool.lease_idle(host_id) as entry:
                if entry is None:
                    results["skipped"] += 1
                    continue
                results["checked"] += 1
                outcome = await self._check_entry(entry)
                results[outcome] += 1

        self._checks_run += 1
        self._last_health_check = time.monotonic()
        self._last_check_at = datetime.now(UTC)
        self._last_results = results
        logger.debug("Health check completed", **results)
        return results

    async def _check_entry(self, entry: ConnectionEntry) -> str:
        if entry.health is ConnectionHealth.UNRECOVERABLE:
            return "evicted"

        if entry.is_usable:
            if await self.pool.probe(entry):
                return "healthy"
            return "evicted" if entry.health is ConnectionHealth.UNRECOVERABLE else "failed"

        if time.monotonic() < entry.next_retry_at:
            return "backoff"

        try:
            await self.pool.reconnect(entry)
        except HostNotFoundError:
            entry.evict_pending = True
            return "evicted"
        except SSHConnectionError:
            return "evicted" if entry.health is ConnectionHealth.UNRECOVERABLE else "failed"
        return "reconnected"

    async def send_keepalives(self) -> int:
        """Ping entries idle longer than ``keep_alive_interval``. Returns pings sent."""
        sent = 0
        for host_id in self.pool.host_ids():
            async with self.pool.lease_idle(host_id) as entry:
                if entry is None or not entry.is_usable:
                    continue
                if entry.idle_seconds < self.settings.keep_alive_interval:
                    continue
                if await self.pool.keepalive(entry):
                    sent += 1
        if sent:
            logger.debug("Sent keepalives", count=sent)
        return sent

    async def cleanup_idle_connections(self) -> int:
        """Close entries unused for longer than ``max_idle_time``. Returns closed count."""
        expired = [
            host_id
            for host_id in self.pool.host_ids()
            if (entry := self.pool.get_entry(host_id)) is not None
            and not entry.in_use
            and (datetime.now(UTC) - entry.last_used_at).total_seconds()
            > self.settings.max_idle_time
        ]
        closed = 0
        for host_id in expired:
            if await self.pool.evict(host_id, reason="idle"):
                closed += 1
        if closed:
            logger.info("Closed idle connections", count=closed)
        return closed

    async def run_cycle(self) -> None:
        """One monitor tick: keepalives, idle cleanup and, when due, a health check."""
        await self.send_keepalives()
        await self.cleanup_idle_connections()
        due = (
            self._last_health_check is None
            or time.monotonic() - self._last_health_check >= self.settings.health_check_interval
        )
        if due:
            await self.perform_health_check()

    async def start(self) -> None:
        """Start the background monitor loop."""
        if self.is_running:
            return
        tick = min(self.settings.health_check_interval, self.settings.keep_alive_interval)
        # First health check happens one full interval after start
        self._last_health_check = time.monotonic()

        async def _monitor_loop():
            while True:
                try:
                    await asyncio.sleep(tick)
                    await self.run_cycle()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error("Error in health monitor", error=str(e), exc_info=True)

        self._task = asyncio.create_task(_monitor_loop())
        logger.info(
            "Started connection health monitor",
            interval=self.settings.health_check_interval,
            tick=tick,
        )

    async def stop(self) -> None:
        """Stop the background monitor loop."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped connection health monitor")

    def summary(self) -> dict[str, Any]:
        """Pool statistics with per-host health and metrics."""
        hosts: dict[str, Any] = {}
        for host_id in self.pool.host_ids():
            entry = self.pool.get_entry(host_id)
            if entry is None:
                continue
            hosts[host_id] = {
                **entry.to_dict(),
                "metrics": self.pool.get_metrics(host_id).model_dump(),
            }
        return {
            "pool": self.pool.stats().model_dump(),
            "hosts": hosts,
            "monitor_running": self.is_running,
            "checks_run": self._checks_run,
            "last_check_at": self._last_check_at.isoformat() if self._last_check_at else None,
            "last_results": self._last_results,
        }
