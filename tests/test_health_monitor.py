"""Tests for background connection health monitoring."""

from datetime import UTC, datetime, timedelta

import pytest

from vps_mcp.core.exceptions import SSHConnectionError
from vps_mcp.core.health_monitor import HealthMonitor
from vps_mcp.core.ssh_pool import ConnectionPool
from vps_mcp.models.enums import ConnectionHealth


@pytest.fixture
def monitor(pool) -> HealthMonitor:
    return HealthMonitor(pool)


async def _open_idle(pool, host_id):
    handle = await pool.acquire(host_id)
    await pool.release(handle)
    return pool.get_entry(host_id)


def _fail_probe(pool):
    probe = pool.settings.probe_command
    return lambda command: (1, "", "probe failed") if command == probe else (0, "", "")


class TestHealthCheck:
    async def test_healthy_entry_is_probed(self, pool, monitor, sessions, host):
        await _open_idle(pool, host.id)

        results = await monitor.perform_health_check()

        assert results["checked"] == 1
        assert results["healthy"] == 1
        assert sessions.sessions[0].commands == [pool.settings.probe_command]
        assert pool.get_metrics(host.id).average_response_time_ms >= 0.0

    async def test_busy_entry_is_skipped(self, pool, monitor, sessions, host):
        handle = await pool.acquire(host.id)

        results = await monitor.perform_health_check()

        assert results["skipped"] == 1
        assert results["checked"] == 0
        assert sessions.sessions[0].commands == []
        await pool.release(handle)

    async def test_failed_probe_then_reconnect(self, pool, monitor, sessions, host):
        entry = await _open_idle(pool, host.id)
        sessions.handler = _fail_probe(pool)

        results = await monitor.perform_health_check()
        assert results["failed"] == 1
        assert entry.health is ConnectionHealth.UNHEALTHY
        assert entry.failure_streak == 1

        sessions.handler = lambda command: (0, "", "")
        results = await monitor.perform_health_check()
        assert results["reconnected"] == 1
        assert entry.health is ConnectionHealth.HEALTHY
        assert entry.failure_streak == 0
        assert len(sessions.sessions) == 2

    async def test_repeated_failures_evict_unrecoverable_entry(
        self, pool, monitor, sessions, host
    ):
        await _open_idle(pool, host.id)
        sessions.handler = _fail_probe(pool)

        outcomes = []
        for _ in range(pool.settings.max_reconnect_attempts):
            results = await monitor.perform_health_check()
            outcomes.append(next(k for k in ("failed", "evicted") if results[k]))

        assert outcomes == ["failed", "failed", "evicted"]
        assert pool.get_entry(host.id) is None
        assert pool.get_stats()["evictions"] == 1

        # The next acquire starts over with a fresh entry and a new attempt
        sessions.handler = lambda command: (0, "", "")
        attempts = pool.get_metrics(host.id).total_attempts
        handle = await pool.acquire(host.id)
        assert handle.entry.health is ConnectionHealth.HEALTHY
        assert pool.get_metrics(host.id).total_attempts == attempts + 1
        await pool.release(handle)

    async def test_backoff_delays_reconnect(self, registry, pool_settings, sessions, host):
        pool = ConnectionPool(
            registry.get, pool_settings.model_copy(update={"reconnect_base_delay": 60.0}), sessions
        )
        monitor = HealthMonitor(pool)
        await _open_idle(pool, host.id)
        sessions.handler = _fail_probe(pool)

        assert (await monitor.perform_health_check())["failed"] == 1
        assert (await monitor.perform_health_check())["backoff"] == 1
        assert len(sessions.sessions) == 1
        await pool.close_all()


class TestMaintenance:
    async def test_keepalive_sent_to_idle_entries(self, pool, monitor, sessions, host):
        entry = await _open_idle(pool, host.id)
        entry.last_used_at = datetime.now(UTC) - timedelta(seconds=60)

        assert await monitor.send_keepalives() == 1
        assert sessions.sessions[0].keepalives == 1
        assert entry.last_keepalive_at is not None
        # The ping itself counts as activity
        assert await monitor.send_keepalives() == 0

    async def test_failed_keepalive_degrades_health(self, pool, monitor, sessions, host):
        entry = await _open_idle(pool, host.id)
        entry.last_used_at = datetime.now(UTC) - timedelta(seconds=60)
        sessions.keepalive_error = SSHConnectionError("connection reset")

        assert await monitor.send_keepalives() == 0
        assert entry.health is ConnectionHealth.UNHEALTHY

    async def test_idle_connections_are_closed(self, pool, monitor, sessions, host):
        entry = await _open_idle(pool, host.id)
        entry.last_used_at = datetime.now(UTC) - timedelta(seconds=10_000)

        assert await monitor.cleanup_idle_connections() == 1
        assert pool.get_entry(host.id) is None
        assert sessions.sessions[0].closed

    async def test_run_cycle_performs_first_health_check(self, pool, monitor, host):
        await _open_idle(pool, host.id)

        await monitor.run_cycle()

        summary = monitor.summary()
        assert summary["checks_run"] == 1
        assert summary["last_results"]["healthy"] == 1

    async def test_start_and_stop(self, monitor):
        await monitor.start()
        assert monitor.is_running
        await monitor.stop()
        assert not monitor.is_running

    async def test_summary_includes_host_metrics(self, pool, monitor, host):
        await _open_idle(pool, host.id)

        summary = monitor.summary()

        assert summary["pool"]["total_connections"] == 1
        assert summary["hosts"][host.id]["health"] == "healthy"
        assert summary["hosts"][host.id]["metrics"]["success_rate"] == 100.0
        assert summary["monitor_running"] is False
