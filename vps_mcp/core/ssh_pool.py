"""SSH connection pool with per-host ownership and admission control.

The pool keeps at most one connection entry per host and at most
``max_pool_size`` entries overall. Handing out a connection takes three
gates in order:

1. an admission slot, bounding connections in use at once
   (``max_concurrent_connections``, FIFO);
2. the host's ownership lock, so two tasks never interleave on one session
   (FIFO per host, also taken by the health monitor);
3. a pool slot for new entries. When the pool is full the least recently
   used idle entry is evicted; if every entry is busy the caller waits.

With ``fail_fast`` enabled any gate that would block raises
:class:`PoolExhaustedError` instead.
"""

import asyncio
import time
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from ..models.connection import CommandResult, ConnectionMetrics, PoolStats
from ..models.enums import ConnectionHealth, ConnectionState
from ..models.host import VPSHost
from .exceptions import (
    CommandTimeoutError,
    ConnectionTimeoutError,
    HostNotFoundError,
    PoolExhaustedError,
    SSHConnectionError,
)
from .settings import PoolSettings
from .ssh_session import ParamikoSession, SSHSession

logger = structlog.get_logger()

HostLookup = Callable[[str], VPSHost]
SessionFactory = Callable[[VPSHost, PoolSettings], SSHSession]


def paramiko_session_factory(host: VPSHost, settings: PoolSettings) -> SSHSession:
    return ParamikoSession(host, connect_timeout=settings.connection_timeout)


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ConnectionEntry:
    """The pool's record of a live or attempted session to one host."""

    host_id: str
    session: SSHSession | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    health: ConnectionHealth = ConnectionHealth.DISCONNECTED
    created_at: datetime = field(default_factory=_now)
    last_used_at: datetime = field(default_factory=_now)
    last_keepalive_at: datetime | None = None
    use_count: int = 0
    in_use: bool = False
    failure_streak: int = 0
    next_retry_at: float = 0.0
    evict_pending: bool = False

    @property
    def is_usable(self) -> bool:
        return (
            self.state is ConnectionState.CONNECTED
            and self.health is ConnectionHealth.HEALTHY
            and self.session is not None
        )

    @property
    def idle_seconds(self) -> float:
        last_activity = max(self.last_used_at, self.last_keepalive_at or self.last_used_at)
        return (_now() - last_activity).total_seconds()

    def touch(self) -> None:
        """Record a checkout."""
        self.last_used_at = _now()
        self.use_count += 1

    def mark_connected(self) -> None:
        self.state = ConnectionState.CONNECTED
        self.health = ConnectionHealth.HEALTHY
        self.failure_streak = 0
        self.next_retry_at = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "host_id": self.host_id,
            "state": self.state.value,
            "health": self.health.value,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "use_count": self.use_count,
            "in_use": self.in_use,
            "failure_streak": self.failure_streak,
            "evict_pending": self.evict_pending,
        }


class ConnectionHandle:
    """A checked-out connection. Valid until released."""

    def __init__(self, pool: "ConnectionPool", entry: ConnectionEntry):
        self._pool = pool
        self._entry = entry
        self._released = False

    @property
    def host_id(self) -> str:
        return self._entry.host_id

    @property
    def entry(self) -> ConnectionEntry:
        return self._entry

    @property
    def released(self) -> bool:
        return self._released

    def _session(self) -> SSHSession:
        if self._released:
            raise SSHConnectionError(f"Connection handle for {self.host_id} was already released")
        if self._entry.session is None:
            raise SSHConnectionError(f"Connection to {self.host_id} is closed")
        return self._entry.session

    async def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a command on the host; non-zero exits are returned, not raised."""
        session = self._session()
        timeout = timeout or self._pool.settings.command_timeout
        try:
            result = await session.run(command, timeout)
        except CommandTimeoutError:
            # The channel may still be busy; force a reconnect on next use
            self._entry.state = ConnectionState.TIMEOUT
            self._entry.health = ConnectionHealth.UNHEALTHY
            raise
        except SSHConnectionError as e:
            self._entry.state = ConnectionState.FAILED
            self._entry.health = ConnectionHealth.UNHEALTHY
            self._pool.metrics_for(self.host_id).last_error = str(e)
            raise
        self._entry.last_used_at = _now()
        logger.debug(
            "Executed SSH command",
            host_id=self.host_id,
            command=command[:100],
            exit_status=result.exit_status,
            duration_ms=result.duration_ms,
        )
        return result

    async def write_file(self, path: str, content: str, timeout: float | None = None) -> None:
        """Upload a file, bounded by the same timeout as a command."""
        session = self._session()
        timeout = timeout or self._pool.settings.command_timeout
        try:
            try:
                async with asyncio.timeout(timeout):
                    await session.write_file(path, content, timeout)
            except TimeoutError as e:
                raise CommandTimeoutError(
                    f"Upload of {path} timed out after {timeout:g}s", command=f"sftp put {path}"
                ) from e
        except CommandTimeoutError:
            self._entry.state = ConnectionState.TIMEOUT
            self._entry.health = ConnectionHealth.UNHEALTHY
            raise
        except SSHConnectionError:
            self._entry.state = ConnectionState.FAILED
            self._entry.health = ConnectionHealth.UNHEALTHY
            raise
        self._entry.last_used_at = _now()

    async def release(self) -> None:
        await self._pool.release(self)


class ConnectionPool:
    """Pooled, bounded SSH connections keyed by host id."""

    def __init__(
        self,
        host_lookup: HostLookup,
        settings: PoolSettings | None = None,
        session_factory: SessionFactory | None = None,
    ):
        """Initialize the connection pool.

        Args:
            host_lookup: Resolves a host id to its :class:`VPSHost`; raises
                :class:`HostNotFoundError` for unknown hosts
            settings: Pool sizing, timeouts and reconnection policy
            session_factory: Builds an unconnected session for a host
        """
        self.settings = settings or PoolSettings()
        self._host_lookup = host_lookup
        self._session_factory = session_factory or paramiko_session_factory

        self._entries: dict[str, ConnectionEntry] = {}
        self._metrics: dict[str, ConnectionMetrics] = defaultdict(ConnectionMetrics)
        self._host_locks: dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}
        self._admission = asyncio.Semaphore(self.settings.max_concurrent_connections)
        self._capacity = asyncio.Condition()
        self._closed = False
        self._stats = {
            "connections_created": 0,
            "connections_reused": 0,
            "connections_closed": 0,
            "connection_errors": 0,
            "evictions": 0,
        }

        logger.info(
            "SSH connection pool initialized",
            max_pool_size=self.settings.max_pool_size,
            max_concurrent_connections=self.settings.max_concurrent_connections,
            connection_timeout=self.settings.connection_timeout,
            fail_fast=self.settings.fail_fast,
        )

    # -- acquisition -----------------------------------------------------

    async def acquire(self, host_id: str, timeout: float | None = None) -> ConnectionHandle:
        """Check out the connection for ``host_id``.

        Args:
            host_id: Registered host identifier
            timeout: Maximum seconds to wait for pool capacity; connection
                establishment is bounded separately by ``connection_timeout``

        Returns:
            A handle that must be passed to :meth:`release`

        Raises:
            PoolExhaustedError: No capacity within ``timeout`` (or at once with fail_fast)
            SSHConnectionError: The connection could not be established
        """
        if self._closed:
            raise SSHConnectionError("Connection pool is closed")
        host = self._host_lookup(host_id)
        wait_timeout = self.settings.acquire_timeout if timeout is None else timeout
        deadline = asyncio.get_running_loop().time() + wait_timeout

        await self._wait_gate(self._admission, deadline, f"admission for {host_id}")
        host_lock = self._claim_lock(host_id)
        try:
            await self._wait_gate(host_lock, deadline, f"connection to {host_id}")
        except BaseException:
            self._drop_lock(host_id)
            self._admission.release()
            raise

        try:
            entry = await self._checkout(host, deadline)
        except BaseException:
            evicted = self._settle(host_id)
            host_lock.release()
            self._drop_lock(host_id)
            self._admission.release()
            await asyncio.shield(self._after_release(evicted))
            raise
        return ConnectionHandle(self, entry)

    async def _wait_gate(
        self, gate: asyncio.Lock | asyncio.Semaphore, deadline: float, what: str
    ) -> None:
        if self.settings.fail_fast and gate.locked():
            raise PoolExhaustedError(f"Pool exhausted waiting for {what}")
        try:
            async with asyncio.timeout_at(deadline):
                await gate.acquire()
        except TimeoutError as e:
            raise PoolExhaustedError(f"Timed out waiting for {what}") from e

    async def _checkout(self, host: VPSHost, deadline: float) -> ConnectionEntry:
        """Hand out the host's entry. Caller owns the host lock."""
        if self._closed:
            raise SSHConnectionError("Connection pool is closed")
        entry = self._entries.get(host.id)
        if entry is not None and (
            entry.evict_pending or entry.health is ConnectionHealth.UNRECOVERABLE
        ):
            self._remove_entry(entry, "unrecoverable" if not entry.evict_pending else "deferred")
            await self._close_session(entry)
            entry = None

        if entry is not None:
            entry.in_use = True
            if not entry.is_usable:
                try:
                    await self.reconnect(entry)
                except BaseException:
                    entry.in_use = False
                    raise
            self._stats["connections_reused"] += 1
            entry.touch()
            logger.debug("Reusing pooled connection", host_id=host.id, use_count=entry.use_count)
            return entry

        entry = await self._reserve_entry(host.id, deadline)
        try:
            entry.session = await self._open_session(host)
        except BaseException:
            self._remove_entry(entry, "connect failed", count_eviction=False)
            raise
        entry.mark_connected()
        entry.touch()
        return entry

    async def _reserve_entry(self, host_id: str, deadline: float) -> ConnectionEntry:
        """Insert a placeholder entry once the pool has room, evicting LRU idle entries."""
        evicted: list[ConnectionEntry] = []
        try:
            async with self._capacity:
                while len(self._entries) >= self.settings.max_pool_size:
                    victim = self._lru_idle_entry()
                    if victim is not None:
                        self._remove_entry(victim, "lru")
                        evicted.append(victim)
                        continue
                    if self.settings.fail_fast:
                        raise PoolExhaustedError(
                            f"Pool full ({self.settings.max_pool_size} connections in use)"
                        )
                    try:
                        async with asyncio.timeout_at(deadline):
                            await self._capacity.wait()
                    except TimeoutError as e:
                        raise PoolExhaustedError(
                            f"Timed out waiting for a free pool slot for {host_id}"
                        ) from e
                entry = ConnectionEntry(
                    host_id=host_id, state=ConnectionState.CONNECTING, in_use=True
                )
                self._entries[host_id] = entry
        finally:
            for victim in evicted:
                await self._close_session(victim)
        return entry

    def _lru_idle_entry(self) -> ConnectionEntry | None:
        idle = [
            e
            for e in self._entries.values()
            if not e.in_use and not self._host_busy(e.host_id)
        ]
        return min(idle, key=lambda e: e.last_used_at, default=None)

    async def _open_session(self, host: VPSHost) -> SSHSession:
        """Create and connect a session, recording the attempt in the host's metrics."""
        metrics = self._metrics[host.id]
        metrics.record_attempt()
        session = self._session_factory(host, self.settings)
        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.settings.connection_timeout):
                await session.connect()
        except TimeoutError as e:
            error: SSHConnectionError = ConnectionTimeoutError(
                f"Connection to {host.endpoint} timed out after "
                f"{self.settings.connection_timeout:g}s"
            )
            await self._record_connect_failure(host, session, metrics, error)
            raise error from e
        except SSHConnectionError as e:
            await self._record_connect_failure(host, session, metrics, e)
            raise
        except Exception as e:
            error = SSHConnectionError(f"Failed to connect to {host.endpoint}: {e}")
            await self._record_connect_failure(host, session, metrics, error)
            raise error from e
        except BaseException:
            await session.close()
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_success(elapsed_ms)
        self._stats["connections_created"] += 1
        logger.info(
            "Created SSH connection",
            host_id=host.id,
            endpoint=host.endpoint,
            connect_ms=round(elapsed_ms, 2),
            total_created=self._stats["connections_created"],
        )
        return session

    async def _record_connect_failure(
        self,
        host: VPSHost,
        session: SSHSession,
        metrics: ConnectionMetrics,
        error: SSHConnectionError,
    ) -> None:
        metrics.record_failure(str(error))
        self._stats["connection_errors"] += 1
        await session.close()
        logger.warning(
            "SSH connection attempt failed",
            host_id=host.id,
            endpoint=host.endpoint,
            error=str(error),
            error_type=type(error).__name__,
        )

    # -- health bookkeeping (shared with the health monitor) --------------

    async def reconnect(self, entry: ConnectionEntry) -> None:
        """Replace the entry's session with a fresh, probed one. Caller owns the host lock.

        A failed connect or a failed probe of the new session counts toward
        the entry's failure streak; reaching ``max_reconnect_attempts`` marks
        it unrecoverable. Only a successful probe resets the streak.
        """
        host = self._host_lookup(entry.host_id)
        await self._close_session(entry)
        entry.state = ConnectionState.CONNECTING
        try:
            entry.session = await self._open_session(host)
        except SSHConnectionError as e:
            self.record_failure(entry, e, reconnecting=True)
            raise
        entry.state = ConnectionState.CONNECTED
        entry.health = ConnectionHealth.HEALTHY
        if not await self.probe(entry):
            raise SSHConnectionError(
                f"Reconnected session to {host.endpoint} failed its liveness probe"
            )
        logger.info("Reconnected SSH session", host_id=entry.host_id)

    async def probe(self, entry: ConnectionEntry) -> bool:
        """Run the liveness command on an idle entry. Caller owns the host lock."""
        if entry.session is None:
            self.record_failure(entry, SSHConnectionError("No session"))
            return False
        started = time.perf_counter()
        try:
            result = await entry.session.run(
                self.settings.probe_command, self.settings.probe_timeout
            )
        except (SSHConnectionError, CommandTimeoutError) as e:
            self.record_failure(entry, e)
            return False
        if not result.ok:
            self.record_failure(
                entry, SSHConnectionError(f"Probe exited with status {result.exit_status}")
            )
            return False
        self._metrics[entry.host_id].record_response_time((time.perf_counter() - started) * 1000)
        entry.mark_connected()
        return True

    async def keepalive(self, entry: ConnectionEntry) -> bool:
        """Ping an idle entry. Caller owns the host lock."""
        if entry.session is None:
            return False
        try:
            await entry.session.keepalive()
        except SSHConnectionError as e:
            self.record_failure(entry, e)
            return False
        entry.last_keepalive_at = _now()
        return True

    def record_failure(
        self, entry: ConnectionEntry, error: Exception, reconnecting: bool = False
    ) -> None:
        """Advance the entry's failure streak and schedule the next reconnect."""
        entry.failure_streak += 1
        timed_out = isinstance(error, (ConnectionTimeoutError, CommandTimeoutError))
        entry.state = ConnectionState.TIMEOUT if timed_out else ConnectionState.FAILED
        self._metrics[entry.host_id].last_error = str(error)

        if entry.failure_streak >= self.settings.max_reconnect_attempts:
            entry.health = ConnectionHealth.UNRECOVERABLE
        elif reconnecting:
            entry.health = ConnectionHealth.FAILED
        else:
            entry.health = ConnectionHealth.UNHEALTHY
        entry.next_retry_at = time.monotonic() + self.settings.reconnect_delay(
            entry.failure_streak
        )
        logger.warning(
            "Connection health degraded",
            host_id=entry.host_id,
            health=entry.health.value,
            failure_streak=entry.failure_streak,
            error=str(error),
        )

    @asynccontextmanager
    async def lease_idle(self, host_id: str) -> AsyncGenerator[ConnectionEntry | None, None]:
        """Own an idle entry for maintenance without waiting.

        Yields None when the host is busy or has no entry. Entries marked
        unrecoverable or pending eviction are removed on exit.
        """
        if self._host_busy(host_id):
            yield None
            return
        lock = self._claim_lock(host_id)
        await lock.acquire()
        try:
            entry = self._entries.get(host_id)
            yield entry if entry is not None and not entry.in_use else None
        finally:
            evicted = self._settle(host_id)
            lock.release()
            self._drop_lock(host_id)
            if evicted is not None:
                await self._close_session(evicted)
                await self._notify_capacity()

    # -- release and eviction ---------------------------------------------

    async def release(self, handle: ConnectionHandle) -> None:
        """Return a handle's entry to idle. Idempotent; never closes a healthy session."""
        if handle.released:
            return
        handle._released = True
        entry = handle.entry
        entry.in_use = False
        entry.last_used_at = _now()
        try:
            self._host_lookup(entry.host_id)
        except HostNotFoundError:
            entry.evict_pending = True
        evicted = self._settle(entry.host_id)
        self._host_locks[entry.host_id].release()
        self._drop_lock(entry.host_id)
        self._admission.release()
        await asyncio.shield(self._after_release(evicted))

    async def _after_release(self, evicted: ConnectionEntry | None) -> None:
        if evicted is not None:
            await self._close_session(evicted)
        await self._notify_capacity()

    def _settle(self, host_id: str) -> ConnectionEntry | None:
        """Drop an idle entry that is pending eviction or unrecoverable."""
        entry = self._entries.get(host_id)
        if entry is None or entry.in_use:
            return None
        if entry.evict_pending:
            self._remove_entry(entry, "deferred")
            return entry
        if entry.health is ConnectionHealth.UNRECOVERABLE:
            self._remove_entry(entry, "unrecoverable")
            return entry
        return None

    async def evict(self, host_id: str, reason: str = "explicit") -> bool:
        """Close and remove the host's entry.

        Returns True when the entry was removed now, False when there was
        nothing to evict or the eviction was deferred because the entry is
        owned by a task or the health monitor.
        """
        entry = self._entries.get(host_id)
        if entry is None:
            return False
        if entry.in_use or self._host_busy(host_id):
            entry.evict_pending = True
            logger.info("Deferred eviction of busy connection", host_id=host_id, reason=reason)
            return False
        self._remove_entry(entry, reason)
        await self._close_session(entry)
        await self._notify_capacity()
        return True

    def _claim_lock(self, host_id: str) -> asyncio.Lock:
        """Return the host's lock, counting the caller as a holder or waiter."""
        self._lock_refs[host_id] = self._lock_refs.get(host_id, 0) + 1
        return self._host_locks.setdefault(host_id, asyncio.Lock())

    def _drop_lock(self, host_id: str) -> None:
        # Forget the lock once nobody holds or waits on it
        self._lock_refs[host_id] -= 1
        if self._lock_refs[host_id] == 0:
            del self._lock_refs[host_id]
            del self._host_locks[host_id]

    def _host_busy(self, host_id: str) -> bool:
        lock = self._host_locks.get(host_id)
        return lock is not None and lock.locked()

    def _remove_entry(
        self, entry: ConnectionEntry, reason: str, count_eviction: bool = True
    ) -> None:
        if self._entries.get(entry.host_id) is entry:
            del self._entries[entry.host_id]
            if count_eviction:
                self._stats["evictions"] += 1
                logger.info(
                    "Evicted pooled connection",
                    host_id=entry.host_id,
                    reason=reason,
                    use_count=entry.use_count,
                )

    async def _close_session(self, entry: ConnectionEntry) -> None:
        session, entry.session = entry.session, None
        entry.state = ConnectionState.DISCONNECTED
        if entry.health is not ConnectionHealth.UNRECOVERABLE:
            entry.health = ConnectionHealth.DISCONNECTED
        if session is None:
            return
        await session.close()
        self._stats["connections_closed"] += 1

    async def _notify_capacity(self) -> None:
        async with self._capacity:
            self._capacity.notify_all()

    @asynccontextmanager
    async def connection(
        self, host_id: str, timeout: float | None = None
    ) -> AsyncGenerator[ConnectionHandle, None]:
        """Check out a connection for the duration of the block.

        Args:
            host_id: Registered host identifier
            timeout: Maximum seconds to wait for pool capacity

        Yields:
            ConnectionHandle for the host
        """
        handle = await self.acquire(host_id, timeout)
        try:
            yield handle
        finally:
            await self.release(handle)

    # -- introspection ----------------------------------------------------

    def host_ids(self) -> list[str]:
        return list(self._entries)

    def get_entry(self, host_id: str) -> ConnectionEntry | None:
        return self._entries.get(host_id)

    def entries(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries.values()]

    def metrics_for(self, host_id: str) -> ConnectionMetrics:
        return self._metrics[host_id]

    def get_metrics(self, host_id: str) -> ConnectionMetrics:
        """Snapshot of a host's accumulated connection metrics."""
        if host_id not in self._metrics:
            return ConnectionMetrics()
        return self._metrics[host_id].model_copy()

    def stats(self) -> PoolStats:
        """Compute pool statistics from the current entries."""
        entries = list(self._entries.values())
        total = len(entries)
        in_use = sum(1 for e in entries if e.in_use)
        healthy = sum(1 for e in entries if e.health is ConnectionHealth.HEALTHY)
        active = sum(1 for e in entries if e.is_usable)
        return PoolStats(
            total_connections=total,
            active_connections=active,
            in_use_connections=in_use,
            idle_connections=total - in_use,
            healthy_connections=healthy,
            utilization_rate=(in_use / total * 100) if total else 0.0,
            health_rate=(healthy / total * 100) if total else 0.0,
            max_pool_size=self.settings.max_pool_size,
            max_concurrent_connections=self.settings.max_concurrent_connections,
        )

    def get_stats(self) -> dict[str, Any]:
        """Pool statistics plus lifetime counters."""
        return {**self._stats, **self.stats().model_dump()}

    async def close_all(self) -> None:
        """Close every pooled session. The pool rejects new acquisitions afterwards."""
        self._closed = True
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._close_session(entry)
        await self._notify_capacity()
        logger.info("SSH connection pool closed", stats=self._stats)


def require_host(hosts: dict[str, VPSHost]) -> HostLookup:
    """Host lookup over a plain mapping."""

    def _lookup(host_id: str) -> VPSHost:
        try:
            return hosts[host_id]
        except KeyError:
            raise HostNotFoundError(f"Host '{host_id}' not found") from None

    return _lookup
